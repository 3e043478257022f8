import logging
import textwrap
from pathlib import Path

import pytest

from stackup.config import find_supfile, load_supfile, parse_supfile
from stackup.errors import LoadError, MustUpgradeError, UnsupportedVersionError


def _parse(text: str):
    return parse_supfile(textwrap.dedent(text).strip())


def test_parses_networks_commands_targets_in_order() -> None:
    conf = _parse(
        """
        version: 0.4
        env:
          IMAGE: app
          TAG: latest
        networks:
          staging:
            hosts:
              - deploy@stage1.example.com
              - stage2.example.com:2222
            env:
              TAG: staging
          production:
            inventory: cat hosts.txt
            bastion: jump.example.com
        commands:
          build:
            desc: Build the image
            local: docker build -t $IMAGE .
          restart:
            run: systemctl restart app
            serial: 1
          migrate:
            run: ./migrate
            once: true
        targets:
          deploy:
            - build
            - migrate
            - restart
        """
    )

    assert conf.version == "0.4"
    assert conf.networks.names == ["staging", "production"]
    assert conf.networks.get("staging").hosts == ["deploy@stage1.example.com", "stage2.example.com:2222"]
    assert conf.networks.get("staging").env.get("TAG") == "staging"
    assert conf.networks.get("production").inventory == "cat hosts.txt"
    assert conf.networks.get("production").bastion == "jump.example.com"
    assert conf.commands.names == ["build", "restart", "migrate"]
    assert conf.commands.get("build").local == "docker build -t $IMAGE ."
    assert conf.commands.get("restart").serial == 1
    assert conf.commands.get("migrate").once is True
    assert conf.targets.get("deploy") == ["build", "migrate", "restart"]
    assert conf.env.keys() == ["IMAGE", "TAG"]


def test_missing_version_defaults_to_oldest() -> None:
    conf = _parse(
        """
        commands:
          ping:
            run: echo ping
        """
    )

    assert conf.version == "0.1"


def test_empty_document_is_valid() -> None:
    conf = parse_supfile("")

    assert len(conf.networks) == 0
    assert len(conf.commands) == 0


@pytest.mark.parametrize(
    "version,body,feature",
    [
        ("0.2", "serial: 2", "command.serial"),
        ("0.2", "once: true", "command.once"),
        ("0.2", "local: echo hi", "command.local"),
        ("0.1", "run_once: true", "command.run_once"),
    ],
)
def test_features_newer_than_declared_version_are_rejected(version: str, body: str, feature: str) -> None:
    text = f"version: {version}\ncommands:\n  c:\n    {body}\n"

    with pytest.raises(MustUpgradeError) as excinfo:
        parse_supfile(text)

    assert f"{feature} is not supported in Supfile v{version}" in str(excinfo.value)
    assert "Please bump the Supfile version" in str(excinfo.value)


def test_inventory_requires_v03() -> None:
    with pytest.raises(MustUpgradeError, match="network.inventory"):
        _parse(
            """
            version: 0.2
            networks:
              dev:
                inventory: echo host1
            """
        )


def test_includes_require_v06() -> None:
    with pytest.raises(MustUpgradeError, match="includes"):
        _parse(
            """
            version: 0.5
            includes:
              - supfile: other.yml
            """
        )


def test_run_once_is_migrated_with_a_warning(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="stackup.config"):
        conf = _parse(
            """
            version: 0.3
            commands:
              migrate:
                run: ./migrate
                run_once: true
            """
        )

    assert conf.commands.get("migrate").once is True
    assert "run_once was deprecated" in caplog.text


def test_unknown_version_is_rejected() -> None:
    with pytest.raises(UnsupportedVersionError) as excinfo:
        parse_supfile("version: 9.9\n")

    assert "unsupported Supfile version 9.9" in str(excinfo.value)
    assert "latest supported version: 0.6" in str(excinfo.value)


def test_invalid_yaml_is_a_load_error() -> None:
    with pytest.raises(LoadError, match="invalid YAML"):
        parse_supfile("networks: [unclosed\n")


@pytest.mark.parametrize(
    "text,message",
    [
        ("version: 0.6\ncommands:\n  c:\n    run: a\n    local: b\n", "only one of"),
        ("version: 0.6\ncommands:\n  c:\n    serial: -1\n", "serial"),
        ("version: 0.6\ncommands:\n  c:\n    serial: 2\n    once: true\n", "mutually exclusive"),
        ("version: 0.6\ncommands:\n  c:\n    stdin: yes please\n", "true or false"),
        ("version: 0.6\ncommands:\n  c:\n    upload:\n      - src: ./dist\n", "src and dst"),
        ("version: 0.6\nnetworks:\n  n:\n    hosts: [a]\n    inventory: echo b\n", "mutually exclusive"),
        ("version: 0.6\ntargets:\n  t: single\n", "must be a list"),
        ("- just\n- a list\n", "mapping"),
    ],
)
def test_invalid_sections_are_rejected(text: str, message: str) -> None:
    with pytest.raises(LoadError, match=message):
        parse_supfile(text)


def test_find_supfile_falls_back_to_yml(tmp_path: Path) -> None:
    (tmp_path / "Supfile.yml").write_text("version: 0.6\n")

    assert find_supfile(tmp_path) == tmp_path / "Supfile.yml"

    (tmp_path / "Supfile").write_text("version: 0.6\n")
    assert find_supfile(tmp_path) == tmp_path / "Supfile"


def test_find_supfile_reports_missing_file(tmp_path: Path) -> None:
    with pytest.raises(LoadError, match="No Supfile found"):
        find_supfile(tmp_path)
    with pytest.raises(LoadError, match="Supfile not found"):
        find_supfile(tmp_path, "custom.yml")


def test_load_supfile_records_source(tmp_path: Path) -> None:
    path = tmp_path / "Supfile"
    path.write_text("version: 0.6\n")

    conf = load_supfile(path)

    assert conf.source == path.resolve()
    assert conf.base_dir == tmp_path.resolve()
