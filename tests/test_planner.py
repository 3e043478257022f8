import textwrap
from pathlib import Path

import pytest

from stackup.config import parse_supfile
from stackup.errors import LoadError, TargetCycleError, UnknownCommandError, UsageError
from stackup.planner import expand_plan

SUPFILE = textwrap.dedent(
    """
    version: 0.6
    commands:
      build:
        local: make
      upload:
        run: echo upload
      restart:
        run: echo restart
      health:
        run: curl -f localhost
    targets:
      release:
        - upload
        - restart
      deploy:
        - build
        - release
        - health
    """
)


def _names(plan) -> list[str]:
    return [cmd.name for cmd in plan]


def test_targets_expand_recursively_in_order() -> None:
    conf = parse_supfile(SUPFILE)

    assert _names(expand_plan(conf, ["deploy"])) == ["build", "upload", "restart", "health"]


def test_names_are_expanded_in_given_order_with_repeats() -> None:
    conf = parse_supfile(SUPFILE)

    assert _names(expand_plan(conf, ["health", "release", "health"])) == [
        "health",
        "upload",
        "restart",
        "health",
    ]


def test_unknown_name_after_valid_ones_fails() -> None:
    conf = parse_supfile(SUPFILE)

    with pytest.raises(UnknownCommandError) as excinfo:
        expand_plan(conf, ["build", "nope"])

    assert excinfo.value.name == "nope"
    assert excinfo.value.exit_code == 4


def test_unknown_target_member_fails() -> None:
    conf = parse_supfile("version: 0.6\ntargets:\n  broken: [missing]\n")

    with pytest.raises(UnknownCommandError, match="missing"):
        expand_plan(conf, ["broken"])


def test_target_shadows_command_of_same_name() -> None:
    conf = parse_supfile(
        "version: 0.6\n"
        "commands:\n  deploy:\n    run: echo command\n  step:\n    run: echo step\n"
        "targets:\n  deploy: [step]\n"
    )

    assert _names(expand_plan(conf, ["deploy"])) == ["step"]


def test_target_cycle_is_detected() -> None:
    conf = parse_supfile("version: 0.6\ntargets:\n  a: [b]\n  b: [a]\n")

    with pytest.raises(TargetCycleError, match="a -> b -> a"):
        expand_plan(conf, ["a"])


def test_no_names_is_a_usage_error() -> None:
    conf = parse_supfile(SUPFILE)

    with pytest.raises(UsageError):
        expand_plan(conf, [])


def test_script_is_loaded_relative_to_base_dir(tmp_path: Path) -> None:
    (tmp_path / "scripts").mkdir()
    (tmp_path / "scripts" / "setup.sh").write_text("echo from script\n")
    conf = parse_supfile("version: 0.6\ncommands:\n  setup:\n    script: scripts/setup.sh\n")

    (setup,) = expand_plan(conf, ["setup"], base_dir=tmp_path)

    assert setup.run == "echo from script\n"
    assert conf.commands.get("setup").run == ""


def test_missing_script_is_a_load_error(tmp_path: Path) -> None:
    conf = parse_supfile("version: 0.6\ncommands:\n  setup:\n    script: missing.sh\n")

    with pytest.raises(LoadError, match="unable to read script"):
        expand_plan(conf, ["setup"], base_dir=tmp_path)
