from pathlib import Path

import pytest

from stackup.config import Network
from stackup.errors import InventoryError, NetworkNoHostsError, ResolutionError
from stackup.hosts import HostResolver, parse_host, parse_inventory, run_inventory

SERVERS = ["server0", "server1", "server2"]


def _names(hosts) -> list[str]:
    return [host.name for host in hosts]


def test_resolves_declared_hosts_in_order() -> None:
    resolver = HostResolver(Network("dev", hosts=SERVERS), default_user="deploy")

    hosts = resolver.resolve()

    assert _names(hosts) == SERVERS
    assert all(host.user == "deploy" for host in hosts)


def test_only_keeps_matching_hosts() -> None:
    resolver = HostResolver(Network("dev", hosts=SERVERS), only="server[02]")

    assert _names(resolver.resolve()) == ["server0", "server2"]


def test_except_drops_matching_hosts() -> None:
    resolver = HostResolver(Network("dev", hosts=SERVERS), exclude="server1")

    assert _names(resolver.resolve()) == ["server0", "server2"]


def test_only_then_except() -> None:
    resolver = HostResolver(Network("dev", hosts=SERVERS), only="server[01]", exclude="1$")

    assert _names(resolver.resolve()) == ["server0"]


def test_only_without_matches_fails() -> None:
    resolver = HostResolver(Network("dev", hosts=SERVERS), only="nothing")

    with pytest.raises(ResolutionError, match="no hosts match --only"):
        resolver.resolve()


def test_except_removing_everything_fails() -> None:
    resolver = HostResolver(Network("dev", hosts=SERVERS), exclude="server")

    with pytest.raises(ResolutionError, match="no hosts left after --except"):
        resolver.resolve()


def test_invalid_regexp_fails_early() -> None:
    with pytest.raises(ResolutionError, match="--only: error parsing regexp"):
        HostResolver(Network("dev", hosts=SERVERS), only="server(")


def test_empty_network_fails() -> None:
    resolver = HostResolver(Network("empty"))

    with pytest.raises(NetworkNoHostsError, match="network 'empty' has no hosts"):
        resolver.resolve()


def test_duplicates_are_dropped() -> None:
    resolver = HostResolver(Network("dev", hosts=["a", "b", "a"]))

    assert _names(resolver.resolve()) == ["a", "b"]


def test_inventory_output_becomes_hosts() -> None:
    seen: list[str] = []

    def runner(command: str) -> str:
        seen.append(command)
        return "server0\n# comment\n\n  server2  \n"

    resolver = HostResolver(Network("inv", inventory="list-hosts"), inventory_runner=runner)

    assert _names(resolver.resolve()) == ["server0", "server2"]
    assert seen == ["list-hosts"]


def test_inventory_runs_with_sh() -> None:
    output = run_inventory('printf "server0\\n# comment\\n\\nserver2\\n"')

    assert parse_inventory(output) == ["server0", "server2"]


def test_failing_inventory_is_reported() -> None:
    with pytest.raises(InventoryError, match="inventory command failed"):
        run_inventory("this won't compile")


def test_network_settings_annotate_hosts() -> None:
    network = Network(
        "prod",
        hosts=["app1", "root@app2:2222"],
        bastion="jump.example.com",
        user="deploy",
        identity_file=Path("/keys/id_ed25519"),
    )

    app1, app2 = HostResolver(network, default_user="someone-else").resolve()

    assert app1.user == "deploy"
    assert app1.bastion == "jump.example.com"
    assert app1.identity_file == Path("/keys/id_ed25519")
    assert (app2.user, app2.address, app2.port) == ("root", "app2", 2222)


@pytest.mark.parametrize(
    "value,user,address,port",
    [
        ("example.com", None, "example.com", 22),
        ("deploy@example.com", "deploy", "example.com", 22),
        ("ssh://deploy@example.com:2200", "deploy", "example.com", 2200),
        ("10.0.0.5:2022", None, "10.0.0.5", 2022),
        ("[::1]:2022", None, "::1", 2022),
        ("fe80::1", None, "fe80::1", 22),
    ],
)
def test_parse_host(value: str, user, address: str, port: int) -> None:
    host = parse_host(value)

    assert (host.user, host.address, host.port) == (user, address, port)
    assert host.name == value
    assert host.identity == f"{address}:{port}"


@pytest.mark.parametrize("value", ["example.com:notaport", "example.com:70000", "[::1", "deploy@"])
def test_parse_host_rejects_garbage(value: str) -> None:
    with pytest.raises(ResolutionError):
        parse_host(value)


@pytest.mark.parametrize(
    "only,exclude,expected",
    [
        ("server2", None, ["server2"]),
        (None, "server(1|2)", ["server0"]),
        ("^server", "server0", ["server1", "server2"]),
    ],
)
def test_filter_combinations(only, exclude, expected: list[str]) -> None:
    resolver = HostResolver(Network("dev", hosts=SERVERS), only=only, exclude=exclude)

    assert _names(resolver.resolve()) == expected
