"""Managing the docker network that cluster nodes join."""

from __future__ import annotations

import hashlib
import ipaddress
import json
import struct
from dataclasses import dataclass, field

from kindprov.command import Command, RunError, output, output_lines, run_error_for_error

FIXED_NETWORK_NAME = "kind"

_MAX_ATTEMPTS = 5
_REGEX_META = set("\\.+*?()|[]{}^$")


@dataclass
class NetworkInspectEntry:
    """The parts of ``docker network inspect`` output used for sorting."""

    id: str = ""
    containers: dict[str, dict[str, str]] = field(default_factory=dict)


def _quote_meta(text: str) -> str:
    return "".join("\\" + ch if ch in _REGEX_META else ch for ch in text)


def _name_filter(name: str) -> str:
    return "--filter=name=^" + _quote_meta(name) + "$"


def ensure_network(name: str) -> None:
    """Make sure exactly one docker network called name exists, creating it if needed."""
    if _remove_duplicate_networks(name):
        return

    mtu = _get_default_network_mtu()
    try:
        _create_network_no_duplicates(name, generate_ula_subnet_from_name(name, 0), mtu)
        return
    except Exception as exc:
        if is_ipv6_unavailable_error(exc):
            _create_network_no_duplicates(name, "", mtu)
            return
        if not is_pool_overlap_error(exc):
            raise
    if _check_if_network_exists(name):
        return

    for attempt in range(1, _MAX_ATTEMPTS):
        try:
            _create_network_no_duplicates(
                name, generate_ula_subnet_from_name(name, attempt), mtu
            )
            return
        except Exception as exc:
            if not is_pool_overlap_error(exc):
                raise
        if _check_if_network_exists(name):
            return
    raise RuntimeError("exhausted attempts trying to find a non-overlapping subnet")


def _create_network_no_duplicates(name: str, ipv6_subnet: str, mtu: int) -> None:
    try:
        _create_network(name, ipv6_subnet, mtu)
    except RunError as exc:
        if not is_network_already_exists_error(exc):
            raise
    _remove_duplicate_networks(name)


def _remove_duplicate_networks(name: str) -> bool:
    networks = _sorted_networks_with_name(name)
    if len(networks) > 1:
        try:
            delete_networks(*networks[1:])
        except RunError as exc:
            if not is_only_error_no_such_network(exc):
                raise
    return bool(networks)


def _create_network(name: str, ipv6_subnet: str, mtu: int) -> None:
    args = [
        "network", "create", "-d=bridge",
        "-o", "com.docker.network.bridge.enable_ip_masquerade=true",
    ]
    if mtu > 0:
        args += ["-o", f"com.docker.network.driver.mtu={mtu}"]
    if ipv6_subnet:
        args += ["--ipv6", "--subnet", ipv6_subnet]
    args.append(name)
    Command("docker", *args).run()


def _get_default_network_mtu() -> int:
    cmd = Command(
        "docker", "network", "inspect", "bridge",
        "-f", '{{ index .Options "com.docker.network.driver.mtu" }}',
    )
    try:
        lines = output_lines(cmd)
    except RunError:
        return 0
    if len(lines) != 1:
        return 0
    try:
        return int(lines[0])
    except ValueError:
        return 0


def _sorted_networks_with_name(name: str) -> list[str]:
    ids = networks_with_name(name)
    if len(ids) < 2:
        return ids
    networks = _inspect_networks(ids)
    sort_network_inspect_entries(networks)
    return [entry.id for entry in networks]


def sort_network_inspect_entries(networks: list[NetworkInspectEntry]) -> None:
    """Sort in place: networks with more containers first, then by ID."""
    networks.sort(key=lambda entry: (-len(entry.containers), entry.id))


def _inspect_networks(network_ids: list[str]) -> list[NetworkInspectEntry]:
    try:
        out = output(Command("docker", "network", "inspect", *network_ids))
    except RunError as exc:
        # missing networks are simply absent from the output
        if not is_only_error_no_such_network(exc):
            raise
        out = exc.stdout
    return parse_network_inspect(out.decode("utf-8", errors="replace"))


def parse_network_inspect(text: str) -> list[NetworkInspectEntry]:
    """Parse the JSON output of ``docker network inspect``."""
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise RuntimeError("failed to decode networks list") from exc
    if data is None:
        return []
    if not isinstance(data, list):
        raise RuntimeError("failed to decode networks list")
    return [
        NetworkInspectEntry(id=item.get("Id") or "", containers=item.get("Containers") or {})
        for item in data
    ]


def networks_with_name(name: str) -> list[str]:
    """Return the IDs of the networks called name."""
    out = output(
        Command("docker", "network", "ls", _name_filter(name), "--format={{.ID}}")
    ).decode("utf-8", errors="replace")
    cleaned = out[:-1] if out.endswith("\n") else out
    if not cleaned:
        return []
    return cleaned.split("\n")


def _check_if_network_exists(name: str) -> bool:
    out = output(
        Command("docker", "network", "ls", _name_filter(name), "--format={{.Name}}")
    ).decode("utf-8", errors="replace")
    return out.startswith(name)


def _error_output(err: BaseException | None) -> str | None:
    rerr = run_error_for_error(err)
    if rerr is None:
        return None
    return rerr.output.decode("utf-8", errors="replace")


def is_ipv6_unavailable_error(err: BaseException | None) -> bool:
    text = _error_output(err)
    return text is not None and text.startswith(
        "Error response from daemon: Cannot read IPv6 setup for bridge"
    )


def is_pool_overlap_error(err: BaseException | None) -> bool:
    text = _error_output(err)
    return text is not None and text.startswith(
        "Error response from daemon: Pool overlaps with other one on this address space"
    )


def is_network_already_exists_error(err: BaseException | None) -> bool:
    text = _error_output(err)
    return (
        text is not None
        and text.startswith("Error response from daemon: network with name")
        and "already exists" in text
    )


def is_only_error_no_such_network(err: BaseException | None) -> bool:
    """Return True if every error line in err's output is a "No such network" error."""
    text = _error_output(err)
    if text is None:
        return False
    # only newline-terminated lines are considered
    for line in text.split("\n")[:-1]:
        if line.startswith("Error: No such network:"):
            continue
        if line.startswith("Error: "):
            return False
    return True


def delete_networks(*args: str) -> None:
    """Remove the given docker networks."""
    Command("docker", "network", "rm", *args).run()


def generate_ula_subnet_from_name(name: str, attempt: int) -> str:
    """Return an fc00::/8 /64 subnet derived from name and the probing attempt."""
    digest = hashlib.sha1(name.encode("utf-8") + struct.pack("<i", attempt)).digest()
    raw = bytes([0xFC, 0x00]) + digest[2:8] + bytes(8)
    return ipaddress.IPv6Network((raw, 64)).compressed