"""Helpers shared by the container runtime providers."""

from __future__ import annotations

import os
import socket
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import IO, Callable

from kindprov.command import Command, Node
from kindprov.types import Cluster

API_SERVER_INTERNAL_PORT = 6443

HTTP_PROXY = "HTTP_PROXY"
HTTPS_PROXY = "HTTPS_PROXY"
NO_PROXY = "NO_PROXY"


def port_or_get_free_port(port: int, listen_addr: str) -> int:
    """Return port, 0 for -1, or a free port when port is 0."""
    if port == -1:
        return 0
    if port == 0:
        return get_free_port(listen_addr)
    return port


def get_free_port(listen_addr: str) -> int:
    """Return a free TCP port on listen_addr."""
    infos = socket.getaddrinfo(
        listen_addr or None, 0, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
    )
    family, sock_type, proto, _, address = infos[0]
    with socket.socket(family, sock_type, proto) as sock:
        sock.bind(address)
        sock.listen(1)
        return sock.getsockname()[1]


def required_node_images(cfg: Cluster) -> set[str]:
    """Return the set of node images the config uses."""
    return {node.image for node in cfg.nodes}


def file_on_host(path: str) -> IO[bytes]:
    """Create a file at path, creating parent directories as needed."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    return open(path, "wb")


def _run_all(fns: list[Callable[[], None]]) -> None:
    if not fns:
        return
    with ThreadPoolExecutor(max_workers=len(fns)) as pool:
        futures = [pool.submit(fn) for fn in fns]
    errors = [f.exception() for f in futures if f.exception() is not None]
    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise RuntimeError("[" + ", ".join(str(e) for e in errors) + "]") from errors[0]


def collect_logs(node: Node, directory: str) -> None:
    """Write version, journal, kubelet and containerd logs of node to directory."""

    def to_path(cmd: Command, name: str) -> Callable[[], None]:
        def collect() -> None:
            with file_on_host(os.path.join(directory, name)) as handle:
                cmd.set_stdout(handle).set_stderr(handle).run()

        return collect

    _run_all(
        [
            to_path(node.command("cat", "/kind/version"), "kubernetes-version.txt"),
            to_path(node.command("journalctl", "--no-pager"), "journal.log"),
            to_path(
                node.command("journalctl", "--no-pager", "-u", "kubelet.service"),
                "kubelet.log",
            ),
            to_path(
                node.command("journalctl", "--no-pager", "-u", "containerd.service"),
                "containerd.log",
            ),
        ]
    )


def make_node_namer(cluster_name: str) -> Callable[[str], str]:
    """Return a function naming nodes by role within cluster_name."""
    counter: Counter[str] = Counter()

    def name(role: str) -> str:
        counter[role] += 1
        count = counter[role]
        suffix = str(count) if count > 1 else ""
        return f"{cluster_name}-{role}{suffix}"

    return name


def get_proxy_envs(
    cfg: Cluster, getenv: Callable[[str], str | None] | None = None
) -> dict[str, str]:
    """Return proxy variables, adding cluster subnets to NO_PROXY when a proxy is set."""
    getenv = getenv or os.getenv
    envs: dict[str, str] = {}
    for name in (HTTP_PROXY, HTTPS_PROXY, NO_PROXY):
        value = getenv(name) or getenv(name.lower()) or ""
        if value:
            envs[name] = value
            envs[name.lower()] = value
    if envs:
        no_proxy = envs.get(NO_PROXY, "")
        if no_proxy:
            no_proxy += ","
        no_proxy += f"{cfg.networking.service_subnet},{cfg.networking.pod_subnet}"
        envs[NO_PROXY] = no_proxy
        envs[NO_PROXY.lower()] = no_proxy
    return envs