"""Cluster node infrastructure backed by the docker command line."""

from __future__ import annotations

import csv
import io
import json
import logging
import os
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import IO, Callable, Sequence

from kindprov.command import Command, Node, RunError, output, output_lines
from kindprov.common import API_SERVER_INTERNAL_PORT, file_on_host
from kindprov.common import collect_logs as collect_node_logs
from kindprov.container_node import ContainerNode
from kindprov.docker_images import CLUSTER_LABEL_KEY, ensure_node_images
from kindprov.docker_network import FIXED_NETWORK_NAME, ensure_network
from kindprov.docker_provision import plan_creation
from kindprov.nodeutils import api_server_endpoint_node
from kindprov.types import Cluster, Provider, ProviderInfo, Status

_RUNTIME = "docker"
_NETWORK_ENV = "KIND_EXPERIMENTAL_DOCKER_NETWORK"


def _join_host_port(host: str, port: object) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _until_error_concurrent(fns: Sequence[Callable[[], None]]) -> None:
    """Run fns concurrently and raise the first error, without waiting for the rest."""
    if not fns:
        return
    pool = ThreadPoolExecutor(max_workers=len(fns))
    try:
        futures = [pool.submit(fn) for fn in fns]
        done, _ = wait(futures, return_when=FIRST_EXCEPTION)
        for future in futures:
            if future in done and future.exception() is not None:
                raise future.exception()  # type: ignore[misc]
    finally:
        pool.shutdown(wait=False)


def _run_collecting_errors(fns: Sequence[Callable[[], None]]) -> list[BaseException]:
    if not fns:
        return []
    with ThreadPoolExecutor(max_workers=len(fns)) as pool:
        futures = [pool.submit(fn) for fn in fns]
    return [f.exception() for f in futures if f.exception() is not None]


def _aggregate(errors: list[BaseException]) -> None:
    if not errors:
        return
    if len(errors) == 1:
        raise errors[0]
    raise RuntimeError("[" + ", ".join(str(e) for e in errors) + "]") from errors[0]


class DockerProvider(Provider):
    """A provider that manages cluster nodes by executing ``docker``."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self._info: ProviderInfo | None = None

    def __str__(self) -> str:
        return _RUNTIME

    def provision(self, status: Status, cfg: Cluster) -> None:
        ensure_node_images(self.logger, status, cfg)

        network_name = FIXED_NETWORK_NAME
        override = os.environ.get(_NETWORK_ENV, "")
        if override:
            self.logger.warning(
                "WARNING: Overriding docker network due to %s", _NETWORK_ENV
            )
            self.logger.warning("WARNING: Here be dragons! This is not supported currently.")
            network_name = override
        try:
            ensure_network(network_name)
        except Exception as exc:
            raise RuntimeError("failed to ensure docker network") from exc

        icons = "📦 " * len(cfg.nodes)
        status.start(f"Preparing nodes {icons}")
        success = False
        try:
            _until_error_concurrent(plan_creation(cfg, network_name))
            success = True
        finally:
            status.end(success)

    def list_clusters(self) -> list[str]:
        cmd = Command(
            _RUNTIME, "ps", "-a",
            "--filter", f"label={CLUSTER_LABEL_KEY}",
            "--format", '{{.Label "' + CLUSTER_LABEL_KEY + '"}}',
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise RuntimeError("failed to list clusters") from exc
        return sorted(set(lines))

    def list_nodes(self, cluster: str) -> list[Node]:
        cmd = Command(
            _RUNTIME, "ps", "-a",
            "--filter", f"label={CLUSTER_LABEL_KEY}={cluster}",
            "--format", "{{.Names}}",
        )
        try:
            lines = output_lines(cmd)
        except RunError as exc:
            raise RuntimeError("failed to list clusters") from exc
        return [ContainerNode(name, runtime=_RUNTIME) for name in lines]

    def delete_nodes(self, nodes: Sequence[Node]) -> None:
        if not nodes:
            return
        try:
            Command(_RUNTIME, "rm", "-f", "-v", *(str(n) for n in nodes)).run()
        except RunError as exc:
            raise RuntimeError("failed to delete nodes") from exc

    def _endpoint_node(self, cluster: str) -> Node:
        try:
            all_nodes = self.list_nodes(cluster)
        except Exception as exc:
            raise RuntimeError("failed to list nodes") from exc
        try:
            return api_server_endpoint_node(all_nodes)
        except Exception as exc:
            raise RuntimeError("failed to get api server endpoint") from exc

    def get_api_server_endpoint(self, cluster: str) -> str:
        node = self._endpoint_node(cluster)

        # Docker Desktop may publish the endpoint as a container label
        label_format = (
            '{{ index .Config.Labels "desktop.docker.io/ports/'
            f'{API_SERVER_INTERNAL_PORT}/tcp" }}}}'
        )
        try:
            lines = output_lines(Command(_RUNTIME, "inspect", "--format", label_format, str(node)))
        except RunError as exc:
            raise RuntimeError("failed to get api server port") from exc
        if len(lines) == 1 and lines[0]:
            return lines[0]

        ports_format = (
            f'{{{{ with (index (index .NetworkSettings.Ports "{API_SERVER_INTERNAL_PORT}/tcp") 0) }}}}'
            '{{ printf "%s\t%s" .HostIp .HostPort }}{{ end }}'
        )
        try:
            lines = output_lines(Command(_RUNTIME, "inspect", "--format", ports_format, str(node)))
        except RunError as exc:
            raise RuntimeError("failed to get api server port") from exc
        if len(lines) != 1:
            raise RuntimeError(f"network details should only be one line, got {len(lines)} lines")
        parts = lines[0].split("\t")
        if len(parts) != 2:
            raise RuntimeError(f"network details should only be two parts, got {len(parts)}")
        return _join_host_port(parts[0], parts[1])

    def get_api_server_internal_endpoint(self, cluster: str) -> str:
        node = self._endpoint_node(cluster)
        # node hostnames are their names
        return _join_host_port(str(node), API_SERVER_INTERNAL_PORT)

    def collect_logs(self, directory: str, nodes: Sequence[Node]) -> None:
        def to_path(cmd: Command, path: str) -> Callable[[], None]:
            def collect() -> None:
                with file_on_host(path) as handle:
                    cmd.set_stdout(handle).set_stderr(handle).run()

            return collect

        def serial(node: Node, path: str) -> Callable[[], None]:
            def collect() -> None:
                with file_on_host(os.path.join(path, "serial.log")) as handle:
                    node.serial_logs(handle)

            return collect

        def node_logs(node: Node, path: str) -> Callable[[], None]:
            return lambda: collect_node_logs(node, path)

        fns: list[Callable[[], None]] = [
            to_path(Command(_RUNTIME, "info"), os.path.join(directory, "docker-info.txt")),
        ]
        for node in nodes:
            name = str(node)
            path = os.path.join(directory, name)
            fns += [
                node_logs(node, path),
                to_path(Command(_RUNTIME, "inspect", name), os.path.join(path, "inspect.json")),
                serial(node, path),
            ]
        _aggregate(_run_collecting_errors(fns))

    def info(self) -> ProviderInfo:
        """Return the provider info, querying docker only the first time."""
        if self._info is None:
            try:
                out = output(Command(_RUNTIME, "info", "--format", "{{json .}}"))
            except RunError as exc:
                raise RuntimeError("failed to get docker info") from exc
            self._info = parse_docker_info(out.decode("utf-8", errors="replace"))
        return self._info


def parse_docker_info(text: str) -> ProviderInfo:
    """Build ProviderInfo from the output of ``docker info --format '{{json .}}'``."""
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("docker info output is not a JSON object")
    result = ProviderInfo(cgroup2=data.get("CgroupVersion") == "2")
    # with no cgroup driver the limit flags are meaningless
    if data.get("CgroupDriver") != "none":
        result.supports_memory_limit = bool(data.get("MemoryLimit"))
        result.supports_pids_limit = bool(data.get("PidsLimit"))
        result.supports_cpu_shares = bool(data.get("CPUShares"))
    for option in data.get("SecurityOptions") or []:
        # e.g. "name=seccomp,profile=default" or "name=rootless"
        for row in csv.reader(io.StringIO(option)):
            if "name=rootless" in row:
                result.rootless = True
    return result