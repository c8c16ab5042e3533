"""Selecting cluster nodes by role and working with files and images on nodes."""

from __future__ import annotations

import io
import json
import posixpath
from typing import Any, Iterable

from kindprov.command import Node, RunError, output_lines
from kindprov.types import NodeRole

EXTERNAL_LOAD_BALANCER_ROLE = "external-load-balancer"
CONTROL_PLANE_ROLE = NodeRole.CONTROL_PLANE.value
WORKER_ROLE = NodeRole.WORKER.value


def select_nodes_by_role(all_nodes: Iterable[Node], role: str) -> list[Node]:
    """Return the nodes whose role equals role."""
    return [node for node in all_nodes if node.role() == role]


def internal_nodes(all_nodes: Iterable[Node]) -> list[Node]:
    """Return the nodes that are Kubernetes nodes, not e.g. the load balancer."""
    return [
        node for node in all_nodes if node.role() in (WORKER_ROLE, CONTROL_PLANE_ROLE)
    ]


def external_load_balancer_node(all_nodes: Iterable[Node]) -> Node | None:
    """Return the external load balancer node, or None if there is none."""
    balancers = select_nodes_by_role(all_nodes, EXTERNAL_LOAD_BALANCER_ROLE)
    if not balancers:
        return None
    if len(balancers) > 1:
        raise RuntimeError(
            f"unexpected number of {EXTERNAL_LOAD_BALANCER_ROLE} nodes {len(balancers)}"
        )
    return balancers[0]


def api_server_endpoint_node(all_nodes: Iterable[Node]) -> Node:
    """Return the node hosting the API server endpoint.

    This is the load balancer if there is one, else the single control plane.
    """
    all_nodes = list(all_nodes)
    try:
        balancer = external_load_balancer_node(all_nodes)
    except Exception as exc:
        raise RuntimeError("failed to find api-server endpoint node") from exc
    if balancer is not None:
        return balancer
    try:
        planes = control_plane_nodes(all_nodes)
    except Exception as exc:
        raise RuntimeError("failed to find api-server endpoint node") from exc
    if len(planes) != 1:
        raise RuntimeError(
            f"expected one control plane node or a load balancer, not {len(planes)} and none"
        )
    return planes[0]


def control_plane_nodes(all_nodes: Iterable[Node]) -> list[Node]:
    """Return the control plane nodes sorted by name; the first is the bootstrap node."""
    return sorted(select_nodes_by_role(all_nodes, CONTROL_PLANE_ROLE), key=str)


def bootstrap_control_plane_node(all_nodes: Iterable[Node]) -> Node:
    """Return the bootstrap control plane node."""
    planes = control_plane_nodes(all_nodes)
    if not planes:
        raise RuntimeError(f"expected at least one {CONTROL_PLANE_ROLE} node")
    return planes[0]


def secondary_control_plane_nodes(all_nodes: Iterable[Node]) -> list[Node]:
    """Return the control plane nodes other than the bootstrap node."""
    planes = control_plane_nodes(all_nodes)
    if not planes:
        raise RuntimeError(f"expected at least one {CONTROL_PLANE_ROLE} node")
    return planes[1:]


def kube_version(node: Node) -> str:
    """Return the Kubernetes version installed on node."""
    try:
        lines = output_lines(node.command("cat", "/kind/version"))
    except RunError as exc:
        raise RuntimeError("failed to get file") from exc
    if len(lines) != 1:
        raise RuntimeError(f"file should only be one line, got {len(lines)} lines")
    return lines[0]


def write_file(node: Node, dest: str, content: str) -> None:
    """Write content to dest on node, creating its directory."""
    directory = posixpath.dirname(dest)
    try:
        node.command("mkdir", "-p", directory).run()
    except RunError as exc:
        raise RuntimeError(f"failed to create directory {directory}") from exc
    node.command("cp", "/dev/stdin", dest).set_stdin(io.StringIO(content)).run()


def copy_node_to_node(a: Node, b: Node, file: str) -> None:
    """Copy file from node a to the same path on node b."""
    directory = posixpath.dirname(file)
    try:
        b.command("mkdir", "-p", directory).run()
    except RunError as exc:
        raise RuntimeError(f'failed to create directory "{directory}"') from exc
    buffer = io.BytesIO()
    try:
        a.command("cat", file).set_stdout(buffer).run()
    except RunError as exc:
        raise RuntimeError(f'failed to read "{file}" from node') from exc
    try:
        b.command("cp", "/dev/stdin", file).set_stdin(io.BytesIO(buffer.getvalue())).run()
    except RunError as exc:
        raise RuntimeError(f'failed to write "{file}" to node') from exc


def load_image_archive(node: Node, image: Any) -> None:
    """Load an image archive, read from image, into node's containerd."""
    cmd = node.command("ctr", "--namespace=k8s.io", "images", "import", "-").set_stdin(image)
    try:
        cmd.run()
    except RunError as exc:
        raise RuntimeError("failed to load image") from exc


def image_id(node: Node, image: str) -> str:
    """Return the ID of image on node."""
    buffer = io.BytesIO()
    node.command("crictl", "inspecti", image).set_stdout(buffer).run()
    data = json.loads(buffer.getvalue().decode("utf-8"))
    status = data.get("status") if isinstance(data, dict) else None
    if not isinstance(status, dict):
        return ""
    return status.get("id") or ""