import io

import pytest

from kindprov import nodeutils
from kindprov.command import Command, Node, RunError


class FakeCommand(Command):
    def __init__(self, node, name, *args):
        super().__init__(name, *args)
        self.node = node

    def run(self):
        stdin = None
        if self.stdin is not None:
            data = self.stdin.read() if hasattr(self.stdin, "read") else self.stdin
            stdin = data.encode() if isinstance(data, str) else bytes(data)
        self.node.calls.append(([self.name, *self.args], stdin))
        if self.name in self.node.fail:
            raise RunError([self.name, *self.args], b"boom")
        out = self.node.outputs.get(self.name, b"")
        if self.stdout is not None and out:
            self.stdout.write(out)


class FakeNode(Node):
    def __init__(self, name, role="worker", outputs=None, fail=()):
        self.name = name
        self._role = role
        self.outputs = outputs or {}
        self.fail = set(fail)
        self.calls = []

    def command(self, command, *args):
        return FakeCommand(self, command, *args)

    def role(self):
        if self._role is None:
            raise RuntimeError("failed to get role for node")
        return self._role

    def ip(self):
        return "", ""

    def serial_logs(self, writer):
        pass

    def __str__(self):
        return self.name


def names(nodes):
    return [str(n) for n in nodes]


def test_select_nodes_by_role():
    nodes = [FakeNode("a", "worker"), FakeNode("b", "control-plane"), FakeNode("c", "worker")]
    assert names(nodeutils.select_nodes_by_role(nodes, "worker")) == ["a", "c"]


def test_select_nodes_by_role_propagates_role_error():
    with pytest.raises(RuntimeError, match="failed to get role"):
        nodeutils.select_nodes_by_role([FakeNode("a", None)], "worker")


def test_internal_nodes_excludes_load_balancer():
    nodes = [
        FakeNode("lb", "external-load-balancer"),
        FakeNode("cp", "control-plane"),
        FakeNode("w", "worker"),
    ]
    assert names(nodeutils.internal_nodes(nodes)) == ["cp", "w"]


def test_external_load_balancer_node_none_and_one():
    assert nodeutils.external_load_balancer_node([FakeNode("w")]) is None
    lb = FakeNode("lb", "external-load-balancer")
    assert nodeutils.external_load_balancer_node([FakeNode("w"), lb]) is lb


def test_external_load_balancer_node_too_many():
    nodes = [FakeNode("a", "external-load-balancer"), FakeNode("b", "external-load-balancer")]
    with pytest.raises(RuntimeError, match="unexpected number of external-load-balancer nodes 2"):
        nodeutils.external_load_balancer_node(nodes)


def test_control_plane_nodes_sorted_by_name():
    nodes = [FakeNode("x-cp3", "control-plane"), FakeNode("x-cp", "control-plane"),
             FakeNode("x-cp2", "control-plane"), FakeNode("w")]
    assert names(nodeutils.control_plane_nodes(nodes)) == ["x-cp", "x-cp2", "x-cp3"]
    assert str(nodeutils.bootstrap_control_plane_node(nodes)) == "x-cp"
    assert names(nodeutils.secondary_control_plane_nodes(nodes)) == ["x-cp2", "x-cp3"]


def test_bootstrap_requires_control_plane():
    with pytest.raises(RuntimeError, match="expected at least one control-plane node"):
        nodeutils.bootstrap_control_plane_node([FakeNode("w")])
    with pytest.raises(RuntimeError, match="expected at least one control-plane node"):
        nodeutils.secondary_control_plane_nodes([])


def test_api_server_endpoint_prefers_load_balancer():
    lb = FakeNode("lb", "external-load-balancer")
    nodes = [FakeNode("cp1", "control-plane"), FakeNode("cp2", "control-plane"), lb]
    assert nodeutils.api_server_endpoint_node(nodes) is lb


def test_api_server_endpoint_single_control_plane():
    cp = FakeNode("cp", "control-plane")
    assert nodeutils.api_server_endpoint_node([FakeNode("w"), cp]) is cp


def test_api_server_endpoint_invalid_list():
    nodes = [FakeNode("cp1", "control-plane"), FakeNode("cp2", "control-plane")]
    with pytest.raises(RuntimeError, match="expected one control plane node or a load balancer"):
        nodeutils.api_server_endpoint_node(nodes)


def test_api_server_endpoint_wraps_role_errors():
    with pytest.raises(RuntimeError, match="failed to find api-server endpoint node"):
        nodeutils.api_server_endpoint_node([FakeNode("bad", None)])


def test_kube_version():
    node = FakeNode("n", outputs={"cat": b"v1.21.1\n"})
    assert nodeutils.kube_version(node) == "v1.21.1"
    assert node.calls[0][0] == ["cat", "/kind/version"]


def test_kube_version_multiple_lines():
    node = FakeNode("n", outputs={"cat": b"a\nb\n"})
    with pytest.raises(RuntimeError, match="got 2 lines"):
        nodeutils.kube_version(node)


def test_kube_version_command_failure():
    node = FakeNode("n", fail={"cat"})
    with pytest.raises(RuntimeError, match="failed to get file"):
        nodeutils.kube_version(node)


def test_write_file():
    node = FakeNode("n")
    nodeutils.write_file(node, "/etc/kind/conf.yaml", "content")
    assert node.calls == [
        (["mkdir", "-p", "/etc/kind"], None),
        (["cp", "/dev/stdin", "/etc/kind/conf.yaml"], b"content"),
    ]


def test_write_file_mkdir_failure():
    node = FakeNode("n", fail={"mkdir"})
    with pytest.raises(RuntimeError, match="failed to create directory /etc"):
        nodeutils.write_file(node, "/etc/x", "data")


def test_copy_node_to_node():
    a = FakeNode("a", outputs={"cat": b"payload"})
    b = FakeNode("b")
    nodeutils.copy_node_to_node(a, b, "/etc/file.txt")
    assert a.calls == [(["cat", "/etc/file.txt"], None)]
    assert b.calls == [
        (["mkdir", "-p", "/etc"], None),
        (["cp", "/dev/stdin", "/etc/file.txt"], b"payload"),
    ]


def test_copy_node_to_node_read_failure():
    a = FakeNode("a", fail={"cat"})
    with pytest.raises(RuntimeError, match="failed to read"):
        nodeutils.copy_node_to_node(a, FakeNode("b"), "/etc/file.txt")


def test_load_image_archive():
    node = FakeNode("n")
    nodeutils.load_image_archive(node, io.BytesIO(b"archive"))
    assert node.calls == [(["ctr", "--namespace=k8s.io", "images", "import", "-"], b"archive")]


def test_load_image_archive_failure():
    node = FakeNode("n", fail={"ctr"})
    with pytest.raises(RuntimeError, match="failed to load image"):
        nodeutils.load_image_archive(node, io.BytesIO(b"archive"))


def test_image_id():
    node = FakeNode("n", outputs={"crictl": b'{"status": {"id": "sha256:abc", "size": 3}}'})
    assert nodeutils.image_id(node, "img") == "sha256:abc"
    assert node.calls[0][0] == ["crictl", "inspecti", "img"]


def test_image_id_errors():
    with pytest.raises(RunError):
        nodeutils.image_id(FakeNode("n", fail={"crictl"}), "img")
    with pytest.raises(ValueError):
        nodeutils.image_id(FakeNode("n", outputs={"crictl": b"not json"}), "img")