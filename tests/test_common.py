import os

import pytest

from kindprov.common import (
    collect_logs,
    file_on_host,
    get_free_port,
    get_proxy_envs,
    make_node_namer,
    port_or_get_free_port,
    required_node_images,
)
from kindprov.command import Node
from kindprov.types import Cluster, Networking, NodeConfig


def test_port_or_get_free_port_valid():
    assert port_or_get_free_port(80, "localhost") == 80


def test_port_or_get_free_port_zero_picks_port():
    port = port_or_get_free_port(0, "localhost")
    assert 0 < port <= 65535


def test_port_or_get_free_port_minus_one():
    assert port_or_get_free_port(-1, "localhost") == 0


@pytest.mark.parametrize("addr", ["localhost", "127.0.0.1"])
def test_get_free_port_ok(addr):
    port = get_free_port(addr)
    assert 0 < port <= 65535


@pytest.mark.parametrize("addr", ["88.88.88.0", "2112:beaf:beaf:2:3"])
def test_get_free_port_fails(addr):
    with pytest.raises(OSError):
        get_free_port(addr)


@pytest.mark.parametrize(
    "images,want",
    [(["node1", "node2"], {"node1", "node2"}), (["node1", "node1"], {"node1"})],
)
def test_required_node_images(images, want):
    cfg = Cluster(nodes=[NodeConfig(image=i) for i in images])
    assert required_node_images(cfg) == want


@pytest.mark.parametrize(
    "cluster,roles,want",
    [
        ("kind", ["control-plane"], ["kind-control-plane"]),
        (
            "kind-test",
            ["control-plane", "worker", "worker"],
            ["kind-test-control-plane", "kind-test-worker", "kind-test-worker2"],
        ),
        (
            "ab1",
            [
                "control-plane",
                "control-plane",
                "control-plane",
                "external-load-balancer",
                "worker",
                "worker",
                "worker",
            ],
            [
                "ab1-control-plane",
                "ab1-control-plane2",
                "ab1-control-plane3",
                "ab1-external-load-balancer",
                "ab1-worker",
                "ab1-worker2",
                "ab1-worker3",
            ],
        ),
    ],
)
def test_make_node_namer(cluster, roles, want):
    namer = make_node_namer(cluster)
    assert [namer(r) for r in roles] == want


def _cluster():
    return Cluster(networking=Networking(service_subnet="10.0.0.0/24", pod_subnet="12.0.0.0/24"))


@pytest.mark.parametrize(
    "env,want",
    [
        ({}, {}),
        (
            {"HTTP_PROXY": "5.5.5.5"},
            {
                "HTTP_PROXY": "5.5.5.5",
                "http_proxy": "5.5.5.5",
                "NO_PROXY": "10.0.0.0/24,12.0.0.0/24",
                "no_proxy": "10.0.0.0/24,12.0.0.0/24",
            },
        ),
        (
            {"HTTPS_PROXY": "5.5.5.5"},
            {
                "HTTPS_PROXY": "5.5.5.5",
                "https_proxy": "5.5.5.5",
                "NO_PROXY": "10.0.0.0/24,12.0.0.0/24",
                "no_proxy": "10.0.0.0/24,12.0.0.0/24",
            },
        ),
        (
            {"HTTPS_PROXY": "5.5.5.5", "NO_PROXY": "8.8.8.8"},
            {
                "HTTPS_PROXY": "5.5.5.5",
                "https_proxy": "5.5.5.5",
                "NO_PROXY": "8.8.8.8,10.0.0.0/24,12.0.0.0/24",
                "no_proxy": "8.8.8.8,10.0.0.0/24,12.0.0.0/24",
            },
        ),
    ],
)
def test_get_proxy_envs(env, want):
    assert get_proxy_envs(_cluster(), env.get) == want


def test_get_proxy_envs_lowercase_fallback():
    envs = get_proxy_envs(_cluster(), {"http_proxy": "5.5.5.5"}.get)
    assert envs["HTTP_PROXY"] == "5.5.5.5"


def test_file_on_host_creates_parents(tmp_path):
    path = tmp_path / "a" / "b" / "c.txt"
    with file_on_host(str(path)) as handle:
        handle.write(b"x")
    assert path.read_bytes() == b"x"


class _FakeCmd:
    def __init__(self, args, fail):
        self.args = args
        self.fail = fail
        self.out = None

    def set_stdout(self, writer):
        self.out = writer
        return self

    def set_stderr(self, writer):
        return self

    def run(self):
        if self.fail:
            raise RuntimeError("failed " + " ".join(self.args))
        self.out.write(" ".join(self.args).encode())


class _FakeNode(Node):
    def __init__(self, fail_on=None):
        self.fail_on = fail_on

    def command(self, command, *args):
        return _FakeCmd([command, *args], command == self.fail_on)

    def role(self):
        return "worker"

    def ip(self):
        return "", ""

    def serial_logs(self, writer):
        pass

    def __str__(self):
        return "fake"


def test_collect_logs_writes_files(tmp_path):
    collect_logs(_FakeNode(), str(tmp_path))
    assert (tmp_path / "kubernetes-version.txt").read_bytes() == b"cat /kind/version"
    assert (tmp_path / "journal.log").read_bytes() == b"journalctl --no-pager"
    assert (tmp_path / "kubelet.log").read_bytes().endswith(b"kubelet.service")
    assert (tmp_path / "containerd.log").read_bytes().endswith(b"containerd.service")


def test_collect_logs_reports_errors(tmp_path):
    with pytest.raises(RuntimeError):
        collect_logs(_FakeNode(fail_on="journalctl"), str(tmp_path))
    assert os.path.exists(tmp_path / "kubernetes-version.txt")