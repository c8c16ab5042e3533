import pytest

from kindprov.types import (
    Cluster,
    IPFamily,
    Mount,
    NodeConfig,
    NodeRole,
    PortMapping,
    Provider,
    ProviderInfo,
    Status,
)


def test_provider_info_defaults_false():
    info = ProviderInfo()
    flags = (
        info.rootless,
        info.cgroup2,
        info.supports_memory_limit,
        info.supports_pids_limit,
        info.supports_cpu_shares,
    )
    assert flags == (False, False, False, False, False)


def test_role_values():
    assert NodeRole.CONTROL_PLANE.value == "control-plane"
    assert str(NodeRole.WORKER) == "worker"
    assert NodeRole("worker") is NodeRole.WORKER


def test_ip_family_round_trip():
    for family in IPFamily:
        assert IPFamily(family.value) is family


def test_node_copy_is_deep():
    node = NodeConfig(
        image="img",
        extra_mounts=[Mount(host_path="a", container_path="b")],
        extra_port_mappings=[PortMapping(container_port=80)],
    )
    clone = node.copy()
    assert clone == node
    clone.extra_mounts[0].host_path = "changed"
    clone.extra_port_mappings.append(PortMapping())
    assert node.extra_mounts[0].host_path == "a"
    assert len(node.extra_port_mappings) == 1


def test_cluster_defaults_are_independent():
    first, second = Cluster(), Cluster()
    first.nodes.append(NodeConfig())
    first.networking.pod_subnet = "x"
    assert second.nodes == []
    assert second.networking.pod_subnet == ""


def test_abstract_interfaces():
    with pytest.raises(TypeError):
        Provider()
    with pytest.raises(TypeError):
        Status()