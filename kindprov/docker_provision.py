"""Planning and creating the docker containers that make up a cluster."""

from __future__ import annotations

import dataclasses
import os
from typing import Callable

from kindprov.command import Command, RunError, output_lines
from kindprov.common import (
    API_SERVER_INTERNAL_PORT,
    NO_PROXY,
    get_proxy_envs,
    make_node_namer,
    port_or_get_free_port,
)
from kindprov.docker_images import (
    CLUSTER_LABEL_KEY,
    NODE_ROLE_LABEL_KEY,
    mount_dev_mapper,
    userns_remap,
)
from kindprov.nodeutils import CONTROL_PLANE_ROLE, EXTERNAL_LOAD_BALANCER_ROLE
from kindprov.types import (
    Cluster,
    IPFamily,
    Mount,
    MountPropagation,
    NodeConfig,
    NodeRole,
    PortMapping,
    PortMappingProtocol,
)

LOAD_BALANCER_IMAGE = "kindest/haproxy"


def _join_host_port(host: str, port: object) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def plan_creation(cfg: Cluster, network_name: str) -> list[Callable[[], None]]:
    """Return functions that each create one container of the cluster."""
    namer = make_node_namer(cfg.name)
    names = [namer(str(node.role)) for node in cfg.nodes]
    have_load_balancer = cluster_has_implicit_load_balancer(cfg)
    if have_load_balancer:
        names.append(namer(EXTERNAL_LOAD_BALANCER_ROLE))

    generic_args = common_args(cfg.name, cfg, network_name, names)

    api_server_port = cfg.networking.api_server_port
    api_server_address = cfg.networking.api_server_address
    creators: list[Callable[[], None]] = []
    if have_load_balancer:
        # only the load balancer publishes the configured endpoint
        api_server_port = 0
        api_server_address = "127.0.0.1"
        if cfg.networking.ip_family == IPFamily.IPV6:
            api_server_address = "::1"
        creators.append(_load_balancer_creator(cfg, names[-1], generic_args))

    for node_cfg, name in zip(cfg.nodes, names):
        node = node_cfg.copy()
        for mount in node.extra_mounts:
            if not os.path.isabs(mount.host_path):
                mount.host_path = os.path.abspath(mount.host_path)

        if node.role == NodeRole.CONTROL_PLANE:
            mapping = PortMapping(
                listen_address=api_server_address,
                host_port=api_server_port,
                container_port=API_SERVER_INTERNAL_PORT,
            )
            creators.append(_node_creator(cfg, node, name, generic_args, mapping))
        elif node.role == NodeRole.WORKER:
            creators.append(_node_creator(cfg, node, name, generic_args, None))
        else:
            raise ValueError(f'unknown node role: "{node.role}"')
    return creators


def _load_balancer_creator(
    cfg: Cluster, name: str, generic_args: list[str]
) -> Callable[[], None]:
    def create() -> None:
        _create_container(run_args_for_load_balancer(cfg, name, generic_args))

    return create


def _node_creator(
    cfg: Cluster,
    node: NodeConfig,
    name: str,
    generic_args: list[str],
    api_mapping: PortMapping | None,
) -> Callable[[], None]:
    def create() -> None:
        if api_mapping is not None:
            node.extra_port_mappings.append(dataclasses.replace(api_mapping))
        _create_container(
            run_args_for_node(node, cfg.networking.ip_family, name, generic_args)
        )

    return create


def _create_container(args: list[str]) -> None:
    try:
        Command("docker", *args).run()
    except RunError as exc:
        raise RuntimeError("docker run error") from exc


def cluster_is_ipv6(cfg: Cluster) -> bool:
    """Return True for IPv6-only and dual-stack clusters."""
    return cfg.networking.ip_family in (IPFamily.IPV6, IPFamily.DUAL)


def cluster_has_implicit_load_balancer(cfg: Cluster) -> bool:
    """Return True if the cluster has more than one control plane node."""
    control_planes = sum(1 for node in cfg.nodes if str(node.role) == CONTROL_PLANE_ROLE)
    return control_planes > 1


def common_args(
    cluster: str, cfg: Cluster, network_name: str, node_names: list[str]
) -> list[str]:
    """Return the arguments shared by every container of the cluster."""
    args = [
        "--detach",
        "--tty",
        "--label",
        f"{CLUSTER_LABEL_KEY}={cluster}",
        "--net",
        network_name,
        # restart only on host or daemon reboot, which on-failure:1 approximates
        "--restart=on-failure:1",
        # the entrypoint must be PID 1
        "--init=false",
    ]
    if cluster_is_ipv6(cfg):
        args += [
            "--sysctl=net.ipv6.conf.all.disable_ipv6=0",
            "--sysctl=net.ipv6.conf.all.forwarding=1",
        ]

    try:
        proxy_env = get_proxy_env(cfg, network_name, node_names)
    except Exception as exc:
        raise RuntimeError("proxy setup error") from exc
    for key, value in proxy_env.items():
        args += ["-e", f"{key}={value}"]

    if userns_remap():
        args.append("--userns=host")
    if mount_dev_mapper():
        args += ["--volume", "/dev/mapper:/dev/mapper"]
    return args


def run_args_for_node(
    node: NodeConfig, cluster_ip_family: IPFamily, name: str, args: list[str]
) -> list[str]:
    """Return the ``docker run`` arguments for a Kubernetes node container."""
    run_args = [
        "run",
        "--hostname", name,
        "--name", name,
        "--label", f"{NODE_ROLE_LABEL_KEY}={node.role}",
        "--privileged",
        "--security-opt", "seccomp=unconfined",
        "--security-opt", "apparmor=unconfined",
        "--tmpfs", "/tmp",
        "--tmpfs", "/run",
        "--volume", "/var",
        "--volume", "/lib/modules:/lib/modules:ro",
        "-e", "KIND_EXPERIMENTAL_CONTAINERD_SNAPSHOTTER",
        "--device", "/dev/fuse",
        *args,
    ]
    run_args += generate_mount_bindings(*node.extra_mounts)
    run_args += generate_port_mappings(cluster_ip_family, *node.extra_port_mappings)
    if node.role == NodeRole.CONTROL_PLANE:
        run_args += ["-e", "KUBECONFIG=/etc/kubernetes/admin.conf"]
    run_args.append(node.image)
    return run_args


def run_args_for_load_balancer(cfg: Cluster, name: str, args: list[str]) -> list[str]:
    """Return the ``docker run`` arguments for the external load balancer."""
    run_args = [
        "run",
        "--hostname", name,
        "--name", name,
        "--label", f"{NODE_ROLE_LABEL_KEY}={EXTERNAL_LOAD_BALANCER_ROLE}",
        *args,
    ]
    run_args += generate_port_mappings(
        cfg.networking.ip_family,
        PortMapping(
            listen_address=cfg.networking.api_server_address,
            host_port=cfg.networking.api_server_port,
            container_port=API_SERVER_INTERNAL_PORT,
        ),
    )
    run_args.append(LOAD_BALANCER_IMAGE)
    return run_args


def get_proxy_env(cfg: Cluster, network_name: str, node_names: list[str]) -> dict[str, str]:
    """Return proxy variables, extending NO_PROXY with network subnets and node names."""
    envs = get_proxy_envs(cfg)
    if envs:
        no_proxy_list = [
            *get_subnets(network_name),
            envs.get(NO_PROXY, ""),
            *node_names,
            ".svc",
            ".svc.cluster",
            ".svc.cluster.local",
        ]
        joined = ",".join(no_proxy_list)
        envs[NO_PROXY] = joined
        envs[NO_PROXY.lower()] = joined
    return envs


def get_subnets(network_name: str) -> list[str]:
    """Return the IPAM subnets of the docker network."""
    fmt = '{{range (index (index . "IPAM") "Config")}}{{index . "Subnet"}} {{end}}'
    try:
        lines = output_lines(Command("docker", "network", "inspect", "-f", fmt, network_name))
    except RunError as exc:
        raise RuntimeError("failed to get subnets") from exc
    if not lines:
        raise RuntimeError("failed to get subnets: no output")
    return lines[0].strip().split(" ")


_PROPAGATION_ATTRS = {
    MountPropagation.BIDIRECTIONAL: "rshared",
    MountPropagation.HOST_TO_CONTAINER: "rslave",
}


def generate_mount_bindings(*args: Mount) -> list[str]:
    """Convert mounts to ``--volume=<host>:<container>[:options]`` arguments."""
    bindings = []
    for mount in args:
        bind = f"{mount.host_path}:{mount.container_path}"
        attrs = []
        if mount.readonly:
            attrs.append("ro")
        # relabel only on request, else the volume is locked to the first container
        if mount.selinux_relabel:
            attrs.append("Z")
        propagation = _PROPAGATION_ATTRS.get(mount.propagation)
        if propagation:
            attrs.append(propagation)
        if attrs:
            bind = f"{bind}:{','.join(attrs)}"
        bindings.append(f"--volume={bind}")
    return bindings


def generate_port_mappings(cluster_ip_family: IPFamily, *args: PortMapping) -> list[str]:
    """Convert port mappings to ``--publish=`` arguments."""
    published = []
    for original in args:
        mapping = dataclasses.replace(original)
        if not mapping.listen_address:
            if cluster_ip_family == IPFamily.IPV4:
                mapping.listen_address = "0.0.0.0"
            elif cluster_ip_family == IPFamily.IPV6:
                mapping.listen_address = "::"
            else:
                raise ValueError(f"unknown cluster IP family: {cluster_ip_family}")

        protocol_value = str(mapping.protocol) if mapping.protocol else ""
        if not protocol_value:
            protocol = PortMappingProtocol.TCP
        else:
            try:
                protocol = PortMappingProtocol(protocol_value)
            except ValueError:
                raise ValueError(f"unknown port mapping protocol: {protocol_value}") from None

        try:
            host_port = port_or_get_free_port(mapping.host_port, mapping.listen_address)
        except OSError as exc:
            raise RuntimeError("failed to get random host port for port mapping") from exc

        binding = _join_host_port(mapping.listen_address, host_port)
        published.append(f"--publish={binding}:{mapping.container_port}/{protocol.value}")
    return published