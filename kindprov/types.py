"""Provider interface and cluster configuration types."""

from __future__ import annotations

import abc
import copy as _copy
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kindprov.command import Node


@dataclass
class ProviderInfo:
    """Capabilities of the container runtime."""

    rootless: bool = False
    cgroup2: bool = False
    supports_memory_limit: bool = False
    supports_pids_limit: bool = False
    supports_cpu_shares: bool = False


class Status(abc.ABC):
    """Reports progress of a long running step."""

    @abc.abstractmethod
    def start(self, message: str) -> None:
        """Begin a step described by message."""

    @abc.abstractmethod
    def end(self, success: bool) -> None:
        """Finish the current step."""


class NoopStatus(Status):
    """A status that reports nothing."""

    def start(self, message: str) -> None:
        pass

    def end(self, success: bool) -> None:
        pass


class _ValueEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class IPFamily(_ValueEnum):
    IPV4 = "ipv4"
    IPV6 = "ipv6"
    DUAL = "dual"


class NodeRole(_ValueEnum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


class MountPropagation(_ValueEnum):
    NONE = "None"
    HOST_TO_CONTAINER = "HostToContainer"
    BIDIRECTIONAL = "Bidirectional"


class PortMappingProtocol(_ValueEnum):
    TCP = "TCP"
    UDP = "UDP"
    SCTP = "SCTP"


@dataclass
class Mount:
    container_path: str = ""
    host_path: str = ""
    readonly: bool = False
    selinux_relabel: bool = False
    propagation: MountPropagation = MountPropagation.NONE


@dataclass
class PortMapping:
    container_port: int = 0
    host_port: int = 0
    listen_address: str = ""
    protocol: PortMappingProtocol | None = None


@dataclass
class NodeConfig:
    role: NodeRole = NodeRole.CONTROL_PLANE
    image: str = ""
    extra_mounts: list[Mount] = field(default_factory=list)
    extra_port_mappings: list[PortMapping] = field(default_factory=list)

    def copy(self) -> "NodeConfig":
        """Return a deep copy that can be modified freely."""
        return _copy.deepcopy(self)


@dataclass
class Networking:
    ip_family: IPFamily = IPFamily.IPV4
    api_server_port: int = 0
    api_server_address: str = ""
    pod_subnet: str = ""
    service_subnet: str = ""


@dataclass
class Cluster:
    name: str = ""
    nodes: list[NodeConfig] = field(default_factory=list)
    networking: Networking = field(default_factory=Networking)


class Provider(abc.ABC):
    """A provider of cluster node infrastructure."""

    @abc.abstractmethod
    def provision(self, status: Status, cfg: Cluster) -> None:
        """Create and start the nodes for cfg."""

    @abc.abstractmethod
    def list_clusters(self) -> list[str]:
        """Return the names of clusters with resources under this provider."""

    @abc.abstractmethod
    def list_nodes(self, cluster: str) -> list["Node"]:
        """Return the nodes of cluster."""

    @abc.abstractmethod
    def delete_nodes(self, nodes: list["Node"]) -> None:
        """Delete the given nodes."""

    @abc.abstractmethod
    def get_api_server_endpoint(self, cluster: str) -> str:
        """Return the host endpoint of the cluster's API server."""

    @abc.abstractmethod
    def get_api_server_internal_endpoint(self, cluster: str) -> str:
        """Return the in-network endpoint of the cluster's API server."""

    @abc.abstractmethod
    def collect_logs(self, directory: str, nodes: list["Node"]) -> None:
        """Populate directory with logs and debug files."""

    @abc.abstractmethod
    def info(self) -> ProviderInfo:
        """Return the provider info."""