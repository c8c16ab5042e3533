# kindprov

`kindprov` creates, inspects and tears down Kubernetes nodes that run as
docker containers on the local host. It does all of its work by calling the
`docker` command line tool, so `docker` must be installed and on `PATH`. The
package has no dependencies outside the standard library.

## Installation

```
pip install kindprov
```

## Describing a cluster

You describe a cluster with plain dataclasses from `kindprov.types`:

```python
from kindprov.types import Cluster, Networking, NodeConfig, NodeRole, IPFamily

cfg = Cluster(
    name="kind",
    nodes=[
        NodeConfig(role=NodeRole.CONTROL_PLANE, image="kindest/node:v1.21.1"),
        NodeConfig(role=NodeRole.WORKER, image="kindest/node:v1.21.1"),
    ],
    networking=Networking(
        ip_family=IPFamily.IPV4,
        api_server_address="127.0.0.1",
        pod_subnet="10.244.0.0/16",
        service_subnet="10.96.0.0/12",
    ),
)
```

Nodes can also carry `extra_mounts` (`Mount`) and `extra_port_mappings`
(`PortMapping`).

When a cluster has more than one control-plane node, an external load balancer
container (`kindest/haproxy`) is also planned. In that case only the load
balancer publishes the API server address and port set in `Networking`.

## The docker provider

`kindprov.docker_provider.DockerProvider` implements the
`kindprov.types.Provider` interface:

```python
import logging

from kindprov.docker_provider import DockerProvider
from kindprov.types import NoopStatus

provider = DockerProvider(logging.getLogger("kind"))

provider.provision(NoopStatus(), cfg)   # pull images, ensure network, create nodes
provider.list_clusters()                # e.g. ["kind"]
nodes = provider.list_nodes("kind")
provider.get_api_server_endpoint("kind")           # e.g. "127.0.0.1:38211"
provider.get_api_server_internal_endpoint("kind")  # "kind-control-plane:6443"
provider.collect_logs("/tmp/kind-logs", nodes)
provider.info()                          # ProviderInfo(rootless=..., cgroup2=..., ...)
provider.delete_nodes(nodes)
```

`provision` reports its progress through a `kindprov.types.Status`. Use
`NoopStatus` to stay silent, or subclass `Status` to show progress.

Provisioning uses a docker network named `kind` and creates it if it does not
exist. The network gets an IPv6 ULA subnet derived from its name; see
`kindprov.docker_network.generate_ula_subnet_from_name`. To use a different
network, set `KIND_EXPERIMENTAL_DOCKER_NETWORK`.

If `HTTP_PROXY`, `HTTPS_PROXY` or `NO_PROXY` (in upper or lower case) is set,
these variables are passed on to the node containers. `NO_PROXY` is then
extended with the cluster subnets, the network subnets and the node names.

`kindprov.docker_images.is_available()` tells you whether a docker client is
installed.

## Working with nodes

Every node is a `kindprov.container_node.ContainerNode`. Its `command` method
returns a command that runs inside the container through `docker exec`:

```python
from kindprov import nodeutils

control_plane = nodeutils.bootstrap_control_plane_node(nodes)
print(nodeutils.kube_version(control_plane))
nodeutils.write_file(control_plane, "/etc/example.conf", "key=value\n")
```

`kindprov.nodeutils` also has these helpers:

- `select_nodes_by_role`, `internal_nodes`, `control_plane_nodes` (sorted by
  name), `secondary_control_plane_nodes`, `external_load_balancer_node` and
  `api_server_endpoint_node` select nodes.
- `copy_node_to_node`, `load_image_archive` and `image_id` move files and
  images between nodes.

## Errors

When a command fails, `kindprov.command.Command.run` raises
`kindprov.command.RunError`, which holds the command and its output. Higher
level functions mostly wrap it in a `RuntimeError`. To get the original back,
use `kindprov.command.run_error_for_error`. The predicates in
`kindprov.docker_network`, such as `is_pool_overlap_error`, inspect that output
to recognise known daemon errors.

## What this package does not do

- It drives only docker. There is no podman provider.
- It has no command-line program. It is a library only.
- It creates and manages the node containers, but does not bootstrap
  Kubernetes inside them.