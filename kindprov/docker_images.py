"""Node image handling and checks of the host docker daemon."""

from __future__ import annotations

import json
import logging
import time

from kindprov.command import Command, RunError, output_lines
from kindprov.common import required_node_images
from kindprov.types import Cluster, Status

# applied to each node container to identify the cluster it belongs to
CLUSTER_LABEL_KEY = "io.x-k8s.kind.cluster"
# applied to each node container to categorise nodes by role
NODE_ROLE_LABEL_KEY = "io.x-k8s.kind.role"

_DIGEST_SEPARATOR = "@sha256:"


def ensure_node_images(logger: logging.Logger, status: Status, cfg: Cluster) -> None:
    """Make sure every node image used by cfg is present locally."""
    for image in sorted(required_node_images(cfg)):
        friendly_name, pull_name = sanitize_image(image)
        status.start(f"Ensuring node image ({friendly_name}) 🖼")
        try:
            pull_if_not_present(logger, pull_name, 4)
        except Exception:
            status.end(False)
            raise


def pull_if_not_present(logger: logging.Logger, image: str, retries: int) -> bool:
    """Pull image unless it is present; return True if a pull was attempted."""
    try:
        Command("docker", "inspect", "--type=image", image).run()
    except RunError:
        pull(logger, image, retries)
        return True
    logger.debug("Image: %s present locally", image)
    return False


def pull(logger: logging.Logger, image: str, retries: int) -> None:
    """Pull image, retrying up to retries times with a growing pause."""
    logger.debug("Pulling image: %s ...", image)
    try:
        Command("docker", "pull", image).run()
        return
    except RunError as exc:
        error = exc
    for attempt in range(retries):
        time.sleep(attempt + 1)
        logger.debug('Trying again to pull image: "%s" ... %s', image, error)
        try:
            Command("docker", "pull", image).run()
            return
        except RunError as exc:
            error = exc
    raise RuntimeError(f'failed to pull image "{image}"') from error


def sanitize_image(image: str) -> tuple[str, str]:
    """Return a human readable name and the pullable name for image."""
    if _DIGEST_SEPARATOR in image:
        return image.split(_DIGEST_SEPARATOR)[0], image
    return image, image


def is_available() -> bool:
    """Return True if a docker client is installed."""
    try:
        lines = output_lines(Command("docker", "-v"))
    except RunError:
        return False
    return len(lines) == 1 and lines[0].startswith("Docker version")


def userns_remap() -> bool:
    """Return True if user namespace remapping is enabled in dockerd."""
    try:
        lines = output_lines(
            Command("docker", "info", "--format", "'{{json .SecurityOptions}}'")
        )
    except RunError:
        return False
    return bool(lines) and "name=userns" in lines[0]


def mount_dev_mapper() -> bool:
    """Return True if docker storage is on btrfs, zfs, devicemapper or xfs."""
    try:
        lines = output_lines(Command("docker", "info", "-f", "{{.Driver}}"))
    except RunError:
        return False
    if len(lines) != 1:
        return False
    storage = lines[0].strip().lower()
    if storage in ("btrfs", "zfs", "devicemapper"):
        return True

    try:
        lines = output_lines(Command("docker", "info", "-f", "{{json .DriverStatus }}"))
    except RunError:
        return False
    if len(lines) != 1:
        return False
    try:
        status = json.loads(lines[0])
    except ValueError:
        return False
    if not isinstance(status, list):
        return False
    for item in status:
        if isinstance(item, list) and len(item) >= 2 and item[0] == "Backing Filesystem":
            storage = str(item[1]).lower()
            break
    return storage in ("btrfs", "zfs", "xfs")