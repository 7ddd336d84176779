"""Pod-based read/write checks of provisioned volumes.

The workflow has no direct access to the storage, so durability is observed
through pods: one writes a marker, a later one reads it back.
"""

import logging

from .config import DEFAULT_IMAGE, Platform, Timeouts
from .errors import ConfigurationError, InvariantViolation
from .pods import (
    VOLUME_MOUNT_PATH,
    NodeSelection,
    pod_node_name,
    run_in_pod_with_volume,
    start_in_pod_with_volume,
    stop_pod,
)
from .provisioning import get_bound_volume
from .resources import Claim, Volume
from .wait import wait_for_pod_success

logger = logging.getLogger(__name__)

MARKER = "hello world"
DATA_FILE = f"{VOLUME_MOUNT_PATH}/data"

WRITE_COMMAND = f"echo '{MARKER}' > {DATA_FILE}"
READ_COMMAND = f"grep '{MARKER}' {DATA_FILE}"


def mount_options_read_command(mount_options: list[str], platform: Platform) -> str:
    """Build the reader command, asserting each mount option is in effect.

    The options column of the mount table entry, e.g. "(rw,noexec)", is
    turned into ",rw,noexec," so every option can be matched exactly.
    """
    if not platform.has_mount_table:
        return READ_COMMAND

    command = READ_COMMAND
    for option in mount_options:
        command += (
            f" && ( mount | grep 'on {VOLUME_MOUNT_PATH}' | awk '{{print $6}}'"
            f" | sed 's/^(/,/; s/)$/,/' | grep -q ,{option}, )"
        )
    command += f" || (mount | grep 'on {VOLUME_MOUNT_PATH}'; false)"
    return command


def _write_marker(
    k8s, timeouts: Timeouts, claim: Claim, pod_prefix: str, node: NodeSelection, image: str
) -> str:
    """Write the marker from a fresh pod and return the node it ran on."""
    pod = start_in_pod_with_volume(
        k8s, claim.namespace, claim.name, pod_prefix, WRITE_COMMAND, node, image
    )
    failed = True
    try:
        finished = wait_for_pod_success(
            k8s,
            claim.namespace,
            pod["metadata"]["name"],
            timeouts.poll,
            timeouts.pod_start_slow,
        )
        failed = False
    finally:
        stop_pod(k8s, pod, timeouts, suppress_errors=failed)
    return pod_node_name(finished)


def write_read_single_node_check(
    k8s,
    timeouts: Timeouts,
    claim: Claim,
    node: NodeSelection,
    platform: Platform | None = None,
    image: str = DEFAULT_IMAGE,
) -> Volume:
    """Check that a volume retains data on a single node.

    The first pod writes the marker on whichever node the scheduler picks.
    The second pod is pinned to that node, greps the marker and, where the
    platform has a mount table, checks the volume's mount options took effect.

    Returns:
        The volume as observed between the two pods
    """
    platform = platform or Platform()
    logger.info("checking the created volume is writable on node %s", node)
    actual_node = _write_marker(
        k8s, timeouts, claim, "pvc-volume-tester-writer", node, image
    )

    _, volume = get_bound_volume(k8s, claim)

    logger.info(
        "checking the created volume has the correct mount options, "
        "is readable and retains data on the same node %s",
        actual_node,
    )
    command = mount_options_read_command(volume.mount_options, platform)
    run_in_pod_with_volume(
        k8s,
        timeouts,
        claim.namespace,
        claim.name,
        "pvc-volume-tester-reader",
        command,
        NodeSelection(name=actual_node),
        image,
    )
    return volume


def multi_node_check(
    k8s,
    timeouts: Timeouts,
    claim: Claim,
    node: NodeSelection,
    image: str = DEFAULT_IMAGE,
) -> None:
    """Check that a volume retains data when moved between nodes.

    The reader is anti-affined from the writer's node, so this only passes
    on clusters with more than one suitable node. The caller ensures that.

    Raises:
        ConfigurationError: If the selection pins pods to a single node
        InvariantViolation: If the reader landed on the writer's node
    """
    if node.name:
        raise ConfigurationError(
            f"multi-node check only works when not locked onto node {node.name!r}"
        )

    logger.info("checking the created volume is writable on node %s", node)
    writer_node = _write_marker(k8s, timeouts, claim, "pvc-writer-node1", node, image)

    second_node = node.with_anti_affinity(writer_node)
    logger.info(
        "checking the created volume is readable and retains data on another node %s",
        second_node,
    )
    reader = run_in_pod_with_volume(
        k8s,
        timeouts,
        claim.namespace,
        claim.name,
        "pvc-reader-node2",
        READ_COMMAND,
        second_node,
        image,
    )
    reader_node = pod_node_name(reader)
    if reader_node == writer_node:
        raise InvariantViolation(
            f"pod {claim.namespace}/{reader['metadata']['name']}",
            "node (must differ from writer node)",
            f"not {writer_node}",
            reader_node,
        )
