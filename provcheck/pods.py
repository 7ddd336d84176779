"""Volume tester pods.

A volume tester pod runs one shell command in one container with one claim
mounted at /mnt/test. It is created, waited on, has its logs captured and is
deleted; it is never reused.
"""

import copy
import logging
from dataclasses import dataclass, field, replace

from .config import DEFAULT_IMAGE, Timeouts
from .errors import ApiError, ProvisioningError
from .resources import VOLUME_MODE_BLOCK
from .wait import wait_for_object_deleted, wait_for_pod_success

logger = logging.getLogger(__name__)

VOLUME_MOUNT_PATH = "/mnt/test"
VOLUME_NAME = "my-volume"
CONTAINER_NAME = "volume-tester"


@dataclass(frozen=True)
class NodeSelection:
    """Where a pod may be scheduled.

    Attributes:
        name: Pin the pod to exactly this node
        selector: Node label selector
        affinity: Raw pod affinity stanza
    """

    name: str = ""
    selector: dict[str, str] = field(default_factory=dict)
    affinity: dict | None = None

    def with_anti_affinity(self, node_name: str) -> "NodeSelection":
        """Copy of this selection that forbids the given node."""
        return replace(self, affinity=_add_node_requirement(self.affinity, node_name, "NotIn"))

    def with_node_affinity(self, key: str, values: list[str]) -> "NodeSelection":
        """Copy of this selection restricted to nodes whose label key is in values."""
        affinity = copy.deepcopy(self.affinity) if self.affinity else {}
        for term in _selector_terms(affinity):
            term.setdefault("matchExpressions", []).append(
                {"key": key, "operator": "In", "values": list(values)}
            )
        return replace(self, affinity=affinity)


def _selector_terms(affinity: dict) -> list[dict]:
    required = (
        affinity.setdefault("nodeAffinity", {})
        .setdefault("requiredDuringSchedulingIgnoredDuringExecution", {})
    )
    terms = required.setdefault("nodeSelectorTerms", [])
    if not terms:
        terms.append({})
    return terms


def _add_node_requirement(affinity: dict | None, node_name: str, operator: str) -> dict:
    affinity = copy.deepcopy(affinity) if affinity else {}
    requirement = {"key": "metadata.name", "operator": operator, "values": [node_name]}
    # Terms are ORed, so the requirement must be added to each of them
    for term in _selector_terms(affinity):
        term.setdefault("matchFields", []).append(requirement)
    return affinity


def apply_node_selection(pod_spec: dict, node: NodeSelection) -> None:
    """Apply a node selection to a pod spec in place."""
    if node.selector:
        pod_spec["nodeSelector"] = dict(node.selector)
    affinity = node.affinity
    if node.name:
        affinity = _add_node_requirement(affinity, node.name, "In")
    if affinity:
        pod_spec["affinity"] = copy.deepcopy(affinity)


def make_volume_tester_pod(
    namespace: str,
    claim_name: str,
    pod_prefix: str,
    command: str,
    node: NodeSelection | None = None,
    image: str = DEFAULT_IMAGE,
    volume_mode: str | None = None,
) -> dict:
    """Build a single-container pod that runs command against a claim.

    Args:
        namespace: Pod namespace
        claim_name: Claim to mount
        pod_prefix: generateName prefix and value of the app label
        command: Shell command to run
        node: Optional placement constraints
        image: Container image
        volume_mode: Block exposes the claim as a raw device instead of a mount

    Returns:
        Pod manifest
    """
    container: dict = {
        "name": CONTAINER_NAME,
        "image": image,
        "command": ["/bin/sh", "-c", command],
    }
    if volume_mode == VOLUME_MODE_BLOCK:
        container["volumeDevices"] = [{"name": VOLUME_NAME, "devicePath": VOLUME_MOUNT_PATH}]
    else:
        container["volumeMounts"] = [{"name": VOLUME_NAME, "mountPath": VOLUME_MOUNT_PATH}]

    spec = {
        "containers": [container],
        "restartPolicy": "Never",
        "volumes": [
            {"name": VOLUME_NAME, "persistentVolumeClaim": {"claimName": claim_name}}
        ],
    }
    if node:
        apply_node_selection(spec, node)

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "generateName": f"{pod_prefix}-",
            "namespace": namespace,
            "labels": {"app": pod_prefix},
        },
        "spec": spec,
    }


def make_consumer_pod(
    namespace: str,
    claim_names: list[str],
    node_selector: dict[str, str] | None = None,
    image: str = DEFAULT_IMAGE,
    pod_prefix: str = "pvc-tester",
) -> dict:
    """Build a long-running pod that mounts every claim at /mnt/volume<N>."""
    mounts = []
    volumes = []
    for index, claim_name in enumerate(claim_names, start=1):
        mounts.append({"name": f"volume{index}", "mountPath": f"/mnt/volume{index}"})
        volumes.append(
            {"name": f"volume{index}", "persistentVolumeClaim": {"claimName": claim_name}}
        )

    spec: dict = {
        "containers": [
            {
                "name": "write-pod",
                "image": image,
                "command": ["/bin/sh", "-c", "trap exit TERM; while true; do sleep 1; done"],
                "volumeMounts": mounts,
                "securityContext": {"privileged": True},
            }
        ],
        "restartPolicy": "OnFailure",
        "volumes": volumes,
    }
    if node_selector:
        spec["nodeSelector"] = dict(node_selector)

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"generateName": f"{pod_prefix}-", "namespace": namespace},
        "spec": spec,
    }


def pod_node_name(pod: dict) -> str:
    return pod.get("spec", {}).get("nodeName", "")


def start_in_pod_with_volume(
    k8s,
    namespace: str,
    claim_name: str,
    pod_prefix: str,
    command: str,
    node: NodeSelection | None = None,
    image: str = DEFAULT_IMAGE,
    volume_mode: str | None = None,
) -> dict:
    """Start command in a pod with the claim mounted at /mnt/test.

    The caller is responsible for checking the pod and stopping it.
    """
    manifest = make_volume_tester_pod(
        namespace, claim_name, pod_prefix, command, node, image, volume_mode
    )
    pod = k8s.create(manifest, namespace=namespace)
    logger.info(
        "started pod %s/%s on claim %s: %s",
        namespace,
        pod["metadata"]["name"],
        claim_name,
        command,
    )
    return pod


def run_in_pod_with_volume(
    k8s,
    timeouts: Timeouts,
    namespace: str,
    claim_name: str,
    pod_prefix: str,
    command: str,
    node: NodeSelection | None = None,
    image: str = DEFAULT_IMAGE,
    volume_mode: str | None = None,
) -> dict:
    """Run command in a pod with the claim mounted, wait for success, stop it.

    Returns:
        The pod as last observed before it was stopped
    """
    pod = start_in_pod_with_volume(
        k8s, namespace, claim_name, pod_prefix, command, node, image, volume_mode
    )
    failed = True
    try:
        finished = wait_for_pod_success(
            k8s, namespace, pod["metadata"]["name"], timeouts.poll, timeouts.pod_start_slow
        )
        failed = False
    finally:
        stop_pod(k8s, pod, timeouts, suppress_errors=failed)
    return finished


def stop_pod(k8s, pod: dict | None, timeouts: Timeouts, suppress_errors: bool = False) -> None:
    """Log the pod's output, delete it and wait for it to disappear.

    Log retrieval is best effort. Deletion failures propagate unless
    suppress_errors is set, which callers use while another error is already
    on its way out.
    """
    if pod is None:
        return
    name = pod["metadata"]["name"]
    namespace = pod["metadata"].get("namespace") or k8s.namespace

    try:
        logs = k8s.get_pod_logs(name, namespace=namespace)
        logger.info("pod %s/%s has the following logs: %s", namespace, name, logs)
    except ApiError as e:
        logger.warning("error getting logs for pod %s/%s: %s", namespace, name, e)

    try:
        k8s.delete("pod", name, namespace=namespace)
        wait_for_object_deleted(
            k8s, "pod", name, timeouts.poll, timeouts.pod_delete, namespace=namespace
        )
    except ProvisioningError as e:
        if not suppress_errors:
            raise
        logger.warning("error stopping pod %s/%s: %s", namespace, name, e)
