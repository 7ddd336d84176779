"""Data sources for pre-populated claims.

Each prepare function returns (reference, cleanup): a typed reference that a
new claim can name as its dataSource, and the action that releases everything
the preparation created.
"""

import logging
from typing import Callable

from .config import DEFAULT_IMAGE, Timeouts
from .errors import AlreadyExistsError, ApiError, NotFoundError, ProvisioningError
from .pods import VOLUME_MOUNT_PATH, NodeSelection, run_in_pod_with_volume
from .resources import VOLUME_MODE_BLOCK, Claim
from .storage_class import setup_storage_class
from .wait import poll_until, wait_for_object_deleted

logger = logging.getLogger(__name__)

CONTENT_FILE = "index.html"
SNAPSHOT_API_GROUP = "snapshot.storage.k8s.io"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "'\\''") + "'"


def inject_command(content: str, volume_mode: str | None = None) -> str:
    if volume_mode == VOLUME_MODE_BLOCK:
        return f"echo {_quote(content)} | dd of={VOLUME_MOUNT_PATH} bs=512 count=1 conv=sync"
    return f"echo {_quote(content)} > {VOLUME_MOUNT_PATH}/{CONTENT_FILE}"


def verify_command(content: str, volume_mode: str | None = None) -> str:
    if volume_mode == VOLUME_MODE_BLOCK:
        return f"dd if={VOLUME_MOUNT_PATH} bs=512 count=1 2>/dev/null | grep -F {_quote(content)}"
    return f"grep -Fx {_quote(content)} {VOLUME_MOUNT_PATH}/{CONTENT_FILE}"


def inject_content(
    k8s,
    timeouts: Timeouts,
    claim_name: str,
    namespace: str,
    content: str,
    volume_mode: str | None = None,
    node: NodeSelection | None = None,
    image: str = DEFAULT_IMAGE,
    pod_prefix: str = "inject",
) -> None:
    """Write content to a claim through a short-lived pod."""
    logger.info("injecting content into claim %s/%s", namespace, claim_name)
    run_in_pod_with_volume(
        k8s,
        timeouts,
        namespace,
        claim_name,
        pod_prefix,
        inject_command(content, volume_mode),
        node,
        image,
        volume_mode,
    )


def verify_content(
    k8s,
    timeouts: Timeouts,
    claim_name: str,
    namespace: str,
    content: str,
    volume_mode: str | None = None,
    node: NodeSelection | None = None,
    image: str = DEFAULT_IMAGE,
    pod_prefix: str = "client",
) -> None:
    """Check a claim holds content; a mismatch fails the reader pod."""
    run_in_pod_with_volume(
        k8s,
        timeouts,
        namespace,
        claim_name,
        pod_prefix,
        verify_command(content, volume_mode),
        node,
        image,
        volume_mode,
    )


def content_check(
    k8s,
    timeouts: Timeouts,
    content: str,
    volume_mode: str | None = None,
    node: NodeSelection | None = None,
    image: str = DEFAULT_IMAGE,
    pod_prefix: str = "client",
) -> Callable[[Claim], None]:
    """Build a post-bind check that the claim was pre-populated with content."""

    def check(claim: Claim) -> None:
        logger.info("checking whether volume of claim %s has the pre-populated data", claim.key)
        verify_content(
            k8s,
            timeouts,
            claim.name,
            claim.namespace,
            content,
            volume_mode,
            node,
            image,
            pod_prefix,
        )

    return check


def _ensure_source_claim(k8s, manifest: dict) -> dict:
    metadata = manifest.get("metadata", {})
    if metadata.get("resourceVersion"):
        logger.info("skipping creation of claim %s, it already exists", metadata.get("name"))
        return manifest
    logger.info("creating source claim for data source")
    try:
        return k8s.create(manifest, namespace=metadata.get("namespace"))
    except AlreadyExistsError:
        existing = k8s.get("pvc", metadata["name"], namespace=metadata.get("namespace"))
        if existing is None:
            raise
        return existing


def _delete_claim(k8s, claim: dict) -> None:
    name = claim["metadata"]["name"]
    namespace = claim["metadata"].get("namespace")
    logger.info("deleting source claim %s/%s", namespace, name)
    k8s.delete("pvc", name, namespace=namespace)


def _abandon(k8s, source: dict | None, clear_class: Callable[[], None]) -> None:
    """Release what a failed preparation created without masking its error."""
    try:
        if source is not None:
            _delete_claim(k8s, source)
        clear_class()
    except ApiError as e:
        logger.warning("cleanup after failed data source preparation: %s", e)


def prepare_pvc_data_source(
    k8s,
    timeouts: Timeouts,
    source_claim: dict,
    storage_class: dict | None,
    content: str,
    volume_mode: str | None = None,
    node: NodeSelection | None = None,
    image: str = DEFAULT_IMAGE,
) -> tuple[dict, Callable[[], None]]:
    """Create a claim holding content and reference it as a clone source.

    Returns:
        Tuple of (dataSource reference, cleanup)
    """
    _, clear_class = setup_storage_class(k8s, storage_class)
    source = None
    try:
        source = _ensure_source_claim(k8s, source_claim)
        inject_content(
            k8s,
            timeouts,
            source["metadata"]["name"],
            source["metadata"]["namespace"],
            content,
            volume_mode,
            node,
            image,
        )
    except Exception:
        _abandon(k8s, source, clear_class)
        raise

    reference = {"kind": "PersistentVolumeClaim", "name": source["metadata"]["name"]}

    def cleanup() -> None:
        _delete_claim(k8s, source)
        clear_class()

    return reference, cleanup


def prepare_snapshot_data_source(
    k8s,
    timeouts: Timeouts,
    init_claim: dict,
    storage_class: dict | None,
    content: str,
    snapshot_class: str | None = None,
    volume_mode: str | None = None,
    node: NodeSelection | None = None,
    image: str = DEFAULT_IMAGE,
) -> tuple[dict, Callable[[], None]]:
    """Create a claim holding content, snapshot it and reference the snapshot.

    Returns:
        Tuple of (dataSource reference, cleanup)
    """
    _, clear_class = setup_storage_class(k8s, storage_class)
    source = None
    try:
        source = _ensure_source_claim(k8s, init_claim)
        namespace = source["metadata"]["namespace"]
        inject_content(
            k8s,
            timeouts,
            source["metadata"]["name"],
            namespace,
            content,
            volume_mode,
            node,
            image,
        )
        snapshot = create_snapshot(
            k8s, timeouts, source["metadata"]["name"], namespace, snapshot_class
        )
    except Exception:
        _abandon(k8s, source, clear_class)
        raise

    reference = {
        "apiGroup": SNAPSHOT_API_GROUP,
        "kind": "VolumeSnapshot",
        "name": snapshot["metadata"]["name"],
    }

    def cleanup() -> None:
        errors = []
        try:
            _delete_claim(k8s, source)
        except ApiError as e:
            errors.append(e)
        try:
            delete_snapshot(k8s, timeouts, snapshot["metadata"]["name"], namespace)
        except ApiError as e:
            errors.append(e)
        clear_class()
        if errors:
            raise errors[0]

    return reference, cleanup


def create_snapshot(
    k8s,
    timeouts: Timeouts,
    claim_name: str,
    namespace: str,
    snapshot_class: str | None = None,
) -> dict:
    """Create a VolumeSnapshot of a claim and wait for it to be ready to use.

    Returns:
        The ready VolumeSnapshot
    """
    manifest: dict = {
        "apiVersion": f"{SNAPSHOT_API_GROUP}/v1",
        "kind": "VolumeSnapshot",
        "metadata": {"generateName": "snapshot-", "namespace": namespace},
        "spec": {"source": {"persistentVolumeClaimName": claim_name}},
    }
    if snapshot_class:
        manifest["spec"]["volumeSnapshotClassName"] = snapshot_class

    created = k8s.create(manifest, namespace=namespace)
    name = created["metadata"]["name"]
    logger.info("waiting for snapshot %s/%s of claim %s to be ready", namespace, name, claim_name)

    def check() -> tuple[bool, dict | None]:
        snap = k8s.get("volumesnapshot", name, namespace=namespace)
        if snap is None:
            raise NotFoundError("snapshot disappeared", "volumesnapshot", name, namespace)
        status = snap.get("status") or {}
        if status.get("error"):
            raise ApiError(
                status["error"].get("message", "snapshot error"), "volumesnapshot", name, namespace
            )
        return status.get("readyToUse") is True, snap

    try:
        return poll_until(
            check,
            timeouts.poll,
            timeouts.snapshot_create,
            f"volumesnapshot {namespace}/{name} to be ready",
        )
    except ProvisioningError:
        try:
            k8s.delete("volumesnapshot", name, namespace=namespace)
        except ApiError as e:
            logger.warning("error deleting snapshot %s/%s: %s", namespace, name, e)
        raise


def delete_snapshot(k8s, timeouts: Timeouts, name: str, namespace: str) -> None:
    logger.info("deleting snapshot %s/%s", namespace, name)
    k8s.delete("volumesnapshot", name, namespace=namespace)
    wait_for_object_deleted(
        k8s, "volumesnapshot", name, timeouts.poll, timeouts.snapshot_delete, namespace=namespace
    )
