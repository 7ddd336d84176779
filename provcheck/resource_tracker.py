"""Resource tracker for coordinated scenario cleanup.

Ensures resources are released in the correct dependency order:
1. Pods (release claim usage; logs are captured first)
2. Clone claims (depend on snapshots or source claims)
3. Snapshots (depend on source claims)
4. Source claims (base volumes)
5. Retained volumes (left behind by Retain reclaim policy)
6. Data source cleanups (collaborator-provided release actions)
7. Storage classes (deleted after every claim that used them)

Within one type, resources are released in reverse creation order. A failed
release is logged and collected; the remaining releases still run.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable

from .config import Timeouts
from .errors import CleanupError
from .pods import stop_pod
from .wait import wait_for_object_deleted

logger = logging.getLogger(__name__)


class ResourceType(IntEnum):
    """Resource types in cleanup priority order (lower = cleanup first)."""

    POD = 1
    CLONE_CLAIM = 2  # Claim populated from a snapshot or another claim
    SNAPSHOT = 3
    SOURCE_CLAIM = 4  # Claim with no data source
    VOLUME = 5
    DATA_SOURCE = 6
    STORAGE_CLASS = 7


@dataclass
class TrackedResource:
    """A resource being tracked for cleanup."""

    kind: str  # K8s kind: "pod", "pvc", "volumesnapshot", "pv", or "action"
    name: str
    resource_type: ResourceType
    namespace: str | None = None
    # For debugging dependency issues
    depends_on: str | None = None
    release: Callable[[], None] | None = None


@dataclass
class ResourceTracker:
    """Tracks scenario resources and coordinates cleanup in correct order.

    Usage:
        with ResourceTracker(k8s, timeouts) as tracker:
            tracker.track_pvc("my-pvc", namespace="ns")
            tracker.track_pod("my-pod", namespace="ns")
            tracker.defer(cleanup_class, "storage class sc", ResourceType.STORAGE_CLASS)
        # Everything is released on exit, pods first
    """

    k8s: object
    timeouts: Timeouts = field(default_factory=Timeouts)
    resources: list[TrackedResource] = field(default_factory=list)

    def track_pod(self, name: str, namespace: str | None = None) -> None:
        """Track a pod for cleanup."""
        self.resources.append(
            TrackedResource(
                kind="pod",
                name=name,
                resource_type=ResourceType.POD,
                namespace=namespace,
            )
        )

    def track_pvc(
        self,
        name: str,
        namespace: str | None = None,
        is_clone: bool = False,
        depends_on: str | None = None,
    ) -> None:
        """Track a claim for cleanup.

        Args:
            name: Claim name
            namespace: Claim namespace
            is_clone: True if populated from a snapshot/claim (needs earlier cleanup)
            depends_on: Name of the snapshot or claim this was populated from
        """
        resource_type = ResourceType.CLONE_CLAIM if is_clone else ResourceType.SOURCE_CLAIM
        self.resources.append(
            TrackedResource(
                kind="pvc",
                name=name,
                resource_type=resource_type,
                namespace=namespace,
                depends_on=depends_on,
            )
        )

    def track_snapshot(
        self, name: str, namespace: str | None = None, source_pvc: str | None = None
    ) -> None:
        """Track a snapshot for cleanup."""
        self.resources.append(
            TrackedResource(
                kind="volumesnapshot",
                name=name,
                resource_type=ResourceType.SNAPSHOT,
                namespace=namespace,
                depends_on=source_pvc,
            )
        )

    def track_volume(self, name: str) -> None:
        """Track a volume that outlives its claim (Retain reclaim policy)."""
        self.resources.append(
            TrackedResource(kind="pv", name=name, resource_type=ResourceType.VOLUME)
        )

    def defer(
        self,
        action: Callable[[], None],
        description: str,
        resource_type: ResourceType = ResourceType.DATA_SOURCE,
    ) -> None:
        """Register an arbitrary release action.

        Args:
            action: Callable run during cleanup
            description: Shown in logs and cleanup errors
            resource_type: Position in the cleanup order
        """
        self.resources.append(
            TrackedResource(
                kind="action",
                name=description,
                resource_type=resource_type,
                release=action,
            )
        )

    def _release(self, resource: TrackedResource) -> None:
        if resource.release is not None:
            resource.release()
        elif resource.kind == "pod":
            pod = {"metadata": {"name": resource.name, "namespace": resource.namespace}}
            stop_pod(self.k8s, pod, self.timeouts)
        elif resource.kind == "volumesnapshot":
            self.k8s.delete(resource.kind, resource.name, namespace=resource.namespace)
            wait_for_object_deleted(
                self.k8s,
                resource.kind,
                resource.name,
                self.timeouts.poll,
                self.timeouts.snapshot_delete,
                namespace=resource.namespace,
            )
        else:
            self.k8s.delete(resource.kind, resource.name, namespace=resource.namespace)

    def cleanup_all(self) -> list[str]:
        """Clean up all tracked resources in correct dependency order.

        Returns:
            List of warning messages for resources that failed to release
        """
        warnings = []

        # Sort by resource type (pods first, storage classes last)
        # Within same type, reverse creation order (LIFO)
        sorted_resources = sorted(
            enumerate(self.resources),
            key=lambda x: (x[1].resource_type, -x[0]),
        )

        for _, resource in sorted_resources:
            ident = resource.name
            if resource.namespace:
                ident = f"{resource.namespace}/{resource.name}"
            try:
                logger.info("releasing %s %s", resource.kind, ident)
                self._release(resource)
            except Exception as e:
                msg = f"Failed to release {resource.kind} {ident}: {e}"
                warnings.append(msg)
                logger.warning(msg)

        # Clear tracked resources
        self.resources.clear()

        return warnings

    def clear(self) -> None:
        """Clear all tracked resources without deleting them."""
        self.resources.clear()

    def __len__(self) -> int:
        return len(self.resources)

    def __enter__(self) -> "ResourceTracker":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        warnings = self.cleanup_all()
        if not warnings:
            return
        if exc_type is None:
            raise CleanupError(warnings)
        # Keep the original failure visible; cleanup problems were logged
        logger.warning("cleanup after failed workflow left %d problem(s)", len(warnings))
