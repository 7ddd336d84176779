"""Dynamic provisioning workflow.

ProvisioningTest drives one claim through the platform's provisioning
pipeline: create it, force binding when the class delays it, wait for Bound,
verify the resulting volume, then delete the claim and, for the Delete
reclaim policy, wait for the volume to go away.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .config import DEFAULT_IMAGE, Timeouts
from .errors import ApiError, ConfigurationError, InvariantViolation, NotFoundError
from .pods import NodeSelection, run_in_pod_with_volume
from .resources import (
    BINDING_WAIT_FOR_FIRST_CONSUMER,
    CLAIM_BOUND,
    RECLAIM_DELETE,
    Claim,
    StorageClass,
    Volume,
)
from .storage_class import get_default_storage_class_name
from .verifier import verify_provisioned_volume
from .wait import wait_for_claim_phase, wait_for_object_deleted

logger = logging.getLogger(__name__)


class Phase(Enum):
    """Steps of the provisioning workflow, in order."""

    CREATED = "Created"
    FORCE_BINDING = "ForceBinding"
    WAITING_BOUND = "WaitingBound"
    VERIFYING = "Verifying"
    DRAINING = "Draining"
    DONE = "Done"


@dataclass
class ProvisioningRun:
    """What one workflow run observed."""

    claim: Claim | None = None
    volume: Volume | None = None
    storage_class: StorageClass | None = None
    history: list[Phase] = field(default_factory=list)

    @property
    def phase(self) -> Phase | None:
        return self.history[-1] if self.history else None

    def advance(self, phase: Phase) -> None:
        ident = self.claim.key if self.claim else "<no claim>"
        logger.info("claim %s: %s", ident, phase.value)
        self.history.append(phase)


@dataclass(frozen=True)
class ProvisioningTest:
    """Parameters of one dynamic provisioning scenario.

    Instances are never mutated; derive variations with dataclasses.replace.

    Attributes:
        client: K8sClient used for every platform call
        claim: Claim manifest to create (must set generateName or name)
        storage_class: StorageClass manifest the claim uses, or None when the
            claim relies on the platform default class
        claim_size: Size requested by the claim
        expected_size: Capacity the provisioned volume must report
        timeouts: Poll interval and budgets
        source_claim: Claim template used to prepare a data source
        pv_check: Called with the bound claim before the volume is verified
        volume_mode: Volume mode of the scenario's pattern
        node_selection: Placement of every pod the workflow starts
        image: Image of every pod the workflow starts
        pod_prefix: Prefix of every pod name the workflow generates
    """

    client: object
    claim: dict
    storage_class: dict | None
    claim_size: str
    expected_size: str
    timeouts: Timeouts = field(default_factory=Timeouts)
    source_claim: dict | None = None
    pv_check: Callable[[Claim], None] | None = None
    volume_mode: str | None = None
    node_selection: NodeSelection = field(default_factory=NodeSelection)
    image: str = DEFAULT_IMAGE
    pod_prefix: str = "pvc-volume-tester"

    def _validate(self) -> None:
        if self.client is None:
            raise ConfigurationError("ProvisioningTest.client is required")
        if not self.claim:
            raise ConfigurationError("ProvisioningTest.claim is required")
        metadata = self.claim.get("metadata", {})
        if not (metadata.get("generateName") or metadata.get("name")):
            raise ConfigurationError("ProvisioningTest.claim must set generateName or name")
        if not self.claim_size or not self.expected_size:
            raise ConfigurationError("ProvisioningTest.claim_size and expected_size are required")

    def _resolve_class(self) -> StorageClass:
        if self.storage_class is None:
            name = get_default_storage_class_name(self.client)
        else:
            name = self.storage_class["metadata"]["name"]
        obj = self.client.get("storageclass", name)
        if obj is None:
            raise NotFoundError("couldn't be fetched from the cluster", "storageclass", name)
        return StorageClass.from_manifest(obj)

    def run_dynamic_provisioning(self) -> Volume | None:
        """Run the workflow and return the last observed volume."""
        return self.run().volume

    def run(self) -> ProvisioningRun:
        """Run the workflow.

        The claim is deleted on every exit path.

        Returns:
            ProvisioningRun with the observed claim, volume and phase history
        """
        self._validate()
        k8s = self.client
        run = ProvisioningRun()
        run.storage_class = self._resolve_class()

        namespace = self.claim["metadata"].get("namespace") or k8s.namespace
        logger.info("creating claim in %s from class %s", namespace, run.storage_class.name)
        run.claim = Claim.from_manifest(k8s.create(self.claim, namespace=namespace))
        run.advance(Phase.CREATED)

        failed = True
        try:
            self._drive(run)
            failed = False
        finally:
            self._delete_claim(run.claim, suppress_errors=failed)

        run.advance(Phase.DONE)
        return run

    def _drive(self, run: ProvisioningRun) -> None:
        k8s = self.client
        storage_class = run.storage_class
        claim = run.claim

        # The claim must refer to the class that was resolved
        if claim.storage_class_name != storage_class.name:
            raise InvariantViolation(
                f"claim {claim.key}",
                "storageClassName",
                storage_class.name,
                claim.storage_class_name,
            )

        if storage_class.volume_binding_mode == BINDING_WAIT_FOR_FIRST_CONSUMER:
            run.advance(Phase.FORCE_BINDING)
            self._force_binding(claim)

        run.advance(Phase.WAITING_BOUND)
        run.claim = wait_for_claim_phase(
            k8s,
            claim.namespace,
            claim.name,
            CLAIM_BOUND,
            self.timeouts.poll,
            self.timeouts.claim_provision,
        )

        run.advance(Phase.VERIFYING)
        if self.pv_check is not None:
            self.pv_check(run.claim)

        run.claim, run.volume = get_bound_volume(k8s, run.claim)
        verify_provisioned_volume(
            run.volume,
            run.claim,
            None if self.storage_class is None else storage_class,
            self.expected_size,
            self.claim_size,
        )

        run.advance(Phase.DRAINING)
        logger.info("deleting claim %s", run.claim.key)
        k8s.delete("pvc", run.claim.name, namespace=run.claim.namespace)

        # A retained volume is expected to stay, so there is nothing to wait for.
        # Deletion may fail for a while as the volume is still being detached.
        if run.volume.reclaim_policy == RECLAIM_DELETE:
            logger.info("waiting for volume %s of claim %s to be deleted", run.volume.name, run.claim.key)
            wait_for_object_deleted(
                k8s,
                "pv",
                run.volume.name,
                self.timeouts.pv_delete_poll,
                self.timeouts.pv_delete_slow,
            )

    def _force_binding(self, claim: Claim) -> None:
        """Schedule a throwaway consumer so a delayed-binding claim gets a volume.

        The pod is gone before this returns; a pod still using the claim
        would block deleting the volume later.
        """
        logger.info("creating a pod referring to claim %s to trigger binding", claim.key)
        run_in_pod_with_volume(
            self.client,
            self.timeouts,
            claim.namespace,
            claim.name,
            f"{self.pod_prefix}-binder",
            "true",
            self.node_selection,
            self.image,
            self.volume_mode,
        )

    def _delete_claim(self, claim: Claim, suppress_errors: bool) -> None:
        logger.info("deleting claim %s", claim.key)
        try:
            self.client.delete("pvc", claim.name, namespace=claim.namespace)
        except ApiError as e:
            if not suppress_errors:
                raise
            logger.warning("error deleting claim %s: %s", claim.key, e)


def get_bound_volume(k8s, claim: Claim) -> tuple[Claim, Volume]:
    """Re-fetch a claim and return it with the volume it is bound to.

    Raises:
        NotFoundError: If the claim or its volume cannot be fetched
    """
    obj = k8s.get("pvc", claim.name, namespace=claim.namespace)
    if obj is None:
        raise NotFoundError("claim not found", "pvc", claim.name, claim.namespace)
    fresh = Claim.from_manifest(obj)
    if not fresh.volume_name:
        raise NotFoundError("claim is not bound to a volume", "pvc", fresh.name, fresh.namespace)

    pv = k8s.get("pv", fresh.volume_name)
    if pv is None:
        raise NotFoundError(f"volume bound to claim {fresh.key} not found", "pv", fresh.volume_name)
    return fresh, Volume.from_manifest(pv)
