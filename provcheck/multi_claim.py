"""Binding of several delayed-binding claims by one consumer pod."""

import logging

from .errors import ConfigurationError, InvariantViolation, NotFoundError, WaitTimeoutError
from .pods import make_consumer_pod, pod_node_name
from .provisioning import ProvisioningTest, get_bound_volume
from .resource_tracker import ResourceTracker
from .resources import CLAIM_BOUND, CLAIM_PENDING, Claim, Volume
from .wait import (
    wait_for_claim_phase,
    wait_for_claims_phase,
    wait_for_pod_running,
    wait_for_pod_unschedulable,
)

logger = logging.getLogger(__name__)

PENDING_POLL_INTERVAL = 2.0


def verify_claims_pending(k8s, claims: list[Claim]) -> None:
    """Re-fetch every claim and check it is still Pending."""
    for claim in claims:
        obj = k8s.get("pvc", claim.name, namespace=claim.namespace)
        if obj is None:
            raise NotFoundError("claim not found", "pvc", claim.name, claim.namespace)
        fresh = Claim.from_manifest(obj)
        if fresh.phase != CLAIM_PENDING:
            raise InvariantViolation(f"claim {fresh.key}", "phase", CLAIM_PENDING, fresh.phase)


def bind_many(
    test: ProvisioningTest,
    claims: list[dict],
    node_selector: dict[str, str] | None = None,
    expect_unschedulable: bool = False,
) -> tuple[list[Volume], dict | None]:
    """Check that delayed-binding claims bind only once a pod consumes them.

    Args:
        test: Supplies the client, timeouts and image
        claims: Claim manifests, all in one namespace
        node_selector: Node labels the consumer pod must match
        expect_unschedulable: The selector matches no node, so the pod must
            stay unschedulable and every claim must stay Pending

    Returns:
        Tuple of (bound volumes, node the pod ran on); ([], None) when the pod
        was expected to be unschedulable
    """
    if not claims:
        raise ConfigurationError("bind_many needs at least one claim")
    k8s = test.client
    timeouts = test.timeouts
    namespace = claims[0]["metadata"].get("namespace") or k8s.namespace

    with ResourceTracker(k8s, timeouts) as tracker:
        logger.info("creating %d claims", len(claims))
        created = []
        for manifest in claims:
            claim = Claim.from_manifest(k8s.create(manifest, namespace=namespace))
            tracker.track_pvc(claim.name, namespace=claim.namespace)
            created.append(claim)
        names = [claim.name for claim in created]

        # None of the claims may bind before a pod consumes them
        logger.info("checking the claims are in pending state")
        try:
            bound = wait_for_claims_phase(
                k8s,
                namespace,
                names,
                CLAIM_BOUND,
                PENDING_POLL_INTERVAL,
                timeouts.claim_provision_short,
                match_any=True,
            )
        except WaitTimeoutError:
            pass
        else:
            raise InvariantViolation(
                f"claim {bound[0].key}", "phase before first consumer", CLAIM_PENDING, CLAIM_BOUND
            )
        verify_claims_pending(k8s, created)

        logger.info("creating a pod referring to the claims")
        pod = k8s.create(
            make_consumer_pod(namespace, names, node_selector, test.image), namespace=namespace
        )
        pod_name = pod["metadata"]["name"]
        tracker.track_pod(pod_name, namespace=namespace)

        if expect_unschedulable:
            wait_for_pod_unschedulable(k8s, namespace, pod_name, timeouts.poll, timeouts.pod_start)
            verify_claims_pending(k8s, created)
            return [], None

        pod = wait_for_pod_running(k8s, namespace, pod_name, timeouts.poll, timeouts.pod_start)
        node_name = pod_node_name(pod)
        node = k8s.get("node", node_name)
        if node is None:
            raise NotFoundError("node of consumer pod not found", "node", node_name)

        logger.info("re-checking the claims to see they bound")
        volumes = []
        for claim in created:
            claim = wait_for_claim_phase(
                k8s,
                claim.namespace,
                claim.name,
                CLAIM_BOUND,
                timeouts.poll,
                timeouts.claim_provision,
            )
            _, volume = get_bound_volume(k8s, claim)
            volumes.append(volume)

        if len(volumes) != len(created):
            raise InvariantViolation(
                f"pod {namespace}/{pod_name}", "bound volume count", len(created), len(volumes)
            )
        return volumes, node
