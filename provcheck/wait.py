"""Bounded polling primitives.

Every wait has a fixed interval and an overall budget. Running out of budget
raises WaitTimeoutError; errors from the control plane propagate immediately.
"""

import logging
import time
from typing import Callable, TypeVar

from .errors import NotFoundError, PodFailedError, WaitTimeoutError
from .resources import Claim

logger = logging.getLogger(__name__)

T = TypeVar("T")

POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"
POD_RUNNING = "Running"


def poll_until(
    check: Callable[[], tuple[bool, T]],
    interval: float,
    timeout: float,
    description: str,
) -> T:
    """Call check until it reports done or the budget runs out.

    Args:
        check: Returns (done, state); state is returned once done and is
            reported as the last observed state on timeout
        interval: Seconds between checks
        timeout: Overall budget in seconds
        description: What is being waited for, used in the timeout error

    Returns:
        The state from the successful check

    Raises:
        WaitTimeoutError: If the budget runs out
    """
    deadline = time.monotonic() + timeout
    last_state = None
    while True:
        done, last_state = check()
        if done:
            return last_state
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WaitTimeoutError(description, timeout, last_state)
        time.sleep(min(interval, remaining))


def wait_for_claim_phase(
    k8s,
    namespace: str,
    name: str,
    phase: str,
    interval: float,
    timeout: float,
) -> Claim:
    """Wait for a claim to reach a phase. A missing claim is retried."""

    def check() -> tuple[bool, Claim | None]:
        obj = k8s.get("pvc", name, namespace=namespace)
        if obj is None:
            logger.info("claim %s/%s not found yet, retrying", namespace, name)
            return False, None
        claim = Claim.from_manifest(obj)
        return claim.phase == phase, claim

    logger.info("waiting up to %ss for claim %s/%s to be %s", timeout, namespace, name, phase)
    return poll_until(check, interval, timeout, f"claim {namespace}/{name} to be {phase}")


def wait_for_claims_phase(
    k8s,
    namespace: str,
    names: list[str],
    phase: str,
    interval: float,
    timeout: float,
    match_any: bool = False,
) -> list[Claim]:
    """Wait for all (or, with match_any, any) claims to reach a phase.

    Returns:
        The claims observed in the requested phase
    """

    def check() -> tuple[bool, list[Claim]]:
        matched = []
        for name in names:
            obj = k8s.get("pvc", name, namespace=namespace)
            if obj is None:
                continue
            claim = Claim.from_manifest(obj)
            if claim.phase == phase:
                matched.append(claim)
        done = bool(matched) if match_any else len(matched) == len(names)
        return done, matched

    which = "any of" if match_any else "all of"
    return poll_until(
        check, interval, timeout, f"{which} claims {names} in {namespace} to be {phase}"
    )


def wait_for_pod_success(
    k8s, namespace: str, name: str, interval: float, timeout: float
) -> dict:
    """Wait for a pod to terminate successfully.

    Raises:
        PodFailedError: If the pod terminates unsuccessfully
        NotFoundError: If the pod disappears while waiting
    """

    def check() -> tuple[bool, dict]:
        pod = k8s.get("pod", name, namespace=namespace)
        if pod is None:
            raise NotFoundError("pod disappeared while waiting for success", "pod", name, namespace)
        status = pod.get("status", {})
        if status.get("phase") == POD_FAILED:
            raise PodFailedError(namespace, name, _pod_failure_reason(status))
        return status.get("phase") == POD_SUCCEEDED, pod

    return poll_until(check, interval, timeout, f"pod {namespace}/{name} to succeed")


def wait_for_pod_running(
    k8s, namespace: str, name: str, interval: float, timeout: float
) -> dict:
    """Wait for a long-running pod to reach Running."""

    def check() -> tuple[bool, dict | None]:
        pod = k8s.get("pod", name, namespace=namespace)
        if pod is None:
            return False, None
        status = pod.get("status", {})
        if status.get("phase") in (POD_FAILED, POD_SUCCEEDED):
            raise PodFailedError(namespace, name, f"terminated in phase {status['phase']}")
        return status.get("phase") == POD_RUNNING, pod

    return poll_until(check, interval, timeout, f"pod {namespace}/{name} to be running")


def wait_for_pod_unschedulable(
    k8s, namespace: str, name: str, interval: float, timeout: float
) -> dict:
    """Wait for the scheduler to report a pod as unschedulable."""

    def check() -> tuple[bool, dict | None]:
        pod = k8s.get("pod", name, namespace=namespace)
        if pod is None:
            return False, None
        for cond in pod.get("status", {}).get("conditions", []):
            if (
                cond.get("type") == "PodScheduled"
                and cond.get("status") == "False"
                and cond.get("reason") == "Unschedulable"
            ):
                return True, pod
        return False, pod

    return poll_until(check, interval, timeout, f"pod {namespace}/{name} to be unschedulable")


def wait_for_object_deleted(
    k8s,
    kind: str,
    name: str,
    interval: float,
    timeout: float,
    namespace: str | None = None,
) -> None:
    """Wait until an object can no longer be fetched."""

    def check() -> tuple[bool, str | None]:
        obj = k8s.get(kind, name, namespace=namespace)
        if obj is None:
            return True, None
        return False, obj.get("status", {}).get("phase")

    ident = f"{namespace}/{name}" if namespace else name
    poll_until(check, interval, timeout, f"{kind} {ident} to be deleted")


def _pod_failure_reason(status: dict) -> str:
    for container in status.get("containerStatuses", []):
        terminated = container.get("state", {}).get("terminated")
        if terminated:
            return (
                f"container {container.get('name')} exited {terminated.get('exitCode')}"
                f" ({terminated.get('reason', '')})"
            )
    return status.get("reason") or status.get("message") or ""
