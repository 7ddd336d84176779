"""Concurrent provisioning runs."""

import concurrent.futures
import logging
from dataclasses import replace
from typing import Callable, TypeVar

from .errors import ConfigurationError, ParallelExecutionError
from .provisioning import ProvisioningTest
from .resources import Claim, Volume

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_parallel(tasks: list[Callable[[], T]], max_workers: int | None = None) -> list[T]:
    """Run tasks on a thread pool and wait for all of them.

    Returns:
        Task results in task order

    Raises:
        ParallelExecutionError: After every task finished, if any raised
    """
    if not tasks:
        return []
    results: dict[int, T] = {}
    failures: dict[int, BaseException] = {}

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers or len(tasks)) as executor:
        futures = {executor.submit(task): index for index, task in enumerate(tasks)}
        for future in concurrent.futures.as_completed(futures):
            index = futures[future]
            try:
                results[index] = future.result()
            except Exception as e:
                logger.warning("parallel unit %d failed: %s", index, e)
                failures[index] = e

    if failures:
        raise ParallelExecutionError(failures, len(tasks))
    return [results[index] for index in range(len(tasks))]


def derive_unit(
    test: ProvisioningTest,
    index: int,
    pv_check: Callable[[Claim], None] | None = None,
) -> ProvisioningTest:
    """Copy of test whose claim and pod names cannot collide with other units."""
    claim = dict(test.claim)
    metadata = dict(claim.get("metadata", {}))
    base = metadata.pop("name", None) or metadata.get("generateName") or "pvc-"
    metadata["generateName"] = f"{base.rstrip('-')}-{index}-"
    claim["metadata"] = metadata
    return replace(
        test,
        claim=claim,
        pod_prefix=f"{test.pod_prefix}-{index}",
        pv_check=pv_check if pv_check is not None else test.pv_check,
    )


def provision_in_parallel(
    test: ProvisioningTest,
    count: int = 5,
    check_factory: Callable[[int], Callable[[Claim], None]] | None = None,
) -> list[Volume | None]:
    """Run count provisioning workflows concurrently from one template.

    Args:
        test: Template for every unit
        count: Number of units
        check_factory: Builds the pv_check of unit i

    Returns:
        The volume of each unit, in unit order
    """
    if count < 1:
        raise ConfigurationError(f"parallel unit count must be positive, got {count}")
    units = [
        derive_unit(test, i, check_factory(i) if check_factory else None) for i in range(count)
    ]
    logger.info("provisioning %d claims in parallel", count)
    return run_parallel([unit.run_dynamic_provisioning for unit in units], max_workers=count)
