"""Per-scenario context.

build_scenario derives everything one provisioning scenario needs from the
run configuration, a driver descriptor and a test pattern. Nothing in the
context is shared between scenarios.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field

from .config import E2EConfig
from .driver import DriverInfo, TestPattern
from .errors import CleanupError, ConfigurationError, ProvisioningError
from .migration import MigrationOpCheck
from .pods import NodeSelection
from .provisioning import ProvisioningTest
from .quantity import SizeRange, get_size_ranges_intersection
from .resource_tracker import ResourceTracker
from .resources import make_claim

logger = logging.getLogger(__name__)

SUITE_SIZE_RANGE = SizeRange(min="1Mi")


@dataclass
class ScenarioContext:
    """What one scenario works with.

    Attributes:
        driver: Driver under test
        pattern: Volume flavour of this scenario
        claim_size: Size every claim of the scenario requests
        storage_class: Dynamic StorageClass manifest
        claim: Claim template
        source_claim: Claim template for data sources
        test: Provisioning workflow parameters
        tracker: Releases scenario resources at close
        migration_check: Validated at close
        node_selection: Where the scenario's pods run
    """

    driver: DriverInfo
    pattern: TestPattern
    claim_size: str
    storage_class: dict
    claim: dict
    source_claim: dict
    test: ProvisioningTest
    tracker: ResourceTracker
    migration_check: MigrationOpCheck
    node_selection: NodeSelection = field(default_factory=NodeSelection)

    def close(self) -> None:
        """Release tracked resources, then validate operation counts.

        Raises:
            InvariantViolation: If the operation counts changed. Cleanup
                failures of the same close are appended to its message,
                as for any other error of the check.
            CleanupError: If any teardown action failed
        """
        warnings = self.tracker.cleanup_all()
        try:
            self.migration_check.validate()
        except ProvisioningError as e:
            if warnings:
                cleanup = CleanupError(warnings)
                e.cleanup_errors = warnings
                e.args = (f"{e}\n{cleanup}",)
            raise
        if warnings:
            raise CleanupError(warnings)


def build_scenario(
    k8s,
    config: E2EConfig,
    driver: DriverInfo,
    pattern: TestPattern,
    suite_range: SizeRange = SUITE_SIZE_RANGE,
) -> ScenarioContext:
    """Derive a scenario context.

    Raises:
        ConfigurationError: If the suite and driver size ranges do not overlap
    """
    claim_size = get_size_ranges_intersection(suite_range, driver.supported_size_range)
    namespace = config.namespace
    storage_class = driver.dynamic_storage_class(namespace, pattern.fs_type)
    class_name = storage_class["metadata"]["name"]

    claim = make_claim(namespace, claim_size, class_name, pattern.volume_mode)
    source_claim = make_claim(
        namespace, claim_size, class_name, pattern.volume_mode, generate_name="pvc-source-"
    )
    logger.info(
        "scenario %s for driver %s: class %s, claim size %s",
        pattern.name,
        driver.name,
        class_name,
        claim_size,
    )

    test = ProvisioningTest(
        client=k8s,
        claim=claim,
        storage_class=storage_class,
        claim_size=claim_size,
        expected_size=claim_size,
        timeouts=config.timeouts,
        source_claim=source_claim,
        volume_mode=pattern.volume_mode,
        image=config.image,
    )
    return ScenarioContext(
        driver=driver,
        pattern=pattern,
        claim_size=claim_size,
        storage_class=storage_class,
        claim=claim,
        source_claim=source_claim,
        test=test,
        tracker=ResourceTracker(k8s, config.timeouts),
        migration_check=MigrationOpCheck(
            k8s,
            driver.in_tree_plugin_name,
            controller_manager_metrics=config.controller_manager_metrics,
        ).start(),
    )


def _is_ready_schedulable(node: dict) -> bool:
    if node.get("spec", {}).get("unschedulable"):
        return False
    for cond in node.get("status", {}).get("conditions", []):
        if cond.get("type") == "Ready":
            return cond.get("status") == "True"
    return False


def ensure_topology_requirements(
    selection: NodeSelection, k8s, driver: DriverInfo, min_count: int = 1
) -> NodeSelection:
    """Restrict a selection to one topology segment with enough nodes.

    Some drivers cannot clone across segments (e.g. availability zones), so
    every pod of a scenario has to land in the same one.

    Returns:
        The restricted selection, or the selection unchanged when the driver
        has no topology keys

    Raises:
        ConfigurationError: If there are too few nodes or no segment has
            min_count nodes
    """
    nodes = [n for n in k8s.list_resources("node") if _is_ready_schedulable(n)]
    if len(nodes) < min_count:
        raise ConfigurationError(
            f"found {len(nodes)} ready schedulable nodes, need at least {min_count}"
        )
    if not driver.topology_keys:
        return selection

    segments: Counter = Counter()
    for node in nodes:
        labels = node.get("metadata", {}).get("labels") or {}
        if all(key in labels for key in driver.topology_keys):
            segments[tuple(labels[key] for key in driver.topology_keys)] += 1

    suitable = sorted(segment for segment, count in segments.items() if count >= min_count)
    if not suitable:
        raise ConfigurationError(f"no topology segment with at least {min_count} nodes found")

    segment = suitable[0]
    logger.info("pinning pods to topology segment %s", dict(zip(driver.topology_keys, segment)))
    for key, value in zip(driver.topology_keys, segment):
        selection = selection.with_node_affinity(key, [value])
    return selection
