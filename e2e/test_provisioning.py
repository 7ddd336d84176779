"""Dynamic provisioning against a live driver.

Each test runs once per volume pattern the driver supports.
"""

import uuid
from dataclasses import replace

import pytest

from provcheck.config import E2EConfig
from provcheck.data_integrity import multi_node_check, write_read_single_node_check
from provcheck.data_source import content_check, prepare_pvc_data_source, prepare_snapshot_data_source
from provcheck.driver import DEFAULT_PATTERNS, Capability
from provcheck.k8s_client import K8sClient
from provcheck.parallel import provision_in_parallel
from provcheck.resources import VOLUME_MODE_BLOCK, with_data_source
from provcheck.scenario import ScenarioContext, ensure_topology_requirements


@pytest.fixture(params=DEFAULT_PATTERNS, ids=lambda p: p.name)
def pattern(request: pytest.FixtureRequest):
    return request.param


def content() -> str:
    return f"provcheck-{uuid.uuid4().hex[:8]}"


class TestDynamicProvisioning:
    """Provision, verify and delete one claim."""

    def test_provision_storage(
        self, k8s: K8sClient, e2e_config: E2EConfig, scenario: ScenarioContext, class_factory
    ):
        manifest, _ = class_factory()
        test = replace(scenario.test, storage_class=manifest)
        if scenario.pattern.volume_mode != VOLUME_MODE_BLOCK:
            test = replace(
                test,
                pv_check=lambda claim: write_read_single_node_check(
                    k8s,
                    e2e_config.timeouts,
                    claim,
                    scenario.node_selection,
                    e2e_config.platform,
                    e2e_config.image,
                ),
            )

        volume = test.run_dynamic_provisioning()
        assert volume is not None

    def test_provision_storage_with_mount_options(
        self, k8s: K8sClient, e2e_config: E2EConfig, scenario: ScenarioContext, class_factory
    ):
        if scenario.pattern.volume_mode == VOLUME_MODE_BLOCK:
            pytest.skip("mount options do not apply to block volumes")
        mount_options = scenario.driver.mount_options()
        if not mount_options:
            pytest.skip(f"driver {scenario.driver.name} declares no mount options")

        manifest, _ = class_factory(mountOptions=mount_options)
        test = replace(
            scenario.test,
            storage_class=manifest,
            pv_check=lambda claim: write_read_single_node_check(
                k8s,
                e2e_config.timeouts,
                claim,
                scenario.node_selection,
                e2e_config.platform,
                e2e_config.image,
            ),
        )

        volume = test.run_dynamic_provisioning()
        assert volume.mount_options == mount_options

    def test_multi_node_access(
        self, k8s: K8sClient, e2e_config: E2EConfig, scenario: ScenarioContext, class_factory
    ):
        if not scenario.driver.supports(Capability.MULTI_PODS):
            pytest.skip(f"driver {scenario.driver.name} doesn't support multiple pods")
        if scenario.pattern.volume_mode == VOLUME_MODE_BLOCK:
            pytest.skip("multi node check writes to a filesystem")
        selection = ensure_topology_requirements(
            scenario.node_selection, k8s, scenario.driver, min_count=2
        )
        manifest, _ = class_factory()
        test = replace(
            scenario.test,
            storage_class=manifest,
            node_selection=selection,
            pv_check=lambda claim: multi_node_check(
                k8s, e2e_config.timeouts, claim, selection, e2e_config.image
            ),
        )
        test.run()


class TestDataSources:
    """Claims pre-populated from a snapshot or another claim."""

    def test_snapshot_data_source(
        self, k8s: K8sClient, e2e_config: E2EConfig, scenario: ScenarioContext, class_factory
    ):
        if not scenario.driver.supports(Capability.SNAPSHOT_DATA_SOURCE):
            pytest.skip(f"driver {scenario.driver.name} doesn't support snapshots")
        manifest, _ = class_factory()
        expected = content()
        volume_mode = scenario.pattern.volume_mode

        reference, cleanup = prepare_snapshot_data_source(
            k8s,
            e2e_config.timeouts,
            scenario.source_claim,
            manifest,
            expected,
            scenario.driver.snapshot_class,
            volume_mode,
            scenario.node_selection,
            e2e_config.image,
        )
        scenario.tracker.defer(cleanup, f"snapshot data source {reference['name']}")

        test = replace(
            scenario.test,
            storage_class=manifest,
            claim=with_data_source(scenario.claim, reference),
            pv_check=content_check(
                k8s,
                e2e_config.timeouts,
                expected,
                volume_mode,
                scenario.node_selection,
                e2e_config.image,
            ),
        )
        test.run()

    def test_pvc_data_source(
        self, k8s: K8sClient, e2e_config: E2EConfig, scenario: ScenarioContext, class_factory
    ):
        if not scenario.driver.supports(Capability.PVC_DATA_SOURCE):
            pytest.skip(f"driver {scenario.driver.name} doesn't support cloning")
        manifest, _ = class_factory()
        expected = content()
        volume_mode = scenario.pattern.volume_mode

        # Clones cannot cross topology segments
        selection = ensure_topology_requirements(scenario.node_selection, k8s, scenario.driver)
        reference, cleanup = prepare_pvc_data_source(
            k8s,
            e2e_config.timeouts,
            scenario.source_claim,
            manifest,
            expected,
            volume_mode,
            selection,
            e2e_config.image,
        )
        scenario.tracker.defer(cleanup, f"pvc data source {reference['name']}")

        test = replace(
            scenario.test,
            storage_class=manifest,
            node_selection=selection,
            claim=with_data_source(scenario.claim, reference),
            pv_check=content_check(
                k8s, e2e_config.timeouts, expected, volume_mode, selection, e2e_config.image
            ),
        )
        test.run()

    @pytest.mark.slow
    def test_pvc_data_source_in_parallel(
        self, k8s: K8sClient, e2e_config: E2EConfig, scenario: ScenarioContext, class_factory
    ):
        if not scenario.driver.supports(Capability.PVC_DATA_SOURCE):
            pytest.skip(f"driver {scenario.driver.name} doesn't support cloning")
        manifest, _ = class_factory()
        expected = content()
        volume_mode = scenario.pattern.volume_mode

        selection = ensure_topology_requirements(scenario.node_selection, k8s, scenario.driver)
        reference, cleanup = prepare_pvc_data_source(
            k8s,
            e2e_config.timeouts,
            scenario.source_claim,
            manifest,
            expected,
            volume_mode,
            selection,
            e2e_config.image,
        )
        scenario.tracker.defer(cleanup, f"pvc data source {reference['name']}")

        template = replace(
            scenario.test,
            storage_class=manifest,
            node_selection=selection,
            claim=with_data_source(scenario.claim, reference),
        )

        def check_factory(index: int):
            return content_check(
                k8s,
                e2e_config.timeouts,
                expected,
                volume_mode,
                selection,
                e2e_config.image,
                pod_prefix=f"client-{index}",
            )

        volumes = provision_in_parallel(template, count=5, check_factory=check_factory)
        assert len({v.name for v in volumes}) == 5
