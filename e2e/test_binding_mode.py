"""Delayed binding against a live driver."""

from dataclasses import replace

import pytest

from provcheck.k8s_client import K8sClient
from provcheck.multi_claim import bind_many
from provcheck.provisioning import Phase
from provcheck.resources import BINDING_WAIT_FOR_FIRST_CONSUMER
from provcheck.scenario import ScenarioContext

CLAIM_COUNT = 2


class TestBindingMode:
    """WaitForFirstConsumer classes bind only when a pod needs the claims."""

    def test_single_claim_force_binding(self, scenario: ScenarioContext, class_factory):
        manifest, _ = class_factory(volumeBindingMode=BINDING_WAIT_FOR_FIRST_CONSUMER)
        run = replace(scenario.test, storage_class=manifest).run()
        assert Phase.FORCE_BINDING in run.history

    def test_claims_bind_on_first_consumer(
        self, k8s: K8sClient, scenario: ScenarioContext, class_factory
    ):
        manifest, _ = class_factory(volumeBindingMode=BINDING_WAIT_FOR_FIRST_CONSUMER)
        test = replace(scenario.test, storage_class=manifest)

        volumes, node = bind_many(test, [scenario.claim] * CLAIM_COUNT)

        assert len(volumes) == CLAIM_COUNT
        assert node is not None
        if scenario.driver.topology_keys:
            labels = node["metadata"].get("labels") or {}
            for key in scenario.driver.topology_keys:
                assert key in labels, f"node {node['metadata']['name']} has no {key} label"

    def test_unschedulable_consumer_keeps_claims_pending(
        self, scenario: ScenarioContext, class_factory
    ):
        if not scenario.driver.topology_keys:
            pytest.skip(f"driver {scenario.driver.name} declares no topology keys")
        manifest, _ = class_factory(volumeBindingMode=BINDING_WAIT_FOR_FIRST_CONSUMER)
        test = replace(scenario.test, storage_class=manifest)

        # No node carries this segment, so the pod can never be scheduled
        selector = {scenario.driver.topology_keys[0]: "provcheck-no-such-segment"}
        volumes, node = bind_many(
            test, [scenario.claim] * CLAIM_COUNT, node_selector=selector, expect_unschedulable=True
        )
        assert volumes == []
        assert node is None
