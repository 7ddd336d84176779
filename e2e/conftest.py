"""Fixtures shared by the live-cluster suites."""

import os

import pytest

from provcheck.config import E2EConfig
from provcheck.k8s_client import K8sClient
from provcheck.resource_tracker import ResourceType
from provcheck.resources import StorageClass
from provcheck.scenario import ScenarioContext
from provcheck.storage_class import setup_storage_class


@pytest.fixture
def class_factory(k8s: K8sClient, scenario: ScenarioContext):
    """Create a variant of the scenario's class, deleted when the scenario closes.

    Returns:
        Callable taking manifest overrides and returning (manifest, StorageClass)
    """

    def _create(**overrides) -> tuple[dict, StorageClass]:
        manifest = {**scenario.storage_class, **overrides}
        sc, cleanup = setup_storage_class(k8s, manifest)
        scenario.tracker.defer(cleanup, f"storage class {sc.name}", ResourceType.STORAGE_CLASS)
        return manifest, sc

    return _create


@pytest.fixture
def router_env(k8s: K8sClient, e2e_config: E2EConfig) -> dict[str, str]:
    """Router and exec pod names, taken from the environment."""
    env = {
        "namespace": os.environ.get("ROUTER_NAMESPACE") or e2e_config.namespace,
        "router_pod": os.environ.get("ROUTER_POD", ""),
        "exec_pod": os.environ.get("ROUTER_EXEC_POD", ""),
    }
    if not env["router_pod"] or not env["exec_pod"]:
        pytest.skip("ROUTER_POD and ROUTER_EXEC_POD must name a router and an exec pod")
    return env
