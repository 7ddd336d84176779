"""Pytest configuration and fixtures for provisioning E2E runs."""

import os
import uuid
from dataclasses import replace
from typing import Generator

import pytest

from provcheck.config import E2EConfig, load_config
from provcheck.driver import DEFAULT_FS_DYNAMIC_PV, DriverInfo, load_driver, unsupported_reason
from provcheck.k8s_client import K8sClient
from provcheck.resource_tracker import ResourceTracker
from provcheck.scenario import ScenarioContext, build_scenario


# -------------------------------------------------------------------------
# Configuration
# -------------------------------------------------------------------------


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options."""
    parser.addoption(
        "--namespace",
        action="store",
        default=os.environ.get("TEST_NAMESPACE"),
        help="Kubernetes namespace for tests",
    )
    parser.addoption(
        "--kubeconfig",
        action="store",
        default=os.environ.get("KUBECONFIG"),
        help="Path to kubeconfig file",
    )
    parser.addoption(
        "--e2e-config",
        action="store",
        default=os.environ.get("E2E_CONFIG"),
        help="YAML file with namespace, image, node OS and timeouts",
    )
    parser.addoption(
        "--driver-config",
        action="store",
        default=os.environ.get("E2E_DRIVER_CONFIG"),
        help="YAML file describing the storage driver under test",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow running")
    config.addinivalue_line("markers", "router: marks tests requiring an OpenShift router")


# -------------------------------------------------------------------------
# Session-scoped Fixtures
# -------------------------------------------------------------------------


@pytest.fixture(scope="session")
def e2e_config(request: pytest.FixtureRequest) -> E2EConfig:
    """Run configuration, with command line options taking precedence."""
    config = load_config(request.config.getoption("--e2e-config"))
    overrides = {}
    namespace = request.config.getoption("--namespace")
    if namespace:
        overrides["namespace"] = namespace
    kubeconfig = request.config.getoption("--kubeconfig")
    if kubeconfig:
        overrides["kubeconfig"] = kubeconfig
    driver_config = request.config.getoption("--driver-config")
    if driver_config:
        overrides["driver_config"] = driver_config
    if not overrides:
        return config
    return replace(config, **overrides)


@pytest.fixture(scope="session")
def k8s(e2e_config: E2EConfig) -> K8sClient:
    """K8s client for the test session."""
    client = K8sClient(namespace=e2e_config.namespace, kubeconfig=e2e_config.kubeconfig)

    # Verify cluster access
    if not client.cluster_info():
        pytest.skip("Cannot connect to Kubernetes cluster")

    return client


@pytest.fixture(scope="session")
def driver(e2e_config: E2EConfig) -> DriverInfo:
    """Descriptor of the storage driver under test."""
    if not e2e_config.driver_config:
        pytest.skip("No driver descriptor given (--driver-config)")
    return load_driver(e2e_config.driver_config)


# -------------------------------------------------------------------------
# Function-scoped Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def unique_name() -> str:
    """Generate unique resource names for this test."""
    return f"e2e-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def resource_tracker(
    k8s: K8sClient, e2e_config: E2EConfig
) -> Generator[ResourceTracker, None, None]:
    """Centralized resource tracker for coordinated cleanup.

    Cleanup happens in dependency order:
    1. Pods (release claim usage)
    2. Clone claims (depend on snapshots or source claims)
    3. Snapshots (depend on source claims)
    4. Source claims, retained volumes, data sources
    5. Storage classes
    """
    tracker = ResourceTracker(k8s, e2e_config.timeouts)
    yield tracker
    tracker.cleanup_all()


@pytest.fixture(params=[DEFAULT_FS_DYNAMIC_PV], ids=lambda p: p.name)
def pattern(request: pytest.FixtureRequest):
    """Volume flavour; suites override this fixture to run more patterns."""
    return request.param


@pytest.fixture
def scenario(
    k8s: K8sClient, e2e_config: E2EConfig, driver: DriverInfo, pattern
) -> Generator[ScenarioContext, None, None]:
    """Per-test scenario context, closed after the test."""
    reason = unsupported_reason(driver, pattern)
    if reason:
        pytest.skip(reason)
    ctx = build_scenario(k8s, e2e_config, driver, pattern)
    yield ctx
    ctx.close()


# -------------------------------------------------------------------------
# Reporting Hooks
# -------------------------------------------------------------------------


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo):
    """Enhance test reports with namespace events on failure."""
    outcome = yield
    report = outcome.get_result()

    if report.when == "call" and report.failed:
        k8s = getattr(item, "funcargs", {}).get("k8s")
        if not isinstance(k8s, K8sClient):
            return
        # Failure reporting must not mask the test failure
        try:
            events = k8s.get_events()
        except Exception as e:
            report.sections.append(("namespace events", f"could not fetch events: {e}"))
            return

        lines = []
        for event in events[-20:]:
            obj = event.get("involvedObject", {})
            lines.append(
                f"[{event.get('type', '')}] {obj.get('kind', '')}/{obj.get('name', '')}: "
                f"{event.get('reason', '')} {event.get('message', '')}"
            )
        if lines:
            report.sections.append(("namespace events", "\n".join(lines)))
