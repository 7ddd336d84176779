"""Fixtures for offline tests against the in-memory control plane."""

import pytest

from provcheck.config import Timeouts

from tests.fake_cluster import FakeCluster


@pytest.fixture
def cluster() -> FakeCluster:
    """Fresh fake cluster with two nodes and a default Immediate class."""
    fake = FakeCluster(namespace="e2e")
    fake.add_storage_class("standard", default=True)
    return fake


@pytest.fixture
def timeouts() -> Timeouts:
    """Budgets small enough that expected timeouts end quickly."""
    return Timeouts(
        poll=0.01,
        pod_start=1,
        pod_start_slow=1,
        pod_delete=1,
        claim_provision=1,
        claim_provision_short=0.05,
        pv_delete=1,
        pv_delete_slow=1,
        pv_delete_poll=0.01,
        snapshot_create=1,
        snapshot_delete=1,
    )
