"""Clone and snapshot data source tests."""

import pytest

from provcheck.config import Timeouts
from provcheck.data_source import (
    SNAPSHOT_API_GROUP,
    content_check,
    create_snapshot,
    inject_command,
    prepare_pvc_data_source,
    prepare_snapshot_data_source,
    verify_command,
)
from provcheck.errors import PodFailedError, WaitTimeoutError
from provcheck.provisioning import ProvisioningTest
from provcheck.resources import VOLUME_MODE_BLOCK, make_claim, with_data_source

from tests.fake_cluster import FakeCluster


def source_claim(volume_mode: str | None = None) -> dict:
    return make_claim("e2e", "1Gi", volume_mode=volume_mode, generate_name="pvc-source-")


def clone_test(
    cluster: FakeCluster, timeouts: Timeouts, reference: dict, content: str, **kwargs
) -> ProvisioningTest:
    volume_mode = kwargs.pop("volume_mode", None)
    claim = with_data_source(make_claim("e2e", "1Gi", volume_mode=volume_mode), reference)
    return ProvisioningTest(
        client=cluster,
        claim=claim,
        storage_class=None,
        claim_size="1Gi",
        expected_size="1Gi",
        timeouts=timeouts,
        pv_check=content_check(cluster, timeouts, content, volume_mode),
        **kwargs,
    )


class TestCommands:
    def test_filesystem(self):
        """Filesystem content goes to index.html and is matched whole."""
        assert inject_command("hello") == "echo 'hello' > /mnt/test/index.html"
        assert verify_command("hello") == "grep -Fx 'hello' /mnt/test/index.html"

    def test_block(self):
        """Block content is written to and read from the raw device."""
        assert inject_command("hello", VOLUME_MODE_BLOCK).startswith("echo 'hello' | dd of=/mnt/test ")
        assert verify_command("hello", VOLUME_MODE_BLOCK).endswith("| grep -F 'hello'")

    def test_quotes_are_escaped(self):
        """Single quotes in content survive the shell."""
        assert inject_command("it's") == "echo 'it'\\''s' > /mnt/test/index.html"


class TestPvcDataSource:
    def test_clone_has_content(self, cluster: FakeCluster, timeouts: Timeouts):
        """A clone carries the source claim's content."""
        reference, cleanup = prepare_pvc_data_source(
            cluster, timeouts, source_claim(), None, "hello clone"
        )
        assert reference["kind"] == "PersistentVolumeClaim"
        assert reference["name"].startswith("pvc-source-")

        clone_test(cluster, timeouts, reference, "hello clone").run()

        [injector, client] = cluster.called("create", "pod")
        assert injector.startswith("inject-")
        assert client.startswith("client-")

        cleanup()
        assert cluster.objects("pvc") == []
        assert cluster.objects("pod") == []

    def test_clone_without_content_fails(self, cluster: FakeCluster, timeouts: Timeouts):
        """Verifying content the source never had fails."""
        reference, cleanup = prepare_pvc_data_source(
            cluster, timeouts, source_claim(), None, "hello clone"
        )
        with pytest.raises(PodFailedError):
            clone_test(cluster, timeouts, reference, "something else").run()
        cleanup()
        assert cluster.objects("pvc") == []

    def test_block_mode(self, cluster: FakeCluster, timeouts: Timeouts):
        """Raw block sources are cloned as block volumes."""
        reference, cleanup = prepare_pvc_data_source(
            cluster, timeouts, source_claim(VOLUME_MODE_BLOCK), None, "raw", VOLUME_MODE_BLOCK
        )
        run = clone_test(cluster, timeouts, reference, "raw", volume_mode=VOLUME_MODE_BLOCK).run()
        assert run.volume.volume_mode == VOLUME_MODE_BLOCK
        cleanup()

    def test_existing_source_is_reused(self, cluster: FakeCluster, timeouts: Timeouts):
        """A source claim that already exists is not created again."""
        existing = cluster.create(source_claim())
        reference, cleanup = prepare_pvc_data_source(cluster, timeouts, existing, None, "x")

        assert reference["name"] == existing["metadata"]["name"]
        assert len(cluster.called("create", "pvc")) == 1
        cleanup()

    def test_created_class_is_removed(self, cluster: FakeCluster, timeouts: Timeouts):
        """A class created for the source is deleted by the cleanup."""
        manifest = {
            "apiVersion": "storage.k8s.io/v1",
            "kind": "StorageClass",
            "metadata": {"name": "e2e-source-sc"},
            "provisioner": "fake.csi.example.com",
        }
        claim = make_claim("e2e", "1Gi", "e2e-source-sc", generate_name="pvc-source-")
        _, cleanup = prepare_pvc_data_source(cluster, timeouts, claim, manifest, "x")
        assert cluster.get("storageclass", "e2e-source-sc") is not None

        cleanup()
        assert cluster.get("storageclass", "e2e-source-sc") is None

    def test_failed_injection_releases_everything(
        self, cluster: FakeCluster, timeouts: Timeouts
    ):
        """A failed injection deletes the source claim and class."""
        manifest = {
            "apiVersion": "storage.k8s.io/v1",
            "kind": "StorageClass",
            "metadata": {"name": "e2e-source-sc"},
            "provisioner": "fake.csi.example.com",
        }
        claim = make_claim("e2e", "1Gi", "e2e-source-sc", generate_name="pvc-source-")
        cluster.fail_pod_prefixes.add("inject")

        with pytest.raises(PodFailedError):
            prepare_pvc_data_source(cluster, timeouts, claim, manifest, "x")
        assert cluster.objects("pvc") == []
        assert cluster.get("storageclass", "e2e-source-sc") is None


class TestSnapshotDataSource:
    def test_restore_has_content(self, cluster: FakeCluster, timeouts: Timeouts):
        """A volume restored from a snapshot carries the source content."""
        reference, cleanup = prepare_snapshot_data_source(
            cluster, timeouts, source_claim(), None, "hello snapshot", "csi-snapclass"
        )
        assert reference["apiGroup"] == SNAPSHOT_API_GROUP
        assert reference["kind"] == "VolumeSnapshot"

        [snapshot] = cluster.objects("volumesnapshot")
        assert snapshot["spec"]["volumeSnapshotClassName"] == "csi-snapclass"

        clone_test(cluster, timeouts, reference, "hello snapshot").run()

        cleanup()
        assert cluster.objects("volumesnapshot") == []
        assert cluster.objects("pvc") == []

    def test_snapshot_never_ready(self, cluster: FakeCluster, timeouts: Timeouts):
        """A snapshot that never becomes ready is deleted."""
        with pytest.raises(WaitTimeoutError, match="volumesnapshot"):
            create_snapshot(cluster, timeouts, "missing", "e2e")
        assert cluster.objects("volumesnapshot") == []
