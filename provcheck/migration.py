"""Checks that volume operations took the expected code path.

A driver that replaces a legacy in-tree plugin may have its operations
migrated to it. Whether that happened is visible in the storage operation
metrics: migrated operations carry migrated="true". Counts captured before a
scenario are compared with counts after it. The counts come from the
kubelet of every node and, when configured, from kube-controller-manager.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field

from .errors import InvariantViolation

logger = logging.getLogger(__name__)

OPERATION_METRIC = "storage_operation_duration_seconds_count"
MIGRATED_PLUGINS_ANNOTATION = "storage.alpha.kubernetes.io/migrated-plugins"
KUBELET_METRICS_PATH = "/api/v1/nodes/{node}/proxy/metrics"

_SAMPLE_RE = re.compile(r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(?P<labels>[^}]*)\})?\s+(?P<value>\S+)")
_LABEL_RE = re.compile(r'([a-zA-Z_][a-zA-Z0-9_]*)="((?:[^"\\]|\\.)*)"')


def parse_samples(text: str, metric: str = OPERATION_METRIC) -> list[tuple[dict[str, str], float]]:
    """Extract the samples of one metric from Prometheus text exposition."""
    samples = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = _SAMPLE_RE.match(line)
        if not match or match.group("name") != metric:
            continue
        labels = dict(_LABEL_RE.findall(match.group("labels") or ""))
        try:
            value = float(match.group("value"))
        except ValueError:
            continue
        samples.append((labels, value))
    return samples


def split_op_counts(samples, plugin_name: str) -> tuple[Counter, Counter]:
    """Split operation counts into (legacy, migrated), keyed by operation name."""
    legacy: Counter = Counter()
    migrated: Counter = Counter()
    for labels, value in samples:
        op = labels.get("operation_name", "")
        if labels.get("migrated") == "true":
            migrated[op] += value
        elif labels.get("volume_plugin") == plugin_name:
            legacy[op] += value
    return legacy, migrated


def kubelet_metrics_paths(k8s) -> list[str]:
    """Raw API paths of the kubelet metrics of every node."""
    return [
        KUBELET_METRICS_PATH.format(node=node["metadata"]["name"])
        for node in k8s.list_resources("node")
    ]


def is_migration_enabled(k8s, plugin_name: str) -> bool:
    """True if any node reports the plugin as migrated."""
    for csinode in k8s.list_resources("csinode"):
        annotations = csinode.get("metadata", {}).get("annotations") or {}
        plugins = annotations.get(MIGRATED_PLUGINS_ANNOTATION, "")
        if plugin_name in [p.strip() for p in plugins.split(",")]:
            return True
    return False


@dataclass
class MigrationOpCheck:
    """Operation counts captured at scenario start, validated at close.

    Without an in-tree plugin name there is nothing to compare and every
    method is a no-op. The metrics paths are fixed at start so both counts
    cover the same components.
    """

    k8s: object
    plugin_name: str = ""
    controller_manager_metrics: str | None = None
    metrics_paths: tuple[str, ...] = ()
    migration_enabled: bool = False
    legacy_before: Counter = field(default_factory=Counter)
    migrated_before: Counter = field(default_factory=Counter)

    def _op_counts(self) -> tuple[Counter, Counter]:
        legacy: Counter = Counter()
        migrated: Counter = Counter()
        for path in self.metrics_paths:
            samples = parse_samples(self.k8s.get_raw(path))
            path_legacy, path_migrated = split_op_counts(samples, self.plugin_name)
            legacy.update(path_legacy)
            migrated.update(path_migrated)
        return legacy, migrated

    def start(self) -> "MigrationOpCheck":
        if not self.plugin_name:
            return self
        paths = kubelet_metrics_paths(self.k8s)
        if self.controller_manager_metrics:
            paths.append(self.controller_manager_metrics)
        self.metrics_paths = tuple(paths)
        self.migration_enabled = is_migration_enabled(self.k8s, self.plugin_name)
        self.legacy_before, self.migrated_before = self._op_counts()
        logger.info(
            "captured operation counts for plugin %s from %d metrics endpoint(s) "
            "(migration enabled: %s)",
            self.plugin_name,
            len(self.metrics_paths),
            self.migration_enabled,
        )
        return self

    def validate(self) -> None:
        """Check the counts of the path that must not have been used.

        Raises:
            InvariantViolation: If operations went through that path
        """
        if not self.plugin_name:
            return
        legacy_after, migrated_after = self._op_counts()
        if self.migration_enabled:
            before, after, path = self.legacy_before, legacy_after, "legacy"
        else:
            before, after, path = self.migrated_before, migrated_after, "migrated"

        for op in sorted(set(before) | set(after)):
            if after[op] != before[op]:
                raise InvariantViolation(
                    f"plugin {self.plugin_name}",
                    f"{path} {op} operation count",
                    before[op],
                    after[op],
                )
