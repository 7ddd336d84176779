"""Configuration for provisioning E2E runs.

Values come from an optional YAML file and are then overridden by
environment variables, so CI can tweak a run without editing files.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

DEFAULT_IMAGE = "busybox:latest"


@dataclass(frozen=True)
class Timeouts:
    """Polling interval and timeout budgets, in seconds."""

    poll: float = 2
    pod_start: float = 300
    pod_start_slow: float = 900
    pod_delete: float = 300
    claim_provision: float = 300
    claim_provision_short: float = 60
    pv_delete: float = 300
    pv_delete_slow: float = 1200
    pv_delete_poll: float = 5
    snapshot_create: float = 300
    snapshot_delete: float = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Timeouts":
        """Build timeouts from a partial mapping, keeping defaults for the rest.

        Raises:
            ConfigurationError: On unknown keys or non-positive values
        """
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown timeout keys: {sorted(unknown)}")

        values = {}
        for key, raw in data.items():
            try:
                value = float(raw)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"timeout {key}={raw!r} is not a number") from e
            if value <= 0:
                raise ConfigurationError(f"timeout {key} must be positive, got {value}")
            values[key] = value
        return cls(**values)


@dataclass(frozen=True)
class Platform:
    """Capabilities of the worker node operating system."""

    os_distro: str = "linux"
    # Windows nodes have no mount table the tester image can inspect
    has_mount_table: bool = True

    @classmethod
    def for_distro(cls, os_distro: str) -> "Platform":
        distro = (os_distro or "linux").lower()
        return cls(os_distro=distro, has_mount_table=distro != "windows")


@dataclass(frozen=True)
class E2EConfig:
    """Settings shared by every scenario of a run."""

    namespace: str = "default"
    kubeconfig: str | None = None
    image: str = DEFAULT_IMAGE
    platform: Platform = field(default_factory=Platform)
    timeouts: Timeouts = field(default_factory=Timeouts)
    driver_config: str | None = None
    # Raw API path of the kube-controller-manager metrics, if reachable
    controller_manager_metrics: str | None = None


def load_config(path: str | Path | None = None, env: dict[str, str] | None = None) -> E2EConfig:
    """Load the run configuration.

    Args:
        path: Optional YAML file with keys namespace, kubeconfig, image,
            nodeOSDistro, driverConfig, controllerManagerMetricsPath and
            timeouts
        env: Environment to read overrides from (defaults to os.environ)

    Returns:
        E2EConfig with file values and environment overrides applied
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}

    if path:
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(f"cannot read config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"config file {path} must contain a mapping")

    os_distro = env.get("E2E_NODE_OS_DISTRO") or data.get("nodeOSDistro", "linux")

    return E2EConfig(
        namespace=env.get("TEST_NAMESPACE") or data.get("namespace", "default"),
        kubeconfig=env.get("KUBECONFIG") or data.get("kubeconfig"),
        image=env.get("E2E_TEST_IMAGE") or data.get("image", DEFAULT_IMAGE),
        platform=Platform.for_distro(os_distro),
        timeouts=Timeouts.from_dict(data.get("timeouts")),
        driver_config=env.get("E2E_DRIVER_CONFIG") or data.get("driverConfig"),
        controller_manager_metrics=env.get("E2E_CONTROLLER_MANAGER_METRICS")
        or data.get("controllerManagerMetricsPath"),
    )
