# Dynamic provisioning E2E verification
"""Core infrastructure for provisioning E2E runs."""

from .config import E2EConfig, Platform, Timeouts, load_config
from .driver import Capability, DriverInfo, TestPattern, load_driver
from .k8s_client import K8sClient
from .provisioning import Phase, ProvisioningRun, ProvisioningTest
from .resource_tracker import ResourceTracker, ResourceType
from .scenario import ScenarioContext, build_scenario

__all__ = [
    "Capability",
    "DriverInfo",
    "E2EConfig",
    "K8sClient",
    "Phase",
    "Platform",
    "ProvisioningRun",
    "ProvisioningTest",
    "ResourceTracker",
    "ResourceType",
    "ScenarioContext",
    "TestPattern",
    "Timeouts",
    "build_scenario",
    "load_config",
    "load_driver",
]
