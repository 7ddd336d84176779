"""Driver descriptors and test patterns.

A driver descriptor says what a storage driver can do. Scenarios consult it
before running so an unsupported path is skipped or rejected up front rather
than failing half way through.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError
from .quantity import SizeRange
from .resources import BINDING_IMMEDIATE, RECLAIM_DELETE, VOLUME_MODE_BLOCK, VOLUME_MODE_FILESYSTEM

FS_TYPE_PARAMETER = "csi.storage.k8s.io/fstype"


class Capability(str, Enum):
    """Optional driver features."""

    PERSISTENCE = "persistence"
    BLOCK = "block"
    EXEC = "exec"
    SNAPSHOT_DATA_SOURCE = "snapshotDataSource"
    PVC_DATA_SOURCE = "pvcDataSource"
    TOPOLOGY = "topology"
    MULTI_PODS = "multipods"


@dataclass(frozen=True)
class TestPattern:
    """A volume flavour a scenario is run against."""

    __test__ = False

    name: str
    volume_mode: str = VOLUME_MODE_FILESYSTEM
    fs_type: str = ""


DEFAULT_FS_DYNAMIC_PV = TestPattern("Dynamic PV (default fs)")
BLOCK_VOLUME_MODE_DYNAMIC_PV = TestPattern("Dynamic PV (block volmode)", VOLUME_MODE_BLOCK)
NTFS_DYNAMIC_PV = TestPattern("Dynamic PV (ntfs)", fs_type="ntfs")

DEFAULT_PATTERNS = [DEFAULT_FS_DYNAMIC_PV, BLOCK_VOLUME_MODE_DYNAMIC_PV, NTFS_DYNAMIC_PV]


@dataclass
class DriverInfo:
    """What a storage driver supports.

    Attributes:
        name: Driver name, used in messages and generated resource names
        provisioner: Provisioner of the dynamic storage class
        capabilities: Supported optional features
        supported_size_range: Claim sizes the driver accepts
        supported_fs_types: Filesystem types; "" stands for the default
        supported_mount_options: Mount options the driver accepts
        required_mount_options: Mount options the driver always applies
        topology_keys: Node labels that delimit topology segments
        in_tree_plugin_name: Legacy plugin the driver replaces, if any
        parameters: StorageClass parameters
        volume_binding_mode: StorageClass binding mode
        snapshot_class: VolumeSnapshotClass used for snapshot sources
    """

    name: str
    provisioner: str = ""
    capabilities: set[Capability] = field(default_factory=set)
    supported_size_range: SizeRange = field(default_factory=SizeRange)
    supported_fs_types: set[str] = field(default_factory=lambda: {""})
    supported_mount_options: set[str] = field(default_factory=set)
    required_mount_options: set[str] = field(default_factory=set)
    topology_keys: list[str] = field(default_factory=list)
    in_tree_plugin_name: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    volume_binding_mode: str = BINDING_IMMEDIATE
    snapshot_class: str | None = None

    def __post_init__(self):
        if not self.provisioner:
            self.provisioner = self.name

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DriverInfo":
        """Build a descriptor from its YAML form.

        Raises:
            ConfigurationError: If the name is missing or a capability is unknown
        """
        if not data or not data.get("name"):
            raise ConfigurationError("driver descriptor must have a name")

        capabilities = set()
        for cap, enabled in (data.get("capabilities") or {}).items():
            try:
                capability = Capability(cap)
            except ValueError as e:
                raise ConfigurationError(f"unknown driver capability {cap!r}") from e
            if enabled:
                capabilities.add(capability)

        size_range = data.get("supportedSizeRange") or {}
        fs_types = data.get("supportedFsType")
        return cls(
            name=data["name"],
            provisioner=data.get("provisioner", ""),
            capabilities=capabilities,
            supported_size_range=SizeRange(
                min=str(size_range.get("min", "")), max=str(size_range.get("max", ""))
            ),
            supported_fs_types=set(fs_types) if fs_types is not None else {""},
            supported_mount_options=set(data.get("supportedMountOption") or []),
            required_mount_options=set(data.get("requiredMountOption") or []),
            topology_keys=list(data.get("topologyKeys") or []),
            in_tree_plugin_name=data.get("inTreePluginName", ""),
            parameters={k: str(v) for k, v in (data.get("parameters") or {}).items()},
            volume_binding_mode=data.get("volumeBindingMode", BINDING_IMMEDIATE),
            snapshot_class=data.get("snapshotClass"),
        )

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        """Raise ConfigurationError unless the driver has a capability."""
        if capability not in self.capabilities:
            raise ConfigurationError(
                f"driver {self.name!r} does not support {capability.value}"
            )

    def mount_options(self) -> list[str]:
        """Union of supported and required mount options, sorted."""
        return sorted(self.supported_mount_options | self.required_mount_options)

    def dynamic_storage_class(self, namespace: str, fs_type: str = "") -> dict:
        """Build the StorageClass this driver provisions from in a namespace.

        The name is derived from the namespace so concurrent runs do not share
        a class.
        """
        parameters = dict(self.parameters)
        if fs_type:
            parameters[FS_TYPE_PARAMETER] = fs_type
        suffix = re.sub(r"[^a-z0-9-]", "-", self.name.lower()).strip("-")
        return {
            "apiVersion": "storage.k8s.io/v1",
            "kind": "StorageClass",
            "metadata": {"name": f"{namespace}-{suffix}-sc"},
            "provisioner": self.provisioner,
            "parameters": parameters,
            "reclaimPolicy": RECLAIM_DELETE,
            "volumeBindingMode": self.volume_binding_mode,
        }


def load_driver(path: str | Path) -> DriverInfo:
    """Load a driver descriptor from a YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read driver file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in driver file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"driver file {path} must contain a mapping")
    return DriverInfo.from_dict(data)


def unsupported_reason(driver: DriverInfo, pattern: TestPattern) -> str | None:
    """Return why a pattern cannot run against a driver, or None if it can."""
    if pattern.volume_mode == VOLUME_MODE_BLOCK and not driver.supports(Capability.BLOCK):
        return f"driver {driver.name} doesn't support {pattern.volume_mode}"
    if pattern.fs_type not in driver.supported_fs_types:
        return f"driver {driver.name} doesn't support {pattern.fs_type!r} fs type"
    return None
