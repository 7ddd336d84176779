"""Typed views over claim, volume and storage class objects.

The control plane speaks JSON; these dataclasses pull out the fields the
verification workflow reasons about and keep the raw object for reporting.
"""

import copy
from dataclasses import dataclass, field

CLAIM_PENDING = "Pending"
CLAIM_BOUND = "Bound"
CLAIM_LOST = "Lost"

RECLAIM_DELETE = "Delete"
RECLAIM_RETAIN = "Retain"
RECLAIM_RECYCLE = "Recycle"

BINDING_IMMEDIATE = "Immediate"
BINDING_WAIT_FOR_FIRST_CONSUMER = "WaitForFirstConsumer"

VOLUME_MODE_FILESYSTEM = "Filesystem"
VOLUME_MODE_BLOCK = "Block"

DEFAULT_CLASS_ANNOTATIONS = (
    "storageclass.kubernetes.io/is-default-class",
    "storageclass.beta.kubernetes.io/is-default-class",
)


@dataclass
class Claim:
    """A PersistentVolumeClaim as last observed on the server."""

    name: str
    namespace: str
    phase: str
    volume_name: str | None
    storage_class_name: str | None
    access_modes: list[str]
    requested_storage: str | None
    volume_mode: str | None = None
    data_source: dict | None = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_manifest(cls, obj: dict) -> "Claim":
        metadata = obj.get("metadata", {})
        spec = obj.get("spec", {})
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            phase=obj.get("status", {}).get("phase", CLAIM_PENDING),
            volume_name=spec.get("volumeName") or None,
            storage_class_name=spec.get("storageClassName"),
            access_modes=list(spec.get("accessModes", [])),
            requested_storage=spec.get("resources", {}).get("requests", {}).get("storage"),
            volume_mode=spec.get("volumeMode"),
            data_source=spec.get("dataSource"),
            raw=obj,
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class Volume:
    """A PersistentVolume as last observed on the server."""

    name: str
    capacity: str | None
    access_modes: list[str]
    reclaim_policy: str
    mount_options: list[str]
    volume_mode: str | None
    claim_ref_name: str | None
    claim_ref_namespace: str | None
    phase: str | None = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_manifest(cls, obj: dict) -> "Volume":
        spec = obj.get("spec", {})
        claim_ref = spec.get("claimRef") or {}
        return cls(
            name=obj.get("metadata", {}).get("name", ""),
            capacity=spec.get("capacity", {}).get("storage"),
            access_modes=list(spec.get("accessModes", [])),
            reclaim_policy=spec.get("persistentVolumeReclaimPolicy", RECLAIM_DELETE),
            mount_options=list(spec.get("mountOptions") or []),
            volume_mode=spec.get("volumeMode"),
            claim_ref_name=claim_ref.get("name"),
            claim_ref_namespace=claim_ref.get("namespace"),
            phase=obj.get("status", {}).get("phase"),
            raw=obj,
        )


@dataclass
class StorageClass:
    """A StorageClass as resolved on the server."""

    name: str
    provisioner: str
    reclaim_policy: str = RECLAIM_DELETE
    volume_binding_mode: str = BINDING_IMMEDIATE
    mount_options: list[str] = field(default_factory=list)
    parameters: dict[str, str] = field(default_factory=dict)
    allow_volume_expansion: bool = False
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_manifest(cls, obj: dict) -> "StorageClass":
        return cls(
            name=obj.get("metadata", {}).get("name", ""),
            provisioner=obj.get("provisioner", ""),
            reclaim_policy=obj.get("reclaimPolicy") or RECLAIM_DELETE,
            volume_binding_mode=obj.get("volumeBindingMode") or BINDING_IMMEDIATE,
            mount_options=list(obj.get("mountOptions") or []),
            parameters=dict(obj.get("parameters") or {}),
            allow_volume_expansion=bool(obj.get("allowVolumeExpansion", False)),
            raw=obj,
        )

    @property
    def is_default(self) -> bool:
        annotations = self.raw.get("metadata", {}).get("annotations") or {}
        return any(annotations.get(a) == "true" for a in DEFAULT_CLASS_ANNOTATIONS)


def make_claim(
    namespace: str,
    claim_size: str,
    storage_class_name: str | None = None,
    volume_mode: str | None = None,
    access_modes: list[str] | None = None,
    generate_name: str = "pvc-",
    data_source: dict | None = None,
) -> dict:
    """Build a PersistentVolumeClaim manifest.

    Args:
        namespace: Claim namespace
        claim_size: Requested storage (e.g., "1Gi")
        storage_class_name: StorageClass name (None uses the platform default)
        volume_mode: Filesystem or Block (None leaves it to the platform)
        access_modes: Access modes (defaults to ReadWriteOnce)
        generate_name: Name prefix, the server appends a random suffix
        data_source: Optional dataSource for cloning or snapshot restore

    Returns:
        Claim manifest
    """
    spec: dict = {
        "accessModes": list(access_modes or ["ReadWriteOnce"]),
        "resources": {"requests": {"storage": claim_size}},
    }
    if storage_class_name is not None:
        spec["storageClassName"] = storage_class_name
    if volume_mode:
        spec["volumeMode"] = volume_mode
    if data_source:
        spec["dataSource"] = copy.deepcopy(data_source)

    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"generateName": generate_name, "namespace": namespace},
        "spec": spec,
    }


def with_data_source(claim: dict, data_source: dict | None) -> dict:
    """Return a copy of a claim manifest populated from a data source."""
    updated = copy.deepcopy(claim)
    if data_source:
        updated["spec"]["dataSource"] = copy.deepcopy(data_source)
    else:
        updated["spec"].pop("dataSource", None)
    return updated
