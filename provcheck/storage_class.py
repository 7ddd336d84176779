"""Storage class setup.

Resolves the class a scenario provisions from: the platform default, an
existing class, or one created for the scenario and deleted afterwards.
"""

import logging
from typing import Callable

from .errors import AlreadyExistsError, ConfigurationError, NotFoundError
from .resources import StorageClass

logger = logging.getLogger(__name__)


def get_default_storage_class_name(k8s) -> str:
    """Return the name of the platform's default storage class.

    Raises:
        ConfigurationError: If there is no default class or more than one
    """
    defaults = [
        sc.name
        for sc in (StorageClass.from_manifest(obj) for obj in k8s.list_resources("storageclass"))
        if sc.is_default
    ]
    if not defaults:
        raise ConfigurationError("no default storage class found")
    if len(defaults) > 1:
        raise ConfigurationError(f"multiple default storage classes found: {sorted(defaults)}")
    return defaults[0]


def _fetch(k8s, name: str) -> StorageClass:
    obj = k8s.get("storageclass", name)
    if obj is None:
        raise NotFoundError("storage class disappeared", "storageclass", name)
    return StorageClass.from_manifest(obj)


def setup_storage_class(
    k8s, manifest: dict | None
) -> tuple[StorageClass, Callable[[], None]]:
    """Ensure a storage class exists.

    Args:
        k8s: K8sClient
        manifest: StorageClass manifest, or None to use the platform default

    Returns:
        Tuple of (resolved class, cleanup). The cleanup only deletes the class
        if this call created it; otherwise it does nothing.
    """

    def noop() -> None:
        pass

    if manifest is None:
        name = get_default_storage_class_name(k8s)
        logger.info("wanted storage class is nil, fetching default StorageClass=%s", name)
        return _fetch(k8s, name), noop

    name = manifest["metadata"]["name"]
    existing = k8s.get("storageclass", name)
    if existing is not None:
        logger.info("storage class %s is already created, skipping creation", name)
        return StorageClass.from_manifest(existing), noop

    logger.info("creating storage class %s", name)
    try:
        k8s.create(manifest)
    except AlreadyExistsError:
        # Lost a creation race; whoever won owns the class
        logger.info("storage class %s was created concurrently, reusing it", name)
        return _fetch(k8s, name), noop

    computed = _fetch(k8s, name)

    def cleanup() -> None:
        logger.info("deleting storage class %s", computed.name)
        k8s.delete("storageclass", computed.name, ignore_not_found=True)

    return computed, cleanup
