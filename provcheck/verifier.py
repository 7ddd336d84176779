"""Cross-checks of a bound volume against its claim and storage class."""

from .errors import InvariantViolation
from .quantity import parse_quantity
from .resources import RECLAIM_DELETE, Claim, StorageClass, Volume


def _check(resource: str, prop: str, expected, actual) -> None:
    if expected != actual:
        raise InvariantViolation(resource, prop, expected, actual)


def verify_provisioned_volume(
    volume: Volume,
    claim: Claim,
    storage_class: StorageClass | None,
    expected_size: str,
    claim_size: str,
) -> None:
    """Verify the volume bound to a claim has the properties it should.

    Args:
        volume: Volume bound to the claim
        claim: Freshly fetched claim
        storage_class: Class the claim was provisioned from, or None if the
            platform default was used implicitly
        expected_size: Capacity the volume must report
        claim_size: Size originally requested by the claim

    Raises:
        InvariantViolation: On the first property that does not match
    """
    pv = f"volume {volume.name}"

    _check(
        pv,
        "capacity",
        parse_quantity(expected_size),
        parse_quantity(volume.capacity or "0"),
    )
    _check(
        f"claim {claim.key}",
        "requested capacity",
        parse_quantity(claim_size),
        parse_quantity(claim.requested_storage or "0"),
    )

    # Every access mode of the volume must have been asked for by the claim
    if not volume.access_modes:
        raise InvariantViolation(pv, "access modes", "at least one mode", [])
    extra = [mode for mode in volume.access_modes if mode not in claim.access_modes]
    if extra:
        raise InvariantViolation(
            pv,
            "access modes (subset of claim modes)",
            claim.access_modes,
            volume.access_modes,
        )

    _check(pv, "claimRef.name", claim.name, volume.claim_ref_name)
    _check(pv, "claimRef.namespace", claim.namespace, volume.claim_ref_namespace)

    if storage_class is None:
        _check(pv, "reclaim policy", RECLAIM_DELETE, volume.reclaim_policy)
    else:
        _check(pv, "reclaim policy", storage_class.reclaim_policy, volume.reclaim_policy)
        _check(pv, "mount options", storage_class.mount_options, volume.mount_options)

    if claim.volume_mode:
        _check(pv, "volume mode", claim.volume_mode, volume.volume_mode)
