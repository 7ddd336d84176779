"""Capacity quantities and size-range reconciliation.

Parses Kubernetes quantity strings ("1Gi", "500M", "1e3") to integral byte
counts and picks a claim size valid for both the suite and the driver.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal, InvalidOperation, localcontext

from .errors import ConfigurationError

MIN_VALID_SIZE = "1Ki"
MAX_VALID_SIZE = "10Ei"

BINARY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}

DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal(10**3),
    "M": Decimal(10**6),
    "G": Decimal(10**9),
    "T": Decimal(10**12),
    "P": Decimal(10**15),
    "E": Decimal(10**18),
}

_QUANTITY_RE = re.compile(
    r"^([+-]?(?:\d+\.?\d*|\.\d+))"
    r"(?:(Ki|Mi|Gi|Ti|Pi|Ei|n|u|m|k|M|G|T|P|E)|[eE]([+-]?\d+))?$"
)


def parse_quantity(value: str) -> int:
    """Parse a quantity string to its integral value.

    Fractional results are rounded up, the same way the platform reports
    ``Quantity.Value()``.

    Args:
        value: Quantity string (e.g., "1Gi", "500Mi", "1.5G", "1e6")

    Returns:
        Value in base units (bytes for storage)

    Raises:
        ConfigurationError: If the string is not a valid quantity
    """
    match = _QUANTITY_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ConfigurationError(f"invalid quantity {value!r}")

    number, suffix, exponent = match.groups()
    with localcontext() as ctx:
        ctx.prec = 60
        try:
            amount = Decimal(number)
        except InvalidOperation as e:
            raise ConfigurationError(f"invalid quantity {value!r}") from e

        if exponent is not None:
            amount = amount.scaleb(int(exponent))
        elif suffix in BINARY_SUFFIXES:
            amount *= BINARY_SUFFIXES[suffix]
        else:
            amount *= DECIMAL_SUFFIXES[suffix or ""]

        return int(amount.to_integral_value(rounding=ROUND_CEILING))


def format_binary_si(value: int) -> str:
    """Format a byte count using the largest exact binary suffix."""
    for suffix, multiplier in reversed(BINARY_SUFFIXES.items()):
        if value >= multiplier and value % multiplier == 0:
            return f"{value // multiplier}{suffix}"
    return str(value)


@dataclass(frozen=True)
class SizeRange:
    """Closed interval of quantity strings. Empty bounds are open-ended."""

    min: str = ""
    max: str = ""


def get_size_ranges_intersection(first: SizeRange, second: SizeRange) -> str:
    """Pick a claim size that lies within both ranges.

    Args:
        first: Range supported by the test suite
        second: Range supported by the driver

    Returns:
        The smallest size of the intersection, in binary SI form

    Raises:
        ConfigurationError: If the ranges do not overlap
    """
    first_min = parse_quantity(first.min or MIN_VALID_SIZE)
    first_max = parse_quantity(first.max or MAX_VALID_SIZE)
    second_min = parse_quantity(second.min or MIN_VALID_SIZE)
    second_max = parse_quantity(second.max or MAX_VALID_SIZE)

    start = max(first_min, second_min)
    end = min(first_max, second_max)
    if end < start:
        raise ConfigurationError(
            f"intersection of size ranges {first}, {second} is null"
        )
    return format_binary_si(start)
