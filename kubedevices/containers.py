"""Resource quantities and validation of extended resources requested by containers."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from fractions import Fraction

_DECIMAL_SI = "DecimalSI"
_BINARY_SI = "BinarySI"
_DECIMAL_EXPONENT = "DecimalExponent"

_BINARY_SUFFIXES = {"Ki": 10, "Mi": 20, "Gi": 30, "Ti": 40, "Pi": 50, "Ei": 60}
_DECIMAL_SUFFIXES = {"n": -9, "u": -6, "m": -3, "": 0, "k": 3, "M": 6, "G": 9, "T": 12, "P": 15, "E": 18}
_DECIMAL_BY_EXPONENT = {exp: suffix for suffix, exp in _DECIMAL_SUFFIXES.items()}
_BINARY_BY_EXPONENT = ["", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei"]

_QUANTITY = re.compile(r"([+-]?)([0-9]+(?:\.[0-9]*)?|\.[0-9]+)(.*)")
_EXPONENT = re.compile(r"[eE]([+-]?[0-9]+)")
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1


class ResourceError(ValueError):
    """Raised for malformed quantities or invalid container resource requests."""


@dataclass(frozen=True)
class Quantity:
    """An exact resource amount together with the notation it is written in."""

    value: Fraction
    fmt: str = field(default=_DECIMAL_SI, compare=False)

    def as_int(self) -> int | None:
        """The amount as an integer, or None if it is fractional or exceeds 64 bits."""
        if self.value.denominator != 1:
            return None
        number = self.value.numerator
        return number if _INT64_MIN <= number <= _INT64_MAX else None

    def __str__(self) -> str:
        if self.fmt == _BINARY_SI and self.value.denominator == 1:
            return format_binary_si(self.value.numerator)
        return _format_decimal(self.value, exponent=self.fmt == _DECIMAL_EXPONENT)


def parse_quantity(text: str) -> Quantity:
    """Parse a quantity such as ``"1"``, ``"100m"``, ``"2Ki"`` or ``"1e3"``."""
    match = _QUANTITY.fullmatch(text)
    if not match:
        raise ResourceError(f"quantities must match the regular expression: {text!r}")
    sign, number, suffix = match.groups()
    amount = Fraction(number.rstrip(".") or "0")
    if sign == "-":
        amount = -amount

    if suffix in _BINARY_SUFFIXES:
        return Quantity(amount * 2 ** _BINARY_SUFFIXES[suffix], _BINARY_SI)
    if suffix in _DECIMAL_SUFFIXES:
        return Quantity(amount * Fraction(10) ** _DECIMAL_SUFFIXES[suffix], _DECIMAL_SI)
    exponent = _EXPONENT.fullmatch(suffix)
    if exponent:
        return Quantity(amount * Fraction(10) ** int(exponent.group(1)), _DECIMAL_EXPONENT)
    raise ResourceError(f"unable to parse quantity's suffix: {text!r}")


def _format_decimal(value: Fraction, exponent: bool = False) -> str:
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    mantissa = math.ceil(abs(value) * 10**9)
    power = -9
    while mantissa % 1000 == 0 and power < 18:
        mantissa //= 1000
        power += 3
    if exponent:
        suffix = f"e{power}" if power else ""
    else:
        suffix = _DECIMAL_BY_EXPONENT[power]
    return f"{sign}{mantissa}{suffix}"


def format_binary_si(value: int) -> str:
    """Canonical binary-SI text for an integer amount, e.g. 2048 -> ``"2Ki"``."""
    if -1024 < value < 1024:
        return str(value)
    mantissa, power = value, 0
    while mantissa % 1024 == 0 and power < len(_BINARY_BY_EXPONENT) - 1:
        mantissa //= 1024
        power += 1
    return f"{mantissa}{_BINARY_BY_EXPONENT[power]}"


@dataclass
class Container:
    """A container's name and its resource limits and requests."""

    name: str = ""
    limits: dict[str, Quantity] = field(default_factory=dict)
    requests: dict[str, Quantity] = field(default_factory=dict)


def _overcommit_error(name: str) -> ResourceError:
    return ResourceError(
        f"'limits' and 'requests' for \"{name}\" must be equal as extended resources "
        "cannot be overcommitted"
    )


def get_requested_resources(container: Container, namespace: str) -> dict[str, int]:
    """Validate the container's resources under ``namespace`` and return their amounts."""
    for name, quantity in container.requests.items():
        lowered = name.lower()
        if lowered.startswith(namespace) and container.limits.get(name) != quantity:
            raise _overcommit_error(lowered)

    resources: dict[str, int] = {}
    for name, quantity in container.limits.items():
        lowered = name.lower()
        if not lowered.startswith(namespace):
            continue
        if container.requests.get(name) != quantity:
            raise _overcommit_error(lowered)
        amount = quantity.as_int()
        if amount is None:
            raise ResourceError(f"resource quantity isn't of integral type for \"{lowered}\"")
        resources[lowered] = amount
    return resources