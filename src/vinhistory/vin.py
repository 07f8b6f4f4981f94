from __future__ import annotations

import re

from vinhistory.errors import InvalidVin

VIN_LENGTH = 17
_VIN_RE = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")


def normalize_vin(vin: str) -> str:
    return (vin or "").strip().upper()


def is_valid_vin(vin: str) -> bool:
    """True when ``vin`` is 17 characters of the VIN alphabet (no I, O or Q)."""
    return isinstance(vin, str) and bool(_VIN_RE.match(vin))


def validate_vin(vin: str) -> str:
    normalized = normalize_vin(vin)
    if not is_valid_vin(normalized):
        raise InvalidVin(vin)
    return normalized
