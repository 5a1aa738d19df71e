"""Size parsing and formatting helpers.

Sizes typed by the user follow ``numfmt --from=iec``: a bare number is a byte
count, a K/M/G/T/P/E suffix multiplies by powers of 1024. A trailing ``B`` or
``iB`` is tolerated so that "512MiB" and "512MB" mean the same as "512M".
"""
import re
from decimal import Decimal
from typing import Optional

from .exceptions import InvalidSizeInputError


KiB = 1024
MiB = 1024**2
GiB = 1024**3
TiB = 1024**4
# GPT addresses at most 2**64 sectors; no byte count beyond this is meaningful
MAX_SIZE_BYTES = 2**64 * 4096

_MULTIPLIERS = {
    "K": KiB,
    "M": MiB,
    "G": GiB,
    "T": TiB,
    "P": 1024**5,
    "E": 1024**6,
}

_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([KMGTPE])(?:I?B)?$", re.IGNORECASE)


def parse_size(text: str) -> int:
    """Convert a size string to a positive byte count.

    Raises:
        InvalidSizeInputError: If the string is empty, unparseable, zero or too large
    """
    if text is None:
        raise InvalidSizeInputError("", "empty")
    value = str(text).strip()
    if not value:
        raise InvalidSizeInputError(value, "empty")

    if value.isascii() and value.isdigit():
        amount = Decimal(value)
    else:
        match = _SIZE_PATTERN.match(value)
        if not match:
            raise InvalidSizeInputError(value, "expected a byte count or K/M/G suffix")
        number, unit = match.groups()
        amount = Decimal(number) * _MULTIPLIERS[unit.upper()]

    if amount > MAX_SIZE_BYTES:
        raise InvalidSizeInputError(value, "size is too large")
    size = int(amount)

    if size <= 0:
        raise InvalidSizeInputError(value, "size must be greater than zero")
    return size


def parse_optional_size(text: Optional[str]) -> Optional[int]:
    """Like parse_size, but an empty answer means "not specified"."""
    if text is None or not str(text).strip():
        return None
    return parse_size(text)


def format_bytes(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KiB", "MiB", "GiB", "TiB"]:
        if abs(size) < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PiB"
