"""Identifier extraction for loosely typed JSON records."""

import math
import re
from typing import Any

from recordsync.errors import IdentifierError

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_INTEGER_STRING = re.compile(r"[+-]?[0-9]+")


def extract_identifier(record: dict[str, Any], field: str = "id") -> int:
    """
    Resolve the 64-bit integer identifier of a record.

    Accepted representations are integers, decimal integer strings and finite
    floats. Floats are truncated toward zero, which is how JSON numbers decoded
    as floating point values are treated upstream.

    Args:
        record: Record mapping as decoded from the remote source
        field: Name of the identifier field

    Returns:
        The identifier as a Python int within the int64 range

    Raises:
        IdentifierError: If the field is missing, has an unsupported type,
            cannot be parsed, or does not fit in 64 bits
    """
    if not isinstance(record, dict):
        raise IdentifierError(f"record is not a mapping: {type(record).__name__}")

    if field not in record:
        raise IdentifierError(f"field '{field}' not found")

    raw = record[field]

    # bool is a subclass of int and must not pass as an identifier
    if isinstance(raw, bool):
        raise IdentifierError(f"unsupported type for field '{field}': bool")

    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        if not math.isfinite(raw):
            raise IdentifierError(f"non-finite value for field '{field}': {raw!r}")
        value = int(raw)
    elif isinstance(raw, str):
        if not _INTEGER_STRING.fullmatch(raw):
            raise IdentifierError(f"cannot convert string {raw!r} to int64")
        value = int(raw, 10)
    else:
        raise IdentifierError(f"unsupported type for field '{field}': {type(raw).__name__}")

    if not INT64_MIN <= value <= INT64_MAX:
        raise IdentifierError(f"value {raw!r} for field '{field}' is out of int64 range")

    return value
