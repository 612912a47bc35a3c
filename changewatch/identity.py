"""
Deterministic external ids for extracted records.

The id is the only key the differ correlates on, so the hashing scheme must
never change: same identity values in, same id out, on every version.
"""

import hashlib
import json
from typing import Any, Mapping, Sequence

from .errors import DataError

SEPARATOR = "\x00"
ID_BYTES = 16


def canonical_value(value: Any) -> str:
    """Render an identity value as a stable string.

    Integral floats render as the int, so ``10`` and ``10.0`` share an id.
    """
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_external_id(record: Any, identity_fields: Sequence[str]) -> str:
    """Hash the identity field values of ``record`` in configured order.

    Raises DataError when the record is not an object or any identity field is
    missing, null or blank.
    """
    if not identity_fields:
        raise DataError("no identity fields configured")
    if not isinstance(record, Mapping):
        raise DataError(f"record is not an object: {type(record).__name__}")

    parts = []
    for field in identity_fields:
        value = record.get(field)
        if value is None:
            raise DataError(f"identity field '{field}' is missing")
        rendered = canonical_value(value)
        if not rendered:
            raise DataError(f"identity field '{field}' is empty")
        parts.append(rendered)

    digest = hashlib.sha256(SEPARATOR.join(parts).encode("utf-8")).digest()
    return digest[:ID_BYTES].hex()
