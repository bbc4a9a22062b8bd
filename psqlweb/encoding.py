"""JSON encoding for database rows."""

from __future__ import annotations

import json
import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID


class RowJSONEncoder(json.JSONEncoder):
    """Encoder for the scalar types asyncpg hands back."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            # Keep full precision; floats would round NUMERIC values.
            return str(obj)
        if isinstance(obj, (datetime, date, time)):
            return obj.isoformat()
        if isinstance(obj, timedelta):
            return obj.total_seconds()
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return bytes(obj).hex()
        if isinstance(obj, (set, frozenset)):
            return list(obj)
        return super().default(obj)


def _finite(obj: Any) -> Any:
    """Replace NaN and infinite floats with ``None``, the way browsers serialize them."""

    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None
    if isinstance(obj, Mapping):
        return {key: _finite(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_finite(value) for value in obj]
    return obj


def dumps(obj: Any) -> str:
    return json.dumps(_finite(obj), cls=RowJSONEncoder, ensure_ascii=False, allow_nan=False)


def encode_record(record: Mapping[str, Any]) -> str:
    """Serialize one row as a newline-terminated JSON document."""

    return dumps(dict(record)) + "\n"


__all__ = ["RowJSONEncoder", "dumps", "encode_record"]
