# mortiscope/core/codec/serde.py
"""JSON codec for step outputs and run results.

Step outputs are stored as plain JSON and handed back to the workflow as plain
JSON on replay. To make a first execution indistinguishable from a replay,
`snapshot()` returns the same JSON form that a later replay would read.
"""

from __future__ import annotations
from typing import Any, Dict, List, Mapping, Sequence, Union, cast
import dataclasses
import datetime as dt
import json
from enum import Enum
from pydantic import BaseModel


Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be serialized to JSON.
    """

    pass


def to_jsonable(value: Any) -> Json:
    """
    Convert a step output to JSON.

    datetimes become ISO-8601 strings, enums their value, pydantic models and
    dataclasses plain objects. No type metadata is kept: steps return data,
    not objects.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    if isinstance(value, Enum):
        return to_jsonable(value.value)

    # datetime.datetime is a subclass of datetime.date
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()

    if isinstance(value, dt.timedelta):
        return value.total_seconds()

    if isinstance(value, BaseModel):
        return cast(Json, value.model_dump(mode='json'))

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            field.name: to_jsonable(getattr(value, field.name))
            for field in dataclasses.fields(value)
        }

    if isinstance(value, Mapping):
        mapping = cast(Mapping[object, object], value)
        return {str(key): to_jsonable(item) for key, item in mapping.items()}

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        seq = cast(Sequence[object], value)
        return [to_jsonable(item) for item in seq]

    raise SerializationError(f'Cannot serialize value of type {type(value).__name__}')


def dumps_json(value: Any) -> str:
    """Serialize a value to a compact JSON string."""
    try:
        return json.dumps(
            to_jsonable(value),
            ensure_ascii=False,
            separators=(',', ':'),
            allow_nan=False,
        )
    except ValueError as exc:
        raise SerializationError(str(exc)) from exc


def loads_json(s: str | None) -> Json:
    """Deserialize a JSON string (None / empty -> None)."""
    return json.loads(s) if s else None


def snapshot(value: Any) -> Json:
    """JSON form of `value` exactly as a replay would return it."""
    return loads_json(dumps_json(value))
