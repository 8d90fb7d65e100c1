"""
Outbox Wire Format

Events are stored as canonical JSON so the same event always produces the
same bytes:

- keys sorted, compact separators
- enums written by member *name*
- datetimes as ISO-8601 UTC with millisecond precision and a ``Z`` suffix
- UUIDs and Decimals as strings (no float round-tripping)

Type information is never embedded in the payload; the outbox row carries
the type descriptor and the registry picks the deserializer.
"""

from __future__ import annotations

import collections.abc
import json
import types
import typing
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Type, TypeVar
from uuid import UUID

from pydantic import BaseModel


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2025-01-02T03:04:05.678Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_wire(value: Any) -> Any:
    """Convert a Python value into plain JSON types using the outbox conventions."""
    # Enum first: str/int enums would otherwise be written by value
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, BaseModel):
        return to_wire(value.model_dump(mode="python", by_alias=True))
    if isinstance(value, dict):
        return {_wire_key(k): to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((to_wire(v) for v in value), key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


def _wire_key(key: Any) -> str:
    if isinstance(key, Enum):
        return key.name
    return str(key)


def canonical_dumps(payload: Any) -> str:
    """Serialize to canonical JSON (sorted keys, compact, UTF-8 text)."""
    return json.dumps(to_wire(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def serialize_event(event: BaseModel) -> str:
    """Serialize an integration event to its outbox content."""
    return canonical_dumps(event)


# Reading
#
# Enums are the only lossy part of the format: a member name has to be
# turned back into its value before pydantic sees it. The walk follows the
# model's annotations so names are mapped at any depth (containers, nested
# models, dict keys).

ModelT = TypeVar("ModelT", bound=BaseModel)

_SEQUENCE_ORIGINS = (
    list,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
    collections.abc.MutableSet,
    collections.abc.Iterable,
    collections.abc.Collection,
)
_MAPPING_ORIGINS = (dict, collections.abc.Mapping, collections.abc.MutableMapping)


def _is_union(origin: Any) -> bool:
    return origin is typing.Union or origin is getattr(types, "UnionType", None)


def from_wire(annotation: Any, value: Any) -> Any:
    """Map enum member names in ``value`` back to values, guided by ``annotation``."""
    if value is None:
        return None

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)

    if origin is typing.Annotated:
        return from_wire(args[0], value)

    if _is_union(origin):
        for arg in args:
            if arg is type(None):
                continue
            converted = from_wire(arg, value)
            if converted is not value:
                return converted
        return value

    if isinstance(annotation, type):
        if issubclass(annotation, Enum):
            if isinstance(value, str) and value in annotation.__members__:
                return annotation[value].value
            return value
        if issubclass(annotation, BaseModel):
            return model_from_wire(annotation, value)

    if isinstance(value, list):
        if origin is tuple:
            if len(args) == 2 and args[1] is Ellipsis:
                return [from_wire(args[0], v) for v in value]
            if args:
                return [from_wire(a, v) for a, v in zip(args, value)] + value[len(args):]
            return value
        if origin in _SEQUENCE_ORIGINS and args:
            return [from_wire(args[0], v) for v in value]
        return value

    if isinstance(value, dict) and origin in _MAPPING_ORIGINS and len(args) == 2:
        key_type, value_type = args
        return {from_wire(key_type, k): from_wire(value_type, v) for k, v in value.items()}

    return value


def model_from_wire(model_cls: Type[BaseModel], data: Any) -> Any:
    """Apply ``from_wire`` to every field of ``model_cls`` present in ``data``."""
    if not isinstance(data, dict):
        return data
    converted = dict(data)
    for name, field in model_cls.model_fields.items():
        for key in {field.alias or name, name}:
            if key in converted:
                converted[key] = from_wire(field.annotation, converted[key])
    return converted


def deserialize_event(event_cls: Type[ModelT], content: str) -> ModelT:
    """Rebuild an event from its outbox content."""
    return event_cls.model_validate(model_from_wire(event_cls, json.loads(content)))
