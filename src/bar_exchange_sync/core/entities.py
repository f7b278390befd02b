from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class EntityKind(StrEnum):
    ORDER = "order"
    ITEM = "item"
    BRANCH = "branch"


REFERENCE_FIELDS: dict[EntityKind, frozenset[str]] = {
    EntityKind.ORDER: frozenset({"user", "branch"}),
    EntityKind.ITEM: frozenset({"category"}),
    EntityKind.BRANCH: frozenset(),
}


@dataclass(frozen=True, slots=True)
class Reference:
    """A relational field that only carries the related object's identifier."""

    id: str


@dataclass(frozen=True, slots=True)
class Expanded:
    """A relational field carrying the full related object."""

    id: str
    data: Mapping[str, Any]


RefValue = Reference | Expanded


def coerce_id(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, str)):
        normalized = str(value).strip()
        return normalized or None
    return None


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return float(normalized)
        except ValueError:
            return None
    return None


def coerce_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings (``Z`` allowed) or epoch milliseconds to aware UTC."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        try:
            if not math.isfinite(value):
                return None
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        try:
            return parsed.astimezone(UTC)
        except OverflowError:
            return None
    return None


def extract_id(payload: Mapping[str, Any]) -> str | None:
    identifier = coerce_id(payload.get("_id"))
    if identifier is None:
        identifier = coerce_id(payload.get("id"))
    return identifier


def tag_reference(value: Any) -> RefValue | Any:
    """Tag a raw relational value; values that are neither an id nor an object with one pass through."""
    if isinstance(value, (Reference, Expanded)):
        return value
    if isinstance(value, Mapping):
        identifier = extract_id(value)
        if identifier is None:
            return value
        return Expanded(id=identifier, data=MappingProxyType(dict(value)))
    identifier = coerce_id(value)
    if identifier is not None:
        return Reference(id=identifier)
    return value


def reference_id(value: Any) -> str | None:
    if isinstance(value, (Reference, Expanded)):
        return value.id
    if isinstance(value, Mapping):
        return extract_id(value)
    return coerce_id(value)


def untag_reference(value: Any) -> Any:
    if isinstance(value, Reference):
        return value.id
    if isinstance(value, Expanded):
        return dict(value.data)
    return value


@dataclass(frozen=True, slots=True)
class EntityRecord:
    kind: EntityKind
    id: str
    fields: Mapping[str, Any]

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def ref_id(self, name: str) -> str | None:
        return reference_id(self.fields.get(name))

    def to_payload(self) -> dict[str, Any]:
        payload = {name: untag_reference(value) for name, value in self.fields.items()}
        payload["_id"] = self.id
        return payload


def decode_fields(kind: EntityKind, payload: Mapping[str, Any]) -> dict[str, Any]:
    reference_fields = REFERENCE_FIELDS[kind]
    decoded: dict[str, Any] = {}
    for name, value in payload.items():
        if name in ("_id", "id"):
            continue
        decoded[name] = tag_reference(value) if name in reference_fields else value
    return decoded


def decode_record(kind: EntityKind, payload: Mapping[str, Any]) -> EntityRecord | None:
    """Build a record from a JSON-like payload; ``None`` when the payload has no identifier."""
    identifier = extract_id(payload)
    if identifier is None:
        return None
    return EntityRecord(
        kind=kind,
        id=identifier,
        fields=MappingProxyType(decode_fields(kind, payload)),
    )
