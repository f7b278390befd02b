from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from bar_exchange_sync.core.entities import (
    REFERENCE_FIELDS,
    EntityKind,
    EntityRecord,
    Expanded,
    Reference,
    decode_fields,
    extract_id,
)


def merge_reference(existing: Any, incoming: Any) -> Any:
    """Never downgrade ``Expanded(X)`` to ``Reference(X)``; every other change wins."""
    if isinstance(incoming, Reference) and isinstance(existing, Expanded) and existing.id == incoming.id:
        return existing
    return incoming


def merge(existing: EntityRecord | None, incoming: EntityRecord) -> EntityRecord:
    """Merge ``incoming`` over ``existing`` field by field.

    Fields missing from ``incoming`` carry no information and are left as they
    are. Ordinary fields are last-write-wins; reference-typed fields go through
    :func:`merge_reference` so a push payload carrying a bare foreign key does
    not blank out an object a bulk fetch already expanded.
    """
    if existing is None:
        return incoming
    if existing.kind != incoming.kind or existing.id != incoming.id:
        raise ValueError(
            f"cannot merge {incoming.kind}:{incoming.id} into {existing.kind}:{existing.id}"
        )

    reference_fields = REFERENCE_FIELDS[existing.kind]
    merged = dict(existing.fields)
    for name, value in incoming.fields.items():
        if name in reference_fields:
            merged[name] = merge_reference(merged.get(name), value)
        else:
            merged[name] = value
    return EntityRecord(kind=existing.kind, id=existing.id, fields=MappingProxyType(merged))


def merge_payload(
    kind: EntityKind,
    existing: EntityRecord | None,
    payload: Mapping[str, Any],
) -> EntityRecord | None:
    """Decode a raw payload and merge it; ``None`` when the payload cannot target a record."""
    identifier = extract_id(payload)
    if identifier is None:
        return None
    incoming = EntityRecord(kind=kind, id=identifier, fields=MappingProxyType(decode_fields(kind, payload)))
    return merge(existing, incoming)
