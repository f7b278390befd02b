from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from bar_exchange_sync.core.entities import EntityKind, EntityRecord, extract_id
from bar_exchange_sync.transforms.merge import merge_payload

logger = logging.getLogger(__name__)


class EntityStore:
    """Snapshot of one entity kind; every mutation goes through the merge engine."""

    def __init__(self, kind: EntityKind) -> None:
        self._kind = kind
        self._records: dict[str, EntityRecord] = {}
        self._version = 0

    @property
    def kind(self) -> EntityKind:
        return self._kind

    @property
    def version(self) -> int:
        """Bumped on every change; cheap for consumers to detect a stale view."""
        return self._version

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def get(self, record_id: str) -> EntityRecord | None:
        return self._records.get(record_id)

    def records(self) -> tuple[EntityRecord, ...]:
        return tuple(self._records.values())

    def payloads(self) -> list[dict[str, Any]]:
        return [record.to_payload() for record in self._records.values()]

    def apply(self, payload: Mapping[str, Any]) -> EntityRecord | None:
        identifier = extract_id(payload)
        if identifier is None:
            logger.warning("Dropping payload without identifier", extra={"kind": str(self._kind)})
            return None
        merged = merge_payload(self._kind, self._records.get(identifier), payload)
        if merged is None:
            return None
        self._records[identifier] = merged
        self._version += 1
        return merged

    def replace_all(self, payloads: Iterable[Mapping[str, Any]]) -> int:
        """Treat ``payloads`` as the authoritative set.

        Records present are merged over what is held (so expanded references
        survive), records absent are dropped. Returns the resulting size.
        """
        replaced: dict[str, EntityRecord] = {}
        skipped = 0
        for payload in payloads:
            identifier = extract_id(payload)
            if identifier is None:
                skipped += 1
                continue
            merged = merge_payload(self._kind, self._records.get(identifier), payload)
            if merged is not None:
                replaced[identifier] = merged
        if skipped:
            logger.warning(
                "Skipped records without identifier during reconciliation",
                extra={"kind": str(self._kind), "skipped": skipped},
            )
        self._records = replaced
        self._version += 1
        return len(replaced)
