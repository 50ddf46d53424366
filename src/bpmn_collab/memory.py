"""InMemoryEventStore / InMemorySnapshotStore 実装"""

from __future__ import annotations

import asyncio
from collections import defaultdict

from .exceptions import ConcurrencyConflictError, DuplicateSnapshotError
from .models import AppendResult, Event, Snapshot
from .store import EventStore, SnapshotStore


class InMemoryEventStore(EventStore):
    """テスト・単一プロセス用インメモリイベントストア。

    追記は集約ごとの asyncio.Lock で原子的に行う。
    """

    def __init__(self) -> None:
        self._streams: dict[str, list[Event]] = {}
        self._by_causation: dict[str, dict[str, int]] = defaultdict(dict)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def append(
        self,
        aggregate_id: str,
        expected_sequence: int,
        event: Event,
    ) -> AppendResult:
        async with self._locks[aggregate_id]:
            stream = self._streams.setdefault(aggregate_id, [])
            seen = self._by_causation[aggregate_id]
            if event.causation_id and event.causation_id in seen:
                return AppendResult(sequence=seen[event.causation_id], deduplicated=True)

            current = len(stream)
            if expected_sequence != current:
                raise ConcurrencyConflictError(
                    aggregate_id=aggregate_id, expected=expected_sequence, actual=current
                )

            sequence = current + 1
            stream.append(event.with_sequence(sequence))
            if event.causation_id:
                seen[event.causation_id] = sequence
            return AppendResult(sequence=sequence)

    async def read_since(
        self,
        aggregate_id: str,
        sequence: int,
        limit: int | None = None,
    ) -> list[Event]:
        stream = self._streams.get(aggregate_id, [])
        events = stream[max(sequence, 0) :]
        if limit is not None:
            events = events[:limit]
        return list(events)

    async def head(self, aggregate_id: str) -> int:
        return len(self._streams.get(aggregate_id, []))

    def all_events(self, aggregate_id: str) -> list[Event]:
        """テスト用: 集約の全イベントを返す。"""
        return list(self._streams.get(aggregate_id, []))


class InMemorySnapshotStore(SnapshotStore):
    """テスト用インメモリスナップショットストア。"""

    def __init__(self) -> None:
        self._snapshots: dict[str, dict[int, Snapshot]] = {}

    async def save(self, snapshot: Snapshot) -> None:
        versions = self._snapshots.setdefault(snapshot.aggregate_id, {})
        if snapshot.version in versions:
            raise DuplicateSnapshotError(snapshot.aggregate_id, snapshot.version)
        versions[snapshot.version] = snapshot

    async def get(self, aggregate_id: str, version: int | None = None) -> Snapshot | None:
        versions = self._snapshots.get(aggregate_id, {})
        if not versions:
            return None
        if version is None:
            return versions[max(versions)]
        return versions.get(version)

    async def latest_version(self, aggregate_id: str) -> int | None:
        versions = self._snapshots.get(aggregate_id, {})
        return max(versions) if versions else None

    async def list(self, aggregate_id: str) -> list[Snapshot]:
        versions = self._snapshots.get(aggregate_id, {})
        return [versions[v] for v in sorted(versions)]
