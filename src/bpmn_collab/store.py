"""EventStore / SnapshotStore 抽象基底クラス"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import AppendResult, Event, Snapshot


class EventStore(ABC):
    """集約ごとの追記専用イベントログ。"""

    @abstractmethod
    async def append(
        self,
        aggregate_id: str,
        expected_sequence: int,
        event: Event,
    ) -> AppendResult:
        """イベントを追記してシーケンスを採番する。

        同じ causation_id のイベントが既にあれば、シーケンス確認より先に
        既存のシーケンスを deduplicated=True で返す。

        Raises:
            ConcurrencyConflictError: expected_sequence が現在の先頭と一致しない場合
        """
        ...

    @abstractmethod
    async def read_since(
        self,
        aggregate_id: str,
        sequence: int,
        limit: int | None = None,
    ) -> list[Event]:
        """sequence より大きいシーケンスのイベントを昇順で返す。"""
        ...

    @abstractmethod
    async def head(self, aggregate_id: str) -> int:
        """現在の先頭シーケンスを返す。イベントがなければ 0。"""
        ...


class SnapshotStore(ABC):
    """明示的な保存で作られたスナップショットの保管先。"""

    @abstractmethod
    async def save(self, snapshot: Snapshot) -> None:
        """スナップショットを保存する。

        Raises:
            DuplicateSnapshotError: 同じ (aggregate_id, version) が既に存在する場合
        """
        ...

    @abstractmethod
    async def get(self, aggregate_id: str, version: int | None = None) -> Snapshot | None:
        """指定バージョン (省略時は最新) のスナップショットを返す。"""
        ...

    @abstractmethod
    async def latest_version(self, aggregate_id: str) -> int | None:
        ...

    @abstractmethod
    async def list(self, aggregate_id: str) -> list[Snapshot]:
        """集約の全スナップショットをバージョン昇順で返す。"""
        ...
