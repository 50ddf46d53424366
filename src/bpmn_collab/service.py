"""集約の作成・スナップショット保存・イベントフィードを提供するサービス"""

from __future__ import annotations

import uuid

import structlog

from .config import CollabConfig
from .document import check_document, create_template
from .exceptions import AggregateNotFoundError, DocumentRejectedError, SnapshotNotFoundError
from .feed import StoreEventFeed
from .models import Aggregate, Event, EventPage, SaveResult, Snapshot, SnapshotView
from .projection import AggregateProjection, ProjectionEngine
from .store import EventStore, SnapshotStore

logger = structlog.stdlib.get_logger(__name__)


class CollaborationService:
    """UI 層に公開する集約単位の操作。"""

    def __init__(
        self,
        store: EventStore,
        snapshots: SnapshotStore,
        engine: ProjectionEngine,
        config: CollabConfig,
    ) -> None:
        self._store = store
        self._snapshots = snapshots
        self._engine = engine
        self._config = config
        self._feed = StoreEventFeed(store, config.feed)
        self._aggregates: dict[str, Aggregate] = {}

    @property
    def engine(self) -> ProjectionEngine:
        return self._engine

    async def create_aggregate(
        self,
        tenant_id: str,
        title: str,
        aggregate_id: str | None = None,
    ) -> Aggregate:
        """テンプレートドキュメントをバージョン 0 として新しい集約を作る。"""
        aggregate_id = aggregate_id or str(uuid.uuid4())
        process_id, content = create_template(title)
        aggregate = Aggregate(
            aggregate_id=aggregate_id,
            tenant_id=tenant_id,
            title=title,
            process_id=process_id,
        )
        await self._snapshots.save(
            Snapshot(
                aggregate_id=aggregate_id,
                version=0,
                content=content,
                applied_sequence=0,
                description="template",
            )
        )
        self._aggregates[aggregate_id] = aggregate
        self._engine.register(aggregate_id, process_id=process_id, title=title)
        logger.info(
            "aggregate_created",
            aggregate_id=aggregate_id,
            tenant_id=tenant_id,
            process_id=process_id,
        )
        return aggregate

    def get_aggregate(self, aggregate_id: str) -> Aggregate:
        aggregate = self._aggregates.get(aggregate_id)
        if aggregate is None:
            raise AggregateNotFoundError(aggregate_id)
        return aggregate

    async def get_snapshot(self, aggregate_id: str, version: int | None = None) -> SnapshotView:
        """指定バージョン (省略時は最新) のスナップショットを返す。

        Raises:
            SnapshotNotFoundError: スナップショットが存在しない場合
        """
        snapshot = await self._snapshots.get(aggregate_id, version)
        if snapshot is None:
            raise SnapshotNotFoundError(aggregate_id, version)
        return SnapshotView.of(snapshot)

    async def save(
        self,
        aggregate_id: str,
        content: str | None = None,
        description: str = "",
    ) -> SaveResult:
        """スナップショットを保存してバージョンを 1 つ進める。

        content を省略した場合は現在のドキュメント射影を保存する。最新のスナップショットと
        内容も適用済みシーケンスも同じなら新しいバージョンは作らない。

        Raises:
            AggregateNotFoundError: 集約が存在しない場合
            PayloadTooLargeError / InvalidDocumentError / TooManyElementsError:
                構造チェックで拒否された場合 (バージョンは進まない)
        """
        aggregate = self.get_aggregate(aggregate_id)
        await self.catch_up(aggregate_id)
        if content is None:
            content = self._engine.document(aggregate_id).render()
        applied_sequence = self._engine.applied_sequence(aggregate_id)

        limits = self._config.limits
        try:
            check_document(content, limits.max_content_bytes, limits.max_elements)
        except DocumentRejectedError as e:
            logger.warning(
                "save_rejected",
                aggregate_id=aggregate_id,
                code=e.code,
                error=e.message,
            )
            raise

        latest = await self._snapshots.get(aggregate_id)
        if (
            latest is not None
            and latest.content == content
            and latest.applied_sequence == applied_sequence
        ):
            logger.info("save_skipped_no_changes", aggregate_id=aggregate_id, version=latest.version)
            return SaveResult(version=latest.version, created=False)

        version = aggregate.version + 1
        await self._snapshots.save(
            Snapshot(
                aggregate_id=aggregate_id,
                version=version,
                content=content,
                applied_sequence=applied_sequence,
                description=description,
            )
        )
        aggregate.version = version
        aggregate.last_synced_sequence = applied_sequence
        logger.info(
            "snapshot_saved",
            aggregate_id=aggregate_id,
            version=version,
            applied_sequence=applied_sequence,
        )
        return SaveResult(version=version)

    async def get_events_since(
        self,
        aggregate_id: str,
        since: int,
        limit: int | None = None,
    ) -> EventPage:
        """since より後のイベントを 1 ページ分返す。件数はフィードの上限で切り詰める。"""
        return await self._feed.fetch(aggregate_id, since, limit)

    async def catch_up(self, aggregate_id: str) -> int:
        """ストアに追記済みで未適用のイベントを射影に取り込む。"""
        applied = 0
        since = self._engine.applied_sequence(aggregate_id)
        while True:
            page = await self._feed.fetch(aggregate_id, since)
            for event in page.events:
                if self._engine.apply(event):
                    applied += 1
            if not page.has_more or page.next_sequence <= since:
                return applied
            since = page.next_sequence

    async def rebuild(self, aggregate_id: str) -> AggregateProjection:
        """イベントログ全体から射影を作り直す。"""
        events = await self._read_all(aggregate_id)
        return self._engine.rebuild(aggregate_id, events)

    async def _read_all(self, aggregate_id: str) -> list[Event]:
        events: list[Event] = []
        since = 0
        while True:
            page = await self._feed.fetch(aggregate_id, since)
            events.extend(page.events)
            if not page.has_more or page.next_sequence <= since:
                return events
            since = page.next_sequence
