"""ポーリング同期クライアント"""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from .config import SyncSection
from .feed import EventFeed
from .models import Event
from .projection import ProjectionEngine

logger = structlog.stdlib.get_logger(__name__)


class SyncClient:
    """イベントフィードを定期的にポーリングしてローカルの射影に取り込む。

    自分が楽観的に適用したイベント ((actor_id, event_id) で識別) は
    再適用せずに確定だけ行う。ポーリングの失敗はログに残して次の周期で再試行する。
    """

    def __init__(
        self,
        feed: EventFeed,
        engine: ProjectionEngine,
        aggregate_id: str,
        actor_id: str,
        config: SyncSection | None = None,
        since_sequence: int = 0,
    ) -> None:
        self._feed = feed
        self._engine = engine
        self._aggregate_id = aggregate_id
        self._actor_id = actor_id
        self._config = config or SyncSection()
        self._last_synced_sequence = since_sequence
        self._local: set[tuple[str, str]] = set()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def aggregate_id(self) -> str:
        return self._aggregate_id

    @property
    def last_synced_sequence(self) -> int:
        return self._last_synced_sequence

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track_local(self, event: Event) -> None:
        """楽観的に適用したローカルイベントを記録する。"""
        self._local.add((event.actor_id or self._actor_id, event.event_id))

    def forget_local(self, event: Event) -> None:
        self._local.discard((event.actor_id or self._actor_id, event.event_id))

    async def poll(self, aggregate_id: str, since_sequence: int) -> list[Event]:
        """has_more が False になるまでページを辿ってイベントを集める。"""
        events: list[Event] = []
        since = since_sequence
        while True:
            page = await self._feed.fetch(aggregate_id, since, self._config.page_size)
            events.extend(page.events)
            if not page.has_more or page.next_sequence <= since:
                return events
            since = page.next_sequence

    async def sync_once(self) -> int:
        """1 回ポーリングして取り込んだイベント数を返す。失敗時は 0。"""
        try:
            events = await self.poll(self._aggregate_id, self._last_synced_sequence)
        except Exception as e:
            logger.warning(
                "sync_poll_failed",
                aggregate_id=self._aggregate_id,
                since=self._last_synced_sequence,
                error=str(e),
            )
            return 0

        for event in events:
            key = (event.actor_id, event.event_id)
            if key in self._local:
                self._local.discard(key)
                self._engine.confirm(event)
            else:
                self._engine.apply(event)
            if event.sequence is not None:
                self._last_synced_sequence = max(self._last_synced_sequence, event.sequence)

        if events:
            logger.debug(
                "sync_applied",
                aggregate_id=self._aggregate_id,
                count=len(events),
                last_synced_sequence=self._last_synced_sequence,
            )
        return len(events)

    async def start(self) -> None:
        """ポーリングタスクを開始する。"""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(
            self._poll_loop(), name=f"sync:{self._aggregate_id}"
        )

    async def stop(self) -> None:
        """ポーリングタスクを停止する。"""
        self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=self._config.poll_interval_seconds)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            await self.sync_once()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._config.poll_interval_seconds
                )
