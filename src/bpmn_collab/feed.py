"""イベントフィード (同期クライアントの読み取り元)"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .config import FeedSection
from .models import EventPage
from .store import EventStore


class EventFeed(ABC):
    """集約のイベントをシーケンス順にページ単位で返すフィード。"""

    @abstractmethod
    async def fetch(self, aggregate_id: str, since: int, limit: int | None = None) -> EventPage:
        """since より後のイベントを最大 limit 件返す。"""
        ...


def page_limit(requested: int | None, cap: int) -> int:
    """要求件数をページ上限に丸める。"""
    if requested is None or requested <= 0:
        return cap
    return min(requested, cap)


class StoreEventFeed(EventFeed):
    """EventStore を直接読むプロセス内フィード。"""

    def __init__(self, store: EventStore, config: FeedSection | None = None) -> None:
        self._store = store
        self._config = config or FeedSection()

    async def fetch(self, aggregate_id: str, since: int, limit: int | None = None) -> EventPage:
        size = page_limit(limit, self._config.page_size)
        # 1 件余分に読んで続きの有無を判定する
        events = await self._store.read_since(aggregate_id, since, limit=size + 1)
        has_more = len(events) > size
        events = events[:size]
        next_sequence = (events[-1].sequence or since) if events else since
        return EventPage(events=events, next_sequence=next_sequence, has_more=has_more)
