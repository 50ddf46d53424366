"""リモートイベントストアの HTTP クライアント実装"""

from __future__ import annotations

from typing import Any

import httpx

from .config import EventStoreSection, FeedSection
from .exceptions import (
    CollabError,
    ConcurrencyConflictError,
    DeliveryFailedError,
    EventStoreError,
)
from .feed import EventFeed, page_limit
from .models import AppendResult, Event, EventPage
from .store import EventStore


class _HttpBase:
    def __init__(self, config: EventStoreSection) -> None:
        self._config = config
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if config.api_key:
            headers["X-API-Key"] = config.api_key
        self._headers = headers

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.base_url,
            headers=self._headers,
            timeout=self._config.timeout_seconds,
        )

    def _handle_error(
        self,
        resp: httpx.Response,
        aggregate_id: str,
        context: str,
        expected: int = -1,
    ) -> None:
        if resp.status_code == 409:
            # 本文に現在の先頭がなければ actual は -1 (不明) のまま返す
            body = _json_or_empty(resp)
            raise ConcurrencyConflictError(
                aggregate_id=aggregate_id,
                expected=_int_or(body.get("expected"), expected),
                actual=_int_or(body.get("actual"), -1),
            )
        if resp.status_code >= 500:
            raise DeliveryFailedError(f"{context}: HTTP {resp.status_code}: {resp.text}")
        if resp.status_code >= 400:
            raise EventStoreError(f"{context}: HTTP {resp.status_code}: {resp.text}")


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _int_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _wrap(e: Exception, message: str) -> CollabError:
    # 接続失敗・タイムアウトは一時的な失敗としてリトライ対象にする
    if isinstance(e, httpx.TransportError):
        return DeliveryFailedError(f"{message}: {e}", cause=e)
    return EventStoreError(f"{message}: {e}", cause=e)


class HttpEventStore(_HttpBase, EventStore):
    """httpx を使ったイベントストア HTTP クライアント。"""

    async def append(
        self,
        aggregate_id: str,
        expected_sequence: int,
        event: Event,
    ) -> AppendResult:
        try:
            async with self._make_client() as client:
                resp = await client.post(
                    f"/api/v1/aggregates/{aggregate_id}/events",
                    json={"expected_sequence": expected_sequence, "event": event.to_dict()},
                )
            self._handle_error(
                resp, aggregate_id, f"append({aggregate_id})", expected=expected_sequence
            )
            data: dict[str, Any] = resp.json()
            return AppendResult(
                sequence=int(data["sequence"]),
                deduplicated=bool(data.get("deduplicated", False)),
            )
        except CollabError:
            raise
        except Exception as e:
            raise _wrap(e, "Failed to append event") from e

    async def read_since(
        self,
        aggregate_id: str,
        sequence: int,
        limit: int | None = None,
    ) -> list[Event]:
        params: dict[str, Any] = {"since": sequence}
        if limit is not None:
            params["limit"] = limit
        try:
            async with self._make_client() as client:
                resp = await client.get(f"/api/v1/aggregates/{aggregate_id}/events", params=params)
            self._handle_error(resp, aggregate_id, f"read_since({aggregate_id})")
            return EventPage.from_dict(resp.json()).events
        except CollabError:
            raise
        except Exception as e:
            raise _wrap(e, "Failed to read events") from e

    async def head(self, aggregate_id: str) -> int:
        try:
            async with self._make_client() as client:
                resp = await client.get(f"/api/v1/aggregates/{aggregate_id}/head")
            self._handle_error(resp, aggregate_id, f"head({aggregate_id})")
            data: dict[str, Any] = resp.json()
            return int(data.get("sequence", 0))
        except CollabError:
            raise
        except Exception as e:
            raise _wrap(e, "Failed to read head") from e


class HttpEventFeed(_HttpBase, EventFeed):
    """httpx を使ったイベントフィード HTTP クライアント。"""

    def __init__(self, config: EventStoreSection, feed: FeedSection | None = None) -> None:
        super().__init__(config)
        self._feed = feed or FeedSection()

    async def fetch(self, aggregate_id: str, since: int, limit: int | None = None) -> EventPage:
        params = {"since": since, "limit": page_limit(limit, self._feed.page_size)}
        try:
            async with self._make_client() as client:
                resp = await client.get(f"/api/v1/aggregates/{aggregate_id}/events", params=params)
            self._handle_error(resp, aggregate_id, f"fetch({aggregate_id})")
            return EventPage.from_dict(resp.json())
        except CollabError:
            raise
        except Exception as e:
            raise _wrap(e, "Failed to fetch events") from e
