"""HttpEventStore / HttpEventFeed のユニットテスト（respx モック）"""

import json

import httpx
import pytest
import respx

from bpmn_collab.config import DeliverySection, EventStoreSection, FeedSection
from bpmn_collab.delivery import CommandQueue, DeliveryOutcome, DeliveryStatus
from bpmn_collab.exceptions import (
    CollabErrorCodes,
    ConcurrencyConflictError,
    DeliveryFailedError,
    EventStoreError,
)
from bpmn_collab.http_client import HttpEventFeed, HttpEventStore
from bpmn_collab.models import Command, CommandType, DeleteElementPayload, Event, EventType

BASE_URL = "http://event-store:8080"
EVENTS_URL = f"{BASE_URL}/api/v1/aggregates/agg-1/events"


def make_store(api_key: str = "") -> HttpEventStore:
    return HttpEventStore(EventStoreSection(base_url=BASE_URL, api_key=api_key))


def make_event() -> Event:
    return Event(
        aggregate_id="agg-1",
        type=EventType.ELEMENT_RENAMED,
        data={"id": "Task_1", "name": "Review"},
        event_id="evt-1",
        causation_id="cmd-1",
        actor_id="alice",
    )


def event_json(sequence: int) -> dict:
    return {
        "event_id": f"evt-{sequence}",
        "aggregate_id": "agg-1",
        "sequence": sequence,
        "type": "ElementRenamed",
        "data": {"id": "Task_1", "name": f"n{sequence}"},
        "causation_id": f"cmd-{sequence}",
        "correlation_id": f"cmd-{sequence}",
        "actor_id": "bob",
        "recorded_at": "2024-05-01T12:00:00+00:00",
    }


@respx.mock
async def test_append_success() -> None:
    """追記成功でシーケンスが返ること。"""
    route = respx.post(EVENTS_URL).mock(
        return_value=httpx.Response(201, json={"sequence": 4, "deduplicated": False})
    )
    result = await make_store().append("agg-1", 3, make_event())
    assert result.sequence == 4
    assert result.deduplicated is False
    body = route.calls.last.request.read()
    assert b'"expected_sequence":3' in body.replace(b" ", b"")


@respx.mock
async def test_append_deduplicated() -> None:
    """重複排除された追記は deduplicated=True。"""
    respx.post(EVENTS_URL).mock(
        return_value=httpx.Response(200, json={"sequence": 2, "deduplicated": True})
    )
    result = await make_store().append("agg-1", 5, make_event())
    assert result.deduplicated is True


@respx.mock
async def test_append_conflict_maps_409() -> None:
    """409 は ConcurrencyConflictError に変換されること。"""
    respx.post(EVENTS_URL).mock(
        return_value=httpx.Response(409, json={"expected": 3, "actual": 5})
    )
    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await make_store().append("agg-1", 3, make_event())
    assert exc_info.value.actual == 5
    assert exc_info.value.code == CollabErrorCodes.CONCURRENCY_CONFLICT


@respx.mock
async def test_append_conflict_without_body() -> None:
    """本文のない 409 は actual=-1 の競合になり、expected は要求値になること。"""
    respx.post(EVENTS_URL).mock(return_value=httpx.Response(409))
    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await make_store().append("agg-1", 3, make_event())
    assert exc_info.value.expected == 3
    assert exc_info.value.actual == -1


@respx.mock
async def test_queue_resubmits_after_conflict_without_body() -> None:
    """本文のない 409 の後、キューは先頭を読み直して 1 回だけ再送すること。"""
    route = respx.post(EVENTS_URL).mock(
        side_effect=[
            httpx.Response(409),
            httpx.Response(201, json={"sequence": 6, "deduplicated": False}),
        ]
    )
    respx.get(f"{BASE_URL}/api/v1/aggregates/agg-1/head").mock(
        return_value=httpx.Response(200, json={"sequence": 5})
    )
    queue = CommandQueue(
        make_store(), DeliverySection(base_delay_seconds=0.0), revalidate=lambda command: True
    )
    outcomes: list[DeliveryOutcome] = []
    queue.on_outcome(outcomes.append)
    queue.enqueue(
        Command(
            aggregate_id="agg-1",
            actor_id="alice",
            type=CommandType.DELETE_ELEMENT,
            payload=DeleteElementPayload(id="Task_1"),
        ),
        expected_sequence=3,
    )
    await queue.drain()

    assert outcomes[0].status == DeliveryStatus.DELIVERED
    assert outcomes[0].sequence == 6
    assert [json.loads(call.request.content)["expected_sequence"] for call in route.calls] == [3, 5]


@respx.mock
async def test_append_server_error_is_transient() -> None:
    """5xx は DeliveryFailedError (一時的失敗)。"""
    respx.post(EVENTS_URL).mock(return_value=httpx.Response(503, text="unavailable"))
    with pytest.raises(DeliveryFailedError):
        await make_store().append("agg-1", 0, make_event())


@respx.mock
async def test_append_transport_error_is_transient() -> None:
    """接続エラーは DeliveryFailedError。"""
    respx.post(EVENTS_URL).mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(DeliveryFailedError) as exc_info:
        await make_store().append("agg-1", 0, make_event())
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@respx.mock
async def test_append_client_error_is_store_error() -> None:
    """409 以外の 4xx は EventStoreError。"""
    respx.post(EVENTS_URL).mock(return_value=httpx.Response(422, text="bad event"))
    with pytest.raises(EventStoreError) as exc_info:
        await make_store().append("agg-1", 0, make_event())
    assert exc_info.value.code == CollabErrorCodes.EVENT_STORE_ERROR


@respx.mock
async def test_read_since_and_head() -> None:
    """read_since と head がレスポンスを解釈すること。"""
    route = respx.get(EVENTS_URL).mock(
        return_value=httpx.Response(
            200, json={"events": [event_json(3), event_json(4)], "next_sequence": 4, "has_more": False}
        )
    )
    respx.get(f"{BASE_URL}/api/v1/aggregates/agg-1/head").mock(
        return_value=httpx.Response(200, json={"sequence": 4})
    )
    store = make_store()
    events = await store.read_since("agg-1", 2, limit=10)
    assert [e.sequence for e in events] == [3, 4]
    assert events[0].actor_id == "bob"
    params = route.calls.last.request.url.params
    assert params["since"] == "2"
    assert params["limit"] == "10"
    assert await store.head("agg-1") == 4


@respx.mock
async def test_api_key_header() -> None:
    """api_key 指定時に X-API-Key ヘッダーが付与されること。"""
    route = respx.get(f"{BASE_URL}/api/v1/aggregates/agg-1/head").mock(
        return_value=httpx.Response(200, json={"sequence": 0})
    )
    await make_store(api_key="secret").head("agg-1")
    assert route.calls.last.request.headers["X-API-Key"] == "secret"


@respx.mock
async def test_feed_fetch_caps_limit() -> None:
    """フィードの要求件数がページ上限に丸められること。"""
    route = respx.get(EVENTS_URL).mock(
        return_value=httpx.Response(
            200, json={"events": [event_json(1)], "next_sequence": 1, "has_more": True}
        )
    )
    feed = HttpEventFeed(EventStoreSection(base_url=BASE_URL), FeedSection(page_size=25))
    page = await feed.fetch("agg-1", 0, limit=500)
    assert page.has_more is True
    assert page.next_sequence == 1
    assert route.calls.last.request.url.params["limit"] == "25"
