"""CommandQueue のユニットテスト"""

import asyncio

import pytest

from bpmn_collab.config import DeliverySection
from bpmn_collab.delivery import CommandQueue, DeliveryOutcome, DeliveryStatus
from bpmn_collab.exceptions import ConcurrencyConflictError, DeliveryFailedError, EventStoreError
from bpmn_collab.memory import InMemoryEventStore
from bpmn_collab.models import (
    AppendResult,
    Command,
    CommandType,
    DeleteElementPayload,
    Event,
    EventType,
)

NO_DELAY = DeliverySection(max_retries=3, base_delay_seconds=0.0)


class FlakyStore(InMemoryEventStore):
    """指定回数だけ追記に失敗するストア。"""

    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        super().__init__()
        self.failures = failures
        self.error = error or DeliveryFailedError("connection reset")
        self.calls = 0

    async def append(self, aggregate_id: str, expected_sequence: int, event: Event) -> AppendResult:
        self.calls += 1
        if self.failures != 0:
            self.failures -= 1
            raise self.error
        return await super().append(aggregate_id, expected_sequence, event)


class GatedStore(InMemoryEventStore):
    """gate が開くまで追記を止めるストア。"""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def append(self, aggregate_id: str, expected_sequence: int, event: Event) -> AppendResult:
        self.entered.set()
        await self.gate.wait()
        return await super().append(aggregate_id, expected_sequence, event)


def make_command(element_id: str = "Task_1", aggregate_id: str = "agg-1") -> Command:
    return Command(
        aggregate_id=aggregate_id,
        actor_id="alice",
        type=CommandType.DELETE_ELEMENT,
        payload=DeleteElementPayload(id=element_id),
    )


def collect(queue: CommandQueue) -> list[DeliveryOutcome]:
    outcomes: list[DeliveryOutcome] = []
    queue.on_outcome(outcomes.append)
    return outcomes


def accept_into(calls: list[str]):
    """呼び出されたコマンド ID を記録して常に有効と答える再検証フック。"""

    def revalidate(command: Command) -> bool:
        calls.append(command.command_id)
        return True

    return revalidate


async def test_commands_are_delivered_in_order() -> None:
    """同じ集約のコマンドは投入順のシーケンスで追記されること。"""
    store = InMemoryEventStore()
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    c1, c2 = make_command("A"), make_command("B")
    queue.enqueue(c1)
    queue.enqueue(c2)
    await queue.drain()

    assert [o.status for o in outcomes] == [DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERED]
    assert outcomes[0].command is c1
    assert outcomes[0].sequence < outcomes[1].sequence
    events = store.all_events("agg-1")
    assert [e.causation_id for e in events] == [c1.command_id, c2.command_id]
    assert queue.pending_count() == 0


async def test_retry_bound_then_failed() -> None:
    """常に失敗するコマンドは max_retries + 1 回試行して FAILED になること。"""
    store = FlakyStore(failures=-1)
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    command = make_command()
    queue.enqueue(command)
    await queue.drain()

    assert store.calls == NO_DELAY.max_retries + 1
    assert len(outcomes) == 1
    assert outcomes[0].status == DeliveryStatus.FAILED
    assert outcomes[0].attempts == NO_DELAY.max_retries + 1
    assert outcomes[0].reason == "retries_exhausted"
    assert queue.pending_count("agg-1") == 0
    assert queue.attempts(command.command_id) == 0


async def test_transient_failure_retries_before_next_command() -> None:
    """一時的な失敗は後続コマンドより先に再送されること。"""
    store = FlakyStore(failures=2)
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    c1, c2 = make_command("A"), make_command("B")
    queue.enqueue(c1)
    queue.enqueue(c2)
    await queue.drain()

    assert [o.command.command_id for o in outcomes] == [c1.command_id, c2.command_id]
    assert outcomes[0].attempts == 3
    assert outcomes[0].sequence == 1
    assert outcomes[1].sequence == 2


async def test_unexpected_exception_is_transient() -> None:
    """想定外の例外も一時的な失敗として再送されること。"""
    store = FlakyStore(failures=1, error=RuntimeError("boom"))
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    queue.enqueue(make_command())
    await queue.drain()
    assert outcomes[0].status == DeliveryStatus.DELIVERED
    assert outcomes[0].attempts == 2


async def test_store_error_fails_without_retry() -> None:
    """リトライ不能なストアエラーは 1 回で FAILED になること。"""
    store = FlakyStore(failures=-1, error=EventStoreError("HTTP 400"))
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    queue.enqueue(make_command())
    await queue.drain()
    assert store.calls == 1
    assert outcomes[0].status == DeliveryStatus.FAILED
    assert outcomes[0].reason == "store_error"


async def test_resending_same_command_is_deduplicated() -> None:
    """同じコマンドの再送は DEDUPLICATED として成功扱いになること。"""
    store = InMemoryEventStore()
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    command = make_command()
    queue.enqueue(command)
    queue.enqueue(command)
    await queue.drain()

    assert [o.status for o in outcomes] == [DeliveryStatus.DELIVERED, DeliveryStatus.DEDUPLICATED]
    assert all(o.succeeded for o in outcomes)
    assert len(store.all_events("agg-1")) == 1


async def test_cancel_pending_but_not_in_flight() -> None:
    """送信待ちは取り消せるが送信中は取り消せないこと。"""
    store = GatedStore()
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    c1, c2 = make_command("A"), make_command("B")
    queue.enqueue(c1)
    queue.enqueue(c2)
    await store.entered.wait()

    assert queue.is_in_flight("agg-1")
    assert queue.pending_count("agg-1") == 2
    assert await queue.cancel(c1.command_id) is False
    assert await queue.cancel(c2.command_id) is True
    assert await queue.cancel("unknown") is False

    store.gate.set()
    await queue.drain()
    statuses = {o.command.command_id: o.status for o in outcomes}
    assert statuses == {
        c1.command_id: DeliveryStatus.DELIVERED,
        c2.command_id: DeliveryStatus.CANCELLED,
    }
    assert len(store.all_events("agg-1")) == 1


async def test_aggregates_deliver_independently() -> None:
    """ある集約の配送が止まっていても別の集約は配送されること。"""
    blocked = GatedStore()
    queue = CommandQueue(blocked, NO_DELAY)
    outcomes = collect(queue)
    queue.enqueue(make_command(aggregate_id="agg-1"))
    await blocked.entered.wait()
    assert queue.is_in_flight("agg-1")
    assert not queue.is_in_flight("agg-2")
    blocked.gate.set()
    queue.enqueue(make_command(aggregate_id="agg-2"))
    await queue.drain()
    assert {o.command.aggregate_id for o in outcomes} == {"agg-1", "agg-2"}


def external_event(sequence: int) -> Event:
    """別の書き込み手による追記。"""
    return Event(
        aggregate_id="agg-1",
        type=EventType.ELEMENT_DELETED,
        data={"id": "Other"},
        causation_id=f"external-{sequence}",
    )


async def _append_external(store: InMemoryEventStore, sequence: int) -> None:
    await store.append("agg-1", sequence, external_event(sequence))


class InterleavedStore(InMemoryEventStore):
    """最初の追記の直前に別の書き込み手の追記を割り込ませるストア。"""

    def __init__(self, error: Exception | None = None) -> None:
        super().__init__()
        self.error = error
        self.calls = 0

    async def append(self, aggregate_id: str, expected_sequence: int, event: Event) -> AppendResult:
        self.calls += 1
        if self.calls == 1:
            head = await self.head(aggregate_id)
            await super().append(aggregate_id, head, external_event(head))
            if self.error is not None:
                raise self.error
        return await super().append(aggregate_id, expected_sequence, event)


class HeadlessConflictStore(InMemoryEventStore):
    """競合時に現在の先頭を返さないストア。"""

    async def append(self, aggregate_id: str, expected_sequence: int, event: Event) -> AppendResult:
        try:
            return await super().append(aggregate_id, expected_sequence, event)
        except ConcurrencyConflictError:
            raise ConcurrencyConflictError(aggregate_id, expected_sequence, -1) from None


async def test_stale_command_conflicts_on_first_delivery() -> None:
    """検証時点より先頭が進んでいれば、最初の配送でも競合として再検証されること。"""
    store = InMemoryEventStore()
    await _append_external(store, 0)
    calls: list[str] = []

    async def revalidate(command: Command) -> bool:
        calls.append(command.command_id)
        return True

    queue = CommandQueue(store, NO_DELAY, revalidate=revalidate)
    outcomes = collect(queue)
    command = make_command("B")
    queue.enqueue(command, expected_sequence=0)
    await queue.drain()

    assert calls == [command.command_id]
    assert outcomes[0].status == DeliveryStatus.DELIVERED
    assert outcomes[0].sequence == 2


async def test_retry_keeps_expected_sequence() -> None:
    """一時的な失敗の間に先頭が進んだ場合、再送は競合として再検証されること。"""
    store = InterleavedStore(error=DeliveryFailedError("timeout"))
    calls: list[str] = []
    queue = CommandQueue(store, NO_DELAY, revalidate=accept_into(calls))
    outcomes = collect(queue)
    queue.enqueue(make_command(), expected_sequence=0)
    await queue.drain()

    assert len(calls) == 1
    assert outcomes[0].status == DeliveryStatus.DELIVERED
    assert outcomes[0].attempts == 2
    assert outcomes[0].sequence == 2


async def test_expected_sequence_is_pinned_when_omitted() -> None:
    """expected_sequence 省略時も最初の送信で読んだ先頭を再送で使い続けること。"""
    store = InterleavedStore(error=DeliveryFailedError("timeout"))
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    queue.enqueue(make_command())
    await queue.drain()
    assert outcomes[0].status == DeliveryStatus.REJECTED
    assert outcomes[0].reason == "conflict"


async def test_conflict_without_actual_reads_head() -> None:
    """競合応答に現在の先頭がなければストアから読み直して再送すること。"""
    store = HeadlessConflictStore()
    await _append_external(store, 0)
    queue = CommandQueue(store, NO_DELAY, revalidate=lambda command: True)
    outcomes = collect(queue)
    queue.enqueue(make_command(), expected_sequence=0)
    await queue.drain()
    assert outcomes[0].status == DeliveryStatus.DELIVERED
    assert outcomes[0].sequence == 2


async def test_own_writes_rebase_later_commands() -> None:
    """同期前でも自分が書き込んだ分だけ後続の expected_sequence が進むこと。"""
    store = InMemoryEventStore()
    calls: list[str] = []
    queue = CommandQueue(store, NO_DELAY, revalidate=accept_into(calls))
    outcomes = collect(queue)
    queue.enqueue(make_command("A"), expected_sequence=0)
    queue.enqueue(make_command("B"), expected_sequence=0)
    await queue.drain()
    queue.enqueue(make_command("C"), expected_sequence=0)
    await queue.drain()

    assert calls == []
    assert [o.sequence for o in outcomes] == [1, 2, 3]


async def test_conflict_revalidates_and_resubmits_once() -> None:
    """競合時は再検証して最新の先頭に対して 1 回だけ再送すること。"""
    store = InMemoryEventStore()
    calls: list[str] = []

    async def revalidate(command: Command) -> bool:
        calls.append(command.command_id)
        return True

    queue = CommandQueue(store, NO_DELAY, revalidate=revalidate)
    outcomes = collect(queue)
    queue.enqueue(make_command("A"), expected_sequence=0)
    await queue.drain()
    await _append_external(store, 1)

    command = make_command("B")
    queue.enqueue(command, expected_sequence=1)
    await queue.drain()

    assert calls == [command.command_id]
    assert outcomes[-1].status == DeliveryStatus.DELIVERED
    assert outcomes[-1].sequence == 3


async def test_conflict_invalid_after_revalidation_is_rejected() -> None:
    """再検証で無効になったコマンドは REJECTED になること。"""
    store = InMemoryEventStore()
    await _append_external(store, 0)
    queue = CommandQueue(store, NO_DELAY, revalidate=lambda command: False)
    outcomes = collect(queue)
    queue.enqueue(make_command(), expected_sequence=0)
    await queue.drain()
    assert outcomes[0].status == DeliveryStatus.REJECTED
    assert outcomes[0].reason == "invalid_after_conflict"
    assert len(store.all_events("agg-1")) == 1


async def test_conflict_without_revalidate_is_rejected() -> None:
    """再検証フックがなければ再送せずに REJECTED になること。"""
    store = InMemoryEventStore()
    await _append_external(store, 0)
    queue = CommandQueue(store, NO_DELAY)
    outcomes = collect(queue)
    queue.enqueue(make_command(), expected_sequence=0)
    await queue.drain()
    assert outcomes[0].status == DeliveryStatus.REJECTED
    assert outcomes[0].reason == "conflict"


async def test_second_conflict_fails() -> None:
    """再送でも競合した場合は FAILED になること。"""
    store = InMemoryEventStore()
    await _append_external(store, 0)

    async def revalidate(command: Command) -> bool:
        # 再検証中に別の書き込みが入る
        await _append_external(store, await store.head("agg-1"))
        return True

    queue = CommandQueue(store, NO_DELAY, revalidate=revalidate)
    outcomes = collect(queue)
    queue.enqueue(make_command(), expected_sequence=0)
    await queue.drain()
    assert outcomes[0].status == DeliveryStatus.FAILED
    assert outcomes[0].reason == "conflict"


async def test_retrying_command_cannot_be_cancelled() -> None:
    """バックオフ待ち中のコマンドは送信中として扱われ、取り消せないこと。"""
    store = FlakyStore(failures=1)
    queue = CommandQueue(store, DeliverySection(max_retries=3, base_delay_seconds=0.05))
    outcomes = collect(queue)
    command = make_command()
    queue.enqueue(command)
    while store.calls == 0:
        await asyncio.sleep(0)

    assert queue.is_in_flight("agg-1")
    assert queue.pending_count("agg-1") == 1
    assert await queue.cancel(command.command_id) is False
    await queue.drain()
    assert outcomes[0].status == DeliveryStatus.DELIVERED
    assert outcomes[0].attempts == 2


async def test_async_listener_and_failing_listener() -> None:
    """非同期リスナーが呼ばれ、失敗するリスナーがあっても配送が続くこと。"""
    store = InMemoryEventStore()
    queue = CommandQueue(store, NO_DELAY)
    seen: list[DeliveryStatus] = []

    def broken(outcome: DeliveryOutcome) -> None:
        raise ValueError("listener bug")

    async def record(outcome: DeliveryOutcome) -> None:
        seen.append(outcome.status)

    queue.on_outcome(broken)
    queue.on_outcome(record)
    queue.enqueue(make_command("A"))
    queue.enqueue(make_command("B"))
    await queue.drain()
    assert seen == [DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERED]


async def test_close_stops_loops_and_rejects_enqueue() -> None:
    """close 後は新しいコマンドを受け付けず、送信中だったコマンドはキューに残ること。"""
    store = GatedStore()
    queue = CommandQueue(store, NO_DELAY)
    queue.enqueue(make_command())
    await store.entered.wait()
    await queue.close()
    assert not queue.is_in_flight("agg-1")
    assert queue.pending_count("agg-1") == 1
    with pytest.raises(RuntimeError):
        queue.enqueue(make_command("B"))
