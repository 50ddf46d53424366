"""コマンドキュー / 配送エンジン

集約ごとに FIFO キューと配送タスクを 1 つずつ持つ。異なる集約の配送は並行に進み、
グローバルなロックは持たない。一時的な失敗は同じコマンドを送信中のまま
指数バックオフで再送し、max_retries + 1 回で打ち切る。

各コマンドの expected_sequence は検証時点の確定シーケンスに固定する。再送でも
ストアの先頭を読み直さないため、古い状態に基づくコマンドは必ず競合として扱われる。
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

import structlog

from . import metrics
from .config import DeliverySection
from .exceptions import ConcurrencyConflictError, EventStoreError
from .models import Command, Event
from .store import EventStore

logger = structlog.stdlib.get_logger(__name__)


class DeliveryStatus(StrEnum):
    """コマンド配送の最終結果。"""

    DELIVERED = "DELIVERED"
    DEDUPLICATED = "DEDUPLICATED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class DeliveryOutcome:
    """1 コマンドの配送結果。リスナーに必ず 1 回通知される。"""

    command: Command
    status: DeliveryStatus
    sequence: int | None = None
    attempts: int = 0
    reason: str = ""
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.DEDUPLICATED)


# 競合後に状態を取り直して再検証するフック。まだ有効なら True を返す。
Revalidate = Callable[[Command], Awaitable[bool] | bool]
OutcomeListener = Callable[[DeliveryOutcome], Awaitable[None] | None]


async def _call(fn: Callable[..., object], *args: object) -> object:
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result


class CommandQueue:
    """集約ごとに 1 つの書き込み手を保証する配送キュー。"""

    def __init__(
        self,
        store: EventStore,
        config: DeliverySection | None = None,
        revalidate: Revalidate | None = None,
    ) -> None:
        self._store = store
        self._config = config or DeliverySection()
        self._revalidate = revalidate
        self._queues: dict[str, deque[Command]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._in_flight: dict[str, str] = {}
        self._attempts: dict[str, int] = {}
        self._expected: dict[str, int] = {}
        # 集約ごとに、このキューが書き込んだ expected -> sequence の対応
        self._written: dict[str, dict[int, int]] = {}
        self._listeners: list[OutcomeListener] = []
        self._closed = False

    @property
    def config(self) -> DeliverySection:
        return self._config

    def on_outcome(self, listener: OutcomeListener) -> None:
        """配送結果リスナーを登録する。同期・非同期関数のどちらでもよい。"""
        self._listeners.append(listener)

    def set_revalidate(self, revalidate: Revalidate | None) -> None:
        self._revalidate = revalidate

    def enqueue(self, command: Command, expected_sequence: int | None = None) -> None:
        """コマンドを集約のキュー末尾に追加し、配送タスクがなければ起動する。

        expected_sequence はコマンドを検証した時点の確定シーケンス。省略した場合は
        最初の送信直前にストアの先頭を読み、以後の再送ではその値を使い続ける。
        """
        if self._closed:
            raise RuntimeError("command queue is closed")
        aggregate_id = command.aggregate_id
        queue = self._queues.setdefault(aggregate_id, deque())
        queue.append(command)
        if expected_sequence is not None:
            self._expected[command.command_id] = self._rebase(aggregate_id, expected_sequence)
        metrics.commands_enqueued_total.add(1, {"type": str(command.type)})
        metrics.commands_pending.add(1)
        logger.debug(
            "command_enqueued",
            aggregate_id=aggregate_id,
            command_id=command.command_id,
            command_type=str(command.type),
            depth=len(queue),
        )
        task = self._tasks.get(aggregate_id)
        if task is None or task.done():
            self._tasks[aggregate_id] = asyncio.create_task(
                self._run(aggregate_id), name=f"delivery:{aggregate_id}"
            )

    async def cancel(self, command_id: str) -> bool:
        """送信待ちのコマンドを取り消す。送信中または不明なら False。"""
        for aggregate_id, queue in self._queues.items():
            if self._in_flight.get(aggregate_id) == command_id:
                return False
            for command in queue:
                if command.command_id == command_id:
                    queue.remove(command)
                    logger.info(
                        "command_cancelled",
                        aggregate_id=aggregate_id,
                        command_id=command_id,
                    )
                    await self._finish(
                        DeliveryOutcome(
                            command=command,
                            status=DeliveryStatus.CANCELLED,
                            attempts=self._attempts.get(command_id, 0),
                            reason="cancelled",
                        )
                    )
                    return True
        return False

    def pending_count(self, aggregate_id: str | None = None) -> int:
        """未解決のコマンド数 (送信待ちと送信中の合計)。"""
        ids = [aggregate_id] if aggregate_id is not None else list(self._queues)
        total = 0
        for agg in ids:
            total += len(self._queues.get(agg, ()))
            if agg in self._in_flight:
                total += 1
        return total

    def attempts(self, command_id: str) -> int:
        """未解決のコマンドのこれまでの送信試行回数。"""
        return self._attempts.get(command_id, 0)

    def is_in_flight(self, aggregate_id: str) -> bool:
        return aggregate_id in self._in_flight

    async def drain(self) -> None:
        """全ての配送タスクがアイドルになるまで待つ。"""
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """配送タスクを停止する。未配送のコマンドはキューに残る。"""
        self._closed = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._in_flight.clear()

    async def _run(self, aggregate_id: str) -> None:
        """集約 1 つ分の配送ループ。キューが空になったら終了する。"""
        queue = self._queues[aggregate_id]
        while queue:
            command = queue.popleft()
            # バックオフ待ちの間も送信中として扱い、取り消しを受け付けない
            self._in_flight[aggregate_id] = command.command_id
            try:
                while True:
                    delay = await self._deliver(command)
                    if delay is None:
                        break
                    await asyncio.sleep(delay)
            except asyncio.CancelledError:
                # 結果を通知済みでなければ未配送としてキューに戻す
                if command.command_id in self._attempts:
                    queue.appendleft(command)
                raise
            finally:
                self._in_flight.pop(aggregate_id, None)

    async def _deliver(self, command: Command) -> float | None:
        """1 回送信する。再送する場合は待機秒数を返す。"""
        aggregate_id = command.aggregate_id
        attempt = self._attempts.get(command.command_id, 0) + 1
        self._attempts[command.command_id] = attempt
        metrics.delivery_attempts_total.add(1)
        event = command.to_event()

        try:
            expected = await self._expected_for(command)
            try:
                result = await self._store.append(aggregate_id, expected, event)
            except ConcurrencyConflictError as conflict:
                outcome = await self._resolve_conflict(command, event, conflict, attempt)
                await self._finish(outcome)
                return None
        except EventStoreError as e:
            logger.error(
                "command_delivery_rejected",
                aggregate_id=aggregate_id,
                command_id=command.command_id,
                error=str(e),
            )
            await self._finish(
                DeliveryOutcome(
                    command=command,
                    status=DeliveryStatus.FAILED,
                    attempts=attempt,
                    reason="store_error",
                    error=e,
                )
            )
            return None
        except Exception as e:
            if attempt >= self._config.max_retries + 1:
                logger.error(
                    "command_delivery_exhausted",
                    aggregate_id=aggregate_id,
                    command_id=command.command_id,
                    attempts=attempt,
                    error=str(e),
                )
                await self._finish(
                    DeliveryOutcome(
                        command=command,
                        status=DeliveryStatus.FAILED,
                        attempts=attempt,
                        reason="retries_exhausted",
                        error=e,
                    )
                )
                return None
            delay = self._config.compute_delay(attempt)
            logger.warning(
                "command_delivery_retry",
                aggregate_id=aggregate_id,
                command_id=command.command_id,
                attempt=attempt,
                delay_seconds=delay,
                error=str(e),
            )
            return delay

        if not result.deduplicated:
            self._advance(aggregate_id, expected, result.sequence)
        status = DeliveryStatus.DEDUPLICATED if result.deduplicated else DeliveryStatus.DELIVERED
        await self._finish(
            DeliveryOutcome(
                command=command,
                status=status,
                sequence=result.sequence,
                attempts=attempt,
            )
        )
        return None

    async def _resolve_conflict(
        self,
        command: Command,
        event: Event,
        conflict: ConcurrencyConflictError,
        attempt: int,
    ) -> DeliveryOutcome:
        aggregate_id = command.aggregate_id
        logger.info(
            "command_delivery_conflict",
            aggregate_id=aggregate_id,
            command_id=command.command_id,
            expected=conflict.expected,
            actual=conflict.actual,
        )
        if self._revalidate is None:
            return DeliveryOutcome(
                command=command,
                status=DeliveryStatus.REJECTED,
                attempts=attempt,
                reason="conflict",
                error=conflict,
            )
        if not await _call(self._revalidate, command):
            return DeliveryOutcome(
                command=command,
                status=DeliveryStatus.REJECTED,
                attempts=attempt,
                reason="invalid_after_conflict",
                error=conflict,
            )
        # 競合応答が現在の先頭を含まない場合はストアに問い合わせる
        actual = conflict.actual if conflict.actual >= 0 else await self._store.head(aggregate_id)
        try:
            result = await self._store.append(aggregate_id, actual, event)
        except ConcurrencyConflictError as again:
            return DeliveryOutcome(
                command=command,
                status=DeliveryStatus.FAILED,
                attempts=attempt,
                reason="conflict",
                error=again,
            )
        if not result.deduplicated:
            self._advance(aggregate_id, actual, result.sequence)
        return DeliveryOutcome(
            command=command,
            status=DeliveryStatus.DEDUPLICATED if result.deduplicated else DeliveryStatus.DELIVERED,
            sequence=result.sequence,
            attempts=attempt,
        )

    async def _expected_for(self, command: Command) -> int:
        expected = self._expected.get(command.command_id)
        if expected is None:
            expected = await self._store.head(command.aggregate_id)
            self._expected[command.command_id] = expected
        return expected

    def _advance(self, aggregate_id: str, expected: int, sequence: int) -> None:
        # 後続のコマンドは直前の自分のコマンドをローカルに適用した状態で検証されている。
        # 同じ確定シーケンスを前提にしていたものだけを書き込み後のシーケンスへ進める。
        self._written.setdefault(aggregate_id, {})[expected] = sequence
        for queued in self._queues.get(aggregate_id, ()):
            if self._expected.get(queued.command_id) == expected:
                self._expected[queued.command_id] = sequence

    def _rebase(self, aggregate_id: str, expected: int) -> int:
        """同期前の自分の書き込みを辿り、expected をその後のシーケンスに進める。"""
        written = self._written.get(aggregate_id)
        if not written:
            return expected
        for stale in [k for k in written if k < expected]:
            del written[stale]
        while expected in written:
            expected = written[expected]
        return expected

    async def _finish(self, outcome: DeliveryOutcome) -> None:
        command = outcome.command
        self._attempts.pop(command.command_id, None)
        self._expected.pop(command.command_id, None)
        metrics.commands_pending.add(-1)
        if outcome.succeeded:
            metrics.commands_delivered_total.add(1, {"status": str(outcome.status)})
            logger.info(
                "command_delivered",
                aggregate_id=command.aggregate_id,
                command_id=command.command_id,
                sequence=outcome.sequence,
                status=str(outcome.status),
                attempts=outcome.attempts,
            )
        elif outcome.status == DeliveryStatus.FAILED:
            metrics.commands_failed_total.add(1, {"reason": outcome.reason})
        for listener in list(self._listeners):
            try:
                await _call(listener, outcome)
            except Exception:
                logger.exception(
                    "outcome_listener_failed",
                    aggregate_id=command.aggregate_id,
                    command_id=command.command_id,
                )
