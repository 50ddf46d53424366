"""編集パイプライン

操作 → 変換 → 検証 → ローカル射影への楽観的適用 → 配送キュー → 同期 の順に繋ぐ。
設定は構築時に CollabConfig で明示的に渡す。
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from .config import CollabConfig
from .delivery import CommandQueue, DeliveryOutcome
from .document import DocumentProjection, process_id_for
from .exceptions import TranslationError, ValidationFailedError
from .feed import EventFeed
from .graph import StructuralGraph
from .models import Command, event_id_for
from .projection import ProjectionEngine
from .store import EventStore
from .sync import SyncClient
from .translator import CommandTranslator, Ignored
from .validator import CommandValidator

logger = structlog.stdlib.get_logger(__name__)


class SubmissionStatus(StrEnum):
    """submit の結果。"""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    IGNORED = "IGNORED"


@dataclass(frozen=True)
class SubmissionResult:
    """操作の受付結果。イベントは返さない。"""

    status: SubmissionStatus
    kind: str = ""
    command_id: str | None = None
    reason: str = ""
    errors: list[str] = field(default_factory=list)


class EditingPipeline:
    """1 人の編集者・1 つの集約に対する編集パイプライン。"""

    def __init__(
        self,
        aggregate_id: str,
        actor_id: str,
        store: EventStore,
        feed: EventFeed,
        config: CollabConfig,
        engine: ProjectionEngine | None = None,
        title: str = "",
    ) -> None:
        self._aggregate_id = aggregate_id
        self._actor_id = actor_id
        self._config = config
        self._engine = engine or ProjectionEngine(config.projection.ordering)
        if title:
            self._engine.register(aggregate_id, process_id=process_id_for(title), title=title)
        self._translator = CommandTranslator(aggregate_id, actor_id)
        self._validator = CommandValidator()
        self._queue = CommandQueue(store, config.delivery, revalidate=self._revalidate)
        self._queue.on_outcome(self._on_outcome)
        self._sync = SyncClient(feed, self._engine, aggregate_id, actor_id, config.sync)

    @property
    def aggregate_id(self) -> str:
        return self._aggregate_id

    @property
    def engine(self) -> ProjectionEngine:
        return self._engine

    @property
    def queue(self) -> CommandQueue:
        return self._queue

    @property
    def sync(self) -> SyncClient:
        return self._sync

    @property
    def graph(self) -> StructuralGraph:
        return self._engine.graph(self._aggregate_id)

    @property
    def document(self) -> DocumentProjection:
        return self._engine.document(self._aggregate_id)

    def submit(self, operation: Mapping[str, Any]) -> SubmissionResult:
        """編集操作を受け付ける。受理した場合はローカル射影に即時反映して配送キューに入れる。"""
        kind = str(operation.get("kind") or operation.get("command") or "")
        try:
            outcome = self._translator.classify(operation)
        except TranslationError as e:
            return SubmissionResult(
                status=SubmissionStatus.REJECTED,
                kind=kind,
                reason=e.code,
                errors=[e.message],
            )
        if isinstance(outcome, Ignored):
            return SubmissionResult(
                status=SubmissionStatus.IGNORED, kind=kind, reason=str(outcome.reason)
            )

        command = outcome.command
        result = self._validator.validate(command, self.graph)
        if not result.is_valid:
            return SubmissionResult(
                status=SubmissionStatus.REJECTED,
                kind=kind,
                command_id=command.command_id,
                reason=result.errors[0].code,
                errors=[e.message for e in result.errors],
            )

        # 検証に使った確定シーケンスを送信時の expected_sequence にする
        expected = self._engine.applied_sequence(self._aggregate_id)
        event = command.to_event()
        self._engine.apply_local(event)
        self._sync.track_local(event)
        self._queue.enqueue(command, expected_sequence=expected)
        logger.info(
            "command_accepted",
            aggregate_id=self._aggregate_id,
            command_id=command.command_id,
            command_type=str(command.type),
            origin=str(command.origin),
        )
        return SubmissionResult(
            status=SubmissionStatus.ACCEPTED, kind=kind, command_id=command.command_id
        )

    async def cancel(self, command_id: str) -> bool:
        """送信待ちのコマンドを取り消し、ローカル射影から外す。"""
        return await self._queue.cancel(command_id)

    async def start(self) -> None:
        await self._sync.start()

    async def flush(self) -> None:
        """配送キューを空にしてから 1 回同期する。"""
        await self._queue.drain()
        await self._sync.sync_once()

    async def close(self) -> None:
        await self._sync.stop()
        await self._queue.close()

    async def _revalidate(self, command: Command) -> bool:
        # 競合時は最新の確定状態を取り込み、ローカル変更を除いたグラフで検証し直す
        await self._sync.sync_once()
        try:
            self._validator.validate(
                command, self._engine.confirmed_graph(self._aggregate_id)
            ).raise_for_errors()
        except ValidationFailedError as e:
            logger.info(
                "command_invalid_after_conflict",
                aggregate_id=self._aggregate_id,
                command_id=command.command_id,
                error=str(e),
            )
            return False
        return True

    def _on_outcome(self, outcome: DeliveryOutcome) -> None:
        if outcome.succeeded:
            return
        command = outcome.command
        event_id = event_id_for(command.command_id)
        local = next(
            (
                e
                for e in self._engine.pending_local(self._aggregate_id)
                if e.event_id == event_id
            ),
            None,
        )
        if local is not None:
            self._sync.forget_local(local)
            self._engine.discard_local(self._aggregate_id, event_id)
        logger.warning(
            "local_edit_reverted",
            aggregate_id=self._aggregate_id,
            command_id=command.command_id,
            status=str(outcome.status),
            reason=outcome.reason,
        )
