"""コマンドの事前検証"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from .exceptions import (
    DuplicateElementError,
    IncompatibleConnectionError,
    ReferenceNotFoundError,
    ValidationFailedError,
)
from .graph import StructuralGraph
from .models import Command, CommandType, ConnectElementsPayload, ConnectionType, ElementKind

logger = structlog.stdlib.get_logger(__name__)

# シーケンスフローで接続できるノード種別
SEQUENCE_FLOW_KINDS: frozenset[ElementKind] = frozenset(
    {ElementKind.TASK, ElementKind.GATEWAY, ElementKind.EVENT}
)


@dataclass
class ValidationResult:
    """検証結果。errors が空なら有効。"""

    errors: list[ValidationFailedError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        """最初のエラーを送出する。"""
        if self.errors:
            raise self.errors[0]


class CommandValidator:
    """構造グラフの現在状態に対してコマンドを検証する。

    グラフは読み取り専用として扱う。追記時の楽観的排他制御が最終判断であり、
    ここでの検証はキュー投入前の早期拒否に使う。
    """

    def validate(self, command: Command, graph: StructuralGraph) -> ValidationResult:
        result = ValidationResult()
        if command.type == CommandType.CREATE_ELEMENT:
            if graph.has_element(command.element_id):
                result.errors.append(DuplicateElementError(command.element_id))
        else:
            if command.type != CommandType.CONNECT_ELEMENTS and not graph.has_element(
                command.element_id
            ):
                result.errors.append(ReferenceNotFoundError(command.element_id))

        if isinstance(command.payload, ConnectElementsPayload):
            result.errors.extend(self._check_connection(command.payload, graph))

        if result.errors:
            logger.info(
                "command_rejected",
                aggregate_id=command.aggregate_id,
                command_id=command.command_id,
                command_type=str(command.type),
                codes=[e.code for e in result.errors],
            )
        return result

    def _check_connection(
        self, payload: ConnectElementsPayload, graph: StructuralGraph
    ) -> list[ValidationFailedError]:
        errors: list[ValidationFailedError] = []
        if graph.has_element(payload.id):
            errors.append(DuplicateElementError(payload.id))

        missing = [i for i in (payload.source_id, payload.target_id) if not graph.has_node(i)]
        for element_id in dict.fromkeys(missing):
            errors.append(ReferenceNotFoundError(element_id))

        if payload.source_id == payload.target_id:
            errors.append(
                IncompatibleConnectionError(
                    payload.source_id, payload.target_id, "source and target must differ"
                )
            )
        elif not missing and payload.type == ConnectionType.SEQUENCE_FLOW:
            for endpoint in (payload.source_id, payload.target_id):
                node = graph.node(endpoint)
                if node is not None and node.kind not in SEQUENCE_FLOW_KINDS:
                    errors.append(
                        IncompatibleConnectionError(
                            payload.source_id,
                            payload.target_id,
                            f"{node.kind} cannot be joined by a sequence flow",
                        )
                    )
                    break
        return errors
