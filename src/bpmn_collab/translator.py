"""編集面の操作レコードを型付きコマンドに変換する"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from pydantic import ValidationError

from .exceptions import TranslationError
from .models import (
    BpmnEventType,
    Command,
    CommandOrigin,
    CommandType,
    ConnectElementsPayload,
    ConnectionType,
    CreateElementPayload,
    DeleteElementPayload,
    ElementKind,
    GatewayType,
    MoveElementPayload,
    PayloadModel,
    RenameElementPayload,
    TaskType,
    UpdatePropertiesPayload,
)

logger = structlog.stdlib.get_logger(__name__)

# bpmn:* 要素型 -> (ノード種別, プロパティグループ名, サブタイプ)
ELEMENT_TYPES: dict[str, tuple[ElementKind, str | None, StrEnum | None]] = {
    "bpmn:Task": (ElementKind.TASK, "taskProps", TaskType.TASK),
    "bpmn:UserTask": (ElementKind.TASK, "taskProps", TaskType.USER_TASK),
    "bpmn:ServiceTask": (ElementKind.TASK, "taskProps", TaskType.SERVICE_TASK),
    "bpmn:ScriptTask": (ElementKind.TASK, "taskProps", TaskType.SCRIPT_TASK),
    "bpmn:ManualTask": (ElementKind.TASK, "taskProps", TaskType.MANUAL_TASK),
    "bpmn:BusinessRuleTask": (ElementKind.TASK, "taskProps", TaskType.BUSINESS_RULE_TASK),
    "bpmn:SendTask": (ElementKind.TASK, "taskProps", TaskType.SEND_TASK),
    "bpmn:ReceiveTask": (ElementKind.TASK, "taskProps", TaskType.RECEIVE_TASK),
    "bpmn:CallActivity": (ElementKind.TASK, "taskProps", TaskType.CALL_ACTIVITY),
    "bpmn:SubProcess": (ElementKind.TASK, "taskProps", TaskType.SUB_PROCESS),
    "bpmn:ExclusiveGateway": (ElementKind.GATEWAY, "gatewayProps", GatewayType.EXCLUSIVE),
    "bpmn:ParallelGateway": (ElementKind.GATEWAY, "gatewayProps", GatewayType.PARALLEL),
    "bpmn:InclusiveGateway": (ElementKind.GATEWAY, "gatewayProps", GatewayType.INCLUSIVE),
    "bpmn:EventBasedGateway": (ElementKind.GATEWAY, "gatewayProps", GatewayType.EVENT_BASED),
    "bpmn:ComplexGateway": (ElementKind.GATEWAY, "gatewayProps", GatewayType.COMPLEX),
    "bpmn:StartEvent": (ElementKind.EVENT, "eventProps", BpmnEventType.START),
    "bpmn:EndEvent": (ElementKind.EVENT, "eventProps", BpmnEventType.END),
    "bpmn:IntermediateCatchEvent": (
        ElementKind.EVENT,
        "eventProps",
        BpmnEventType.INTERMEDIATE_CATCH,
    ),
    "bpmn:IntermediateThrowEvent": (
        ElementKind.EVENT,
        "eventProps",
        BpmnEventType.INTERMEDIATE_THROW,
    ),
    "bpmn:BoundaryEvent": (ElementKind.EVENT, "eventProps", BpmnEventType.BOUNDARY),
    "bpmn:Participant": (ElementKind.POOL, None, None),
    "bpmn:Lane": (ElementKind.LANE, None, None),
}

CONNECTION_TYPES: dict[str, ConnectionType] = {
    "bpmn:SequenceFlow": ConnectionType.SEQUENCE_FLOW,
    "bpmn:MessageFlow": ConnectionType.MESSAGE_FLOW,
    "bpmn:Association": ConnectionType.ASSOCIATION,
    "bpmn:DataInputAssociation": ConnectionType.DATA_ASSOCIATION,
    "bpmn:DataOutputAssociation": ConnectionType.DATA_ASSOCIATION,
}

_SUBTYPE_KEYS = {"taskProps": "taskType", "gatewayProps": "gatewayType", "eventProps": "eventType"}

# 位置・見た目だけの操作や、構成要素ごとに個別の操作が届く複合操作
IGNORED_KINDS: frozenset[str] = frozenset(
    {
        "connection.updateWaypoints",
        "connection.layout",
        "bendpoint.move",
        "bendpoint.add",
        "bendpoint.remove",
        "canvas.resized",
        "canvas.viewbox.changed",
        "elements.rotate",
        "shape.rotate",
        "shape.resize",
        "elements.move",
        "elements.delete",
        "elements.align",
        "elements.distribute",
    }
)

_GEOMETRY_KEYS = frozenset({"x", "y", "width", "height", "position", "waypoints", "di"})
_REPLAY_TRIGGERS = frozenset({"undo", "redo"})

_Handler = Callable[[str, Mapping[str, Any]], tuple[CommandType, PayloadModel]]


class IgnoreReason(StrEnum):
    """変換しなかった理由。エラーではない。"""

    IGNORED_BY_DESIGN = "ignored_by_design"
    UNSUPPORTED_KIND = "unsupported_kind"


@dataclass(frozen=True)
class Translated:
    """変換に成功した操作。"""

    command: Command


@dataclass(frozen=True)
class Ignored:
    """意図的に無視した操作。"""

    kind: str
    reason: IgnoreReason


TranslationOutcome = Translated | Ignored


def resolve_element_type(bpmn_type: str) -> tuple[ElementKind, dict[str, Any]]:
    """bpmn:* 型名をノード種別とプロパティグループに解決する。未知の型は UNSPECIFIED。"""
    entry = ELEMENT_TYPES.get(bpmn_type)
    if entry is None:
        return ElementKind.UNSPECIFIED, {}
    kind, group, subtype = entry
    if group is None or subtype is None:
        return kind, {}
    return kind, {group: {_SUBTYPE_KEYS[group]: subtype}}


def resolve_connection_type(bpmn_type: str) -> ConnectionType:
    return CONNECTION_TYPES.get(bpmn_type, ConnectionType.UNSPECIFIED)


def _to_int(value: Any, kind: str, name: str) -> int:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError) as e:
        raise TranslationError(kind, f"{name} is not a number: {value!r}", cause=e) from e


def _to_datetime(value: Any, kind: str) -> datetime:
    """エポックミリ秒または ISO 8601 文字列を UTC の datetime にする。"""
    try:
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        return datetime.fromtimestamp(float(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise TranslationError(kind, f"timestamp is invalid: {value!r}", cause=e) from e


def _ref_id(value: Any) -> str | None:
    """要素参照 (ID 文字列 or {id: ...}) から ID を取り出す。"""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        return str(ref) if ref else None
    return None


def _require_mapping(context: Mapping[str, Any], key: str, kind: str) -> Mapping[str, Any]:
    value = context.get(key)
    if not isinstance(value, Mapping):
        raise TranslationError(kind, f"context.{key} is missing")
    return value


def _require_id(element: Mapping[str, Any], kind: str, key: str) -> str:
    element_id = _ref_id(element)
    if element_id is None:
        raise TranslationError(kind, f"context.{key}.id is missing")
    return element_id


def _event_definition(business_object: Mapping[str, Any]) -> str | None:
    definitions = business_object.get("eventDefinitions") or []
    if not definitions or not isinstance(definitions[0], Mapping):
        return None
    raw = str(definitions[0].get("$type", ""))
    name = raw.removeprefix("bpmn:").removesuffix("EventDefinition")
    return name.upper() or None


class CommandTranslator:
    """編集面の操作 {kind, context} を 1 つの集約宛てのコマンドに変換する。"""

    def __init__(self, aggregate_id: str, actor_id: str) -> None:
        self._aggregate_id = aggregate_id
        self._actor_id = actor_id
        self._handlers: dict[str, _Handler] = {
            "shape.create": self._create_shape,
            "shape.move": self._move_shape,
            "element.updateProperties": self._update_properties,
            "element.updateModdleProperties": self._update_properties,
            "connection.create": self._create_connection,
            "shape.delete": self._delete_shape,
            "connection.delete": self._delete_connection,
            "element.updateLabel": self._update_label,
        }

    @property
    def supported_kinds(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def translate(self, operation: Mapping[str, Any]) -> Command | None:
        """操作をコマンドに変換する。無視対象の操作は None を返す。

        Raises:
            TranslationError: サポート対象の操作だが context が不正な場合
        """
        outcome = self.classify(operation)
        if isinstance(outcome, Ignored):
            return None
        return outcome.command

    def classify(self, operation: Mapping[str, Any]) -> TranslationOutcome:
        """操作を Translated / Ignored のいずれかに分類する。"""
        kind = str(operation.get("kind") or operation.get("command") or "")
        if operation.get("trigger") in _REPLAY_TRIGGERS:
            # 取り消し・やり直しは新しいコマンドとして送らない
            logger.info(
                "translation_ignored",
                kind=kind,
                reason=str(IgnoreReason.IGNORED_BY_DESIGN),
                trigger=operation.get("trigger"),
            )
            return Ignored(kind=kind, reason=IgnoreReason.IGNORED_BY_DESIGN)
        handler = self._handlers.get(kind)
        if handler is None:
            reason = (
                IgnoreReason.IGNORED_BY_DESIGN
                if kind in IGNORED_KINDS
                else IgnoreReason.UNSUPPORTED_KIND
            )
            logger.info("translation_ignored", kind=kind, reason=str(reason))
            return Ignored(kind=kind, reason=reason)

        context = operation.get("context")
        try:
            if not isinstance(context, Mapping):
                raise TranslationError(kind, "context is missing")
            command_type, payload = handler(kind, context)
            command = self._build_command(kind, operation, context, command_type, payload)
        except TranslationError as e:
            logger.warning("translation_failed", kind=kind, error=str(e))
            raise
        except ValidationError as e:
            logger.warning("translation_failed", kind=kind, error=str(e))
            raise TranslationError(kind, f"invalid payload: {e}", cause=e) from e
        return Translated(command=command)

    def _build_command(
        self,
        kind: str,
        operation: Mapping[str, Any],
        context: Mapping[str, Any],
        command_type: CommandType,
        payload: PayloadModel,
    ) -> Command:
        metadata = operation.get("metadata") or {}
        is_ai = bool(context.get("isAiGenerated")) or metadata.get("origin") == CommandOrigin.AI
        # 編集面が採番した ID をそのまま冪等キーにする
        identity: dict[str, Any] = {}
        if operation.get("id"):
            identity["command_id"] = str(operation["id"])
        if operation.get("timestamp") is not None:
            identity["issued_at"] = _to_datetime(operation["timestamp"], kind)
        return Command(
            aggregate_id=self._aggregate_id,
            actor_id=str(operation.get("actorId") or operation.get("userId") or self._actor_id),
            type=command_type,
            payload=payload,  # type: ignore[arg-type]
            causation_id=metadata.get("causationId"),
            correlation_id=str(metadata.get("correlationId") or metadata.get("batchId") or ""),
            origin=CommandOrigin.AI if is_ai else CommandOrigin.USER,
            **identity,
        )

    def _create_shape(
        self, kind: str, context: Mapping[str, Any]
    ) -> tuple[CommandType, PayloadModel]:
        shape = _require_mapping(context, "shape", kind)
        element_id = _require_id(shape, kind, "shape")
        business_object = shape.get("businessObject") or {}
        bpmn_type = str(shape.get("type") or business_object.get("$type") or "")

        x, y = shape.get("x"), shape.get("y")
        if x is None or y is None:
            position = context.get("position") or {}
            x, y = position.get("x"), position.get("y")
        if x is None or y is None:
            raise TranslationError(kind, "shape position is missing")

        element_kind, properties = resolve_element_type(bpmn_type)
        if element_kind == ElementKind.EVENT:
            definition = _event_definition(business_object)
            if definition is not None:
                properties["eventProps"]["eventDefinition"] = definition

        size = None
        if shape.get("width") is not None and shape.get("height") is not None:
            size = {
                "width": _to_int(shape["width"], kind, "width"),
                "height": _to_int(shape["height"], kind, "height"),
            }

        payload = CreateElementPayload(
            id=element_id,
            type=element_kind,
            bpmn_type=bpmn_type,
            position={"x": _to_int(x, kind, "x"), "y": _to_int(y, kind, "y")},
            size=size,
            name=business_object.get("name"),
            parent_id=_ref_id(context.get("parent")),
            properties=properties,
        )
        return CommandType.CREATE_ELEMENT, payload

    def _move_shape(self, kind: str, context: Mapping[str, Any]) -> tuple[CommandType, PayloadModel]:
        shape = _require_mapping(context, "shape", kind)
        element_id = _require_id(shape, kind, "shape")
        if shape.get("x") is None or shape.get("y") is None:
            raise TranslationError(kind, "shape position is missing")
        delta = context.get("delta")
        if isinstance(delta, Mapping):
            delta = {
                "x": _to_int(delta.get("x", 0), kind, "delta.x"),
                "y": _to_int(delta.get("y", 0), kind, "delta.y"),
            }
        else:
            delta = None
        payload = MoveElementPayload(
            id=element_id,
            position={"x": _to_int(shape["x"], kind, "x"), "y": _to_int(shape["y"], kind, "y")},
            delta=delta,
        )
        return CommandType.MOVE_ELEMENT, payload

    def _update_properties(
        self, kind: str, context: Mapping[str, Any]
    ) -> tuple[CommandType, PayloadModel]:
        element = _require_mapping(context, "element", kind)
        element_id = _require_id(element, kind, "element")
        raw = context.get("properties")
        if not isinstance(raw, Mapping):
            raise TranslationError(kind, "context.properties is missing")
        properties = {
            key: value for key, value in raw.items() if key != "id" and key not in _GEOMETRY_KEYS
        }
        if not properties:
            raise TranslationError(kind, "no updatable properties")
        return CommandType.UPDATE_PROPERTIES, UpdatePropertiesPayload(
            id=element_id, properties=properties
        )

    def _create_connection(
        self, kind: str, context: Mapping[str, Any]
    ) -> tuple[CommandType, PayloadModel]:
        connection = _require_mapping(context, "connection", kind)
        connection_id = _require_id(connection, kind, "connection")
        source_id = _ref_id(context.get("source")) or _ref_id(connection.get("source"))
        target_id = _ref_id(context.get("target")) or _ref_id(connection.get("target"))
        if source_id is None or target_id is None:
            raise TranslationError(kind, "connection source/target is missing")
        business_object = connection.get("businessObject") or {}
        bpmn_type = str(connection.get("type") or business_object.get("$type") or "")
        payload = ConnectElementsPayload(
            id=connection_id,
            type=resolve_connection_type(bpmn_type),
            bpmn_type=bpmn_type,
            source_id=source_id,
            target_id=target_id,
            name=business_object.get("name"),
        )
        return CommandType.CONNECT_ELEMENTS, payload

    def _delete_shape(self, kind: str, context: Mapping[str, Any]) -> tuple[CommandType, PayloadModel]:
        shape = _require_mapping(context, "shape", kind)
        return CommandType.DELETE_ELEMENT, DeleteElementPayload(id=_require_id(shape, kind, "shape"))

    def _delete_connection(
        self, kind: str, context: Mapping[str, Any]
    ) -> tuple[CommandType, PayloadModel]:
        connection = _require_mapping(context, "connection", kind)
        return CommandType.DELETE_ELEMENT, DeleteElementPayload(
            id=_require_id(connection, kind, "connection")
        )

    def _update_label(self, kind: str, context: Mapping[str, Any]) -> tuple[CommandType, PayloadModel]:
        element = _require_mapping(context, "element", kind)
        element_id = _require_id(element, kind, "element")
        new_label = context.get("newLabel")
        if new_label is None:
            raise TranslationError(kind, "context.newLabel is missing")
        return CommandType.RENAME_ELEMENT, RenameElementPayload(id=element_id, name=str(new_label))
