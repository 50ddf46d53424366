"""bpmn_collab データモデル"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_EVENT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "bpmn-collab:event")


class ElementKind(StrEnum):
    """構造グラフ上のノード種別。"""

    TASK = "TASK"
    GATEWAY = "GATEWAY"
    EVENT = "EVENT"
    POOL = "POOL"
    LANE = "LANE"
    UNSPECIFIED = "UNSPECIFIED"


class TaskType(StrEnum):
    """タスクのサブタイプ。"""

    TASK = "TASK"
    USER_TASK = "USER_TASK"
    SERVICE_TASK = "SERVICE_TASK"
    SCRIPT_TASK = "SCRIPT_TASK"
    MANUAL_TASK = "MANUAL_TASK"
    BUSINESS_RULE_TASK = "BUSINESS_RULE_TASK"
    SEND_TASK = "SEND_TASK"
    RECEIVE_TASK = "RECEIVE_TASK"
    CALL_ACTIVITY = "CALL_ACTIVITY"
    SUB_PROCESS = "SUB_PROCESS"


class GatewayType(StrEnum):
    """ゲートウェイのサブタイプ。"""

    EXCLUSIVE = "EXCLUSIVE"
    PARALLEL = "PARALLEL"
    INCLUSIVE = "INCLUSIVE"
    EVENT_BASED = "EVENT_BASED"
    COMPLEX = "COMPLEX"


class BpmnEventType(StrEnum):
    """BPMN イベント要素のサブタイプ。"""

    START = "START"
    END = "END"
    INTERMEDIATE_CATCH = "INTERMEDIATE_CATCH"
    INTERMEDIATE_THROW = "INTERMEDIATE_THROW"
    BOUNDARY = "BOUNDARY"


class ConnectionType(StrEnum):
    """エッジ (接続) の種別。"""

    SEQUENCE_FLOW = "SEQUENCE_FLOW"
    MESSAGE_FLOW = "MESSAGE_FLOW"
    ASSOCIATION = "ASSOCIATION"
    DATA_ASSOCIATION = "DATA_ASSOCIATION"
    UNSPECIFIED = "UNSPECIFIED"


class CommandType(StrEnum):
    """コマンド種別。"""

    CREATE_ELEMENT = "CreateElement"
    MOVE_ELEMENT = "MoveElement"
    UPDATE_PROPERTIES = "UpdateProperties"
    CONNECT_ELEMENTS = "ConnectElements"
    DELETE_ELEMENT = "DeleteElement"
    RENAME_ELEMENT = "RenameElement"


class EventType(StrEnum):
    """イベント種別。"""

    ELEMENT_CREATED = "ElementCreated"
    ELEMENT_MOVED = "ElementMoved"
    PROPERTIES_UPDATED = "PropertiesUpdated"
    ELEMENTS_CONNECTED = "ElementsConnected"
    ELEMENT_DELETED = "ElementDeleted"
    ELEMENT_RENAMED = "ElementRenamed"


class CommandOrigin(StrEnum):
    """コマンドの発行元。"""

    USER = "user"
    AI = "ai"


EVENT_TYPE_FOR_COMMAND: dict[CommandType, EventType] = {
    CommandType.CREATE_ELEMENT: EventType.ELEMENT_CREATED,
    CommandType.MOVE_ELEMENT: EventType.ELEMENT_MOVED,
    CommandType.UPDATE_PROPERTIES: EventType.PROPERTIES_UPDATED,
    CommandType.CONNECT_ELEMENTS: EventType.ELEMENTS_CONNECTED,
    CommandType.DELETE_ELEMENT: EventType.ELEMENT_DELETED,
    CommandType.RENAME_ELEMENT: EventType.ELEMENT_RENAMED,
}


# --- コマンドペイロード ---


class PayloadModel(BaseModel):
    """コマンドペイロードの基底モデル。ワイヤ上は camelCase。"""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    id: str = Field(min_length=1)

    def referenced_ids(self) -> list[str]:
        """検証時に存在確認が必要な要素 ID を返す。"""
        return [self.id]


class Point(BaseModel):
    """整数座標。"""

    model_config = ConfigDict(frozen=True)

    x: int
    y: int


class Size(BaseModel):
    """整数サイズ。"""

    model_config = ConfigDict(frozen=True)

    width: int = Field(ge=0)
    height: int = Field(ge=0)


class CreateElementPayload(PayloadModel):
    type: ElementKind
    bpmn_type: str = Field(default="", alias="bpmnType")
    position: Point
    size: Size | None = None
    name: str | None = None
    parent_id: str | None = Field(default=None, alias="parentId")
    properties: dict[str, Any] = Field(default_factory=dict)

    def referenced_ids(self) -> list[str]:
        return []


class MoveElementPayload(PayloadModel):
    position: Point
    delta: Point | None = None


class UpdatePropertiesPayload(PayloadModel):
    properties: dict[str, Any] = Field(min_length=1)


class ConnectElementsPayload(PayloadModel):
    type: ConnectionType
    bpmn_type: str = Field(default="", alias="bpmnType")
    source_id: str = Field(min_length=1, alias="sourceId")
    target_id: str = Field(min_length=1, alias="targetId")
    name: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)

    def referenced_ids(self) -> list[str]:
        return [self.source_id, self.target_id]


class DeleteElementPayload(PayloadModel):
    pass


class RenameElementPayload(PayloadModel):
    name: str


CommandPayload = (
    CreateElementPayload
    | MoveElementPayload
    | UpdatePropertiesPayload
    | ConnectElementsPayload
    | DeleteElementPayload
    | RenameElementPayload
)

PAYLOAD_TYPES: dict[CommandType, type[PayloadModel]] = {
    CommandType.CREATE_ELEMENT: CreateElementPayload,
    CommandType.MOVE_ELEMENT: MoveElementPayload,
    CommandType.UPDATE_PROPERTIES: UpdatePropertiesPayload,
    CommandType.CONNECT_ELEMENTS: ConnectElementsPayload,
    CommandType.DELETE_ELEMENT: DeleteElementPayload,
    CommandType.RENAME_ELEMENT: RenameElementPayload,
}


# --- コマンド / イベント ---


def event_id_for(command_id: str) -> str:
    """コマンド ID から決定的にイベント ID を導出する。"""
    return str(uuid.uuid5(_EVENT_NAMESPACE, command_id))


@dataclass(frozen=True)
class Command:
    """集約に対する変更要求。生成後は変更しない。"""

    aggregate_id: str
    actor_id: str
    type: CommandType
    payload: CommandPayload
    command_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    issued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    causation_id: str | None = None
    correlation_id: str = ""
    origin: CommandOrigin = CommandOrigin.USER

    def __post_init__(self) -> None:
        if not self.aggregate_id:
            raise ValueError("aggregate_id cannot be empty")
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.type} requires {expected.__name__}, got {type(self.payload).__name__}"
            )
        if not self.correlation_id:
            object.__setattr__(self, "correlation_id", self.command_id)

    @property
    def element_id(self) -> str:
        return self.payload.id

    def referenced_ids(self) -> list[str]:
        return self.payload.referenced_ids()

    def to_event(self) -> Event:
        """このコマンドの結果として追記されるイベントを生成する (sequence 未割り当て)。"""
        return Event(
            aggregate_id=self.aggregate_id,
            type=EVENT_TYPE_FOR_COMMAND[self.type],
            data=self.payload.model_dump(mode="json", by_alias=True, exclude_none=True),
            event_id=event_id_for(self.command_id),
            causation_id=self.command_id,
            correlation_id=self.correlation_id,
            actor_id=self.actor_id,
        )


@dataclass(frozen=True)
class Event:
    """追記済みの不変なイベント。"""

    aggregate_id: str
    type: EventType
    data: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    causation_id: str = ""
    correlation_id: str = ""
    actor_id: str = ""
    sequence: int | None = None
    recorded_at: datetime | None = None

    @property
    def element_id(self) -> str:
        return str(self.data.get("id", ""))

    def with_sequence(self, sequence: int, recorded_at: datetime | None = None) -> Event:
        """ストアが採番したシーケンスを付与したコピーを返す。"""
        return replace(
            self,
            sequence=sequence,
            recorded_at=recorded_at or datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "aggregate_id": self.aggregate_id,
            "sequence": self.sequence,
            "type": str(self.type),
            "data": self.data,
            "causation_id": self.causation_id,
            "correlation_id": self.correlation_id,
            "actor_id": self.actor_id,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """API レスポンス辞書から Event を生成する。"""
        recorded_at = data.get("recorded_at")
        return cls(
            event_id=data["event_id"],
            aggregate_id=data["aggregate_id"],
            sequence=data.get("sequence"),
            type=EventType(data["type"]),
            data=data.get("data", {}),
            causation_id=data.get("causation_id", ""),
            correlation_id=data.get("correlation_id", ""),
            actor_id=data.get("actor_id", ""),
            recorded_at=datetime.fromisoformat(recorded_at) if recorded_at else None,
        )


@dataclass(frozen=True)
class AppendResult:
    """append の結果。deduplicated は同一コマンドが既に適用済みだったことを示す。"""

    sequence: int
    deduplicated: bool = False


@dataclass
class EventPage:
    """イベントフィードの 1 ページ。"""

    events: list[Event]
    next_sequence: int
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "next_sequence": self.next_sequence,
            "has_more": self.has_more,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventPage:
        return cls(
            events=[Event.from_dict(e) for e in data.get("events", [])],
            next_sequence=data.get("next_sequence", 0),
            has_more=data.get("has_more", False),
        )


# --- 集約 / スナップショット ---


@dataclass
class Aggregate:
    """独立にバージョン管理されるダイアグラム。"""

    aggregate_id: str
    tenant_id: str
    title: str = ""
    process_id: str = "Process_1"
    version: int = 0
    last_synced_sequence: int = 0


@dataclass(frozen=True)
class Snapshot:
    """明示的な保存で作られる、ある時点のドキュメント。"""

    aggregate_id: str
    version: int
    content: str
    applied_sequence: int
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class SnapshotView:
    """UI 層に返すスナップショットの読み取りビュー。"""

    content: str
    version: int
    applied_sequence: int
    recorded_at: datetime

    @classmethod
    def of(cls, snapshot: Snapshot) -> SnapshotView:
        return cls(
            content=snapshot.content,
            version=snapshot.version,
            applied_sequence=snapshot.applied_sequence,
            recorded_at=snapshot.created_at,
        )


@dataclass(frozen=True)
class SaveResult:
    """save の結果。created=False は変更がなく新しいバージョンを作らなかったことを示す。"""

    version: int
    created: bool = True
