"""プロジェクションエンジン

集約ごとのイベント列を畳み込み、構造グラフと描画可能ドキュメントの 2 つの射影を維持する。
射影を変更するのはこのモジュールだけで、他のコンポーネントは読み取り専用として扱う。

順序ポリシー:
    tolerant (既定): 届いた順に適用する。欠番は異常として記録し、後から届いた古いイベントは
        保持している履歴をシーケンス順に畳み直して自己修復する。
    strict: 先行イベントが揃うまでバッファし、連続した順でのみ適用する。
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from . import metrics
from .document import DocumentEdge, DocumentProjection, DocumentShape, default_size
from .graph import GraphEdge, GraphNode, StructuralGraph
from .models import ConnectionType, ElementKind, Event, EventType

logger = structlog.stdlib.get_logger(__name__)

_GEOMETRY_KEYS = frozenset({"x", "y", "width", "height", "position", "size", "waypoints", "di"})


class OrderingPolicy(StrEnum):
    """順序の揃っていないイベントの扱い。"""

    TOLERANT = "tolerant"
    STRICT = "strict"


class AnomalyKind(StrEnum):
    """プロジェクション異常の種別。"""

    MISSING_ELEMENT = "missing_element"
    DUPLICATE_ELEMENT = "duplicate_element"
    SELF_LOOP = "self_loop"
    SEQUENCE_GAP = "sequence_gap"
    LATE_EVENT = "late_event"


@dataclass(frozen=True)
class ProjectionAnomaly:
    """no-op として扱ったイベントの記録。利用者にはエスカレーションしない。"""

    aggregate_id: str
    event_id: str
    sequence: int | None
    kind: AnomalyKind
    element_id: str = ""
    detail: str = ""


@dataclass
class AggregateProjection:
    """集約 1 つ分の射影状態。"""

    aggregate_id: str
    process_id: str = "Process_1"
    title: str = ""
    graph: StructuralGraph = field(default_factory=StructuralGraph)
    document: DocumentProjection = field(init=False)
    history: dict[int, Event] = field(default_factory=dict)
    local: dict[str, Event] = field(default_factory=dict)
    buffer: dict[int, Event] = field(default_factory=dict)
    applied_sequence: int = 0
    anomalies: list[ProjectionAnomaly] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.document = DocumentProjection(process_id=self.process_id, title=self.title)

    def reset_views(self) -> None:
        self.graph = StructuralGraph()
        self.document = DocumentProjection(process_id=self.process_id, title=self.title)


# --- イベント種別ごとの変換 ---

_Transform = Callable[[StructuralGraph, DocumentProjection, Event], tuple[AnomalyKind, str] | None]


def _element_kind(value: Any) -> ElementKind:
    try:
        return ElementKind(value)
    except ValueError:
        return ElementKind.UNSPECIFIED


def _connection_kind(value: Any) -> ConnectionType:
    try:
        return ConnectionType(value)
    except ValueError:
        return ConnectionType.UNSPECIFIED


def _on_created(
    graph: StructuralGraph, document: DocumentProjection, event: Event
) -> tuple[AnomalyKind, str] | None:
    data = event.data
    element_id = event.element_id
    if graph.has_element(element_id):
        return AnomalyKind.DUPLICATE_ELEMENT, "element already exists"
    kind = _element_kind(data.get("type"))
    position = data.get("position") or {}
    size = data.get("size") or {}
    default_width, default_height = default_size(kind)
    width = int(size.get("width", default_width))
    height = int(size.get("height", default_height))
    x, y = int(position.get("x", 0)), int(position.get("y", 0))
    properties = data.get("properties") or {}

    graph.put_node(
        GraphNode(
            id=element_id,
            kind=kind,
            bpmn_type=data.get("bpmnType", ""),
            name=data.get("name"),
            x=x,
            y=y,
            width=width,
            height=height,
            parent_id=data.get("parentId"),
            properties=copy.deepcopy(properties),
            applied_sequence=event.sequence,
        )
    )
    document.add_shape(
        DocumentShape(
            id=element_id,
            kind=kind,
            bpmn_type=data.get("bpmnType", ""),
            x=x,
            y=y,
            width=width,
            height=height,
            name=data.get("name"),
            parent_id=data.get("parentId"),
            properties=copy.deepcopy(properties),
        )
    )
    return None


def _on_moved(
    graph: StructuralGraph, document: DocumentProjection, event: Event
) -> tuple[AnomalyKind, str] | None:
    node = graph.node(event.element_id)
    if node is None:
        return AnomalyKind.MISSING_ELEMENT, "move target not found"
    position = event.data.get("position") or {}
    node.x = int(position.get("x", node.x))
    node.y = int(position.get("y", node.y))
    node.applied_sequence = event.sequence
    document.move(node.id, node.x, node.y)
    return None


def _on_properties_updated(
    graph: StructuralGraph, document: DocumentProjection, event: Event
) -> tuple[AnomalyKind, str] | None:
    target = graph.node(event.element_id) or graph.edge(event.element_id)
    if target is None:
        return AnomalyKind.MISSING_ELEMENT, "update target not found"
    properties = {
        k: copy.deepcopy(v)
        for k, v in (event.data.get("properties") or {}).items()
        if k not in _GEOMETRY_KEYS
    }
    if "name" in properties:
        name = properties.pop("name")
        target.name = name
        document.rename(target.id, name)
    target.properties.update(properties)
    target.applied_sequence = event.sequence
    document.update_properties(target.id, copy.deepcopy(properties))
    return None


def _on_connected(
    graph: StructuralGraph, document: DocumentProjection, event: Event
) -> tuple[AnomalyKind, str] | None:
    data = event.data
    edge_id = event.element_id
    source_id = data.get("sourceId", "")
    target_id = data.get("targetId", "")
    if graph.has_element(edge_id):
        return AnomalyKind.DUPLICATE_ELEMENT, "connection already exists"
    if source_id == target_id:
        return AnomalyKind.SELF_LOOP, f"self-loop on {source_id}"
    for endpoint in (source_id, target_id):
        if not graph.has_node(endpoint):
            return AnomalyKind.MISSING_ELEMENT, f"endpoint not found: {endpoint}"
    kind = _connection_kind(data.get("type"))
    properties = data.get("properties") or {}
    graph.put_edge(
        GraphEdge(
            id=edge_id,
            kind=kind,
            source_id=source_id,
            target_id=target_id,
            bpmn_type=data.get("bpmnType", ""),
            name=data.get("name"),
            properties=copy.deepcopy(properties),
            applied_sequence=event.sequence,
        )
    )
    document.add_edge(
        DocumentEdge(
            id=edge_id,
            kind=kind,
            bpmn_type=data.get("bpmnType", ""),
            source_id=source_id,
            target_id=target_id,
            name=data.get("name"),
            properties=copy.deepcopy(properties),
        )
    )
    return None


def _on_deleted(
    graph: StructuralGraph, document: DocumentProjection, event: Event
) -> tuple[AnomalyKind, str] | None:
    element_id = event.element_id
    if graph.has_node(element_id):
        graph.remove_node(element_id)
    elif graph.has_edge(element_id):
        graph.remove_edge(element_id)
    else:
        return AnomalyKind.MISSING_ELEMENT, "delete target not found"
    document.remove(element_id)
    return None


def _on_renamed(
    graph: StructuralGraph, document: DocumentProjection, event: Event
) -> tuple[AnomalyKind, str] | None:
    target = graph.node(event.element_id) or graph.edge(event.element_id)
    if target is None:
        return AnomalyKind.MISSING_ELEMENT, "rename target not found"
    target.name = event.data.get("name")
    target.applied_sequence = event.sequence
    document.rename(target.id, target.name or "")
    return None


_TRANSFORMS: dict[EventType, _Transform] = {
    EventType.ELEMENT_CREATED: _on_created,
    EventType.ELEMENT_MOVED: _on_moved,
    EventType.PROPERTIES_UPDATED: _on_properties_updated,
    EventType.ELEMENTS_CONNECTED: _on_connected,
    EventType.ELEMENT_DELETED: _on_deleted,
    EventType.ELEMENT_RENAMED: _on_renamed,
}


class ProjectionEngine:
    """集約ごとのイベント列から構造グラフとドキュメントを維持する。"""

    def __init__(self, ordering: OrderingPolicy | str = OrderingPolicy.TOLERANT) -> None:
        self._ordering = OrderingPolicy(ordering)
        self._projections: dict[str, AggregateProjection] = {}

    @property
    def ordering(self) -> OrderingPolicy:
        return self._ordering

    def register(self, aggregate_id: str, process_id: str = "Process_1", title: str = "") -> None:
        """集約のドキュメントメタデータを登録する。"""
        projection = self._projection(aggregate_id)
        projection.process_id = process_id
        projection.title = title
        projection.document.process_id = process_id
        projection.document.title = title

    def graph(self, aggregate_id: str) -> StructuralGraph:
        return self._projection(aggregate_id).graph

    def document(self, aggregate_id: str) -> DocumentProjection:
        return self._projection(aggregate_id).document

    def applied_sequence(self, aggregate_id: str) -> int:
        return self._projection(aggregate_id).applied_sequence

    def anomalies(self, aggregate_id: str) -> list[ProjectionAnomaly]:
        return list(self._projection(aggregate_id).anomalies)

    def buffered_count(self, aggregate_id: str) -> int:
        return len(self._projection(aggregate_id).buffer)

    def pending_local(self, aggregate_id: str) -> list[Event]:
        return list(self._projection(aggregate_id).local.values())

    def confirmed_graph(self, aggregate_id: str) -> StructuralGraph:
        """ローカルの楽観的変更を含まない、確定イベントだけから作ったグラフ。"""
        projection = self._projection(aggregate_id)
        graph = StructuralGraph()
        document = DocumentProjection(projection.process_id, projection.title)
        for sequence in sorted(projection.history):
            self._transform(projection, graph, document, projection.history[sequence], record=False)
        return graph

    def apply(self, event: Event) -> bool:
        """確定済みイベントを適用する。状態に反映した場合 True を返す。"""
        if event.sequence is None:
            raise ValueError("apply requires a sequenced event; use apply_local for optimistic edits")
        projection = self._projection(event.aggregate_id)
        sequence = event.sequence
        if sequence in projection.history or sequence in projection.buffer:
            logger.debug(
                "projection_duplicate_event",
                aggregate_id=event.aggregate_id,
                sequence=sequence,
            )
            return False

        if self._ordering == OrderingPolicy.STRICT:
            if sequence != projection.applied_sequence + 1:
                projection.buffer[sequence] = event
                logger.debug(
                    "projection_event_buffered",
                    aggregate_id=event.aggregate_id,
                    sequence=sequence,
                    waiting_for=projection.applied_sequence + 1,
                )
                return False
            self._commit(projection, event)
            while projection.applied_sequence + 1 in projection.buffer:
                self._commit(projection, projection.buffer.pop(projection.applied_sequence + 1))
            return True

        if sequence < projection.applied_sequence:
            self._record(projection, event, AnomalyKind.LATE_EVENT, "refolding history")
            projection.history[sequence] = event
            projection.local.pop(event.event_id, None)
            self._refold(projection)
            return True
        if sequence > projection.applied_sequence + 1:
            self._record(
                projection,
                event,
                AnomalyKind.SEQUENCE_GAP,
                f"expected {projection.applied_sequence + 1}",
            )
        self._commit(projection, event)
        return True

    def confirm(self, event: Event) -> bool:
        """楽観的に適用済みのローカルイベントを確定する。変換は再実行しない。"""
        return self.apply(event)

    def apply_local(self, event: Event) -> None:
        """まだシーケンスを持たないローカルの楽観的イベントを適用する。"""
        projection = self._projection(event.aggregate_id)
        projection.local[event.event_id] = event
        self._transform(projection, projection.graph, projection.document, event, record=True)

    def discard_local(self, aggregate_id: str, event_id: str) -> bool:
        """ローカルイベントを取り消して射影を畳み直す。"""
        projection = self._projection(aggregate_id)
        if projection.local.pop(event_id, None) is None:
            return False
        self._refold(projection)
        return True

    def rebuild(self, aggregate_id: str, events: Iterable[Event]) -> AggregateProjection:
        """全イベント履歴から射影を作り直す。"""
        old = self._projection(aggregate_id)
        fresh = AggregateProjection(
            aggregate_id=aggregate_id, process_id=old.process_id, title=old.title
        )
        self._projections[aggregate_id] = fresh
        for event in sorted(events, key=lambda e: e.sequence or 0):
            self.apply(event)
        confirmed = {e.event_id for e in fresh.history.values()}
        for event_id, event in old.local.items():
            if event_id not in confirmed:
                self.apply_local(event)
        logger.info(
            "projection_rebuilt",
            aggregate_id=aggregate_id,
            applied_sequence=fresh.applied_sequence,
        )
        return fresh

    def _projection(self, aggregate_id: str) -> AggregateProjection:
        projection = self._projections.get(aggregate_id)
        if projection is None:
            projection = AggregateProjection(aggregate_id=aggregate_id)
            self._projections[aggregate_id] = projection
        return projection

    def _commit(self, projection: AggregateProjection, event: Event) -> None:
        sequence = event.sequence or 0
        tail = max(projection.history, default=0)
        projection.history[sequence] = event
        projection.applied_sequence = max(projection.applied_sequence, sequence)

        if event.event_id in projection.local:
            first_local = next(iter(projection.local))
            del projection.local[event.event_id]
            # 先頭のローカルイベントが履歴の末尾に付くなら、状態は既にこの順序で畳み込まれている
            if first_local != event.event_id or sequence < tail:
                self._refold(projection)
            else:
                self._retag(projection, event)
            return
        if projection.local:
            self._refold(projection)
            return
        self._transform(projection, projection.graph, projection.document, event, record=True)

    def _retag(self, projection: AggregateProjection, event: Event) -> None:
        # 確定したイベントが最後に触れた要素にだけシーケンスを付け直す
        element_id = event.element_id
        if any(e.element_id == element_id for e in projection.local.values()):
            return
        target = projection.graph.node(element_id) or projection.graph.edge(element_id)
        if target is not None and target.applied_sequence is None:
            target.applied_sequence = event.sequence

    def _refold(self, projection: AggregateProjection) -> None:
        projection.reset_views()
        for sequence in sorted(projection.history):
            self._transform(
                projection,
                projection.graph,
                projection.document,
                projection.history[sequence],
                record=False,
            )
        for event in projection.local.values():
            self._transform(projection, projection.graph, projection.document, event, record=False)

    def _transform(
        self,
        projection: AggregateProjection,
        graph: StructuralGraph,
        document: DocumentProjection,
        event: Event,
        record: bool,
    ) -> None:
        transform = _TRANSFORMS.get(event.type)
        if transform is None:
            return
        result = transform(graph, document, event)
        if result is not None and record:
            kind, detail = result
            self._record(projection, event, kind, detail)

    def _record(
        self,
        projection: AggregateProjection,
        event: Event,
        kind: AnomalyKind,
        detail: str,
    ) -> None:
        anomaly = ProjectionAnomaly(
            aggregate_id=projection.aggregate_id,
            event_id=event.event_id,
            sequence=event.sequence,
            kind=kind,
            element_id=event.element_id,
            detail=detail,
        )
        projection.anomalies.append(anomaly)
        metrics.projection_anomalies_total.add(1, {"kind": str(kind)})
        logger.warning(
            "projection_anomaly",
            aggregate_id=anomaly.aggregate_id,
            event_id=anomaly.event_id,
            sequence=anomaly.sequence,
            kind=str(kind),
            element_id=anomaly.element_id,
            detail=detail,
        )
