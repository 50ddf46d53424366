"""構造グラフプロジェクション"""

from __future__ import annotations

import copy
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any

from .models import ConnectionType, ElementKind


@dataclass
class GraphNode:
    """ダイアグラム要素 (タスク・ゲートウェイ・イベント・プール・レーン)。"""

    id: str
    kind: ElementKind
    bpmn_type: str = ""
    name: str | None = None
    x: int = 0
    y: int = 0
    width: int | None = None
    height: int | None = None
    parent_id: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    applied_sequence: int | None = None


@dataclass
class GraphEdge:
    """要素間の接続 (シーケンスフロー・メッセージフロー・関連)。"""

    id: str
    kind: ConnectionType
    source_id: str
    target_id: str
    bpmn_type: str = ""
    name: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    applied_sequence: int | None = None


class StructuralGraph:
    """分析クエリ用の構造グラフ。

    変更は ProjectionEngine からのみ行う。それ以外のコンポーネントは読み取り専用として扱う。
    """

    def __init__(self) -> None:
        self._nodes: dict[str, GraphNode] = {}
        self._edges: dict[str, GraphEdge] = {}

    # --- 読み取り ---

    @property
    def nodes(self) -> dict[str, GraphNode]:
        return dict(self._nodes)

    @property
    def edges(self) -> dict[str, GraphEdge]:
        return dict(self._edges)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def has_edge(self, edge_id: str) -> bool:
        return edge_id in self._edges

    def has_element(self, element_id: str) -> bool:
        return element_id in self._nodes or element_id in self._edges

    def node(self, node_id: str) -> GraphNode | None:
        return self._nodes.get(node_id)

    def edge(self, edge_id: str) -> GraphEdge | None:
        return self._edges.get(edge_id)

    def incident_edges(self, node_id: str) -> list[GraphEdge]:
        return [e for e in self._edges.values() if node_id in (e.source_id, e.target_id)]

    def outgoing(self, node_id: str) -> list[GraphEdge]:
        return [e for e in self._edges.values() if e.source_id == node_id]

    def incoming(self, node_id: str) -> list[GraphEdge]:
        return [e for e in self._edges.values() if e.target_id == node_id]

    def successors(self, node_id: str, kind: ConnectionType | None = None) -> list[str]:
        return sorted(e.target_id for e in self.outgoing(node_id) if kind is None or e.kind == kind)

    def nodes_of_kind(self, kind: ElementKind) -> list[GraphNode]:
        return sorted((n for n in self._nodes.values() if n.kind == kind), key=lambda n: n.id)

    def start_events(self) -> list[str]:
        """入力シーケンスフローを持たないイベントノード。"""
        return [
            n.id
            for n in self.nodes_of_kind(ElementKind.EVENT)
            if not any(e.kind == ConnectionType.SEQUENCE_FLOW for e in self.incoming(n.id))
        ]

    def end_events(self) -> list[str]:
        """出力シーケンスフローを持たないイベントノード。"""
        return [
            n.id
            for n in self.nodes_of_kind(ElementKind.EVENT)
            if not any(e.kind == ConnectionType.SEQUENCE_FLOW for e in self.outgoing(n.id))
        ]

    def reachable_from(self, start_ids: list[str]) -> set[str]:
        """シーケンスフローを辿って到達可能なノード集合を返す。"""
        seen: set[str] = set()
        queue = deque(i for i in start_ids if i in self._nodes)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.successors(current, ConnectionType.SEQUENCE_FLOW))
        return seen

    def unreachable_nodes(self) -> list[str]:
        """開始イベントから到達できないフローノード (プール・レーンは除く)。"""
        reachable = self.reachable_from(self.start_events())
        flow_kinds = {ElementKind.TASK, ElementKind.GATEWAY, ElementKind.EVENT}
        return sorted(
            n.id for n in self._nodes.values() if n.kind in flow_kinds and n.id not in reachable
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": {k: asdict(v) for k, v in self._nodes.items()},
            "edges": {k: asdict(v) for k, v in self._edges.items()},
        }

    def copy(self) -> StructuralGraph:
        clone = StructuralGraph()
        clone._nodes = copy.deepcopy(self._nodes)
        clone._edges = copy.deepcopy(self._edges)
        return clone

    def __eq__(self, other: object) -> bool:
        # 挿入順に依存しない構造的な等価性
        if not isinstance(other, StructuralGraph):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __len__(self) -> int:
        return len(self._nodes) + len(self._edges)

    # --- 変更 (ProjectionEngine 専用) ---

    def put_node(self, node: GraphNode) -> None:
        self._nodes[node.id] = node

    def put_edge(self, edge: GraphEdge) -> None:
        self._edges[edge.id] = edge

    def remove_node(self, node_id: str) -> list[str]:
        """ノードと接続する全エッジを削除し、削除したエッジ ID を返す。"""
        removed = [e.id for e in self.incident_edges(node_id)]
        for edge_id in removed:
            del self._edges[edge_id]
        self._nodes.pop(node_id, None)
        return removed

    def remove_edge(self, edge_id: str) -> None:
        self._edges.pop(edge_id, None)
