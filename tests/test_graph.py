"""StructuralGraph のユニットテスト"""

from bpmn_collab.graph import GraphEdge, GraphNode, StructuralGraph
from bpmn_collab.models import ConnectionType, ElementKind


def build() -> StructuralGraph:
    graph = StructuralGraph()
    graph.put_node(GraphNode(id="Start", kind=ElementKind.EVENT))
    graph.put_node(GraphNode(id="Task_1", kind=ElementKind.TASK))
    graph.put_node(GraphNode(id="End", kind=ElementKind.EVENT))
    graph.put_node(GraphNode(id="Orphan", kind=ElementKind.TASK))
    graph.put_node(GraphNode(id="Pool", kind=ElementKind.POOL))
    graph.put_edge(GraphEdge(id="F1", kind=ConnectionType.SEQUENCE_FLOW, source_id="Start", target_id="Task_1"))
    graph.put_edge(GraphEdge(id="F2", kind=ConnectionType.SEQUENCE_FLOW, source_id="Task_1", target_id="End"))
    return graph


def test_start_and_end_events() -> None:
    """入力のないイベントが開始、出力のないイベントが終了として返ること。"""
    graph = build()
    assert graph.start_events() == ["Start"]
    assert graph.end_events() == ["End"]


def test_reachability_excludes_pools() -> None:
    """到達不能ノードにはフローノードのみが含まれること。"""
    graph = build()
    assert graph.reachable_from(["Start"]) == {"Start", "Task_1", "End"}
    assert graph.unreachable_nodes() == ["Orphan"]


def test_remove_node_cascades_edges() -> None:
    """ノード削除で接続エッジもすべて削除されること。"""
    graph = build()
    removed = graph.remove_node("Task_1")
    assert sorted(removed) == ["F1", "F2"]
    assert not graph.has_element("Task_1")
    assert graph.edges == {}


def test_equality_ignores_insertion_order() -> None:
    """挿入順が違っても同じ構造なら等しいこと。"""
    a = StructuralGraph()
    a.put_node(GraphNode(id="A", kind=ElementKind.TASK))
    a.put_node(GraphNode(id="B", kind=ElementKind.TASK))
    b = StructuralGraph()
    b.put_node(GraphNode(id="B", kind=ElementKind.TASK))
    b.put_node(GraphNode(id="A", kind=ElementKind.TASK))
    assert a == b


def test_copy_is_independent() -> None:
    """copy したグラフへの変更が元に影響しないこと。"""
    graph = build()
    clone = graph.copy()
    clone.node("Task_1").name = "changed"
    clone.remove_edge("F1")
    assert graph.node("Task_1").name is None
    assert graph.has_edge("F1")
    assert len(graph) == len(clone) + 1
