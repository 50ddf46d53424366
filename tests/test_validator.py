"""CommandValidator のユニットテスト"""

import pytest

from bpmn_collab.exceptions import (
    CollabErrorCodes,
    DuplicateElementError,
    IncompatibleConnectionError,
    ReferenceNotFoundError,
)
from bpmn_collab.graph import GraphNode, StructuralGraph
from bpmn_collab.models import (
    Command,
    CommandType,
    ConnectElementsPayload,
    ConnectionType,
    CreateElementPayload,
    DeleteElementPayload,
    ElementKind,
    MoveElementPayload,
    RenameElementPayload,
    UpdatePropertiesPayload,
)
from bpmn_collab.validator import CommandValidator


def make_graph() -> StructuralGraph:
    graph = StructuralGraph()
    graph.put_node(GraphNode(id="Start_1", kind=ElementKind.EVENT))
    graph.put_node(GraphNode(id="Task_1", kind=ElementKind.TASK))
    graph.put_node(GraphNode(id="Pool_1", kind=ElementKind.POOL))
    graph.put_node(GraphNode(id="Pool_2", kind=ElementKind.POOL))
    return graph


def make_command(command_type: CommandType, payload) -> Command:
    return Command(aggregate_id="agg-1", actor_id="alice", type=command_type, payload=payload)


def connect(source: str, target: str, kind: str = "SEQUENCE_FLOW", edge_id: str = "Flow_1") -> Command:
    return make_command(
        CommandType.CONNECT_ELEMENTS,
        ConnectElementsPayload(id=edge_id, type=kind, sourceId=source, targetId=target),
    )


@pytest.mark.parametrize(
    ("command_type", "payload"),
    [
        (CommandType.MOVE_ELEMENT, MoveElementPayload(id="Ghost", position={"x": 0, "y": 0})),
        (CommandType.UPDATE_PROPERTIES, UpdatePropertiesPayload(id="Ghost", properties={"a": 1})),
        (CommandType.DELETE_ELEMENT, DeleteElementPayload(id="Ghost")),
        (CommandType.RENAME_ELEMENT, RenameElementPayload(id="Ghost", name="x")),
    ],
)
def test_missing_reference_is_rejected(command_type: CommandType, payload) -> None:
    """存在しない要素を参照するコマンドは ReferenceNotFound で拒否されること。"""
    result = CommandValidator().validate(make_command(command_type, payload), make_graph())
    assert not result.is_valid
    assert isinstance(result.errors[0], ReferenceNotFoundError)
    assert result.errors[0].element_id == "Ghost"


def test_valid_sequence_flow() -> None:
    """イベントとタスクの間のシーケンスフローは有効。"""
    result = CommandValidator().validate(connect("Start_1", "Task_1"), make_graph())
    assert result.is_valid
    result.raise_for_errors()


def test_connect_missing_endpoint_names_id() -> None:
    """接続先が存在しない場合はその ID を含む ReferenceNotFound。"""
    result = CommandValidator().validate(connect("Start_1", "Nope"), make_graph())
    assert [e.element_id for e in result.errors] == ["Nope"]


def test_self_loop_is_incompatible() -> None:
    """接続元と接続先が同じ場合は IncompatibleConnection。"""
    result = CommandValidator().validate(connect("Task_1", "Task_1"), make_graph())
    with pytest.raises(IncompatibleConnectionError) as exc_info:
        result.raise_for_errors()
    assert exc_info.value.code == CollabErrorCodes.INCOMPATIBLE_CONNECTION


def test_sequence_flow_cannot_join_pools() -> None:
    """プールはシーケンスフローで接続できないこと。"""
    result = CommandValidator().validate(connect("Task_1", "Pool_1"), make_graph())
    assert isinstance(result.errors[0], IncompatibleConnectionError)


def test_message_flow_between_pools_is_valid() -> None:
    """プール間のメッセージフローは有効。"""
    result = CommandValidator().validate(
        connect("Pool_1", "Pool_2", kind=ConnectionType.MESSAGE_FLOW), make_graph()
    )
    assert result.is_valid


def test_create_duplicate_id_is_rejected() -> None:
    """既存 ID での作成は DuplicateElement。"""
    command = make_command(
        CommandType.CREATE_ELEMENT,
        CreateElementPayload(id="Task_1", type=ElementKind.TASK, position={"x": 0, "y": 0}),
    )
    result = CommandValidator().validate(command, make_graph())
    assert isinstance(result.errors[0], DuplicateElementError)


def test_create_new_element_is_valid() -> None:
    """新しい ID での作成は有効。"""
    command = make_command(
        CommandType.CREATE_ELEMENT,
        CreateElementPayload(id="Task_9", type=ElementKind.TASK, position={"x": 0, "y": 0}),
    )
    assert CommandValidator().validate(command, make_graph()).is_valid


def test_validation_does_not_mutate_graph() -> None:
    """検証でグラフが変更されないこと。"""
    graph = make_graph()
    before = graph.to_dict()
    CommandValidator().validate(connect("Start_1", "Task_1"), graph)
    assert graph.to_dict() == before
