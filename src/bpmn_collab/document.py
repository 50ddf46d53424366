"""描画可能ドキュメント (BPMN 2.0 XML) プロジェクション"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any

from .exceptions import InvalidDocumentError, PayloadTooLargeError, TooManyElementsError
from .models import ConnectionType, ElementKind

BPMN_NS = "http://www.omg.org/spec/BPMN/20100524/MODEL"
BPMNDI_NS = "http://www.omg.org/spec/BPMN/20100524/DI"
DC_NS = "http://www.omg.org/spec/DD/20100524/DC"
DI_NS = "http://www.omg.org/spec/DD/20100524/DI"
TARGET_NAMESPACE = "http://example.com/bpmn"

for _prefix, _uri in (("bpmn", BPMN_NS), ("bpmndi", BPMNDI_NS), ("dc", DC_NS), ("di", DI_NS)):
    ET.register_namespace(_prefix, _uri)

_DEFAULT_SIZES: dict[ElementKind, tuple[int, int]] = {
    ElementKind.TASK: (100, 80),
    ElementKind.GATEWAY: (50, 50),
    ElementKind.EVENT: (36, 36),
    ElementKind.POOL: (600, 250),
    ElementKind.LANE: (570, 125),
    ElementKind.UNSPECIFIED: (100, 80),
}

_DEFAULT_TAGS: dict[ElementKind, str] = {
    ElementKind.TASK: "task",
    ElementKind.GATEWAY: "exclusiveGateway",
    ElementKind.EVENT: "intermediateThrowEvent",
    ElementKind.POOL: "participant",
    ElementKind.LANE: "lane",
    ElementKind.UNSPECIFIED: "task",
}

_CONNECTION_TAGS: dict[ConnectionType, str] = {
    ConnectionType.SEQUENCE_FLOW: "sequenceFlow",
    ConnectionType.MESSAGE_FLOW: "messageFlow",
    ConnectionType.ASSOCIATION: "association",
    ConnectionType.DATA_ASSOCIATION: "dataOutputAssociation",
    ConnectionType.UNSPECIFIED: "sequenceFlow",
}

_PROCESS_ID_RE = re.compile(r"[^a-zA-Z0-9_]")
# XML の要素名として使える ASCII の NCName
_NCNAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_.\-]*")


def _q(ns: str, tag: str) -> str:
    return f"{{{ns}}}{tag}"


def process_id_for(title: str) -> str:
    """タイトルからプロセス ID を作る。英数字とアンダースコア以外は _ に置換する。"""
    return _PROCESS_ID_RE.sub("_", title) or "Process_1"


def _local_tag(bpmn_type: str) -> str | None:
    """bpmn:* 型名を要素名に変換する。要素名として不正なら None。"""
    if not bpmn_type.startswith("bpmn:") or len(bpmn_type) <= len("bpmn:"):
        return None
    name = bpmn_type[len("bpmn:") :]
    tag = name[0].lower() + name[1:]
    return tag if _NCNAME_RE.fullmatch(tag) else None


@dataclass
class DocumentShape:
    id: str
    kind: ElementKind
    bpmn_type: str
    x: int
    y: int
    width: int
    height: int
    name: str | None = None
    parent_id: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentEdge:
    id: str
    kind: ConnectionType
    bpmn_type: str
    source_id: str
    target_id: str
    name: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)


class DocumentProjection:
    """作成順を保持したドキュメントモデル。render() で BPMN 2.0 XML を返す。"""

    def __init__(self, process_id: str = "Process_1", title: str = "") -> None:
        self.process_id = process_id
        self.title = title
        self._shapes: dict[str, DocumentShape] = {}
        self._edges: dict[str, DocumentEdge] = {}

    @property
    def element_ids(self) -> list[str]:
        return [*self._shapes, *self._edges]

    def has(self, element_id: str) -> bool:
        return element_id in self._shapes or element_id in self._edges

    def shape(self, element_id: str) -> DocumentShape | None:
        return self._shapes.get(element_id)

    def edge(self, element_id: str) -> DocumentEdge | None:
        return self._edges.get(element_id)

    # --- 変更 (ProjectionEngine 専用) ---

    def add_shape(self, shape: DocumentShape) -> None:
        self._shapes[shape.id] = shape

    def add_edge(self, edge: DocumentEdge) -> None:
        self._edges[edge.id] = edge

    def move(self, element_id: str, x: int, y: int) -> None:
        shape = self._shapes[element_id]
        shape.x, shape.y = x, y

    def update_properties(self, element_id: str, properties: dict[str, Any]) -> None:
        target = self._shapes.get(element_id) or self._edges[element_id]
        target.properties.update(properties)

    def rename(self, element_id: str, name: str) -> None:
        target = self._shapes.get(element_id) or self._edges[element_id]
        target.name = name

    def remove(self, element_id: str) -> None:
        if element_id in self._edges:
            del self._edges[element_id]
            return
        self._shapes.pop(element_id, None)
        for edge_id in [
            e.id for e in self._edges.values() if element_id in (e.source_id, e.target_id)
        ]:
            del self._edges[edge_id]

    # --- 出力 ---

    def render(self) -> str:
        """現在の状態を BPMN 2.0 XML 文字列として出力する。"""
        root = ET.Element(
            _q(BPMN_NS, "definitions"),
            {
                "id": f"Definitions_{self.process_id}",
                "targetNamespace": TARGET_NAMESPACE,
                "exporter": "bpmn-collab",
                "exporterVersion": "0.1.0",
            },
        )
        pools = [s for s in self._shapes.values() if s.kind == ElementKind.POOL]
        collaboration = None
        if pools:
            collaboration = ET.SubElement(root, _q(BPMN_NS, "collaboration"), {"id": "Collaboration_1"})
            for pool in pools:
                attrs = {"id": pool.id, "processRef": self.process_id}
                if pool.name:
                    attrs["name"] = pool.name
                ET.SubElement(collaboration, _q(BPMN_NS, "participant"), attrs)

        process_attrs = {"id": self.process_id, "isExecutable": "false"}
        if self.title:
            process_attrs["name"] = self.title
        process = ET.SubElement(root, _q(BPMN_NS, "process"), process_attrs)

        lanes = [s for s in self._shapes.values() if s.kind == ElementKind.LANE]
        if lanes:
            lane_set = ET.SubElement(process, _q(BPMN_NS, "laneSet"), {"id": "LaneSet_1"})
            for lane in lanes:
                lane_el = ET.SubElement(lane_set, _q(BPMN_NS, "lane"), {"id": lane.id})
                if lane.name:
                    lane_el.set("name", lane.name)
                for child in self._shapes.values():
                    if child.parent_id == lane.id:
                        ET.SubElement(lane_el, _q(BPMN_NS, "flowNodeRef")).text = child.id

        for shape in self._shapes.values():
            if shape.kind in (ElementKind.POOL, ElementKind.LANE):
                continue
            tag = _local_tag(shape.bpmn_type) or _DEFAULT_TAGS[shape.kind]
            element = ET.SubElement(process, _q(BPMN_NS, tag), {"id": shape.id})
            if shape.name:
                element.set("name", shape.name)
            event_props = shape.properties.get("eventProps")
            definition = event_props.get("eventDefinition") if isinstance(event_props, dict) else None
            if definition and _NCNAME_RE.fullmatch(str(definition)):
                ET.SubElement(
                    element,
                    _q(BPMN_NS, f"{str(definition).lower()}EventDefinition"),
                    {"id": f"{shape.id}_ed"},
                )

        for edge in self._edges.values():
            container = process
            if edge.kind == ConnectionType.MESSAGE_FLOW and collaboration is not None:
                container = collaboration
            tag = _local_tag(edge.bpmn_type) or _CONNECTION_TAGS[edge.kind]
            attrs = {"id": edge.id, "sourceRef": edge.source_id, "targetRef": edge.target_id}
            if edge.name:
                attrs["name"] = edge.name
            ET.SubElement(container, _q(BPMN_NS, tag), attrs)

        diagram = ET.SubElement(root, _q(BPMNDI_NS, "BPMNDiagram"), {"id": "BPMNDiagram_1"})
        plane = ET.SubElement(
            diagram,
            _q(BPMNDI_NS, "BPMNPlane"),
            {
                "id": "BPMNPlane_1",
                "bpmnElement": "Collaboration_1" if collaboration is not None else self.process_id,
            },
        )
        for shape in self._shapes.values():
            di = ET.SubElement(
                plane,
                _q(BPMNDI_NS, "BPMNShape"),
                {"id": f"{shape.id}_di", "bpmnElement": shape.id},
            )
            ET.SubElement(
                di,
                _q(DC_NS, "Bounds"),
                {
                    "x": str(shape.x),
                    "y": str(shape.y),
                    "width": str(shape.width),
                    "height": str(shape.height),
                },
            )
        for edge in self._edges.values():
            di = ET.SubElement(
                plane,
                _q(BPMNDI_NS, "BPMNEdge"),
                {"id": f"{edge.id}_di", "bpmnElement": edge.id},
            )
            for point in self._waypoints(edge):
                ET.SubElement(di, _q(DI_NS, "waypoint"), {"x": str(point[0]), "y": str(point[1])})

        ET.indent(root)
        return ET.tostring(root, encoding="unicode", xml_declaration=True)

    def _waypoints(self, edge: DocumentEdge) -> list[tuple[int, int]]:
        points = []
        for shape_id in (edge.source_id, edge.target_id):
            shape = self._shapes.get(shape_id)
            if shape is not None:
                points.append((shape.x + shape.width // 2, shape.y + shape.height // 2))
        return points


def default_size(kind: ElementKind) -> tuple[int, int]:
    return _DEFAULT_SIZES[kind]


def create_template(title: str) -> tuple[str, str]:
    """新規ダイアグラム用の空テンプレートを (プロセス ID, XML) で返す。"""
    process_id = process_id_for(title)
    return process_id, DocumentProjection(process_id=process_id, title=title).render()


def count_elements(root: ET.Element) -> int:
    return sum(1 for _ in root.iter())


def check_document(content: str, max_bytes: int, max_elements: int) -> ET.Element:
    """保存前の構造チェック。問題がなければパース済みのルート要素を返す。

    Raises:
        PayloadTooLargeError: バイト数が max_bytes を超える場合
        InvalidDocumentError: 空・XML として不正・BPMN 定義でない場合
        TooManyElementsError: 要素数が max_elements を超える場合
    """
    size = len(content.encode("utf-8"))
    if size > max_bytes:
        raise PayloadTooLargeError(size=size, limit=max_bytes)
    if not content.strip():
        raise InvalidDocumentError("content is empty")
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise InvalidDocumentError(f"content is not well-formed XML: {e}", cause=e) from e

    count = count_elements(root)
    if count > max_elements:
        raise TooManyElementsError(count=count, limit=max_elements)
    if root.tag != _q(BPMN_NS, "definitions"):
        raise InvalidDocumentError("root element must be bpmn:definitions")
    if root.find(_q(BPMN_NS, "process")) is None and root.find(_q(BPMN_NS, "collaboration")) is None:
        raise InvalidDocumentError("definitions has no process or collaboration")
    return root
