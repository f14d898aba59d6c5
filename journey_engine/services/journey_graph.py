from dataclasses import dataclass, field
from typing import Any

from journey_engine.schemas.node_config import NodeConfig, parse_node_config


NODE_TYPES = {"trigger", "action", "delay", "condition", "goal"}


@dataclass(frozen=True)
class JourneyNode:
    id: str
    type: str
    subtype: str | None
    name: str
    data: dict[str, Any]

    def config(self) -> NodeConfig:
        return parse_node_config(self.id, self.type, self.subtype, self.data)


@dataclass(frozen=True)
class JourneyEdge:
    id: str
    source: str
    target: str
    label: str | None = None


@dataclass
class _SourceEdges:
    default: JourneyEdge | None = None
    first_unlabeled: JourneyEdge | None = None
    labeled: dict[str, JourneyEdge] = field(default_factory=dict)


def merge_node_data(raw_node: dict[str, Any]) -> dict[str, Any]:
    """Flatten ``data``, ``data.meta`` and ``data.config`` into one map.

    Later sources win on key conflicts and the ``meta``/``config`` keys are
    dropped from the result. Trigger nodes also overlay their node-level
    ``trigger`` block last.
    """
    data = raw_node.get("data")
    merged: dict[str, Any] = {}
    if isinstance(data, dict):
        merged.update(data)
        if isinstance(data.get("meta"), dict):
            merged.update(data["meta"])
        if isinstance(data.get("config"), dict):
            merged.update(data["config"])
    merged.pop("meta", None)
    merged.pop("config", None)

    if raw_node.get("type") == "trigger" and isinstance(raw_node.get("trigger"), dict):
        merged.update(raw_node["trigger"])
    return merged


def _resolve_subtype(raw_node: dict[str, Any], merged: dict[str, Any]) -> str | None:
    data = raw_node.get("data") if isinstance(raw_node.get("data"), dict) else {}
    for candidate in (raw_node.get("subtype"), data.get("subtype"), merged.get("type")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _node_name(raw_node: dict[str, Any], node_id: str) -> str:
    name = raw_node.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    data = raw_node.get("data")
    if isinstance(data, dict) and isinstance(data.get("label"), str) and data["label"].strip():
        return data["label"].strip()
    return node_id


def normalize_node(raw_node: Any) -> JourneyNode | None:
    if not isinstance(raw_node, dict):
        return None
    node_id = raw_node.get("id")
    node_type = raw_node.get("type")
    if not isinstance(node_id, str) or not node_id.strip():
        return None
    if not isinstance(node_type, str) or not node_type.strip():
        return None
    merged = merge_node_data(raw_node)
    return JourneyNode(
        id=node_id,
        type=node_type.strip().lower(),
        subtype=_resolve_subtype(raw_node, merged),
        name=_node_name(raw_node, node_id),
        data=merged,
    )


def normalize_edge(raw_edge: Any) -> JourneyEdge | None:
    if not isinstance(raw_edge, dict):
        return None
    source = raw_edge.get("source")
    target = raw_edge.get("target")
    if not isinstance(source, str) or not source or not isinstance(target, str) or not target:
        return None
    edge_id = raw_edge.get("id")
    label = raw_edge.get("label")
    return JourneyEdge(
        id=str(edge_id) if edge_id not in (None, "") else f"{source}->{target}",
        source=source,
        target=target,
        label=str(label) if label not in (None, "") else None,
    )


class JourneyGraph:
    """Nodes by id plus edges indexed per source node.

    Each source has a ``default_edge`` (first unlabeled edge, else the first
    edge of any label) used for plain "move to next" traversal, and a
    ``labeled_edges`` map (first edge wins per label) used for branching.
    """

    def __init__(self, nodes: list[JourneyNode], edges: list[JourneyEdge]):
        self.nodes = nodes
        self.edges = edges
        self.nodes_by_id: dict[str, JourneyNode] = {}
        for node in nodes:
            self.nodes_by_id.setdefault(node.id, node)
        self._by_source: dict[str, _SourceEdges] = {}
        for edge in edges:
            bucket = self._by_source.setdefault(edge.source, _SourceEdges())
            if bucket.default is None:
                bucket.default = edge
            if edge.label is None:
                if bucket.first_unlabeled is None:
                    bucket.first_unlabeled = edge
            else:
                bucket.labeled.setdefault(edge.label, edge)

    @classmethod
    def from_raw(cls, raw_nodes: Any, raw_edges: Any) -> "JourneyGraph":
        nodes = [node for node in map(normalize_node, raw_nodes or []) if node is not None]
        edges = [edge for edge in map(normalize_edge, raw_edges or []) if edge is not None]
        return cls(nodes, edges)

    def node(self, node_id: str | None) -> JourneyNode | None:
        if not node_id:
            return None
        return self.nodes_by_id.get(node_id)

    def nodes_of_type(self, node_type: str) -> list[JourneyNode]:
        return [node for node in self.nodes if node.type == node_type]

    def default_edge(self, source_id: str) -> JourneyEdge | None:
        bucket = self._by_source.get(source_id)
        if not bucket:
            return None
        return bucket.first_unlabeled or bucket.default

    def labeled_edges(self, source_id: str) -> dict[str, JourneyEdge]:
        bucket = self._by_source.get(source_id)
        return dict(bucket.labeled) if bucket else {}

    def labeled_edge(self, source_id: str, label: str | None) -> JourneyEdge | None:
        if not label:
            return None
        bucket = self._by_source.get(source_id)
        return bucket.labeled.get(label) if bucket else None

    def outgoing(self, source_id: str) -> list[JourneyEdge]:
        return [edge for edge in self.edges if edge.source == source_id]
