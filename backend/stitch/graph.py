"""Flow Graph Model

Typed, read-only representation of a flow version: nodes and edges.

Key Components:
- Node configs: one strongly typed config per node kind
- FlowNode: closed tagged union over {UX, Worker, Logic, Splitter, Collector, MediaSelect}
- Edge / FlowGraph: adjacency helpers used by the Edge-Walker
- validate_flow_graph: save-time structural checks

Unknown fields on nodes, configs and edges are kept (``extra="allow"``) and
round-trip untouched, so flows authored by newer editors still load.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError as PydanticValidationError,
)
from pydantic.alias_generators import to_camel

from .errors import NotFoundError, ValidationError
from .safe_eval import validate_condition_expression
from .settings import SPLITTER_DEFAULT_ARRAY_PATH

logger = logging.getLogger(__name__)

UX_NODE_TYPES = frozenset({"UX", "MediaSelect"})


class _ConfigModel(BaseModel):
    """Accepts both snake_case and the editor's camelCase keys."""

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )


# ─── Entity movement ────────────────────────────────────────────────


class MovementAction(_ConfigModel):
    """What happens to a run's entity when a node finishes.

    Attributes:
        action: advance | jump | stay | complete
        target_node_id: destination for ``jump``
        edge_id: explicit edge to travel for ``advance`` / ``jump``
        set_entity_type: entity type recorded by ``complete`` (or on any move)
    """

    action: Literal["advance", "jump", "stay", "complete"] = "advance"
    target_node_id: Optional[str] = None
    edge_id: Optional[str] = None
    set_entity_type: Optional[str] = None


class EntityMovement(_ConfigModel):
    on_success: Optional[MovementAction] = None
    on_failure: Optional[MovementAction] = None


# ─── Node configs ───────────────────────────────────────────────────


class NodeConfigBase(_ConfigModel):
    label: Optional[str] = None
    entity_movement: Optional[EntityMovement] = None


class WorkerConfig(NodeConfigBase):
    webhook_url: Optional[str] = None
    # Template resolved against prior node outputs; None = pass upstream output
    input: Any = None


class UXConfig(NodeConfigBase):
    prompt: Optional[str] = None


class MediaSelectConfig(UXConfig):
    media_type: Optional[str] = None
    allow_multiple: bool = False


class LogicConfig(NodeConfigBase):
    pass


class SplitterConfig(NodeConfigBase):
    array_path: str = SPLITTER_DEFAULT_ARRAY_PATH


class CollectorConfig(NodeConfigBase):
    pass


# ─── Nodes (tagged union on "type") ─────────────────────────────────


_CONFIG_ALIASES = AliasChoices("config", "data")


class _NodeBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)


class UXNode(_NodeBase):
    type: Literal["UX"]
    config: UXConfig = Field(default_factory=UXConfig, validation_alias=_CONFIG_ALIASES)


class MediaSelectNode(_NodeBase):
    type: Literal["MediaSelect"]
    config: MediaSelectConfig = Field(default_factory=MediaSelectConfig, validation_alias=_CONFIG_ALIASES)


class WorkerNode(_NodeBase):
    type: Literal["Worker"]
    config: WorkerConfig = Field(default_factory=WorkerConfig, validation_alias=_CONFIG_ALIASES)


class LogicNode(_NodeBase):
    type: Literal["Logic"]
    config: LogicConfig = Field(default_factory=LogicConfig, validation_alias=_CONFIG_ALIASES)


class SplitterNode(_NodeBase):
    type: Literal["Splitter"]
    config: SplitterConfig = Field(default_factory=SplitterConfig, validation_alias=_CONFIG_ALIASES)


class CollectorNode(_NodeBase):
    type: Literal["Collector"]
    config: CollectorConfig = Field(default_factory=CollectorConfig, validation_alias=_CONFIG_ALIASES)


FlowNode = Annotated[
    Union[UXNode, MediaSelectNode, WorkerNode, LogicNode, SplitterNode, CollectorNode],
    Field(discriminator="type"),
]


class Edge(BaseModel):
    """Directed edge. ``condition`` is only read on edges leaving a Logic node.

    ``data_mapping`` maps target input keys to paths in the source output.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., min_length=1)
    source: str
    target: str
    condition: Optional[str] = None
    data_mapping: Optional[Dict[str, str]] = Field(
        default=None, validation_alias=AliasChoices("data_mapping", "dataMapping"),
    )


class FlowGraph(BaseModel):
    """Immutable graph of one flow version."""

    model_config = ConfigDict(extra="allow")

    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    _nodes_by_id: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _edges_by_id: Dict[str, Edge] = PrivateAttr(default_factory=dict)
    _outgoing: Dict[str, List[Edge]] = PrivateAttr(default_factory=dict)
    _incoming: Dict[str, List[Edge]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        for node in self.nodes:
            self._nodes_by_id.setdefault(node.id, node)
        for edge in self.edges:
            self._edges_by_id.setdefault(edge.id, edge)
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes_by_id

    def node(self, node_id: str):
        try:
            return self._nodes_by_id[node_id]
        except KeyError:
            raise NotFoundError(f"Node not found in flow: {node_id}") from None

    def edge(self, edge_id: str) -> Edge:
        try:
            return self._edges_by_id[edge_id]
        except KeyError:
            raise NotFoundError(f"Edge not found in flow: {edge_id}") from None

    def outgoing(self, node_id: str) -> List[Edge]:
        """Edges sourced at node_id, in declaration order."""
        return list(self._outgoing.get(node_id, []))

    def incoming(self, node_id: str) -> List[Edge]:
        return list(self._incoming.get(node_id, []))

    def entry_nodes(self) -> List[str]:
        """Nodes with no incoming edges, in declaration order."""
        return [n.id for n in self.nodes if not self._incoming.get(n.id)]

    def find_edge(self, source: str, target: str) -> Optional[Edge]:
        for edge in self._outgoing.get(source, []):
            if edge.target == target:
                return edge
        return None

    def downstream_collectors(self, node_id: str) -> List[str]:
        """First Collector reached on every path leaving node_id.

        Used when a Splitter fans out over zero items: those collectors
        would otherwise wait forever.
        """
        found: List[str] = []
        seen = {node_id}
        queue = deque(e.target for e in self.outgoing(node_id))
        while queue:
            current = queue.popleft()
            if current in seen or current not in self._nodes_by_id:
                continue
            seen.add(current)
            if self._nodes_by_id[current].type == "Collector":
                found.append(current)
                continue
            queue.extend(e.target for e in self.outgoing(current))
        return found


def is_ux_node(node) -> bool:
    return node.type in UX_NODE_TYPES


def instance_id(node_id: str, index: Optional[int] = None) -> str:
    """Execution-unit id: the node id, or ``{node_id}_{index}`` under a fan-out."""
    if index is None:
        return node_id
    return f"{node_id}_{index}"


def parse_flow_graph(data: Dict[str, Any]) -> FlowGraph:
    """Build a FlowGraph from stored JSON, raising ValidationError on bad shape."""
    try:
        return FlowGraph.model_validate(data or {})
    except PydanticValidationError as e:
        issues = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError("Invalid flow graph", issues=issues) from e


def validate_flow_graph(graph: FlowGraph) -> List[str]:
    """Structural checks run when a flow version is saved.

    Returns:
        List of issue strings. Empty if the graph is runnable.
    """
    issues: List[str] = []

    node_ids = [n.id for n in graph.nodes]
    if not node_ids:
        issues.append("flow must have at least one node")
    dupes = sorted({nid for nid in node_ids if node_ids.count(nid) > 1})
    if dupes:
        issues.append(f"duplicate node ids: {dupes}")

    edge_ids = [e.id for e in graph.edges]
    dupes = sorted({eid for eid in edge_ids if edge_ids.count(eid) > 1})
    if dupes:
        issues.append(f"duplicate edge ids: {dupes}")

    for edge in graph.edges:
        if not graph.has_node(edge.source):
            issues.append(f"edge {edge.id}: source node '{edge.source}' not found")
        if not graph.has_node(edge.target):
            issues.append(f"edge {edge.id}: target node '{edge.target}' not found")
        if edge.source == edge.target:
            issues.append(f"edge {edge.id}: self-loop on '{edge.source}'")

    if graph.nodes and not graph.entry_nodes():
        issues.append("flow has no entry node (every node has an incoming edge)")

    for node in graph.nodes:
        inbound = graph.incoming(node.id)
        outbound = graph.outgoing(node.id)

        # Fan-in is only defined through a Collector
        if len(inbound) > 1 and node.type != "Collector":
            issues.append(
                f"node {node.id}: {len(inbound)} edges converge on a {node.type} node; "
                "use a Collector"
            )

        if node.type == "Worker" and not node.config.webhook_url:
            issues.append(f"node {node.id}: Worker missing webhook_url")

        if node.type == "Splitter":
            if not outbound:
                issues.append(f"node {node.id}: Splitter has no outgoing edges")
            if not node.config.array_path:
                issues.append(f"node {node.id}: Splitter missing array_path")

        if node.type == "Logic":
            if not outbound:
                issues.append(f"node {node.id}: Logic has no outgoing edges")
            defaults = [e.id for e in outbound if not e.condition]
            if len(defaults) > 1:
                issues.append(f"node {node.id}: Logic has more than one default edge: {defaults}")
            for edge in outbound:
                if edge.condition:
                    for err in validate_condition_expression(edge.condition):
                        issues.append(f"edge {edge.id}: {err}")

        movement = node.config.entity_movement
        if movement:
            for outcome in (movement.on_success, movement.on_failure):
                if outcome is None:
                    continue
                if outcome.action == "jump":
                    if not outcome.target_node_id:
                        issues.append(f"node {node.id}: jump movement missing target_node_id")
                    elif not graph.has_node(outcome.target_node_id):
                        issues.append(
                            f"node {node.id}: jump target '{outcome.target_node_id}' not found"
                        )
                if outcome.edge_id and outcome.edge_id not in edge_ids:
                    issues.append(f"node {node.id}: movement edge '{outcome.edge_id}' not found")

    return issues
