"""Entity Movement State Machine

An entity's position on the canvas is a side effect of node completion in
the run it is bound to; it never drives execution.

States:
- at_node:   current_node_id set, no edge
- traveling: current_edge_id + edge_progress + destination_node_id set, no node
- completed: terminal; completed_at set, sits at the completing node

Every transition clears the fields of the state it leaves, so at most one
of current_node_id / current_edge_id is ever set. Arrival is explicit
(a separate signal, e.g. the canvas reporting that travel finished); a
traveling entity may stay traveling indefinitely.

The transition functions below mutate an EntitySnapshot in place and
return False when the event must be dropped (terminal entity, mismatched
destination, already there). They do no I/O; EntityMover applies them
through the entity store's compare-and-swap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .errors import ErrorKind, Result, StitchError, ValidationError
from .settings import DEFAULT_COMPLETED_ENTITY_TYPE, DEFAULT_ENTITY_TYPE

if TYPE_CHECKING:
    from .graph import Edge, FlowGraph
    from .run_state import RunSnapshot
    from .store import EntityStore

logger = logging.getLogger("stitch.movement")

AT_NODE = "at_node"
TRAVELING = "traveling"
COMPLETED = "completed"
UNPLACED = "unplaced"

# Journey event types
STARTED_EDGE = "started_edge"
ENTERED_NODE = "entered_node"
ENTITY_COMPLETED = "completed"
ENTITY_TYPE_CHANGED = "entity_type_changed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EntitySnapshot:
    """Detached copy of an entity row. ``version`` is its CAS token."""

    id: str
    canvas_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    entity_type: str = DEFAULT_ENTITY_TYPE
    current_node_id: Optional[str] = None
    current_edge_id: Optional[str] = None
    edge_progress: Optional[float] = None
    destination_node_id: Optional[str] = None
    journey: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[str] = None
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def position(self) -> str:
        if self.is_completed:
            return COMPLETED
        if self.current_edge_id is not None:
            return TRAVELING
        if self.current_node_id is not None:
            return AT_NODE
        return UNPLACED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "canvas_id": self.canvas_id,
            "name": self.name,
            "email": self.email,
            "avatar_url": self.avatar_url,
            "entity_type": self.entity_type,
            "position": self.position,
            "current_node_id": self.current_node_id,
            "current_edge_id": self.current_edge_id,
            "edge_progress": self.edge_progress,
            "destination_node_id": self.destination_node_id,
            "journey": self.journey,
            "metadata": self.metadata,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ─── Pure transitions ───────────────────────────────────────────────


def _append(entity: EntitySnapshot, event_type: str, **fields: Any) -> None:
    event = {"timestamp": _now(), "type": event_type}
    event.update({k: v for k, v in fields.items() if v is not None})
    entity.journey.append(event)


def set_entity_type(entity: EntitySnapshot, entity_type: Optional[str]) -> bool:
    if entity.is_completed:
        return False
    if not entity_type or entity_type == entity.entity_type:
        return False
    _append(entity, ENTITY_TYPE_CHANGED, from_type=entity.entity_type, to_type=entity_type)
    entity.entity_type = entity_type
    return True


def start_travel(
    entity: EntitySnapshot,
    edge_id: str,
    destination_node_id: str,
    run_id: Optional[str] = None,
) -> bool:
    """at_node / traveling / unplaced → traveling on edge_id."""
    if entity.is_completed:
        return False
    from_node = entity.current_node_id
    entity.current_node_id = None
    entity.current_edge_id = edge_id
    entity.edge_progress = 0.0
    entity.destination_node_id = destination_node_id
    _append(
        entity, STARTED_EDGE,
        edge_id=edge_id, from_node_id=from_node, to_node_id=destination_node_id, run_id=run_id,
    )
    return True


def arrive(entity: EntitySnapshot, node_id: Optional[str] = None) -> bool:
    """traveling → at_node. Idempotent: arriving where it already is is a no-op."""
    if entity.is_completed:
        return False
    if entity.current_edge_id is None:
        return False
    destination = entity.destination_node_id
    if node_id is not None and node_id != destination:
        return False
    edge_id = entity.current_edge_id
    entity.current_node_id = destination
    entity.current_edge_id = None
    entity.edge_progress = None
    entity.destination_node_id = None
    _append(entity, ENTERED_NODE, node_id=destination, edge_id=edge_id)
    return True


def update_progress(entity: EntitySnapshot, progress: float) -> bool:
    """Only meaningful while traveling; progress is clamped to [0, 1]."""
    if entity.is_completed or entity.current_edge_id is None:
        return False
    entity.edge_progress = min(1.0, max(0.0, float(progress)))
    return True


def complete(
    entity: EntitySnapshot,
    node_id: Optional[str],
    entity_type: Optional[str] = None,
    run_id: Optional[str] = None,
) -> bool:
    """Any live state → completed. Terminal."""
    if entity.is_completed:
        return False
    set_entity_type(entity, entity_type or DEFAULT_COMPLETED_ENTITY_TYPE)
    entity.current_node_id = node_id or entity.destination_node_id or entity.current_node_id
    entity.current_edge_id = None
    entity.edge_progress = None
    entity.destination_node_id = None
    entity.completed_at = _now()
    _append(
        entity, ENTITY_COMPLETED,
        node_id=entity.current_node_id, entity_type=entity.entity_type, run_id=run_id,
    )
    return True


# ─── Planning ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class MovementPlan:
    action: str
    node_id: str
    edge_id: Optional[str] = None
    destination_node_id: Optional[str] = None
    entity_type: Optional[str] = None


def plan_movement(
    graph: "FlowGraph",
    node_id: str,
    success: bool,
    fired_edge: Optional["Edge"] = None,
) -> Optional[MovementPlan]:
    """Decide how the entity moves when node_id finishes.

    Without configuration a successful node advances along ``fired_edge``
    (the first edge the Edge-Walker is about to take) and a failed node
    leaves the entity where it is. Returns None for "no movement".
    """
    node = graph.node(node_id)
    movement = node.config.entity_movement
    action = None
    if movement is not None:
        action = movement.on_success if success else movement.on_failure
    if action is None:
        if not success or fired_edge is None:
            return None
        return MovementPlan("advance", node_id, fired_edge.id, fired_edge.target)

    if action.action == "stay":
        if action.set_entity_type:
            return MovementPlan("stay", node_id, entity_type=action.set_entity_type)
        return None

    if action.action == "complete":
        return MovementPlan(
            "complete", node_id,
            entity_type=action.set_entity_type or DEFAULT_COMPLETED_ENTITY_TYPE,
        )

    if action.action == "jump":
        target = action.target_node_id
        if not target:
            return None
        edge = graph.edge(action.edge_id) if action.edge_id else graph.find_edge(node_id, target)
        # Jumps may bypass the graph; the synthetic id still records the leg
        edge_id = edge.id if edge is not None else f"jump:{node_id}->{target}"
        return MovementPlan("jump", node_id, edge_id, target, action.set_entity_type)

    edge = graph.edge(action.edge_id) if action.edge_id else fired_edge
    if edge is None:
        return None
    return MovementPlan("advance", node_id, edge.id, edge.target, action.set_entity_type)


def apply_plan(entity: EntitySnapshot, plan: MovementPlan, run_id: Optional[str] = None) -> bool:
    if entity.is_completed:
        return False
    if plan.action == "complete":
        return complete(entity, plan.node_id, plan.entity_type, run_id=run_id)
    if plan.action == "stay":
        return set_entity_type(entity, plan.entity_type)
    moved = start_travel(entity, plan.edge_id, plan.destination_node_id, run_id=run_id)
    if moved:
        set_entity_type(entity, plan.entity_type)
    return moved


# ─── Mover ──────────────────────────────────────────────────────────


class EntityMover:
    """Applies movement plans and explicit arrival/progress signals."""

    def __init__(
        self,
        entities: "EntityStore",
        publish: Optional[Callable[[str, str, dict], None]] = None,
    ):
        self.entities = entities
        self.publish = publish

    def _notify(self, run_id: Optional[str], entity: EntitySnapshot) -> None:
        if self.publish and run_id:
            self.publish(run_id, "entity_moved", {
                "entity_id": entity.id,
                "position": entity.position,
                "current_node_id": entity.current_node_id,
                "current_edge_id": entity.current_edge_id,
                "destination_node_id": entity.destination_node_id,
                "entity_type": entity.entity_type,
            })

    async def on_node_completed(
        self,
        run: "RunSnapshot",
        graph: "FlowGraph",
        node_id: str,
        success: bool,
        fired_edge: Optional["Edge"] = None,
    ) -> Optional[EntitySnapshot]:
        """Move the run's entity after node_id finished. Never raises.

        Movement is a side effect of execution; a missing entity or an
        exhausted retry budget is logged and the run carries on.
        """
        if not run.entity_id:
            return None
        plan = plan_movement(graph, node_id, success, fired_edge)
        if plan is None:
            return None

        applied: Dict[str, bool] = {}

        def _apply(entity: EntitySnapshot) -> None:
            applied["ok"] = apply_plan(entity, plan, run_id=run.id)

        try:
            entity = await self.entities.mutate(run.entity_id, _apply)
        except StitchError as e:
            logger.error(f"[Entity] Movement for {run.entity_id} after {node_id} failed: {e.message}")
            return None

        if not applied.get("ok"):
            logger.info(
                f"[Entity] Dropped {plan.action} for {entity.id} "
                f"(position={entity.position}) after node {node_id}"
            )
            return entity
        logger.info(
            f"[Entity] {entity.id} {plan.action} after {node_id} → "
            f"{entity.destination_node_id or entity.current_node_id}"
        )
        self._notify(run.id, entity)
        return entity

    async def place_on_edge(
        self,
        entity_id: str,
        edge_id: str,
        destination_node_id: str,
    ) -> EntitySnapshot:
        """Put an entity onto an entry edge (ingestion). Raises StitchError."""
        return await self.entities.mutate(
            entity_id, lambda e: start_travel(e, edge_id, destination_node_id)
        )

    async def get(self, entity_id: str) -> Result:
        try:
            return Result.success(await self.entities.get(entity_id))
        except StitchError as e:
            return Result.from_error(e)

    async def arrive(self, entity_id: str, node_id: Optional[str] = None) -> Result:
        """Explicit arrival signal. Idempotent."""
        applied: Dict[str, bool] = {}

        def _apply(entity: EntitySnapshot) -> None:
            applied["ok"] = arrive(entity, node_id)

        try:
            entity = await self.entities.mutate(entity_id, _apply)
        except StitchError as e:
            return Result.from_error(e)

        if not applied.get("ok"):
            if entity.is_completed:
                logger.info(f"[Entity] Arrival for completed entity {entity_id} dropped")
            elif node_id is not None and entity.position == TRAVELING:
                logger.warning(
                    f"[Entity] Arrival at {node_id} ignored for {entity_id}: "
                    f"destination is {entity.destination_node_id}"
                )
            return Result.success(entity, kind=ErrorKind.DUPLICATE_CALLBACK, message="no-op")
        return Result.success(entity)

    async def update_progress(self, entity_id: str, progress: float) -> Result:
        if not 0.0 <= progress <= 1.0:
            return Result.from_error(ValidationError("progress must be between 0 and 1"))

        applied: Dict[str, bool] = {}

        def _apply(entity: EntitySnapshot) -> None:
            applied["ok"] = update_progress(entity, progress)

        try:
            entity = await self.entities.mutate(entity_id, _apply)
        except StitchError as e:
            return Result.from_error(e)
        if not applied.get("ok"):
            return Result.failure(
                ErrorKind.INVALID_STATE,
                f"Entity {entity_id} is not traveling (position={entity.position})",
            )
        return Result.success(entity)
