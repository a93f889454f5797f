"""Run State Types

In-memory views of a persisted run document. A RunSnapshot is loaded
fresh for every operation, mutated inside a single store transaction, and
thrown away; nothing here outlives a request.

Key Components:
- NodeStatus / VALID_TRANSITIONS: per-instance state machine
- NodeState: one execution unit (plain node or fanned instance)
- CollectorState: sparse fan-in slots for one Collector
- RunSnapshot: the whole run document plus its CAS version
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidStateError


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED})

# Monotonic: no edge leads back to pending or out of a terminal status.
VALID_TRANSITIONS: Dict[NodeStatus, frozenset] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING, NodeStatus.WAITING_FOR_USER}),
    NodeStatus.RUNNING: frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED}),
    NodeStatus.WAITING_FOR_USER: frozenset({NodeStatus.COMPLETED}),
    NodeStatus.COMPLETED: frozenset(),
    NodeStatus.FAILED: frozenset(),
}


class RunStatus(str, Enum):
    RUNNING = "running"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETED = "completed"
    FAILED = "failed"


def is_valid_transition(current: NodeStatus, target: NodeStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


@dataclass
class NodeState:
    """State of a single node instance.

    Attributes:
        node_id: static node id in the flow graph
        status: current NodeStatus
        input: resolved input sent to the worker / shown to the user
        output: worker or user output once completed
        error: failure payload once failed
        index / total: fan-out position, None outside a Splitter branch
        selected_edge_id: edge chosen by a Logic node
        propagated: outgoing edges have been walked after completion
        moved: the run entity's movement for this instance has been claimed
    """

    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    input: Any = None
    output: Any = None
    error: Any = None
    index: Optional[int] = None
    total: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    selected_edge_id: Optional[str] = None
    propagated: bool = False
    moved: bool = False

    @property
    def is_fanned(self) -> bool:
        return self.index is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: NodeStatus) -> None:
        """Move to target status, enforcing VALID_TRANSITIONS."""
        if not is_valid_transition(self.status, target):
            raise InvalidStateError(
                f"Invalid status transition for {self.node_id} "
                f"from '{self.status.value}' to '{target.value}'"
            )
        self.status = target
        now = _utcnow_iso()
        if target in (NodeStatus.RUNNING, NodeStatus.WAITING_FOR_USER):
            self.started_at = now
        elif target in TERMINAL_STATUSES:
            self.completed_at = now

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "node_id": self.node_id,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "propagated": self.propagated,
            "moved": self.moved,
        }
        if self.index is not None:
            data["index"] = self.index
            data["total"] = self.total
        if self.selected_edge_id is not None:
            data["selected_edge_id"] = self.selected_edge_id
        return data

    @classmethod
    def from_dict(cls, instance_id: str, data: Dict[str, Any]) -> "NodeState":
        return cls(
            node_id=data.get("node_id") or instance_id,
            status=NodeStatus(data.get("status", NodeStatus.PENDING.value)),
            input=data.get("input"),
            output=data.get("output"),
            error=data.get("error"),
            index=data.get("index"),
            total=data.get("total"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            selected_edge_id=data.get("selected_edge_id"),
            propagated=bool(data.get("propagated", False)),
            moved=bool(data.get("moved", False)),
        )


@dataclass
class CollectorState:
    """Fan-in accounting for one Collector.

    ``collected`` is indexed by source instance index; ``filled`` tracks
    which slots have arrived so a legitimate ``None`` output still counts.
    """

    expected: int
    collected: List[Any] = field(default_factory=list)
    filled: List[bool] = field(default_factory=list)

    @classmethod
    def empty(cls, expected: int) -> "CollectorState":
        return cls(expected=expected, collected=[None] * expected, filled=[False] * expected)

    def fill(self, index: int, value: Any) -> bool:
        """Store value at index. Returns False if the slot was already filled."""
        if not 0 <= index < self.expected:
            raise InvalidStateError(
                f"Collector slot {index} out of range (expected {self.expected})"
            )
        if self.filled[index]:
            return False
        self.collected[index] = value
        self.filled[index] = True
        return True

    @property
    def is_complete(self) -> bool:
        return all(self.filled[: self.expected]) and len(self.filled) >= self.expected

    @property
    def received(self) -> int:
        return sum(1 for f in self.filled if f)

    def to_dict(self) -> Dict[str, Any]:
        return {"expected": self.expected, "collected": self.collected, "filled": self.filled}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectorState":
        expected = int(data.get("expected", 0))
        collected = list(data.get("collected") or [])
        filled = list(data.get("filled") or [])
        collected += [None] * (expected - len(collected))
        filled += [False] * (expected - len(filled))
        return cls(expected=expected, collected=collected, filled=filled)


@dataclass
class RunSnapshot:
    """Detached copy of a run row. ``version`` is the CAS token it was read at."""

    id: str
    flow_id: str
    flow_version_id: str
    status: RunStatus = RunStatus.RUNNING
    node_states: Dict[str, NodeState] = field(default_factory=dict)
    collector_states: Dict[str, CollectorState] = field(default_factory=dict)
    current_ux_node: Optional[str] = None
    entity_id: Optional[str] = None
    trigger: Optional[Dict[str, Any]] = None
    input: Any = None
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def state(self, instance_id: str) -> Optional[NodeState]:
        return self.node_states.get(instance_id)

    def ensure_state(
        self,
        instance_id: str,
        node_id: str,
        index: Optional[int] = None,
        total: Optional[int] = None,
    ) -> NodeState:
        """Return the instance state, creating a pending one for new fanned instances."""
        state = self.node_states.get(instance_id)
        if state is None:
            state = NodeState(node_id=node_id, index=index, total=total)
            self.node_states[instance_id] = state
        return state

    def outputs_snapshot(self) -> Dict[str, Any]:
        """Deep copy of completed outputs keyed by instance id."""
        return {
            iid: copy.deepcopy(s.output)
            for iid, s in self.node_states.items()
            if s.status == NodeStatus.COMPLETED
        }

    def refresh_status(self) -> RunStatus:
        self.status = derive_run_status(self)
        return self.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "flow_version_id": self.flow_version_id,
            "status": self.status.value,
            "node_states": {k: v.to_dict() for k, v in self.node_states.items()},
            "collector_states": {k: v.to_dict() for k, v in self.collector_states.items()},
            "current_ux_node": self.current_ux_node,
            "entity_id": self.entity_id,
            "trigger": self.trigger,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def derive_run_status(run: RunSnapshot) -> RunStatus:
    """Run status is a function of its node states.

    failed beats everything (the run is stuck, even while sibling branches
    finish); an open UX gate beats outstanding workers; a completed node
    whose edges have not been walked yet is still outstanding. With nothing
    outstanding the run is completed.
    """
    statuses = [s.status for s in run.node_states.values()]
    if NodeStatus.FAILED in statuses:
        return RunStatus.FAILED
    if NodeStatus.WAITING_FOR_USER in statuses:
        return RunStatus.WAITING_FOR_USER
    if NodeStatus.RUNNING in statuses:
        return RunStatus.RUNNING
    if any(s.status == NodeStatus.COMPLETED and not s.propagated for s in run.node_states.values()):
        return RunStatus.RUNNING
    if any(not c.is_complete for c in run.collector_states.values()):
        return RunStatus.RUNNING
    if not any(s.status == NodeStatus.COMPLETED for s in run.node_states.values()):
        # Freshly created, nothing dispatched yet
        return RunStatus.RUNNING
    return RunStatus.COMPLETED
