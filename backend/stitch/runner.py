"""Edge-Walker

Turns node completion into dispatch of graph successors. The walker is
stateless: every entry point loads the run from the store, applies one
atomic mutation, performs side effects (webhook POSTs, entity movement,
SSE notifications) and returns. A process restart between dispatch and
callback loses nothing.

Per-instance lifecycle:
    Worker:          pending → running (webhook fired) → completed | failed
    UX/MediaSelect:  pending → waiting_for_user → completed (user submission)
    Logic:           pending → running → completed | failed (synchronous)
    Splitter:        see fan.fan_out
    Collector:       see fan.collect

Every target is claimed (pending → ...) inside a store mutation before
any side effect, so a repeated walk or a duplicated callback can never
fire a node twice.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from .dispatcher import WebhookDispatcher
from .errors import ConcurrencyConflict, ErrorKind, InvalidStateError, NotFoundError, Result, StitchError
from .graph import Edge, FlowGraph, instance_id, is_ux_node, validate_flow_graph
from .logging_config import get_callback_logger, get_engine_logger
from .movement import EntityMover
from .paths import get_path
from .protocol import WorkerCallback, WorkerPayload, build_callback_url
from .resolver import build_context, resolve
from .run_state import NodeStatus, RunSnapshot, RunStatus
from .safe_eval import ConditionError, evaluate_condition
from .settings import WALK_MAX_ATTEMPTS
from .store import EntityStore, FlowStore, RunStore

logger = get_engine_logger()
callback_logger = get_callback_logger()

T = TypeVar("T")

Publisher = Callable[[str, str, dict], None]

_APPLIED = "applied"
_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class Arrival:
    """What reaches a target node along one edge.

    Attributes:
        output: upstream output (or run input for entry nodes)
        source: upstream instance id, None for entry nodes
        source_node_id: upstream static node id
        edge: edge travelled, None for entry nodes
        index / total: fan-out position inherited from the upstream instance
    """

    output: Any = None
    source: Optional[str] = None
    source_node_id: Optional[str] = None
    edge: Optional[Edge] = None
    index: Optional[int] = None
    total: Optional[int] = None


def select_route(graph: FlowGraph, logic_id: str, context: Mapping[str, Any]) -> Optional[Edge]:
    """First outgoing edge whose condition holds, else the default edge.

    Raises:
        ConditionError: a condition failed to evaluate
    """
    default = None
    for edge in graph.outgoing(logic_id):
        if not edge.condition:
            if default is None:
                default = edge
            continue
        if evaluate_condition(edge.condition, context):
            return edge
    return default


def _mapped_value(output: Any, path: str) -> Any:
    if path == "$":
        return copy.deepcopy(output)
    if path.startswith("$."):
        path = path[2:]
    return copy.deepcopy(get_path(output, path))


class EdgeWalker:
    """Stateless execution engine. Collaborators are injected."""

    def __init__(
        self,
        runs: Optional[RunStore] = None,
        flows: Optional[FlowStore] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        mover: Optional[EntityMover] = None,
        publish: Optional[Publisher] = None,
    ):
        self.runs = runs or RunStore()
        self.flows = flows or FlowStore()
        self.dispatcher = dispatcher or WebhookDispatcher()
        self.publish = publish
        self.mover = mover or EntityMover(EntityStore(), publish=publish)

    # ─── Public operations ──────────────────────────────────────────

    async def start_run(
        self,
        flow_id: str,
        input: Any = None,
        entity_id: Optional[str] = None,
        trigger: Optional[Dict[str, Any]] = None,
        entry_node_ids: Optional[List[str]] = None,
    ) -> Result:
        """Create a run on the flow's current version and enter its entry nodes."""
        try:
            version_id, graph = await self.flows.get_current(flow_id)
            issues = validate_flow_graph(graph)
            if issues:
                return Result.failure(ErrorKind.VALIDATION, "; ".join(issues))

            entries = entry_node_ids or graph.entry_nodes()
            if not entries:
                return Result.failure(ErrorKind.VALIDATION, f"Flow {flow_id} has no entry node")
            for node_id in entries:
                graph.node(node_id)

            run = await self.runs.create(
                flow_id, version_id, entity_id=entity_id, trigger=trigger, input=input,
            )
            logger.info(
                f"[Run start] run={run.id} flow={flow_id} version={version_id} "
                f"entries={entries} entity={entity_id}"
            )
            for node_id in entries:
                await self._activate(run.id, graph, node_id, Arrival(output=copy.deepcopy(input)))
        except StitchError as e:
            logger.error(f"[Execution error] start flow={flow_id}: {e.message}")
            return Result.from_error(e)
        return Result.success({"run_id": run.id})

    async def handle_callback(
        self,
        run_id: str,
        node_id: str,
        callback: WorkerCallback,
    ) -> Result:
        """Apply a worker callback for one instance.

        A callback for an instance that is already terminal is a duplicate:
        nothing is written and nothing downstream fires. Callbacks are
        accepted whatever the run's overall status; the external side
        effect already happened.
        """
        callback_logger.info(f"[Callback received] run={run_id} node={node_id} status={callback.status}")
        try:
            run = await self.runs.get(run_id)
            graph = await self.flows.get_version_graph(run.flow_version_id)

            def _apply(run: RunSnapshot) -> str:
                state = run.state(node_id)
                if state is None:
                    raise NotFoundError(f"Node instance {node_id} not found in run {run_id}")
                node = graph.node(state.node_id)
                if node.type != "Worker":
                    raise InvalidStateError(
                        f"Node {node_id} is a {node.type} node and does not accept worker callbacks"
                    )
                if state.is_terminal:
                    return _DUPLICATE
                if state.status != NodeStatus.RUNNING:
                    raise InvalidStateError(f"Node {node_id} is {state.status.value}, not running")
                if callback.succeeded:
                    state.output = copy.deepcopy(callback.output)
                    state.transition(NodeStatus.COMPLETED)
                else:
                    state.error = copy.deepcopy(callback.error_payload())
                    state.transition(NodeStatus.FAILED)
                return _APPLIED

            run, outcome = await self._mutate(run_id, _apply)
            state = run.state(node_id)

            if outcome == _DUPLICATE:
                callback_logger.info(
                    f"[Callback received] duplicate for {run_id}/{node_id} ({state.status.value}), ignored"
                )
                if state.status == NodeStatus.COMPLETED and not state.propagated:
                    # Earlier delivery committed but its walk did not finish
                    await self._propagate(run_id, graph, node_id)
                return Result.success(
                    {"run_id": run_id, "node_id": node_id, "status": state.status.value},
                    kind=ErrorKind.DUPLICATE_CALLBACK,
                )

            self._notify_node(run_id, node_id, state)
            if state.status == NodeStatus.FAILED:
                logger.error(f"[Execution error] run={run_id} node={node_id} worker reported: {state.error}")
                await self._on_failed(run, graph, node_id)
                return Result.success(
                    {"run_id": run_id, "node_id": node_id, "status": state.status.value},
                    kind=ErrorKind.WORKER_FAILURE,
                )

            await self._propagate(run_id, graph, node_id)
        except StitchError as e:
            callback_logger.warning(f"[Callback received] rejected {run_id}/{node_id}: {e.message}")
            return Result.from_error(e)
        return Result.success({"run_id": run_id, "node_id": node_id, "status": NodeStatus.COMPLETED.value})

    async def complete_ux(self, run_id: str, node_id: str, output: Any = None) -> Result:
        """Human submission for a UX gate: waiting_for_user → completed."""
        callback_logger.info(f"[UX submit] run={run_id} node={node_id}")
        try:
            run = await self.runs.get(run_id)
            graph = await self.flows.get_version_graph(run.flow_version_id)

            def _submit(run: RunSnapshot) -> str:
                state = run.state(node_id)
                if state is None:
                    raise NotFoundError(f"Node instance {node_id} not found in run {run_id}")
                if not is_ux_node(graph.node(state.node_id)):
                    raise InvalidStateError(f"Node {node_id} is not a UX node")
                if state.is_terminal:
                    return _DUPLICATE
                if state.status != NodeStatus.WAITING_FOR_USER:
                    raise InvalidStateError(f"Node {node_id} is {state.status.value}, not waiting_for_user")
                state.output = copy.deepcopy(output)
                state.transition(NodeStatus.COMPLETED)
                if run.current_ux_node == node_id:
                    run.current_ux_node = next(
                        (iid for iid, s in run.node_states.items()
                         if s.status == NodeStatus.WAITING_FOR_USER),
                        None,
                    )
                return _APPLIED

            run, outcome = await self._mutate(run_id, _submit)
            state = run.state(node_id)
            if outcome == _DUPLICATE:
                if state.status == NodeStatus.COMPLETED and not state.propagated:
                    await self._propagate(run_id, graph, node_id)
                return Result.success(
                    {"run_id": run_id, "node_id": node_id, "status": state.status.value},
                    kind=ErrorKind.DUPLICATE_CALLBACK,
                )
            self._notify_node(run_id, node_id, state)
            await self._propagate(run_id, graph, node_id)
        except StitchError as e:
            return Result.from_error(e)
        return Result.success({"run_id": run_id, "node_id": node_id, "status": NodeStatus.COMPLETED.value})

    async def walk_edges(self, run_id: str, node_id: str) -> Result:
        """Dispatch the successors of a completed instance. Safe to repeat."""
        try:
            run = await self.runs.get(run_id)
            graph = await self.flows.get_version_graph(run.flow_version_id)
            await self._walk(run_id, graph, node_id)
        except StitchError as e:
            return Result.from_error(e)
        return Result.success({"run_id": run_id, "node_id": node_id})

    async def get_status(self, run_id: str) -> Result:
        try:
            run = await self.runs.get(run_id)
        except StitchError as e:
            return Result.from_error(e)
        return Result.success(run)

    # ─── Walking ────────────────────────────────────────────────────

    async def _propagate(self, run_id: str, graph: FlowGraph, iid: str) -> None:
        """Walk on from a completion that has already committed.

        The completion cannot be taken back, so a conflict while walking is
        retried here and never returned to the caller. If every attempt
        conflicts the instance stays unpropagated; a redelivered callback or
        walk_edges resumes it.
        """
        for attempt in range(1, WALK_MAX_ATTEMPTS + 1):
            try:
                await self._walk(run_id, graph, iid)
                return
            except ConcurrencyConflict as e:
                logger.warning(
                    f"[Edge walk] run={run_id} from={iid} conflict on attempt {attempt}/{WALK_MAX_ATTEMPTS}: {e.message}"
                )
        logger.error(f"[Execution error] run={run_id} node={iid} completed but left unpropagated")

    async def _walk(self, run_id: str, graph: FlowGraph, iid: str) -> None:
        run = await self.runs.get(run_id)
        state = run.state(iid)
        if state is None or state.status != NodeStatus.COMPLETED or state.propagated:
            return

        node = graph.node(state.node_id)
        if node.type == "Logic":
            edges = [graph.edge(state.selected_edge_id)] if state.selected_edge_id else []
        else:
            edges = graph.outgoing(node.id)

        logger.info(f"[Edge walk] run={run_id} from={iid} targets={[e.target for e in edges]}")
        if not state.is_fanned and await self._claim_movement(run, iid):
            await self.mover.on_node_completed(run, graph, node.id, True, edges[0] if edges else None)

        for edge in edges:
            arrival = Arrival(
                output=copy.deepcopy(state.output),
                source=iid,
                source_node_id=node.id,
                edge=edge,
                index=state.index,
                total=state.total,
            )
            await self._activate(run_id, graph, edge.target, arrival)

        await self._mark_propagated(run_id, iid)

    async def _activate(self, run_id: str, graph: FlowGraph, node_id: str, arrival: Arrival) -> None:
        from . import fan

        node = graph.node(node_id)
        if node.type == "Splitter":
            await fan.fan_out(self, run_id, graph, node, arrival)
        elif node.type == "Collector":
            await fan.collect(self, run_id, graph, node, arrival)
        elif is_ux_node(node):
            await self._enter_ux(run_id, node, arrival)
        elif node.type == "Logic":
            await self._enter_logic(run_id, graph, node, arrival)
        else:
            await self._enter_worker(run_id, graph, node, arrival)

    async def _enter_ux(self, run_id: str, node, arrival: Arrival) -> None:
        iid = instance_id(node.id, arrival.index)

        def _gate(run: RunSnapshot) -> bool:
            state = run.ensure_state(iid, node.id, arrival.index, arrival.total)
            if state.status != NodeStatus.PENDING:
                return False
            state.input = copy.deepcopy(arrival.output)
            state.transition(NodeStatus.WAITING_FOR_USER)
            run.current_ux_node = iid
            return True

        run, claimed = await self._mutate(run_id, _gate)
        if claimed:
            logger.info(f"[Node execution] run={run_id} node={iid} type={node.type} waiting_for_user")
            self._notify_node(run_id, iid, run.state(iid))

    async def _enter_logic(self, run_id: str, graph: FlowGraph, node, arrival: Arrival) -> None:
        iid = instance_id(node.id, arrival.index)

        def _route(run: RunSnapshot) -> bool:
            state = run.ensure_state(iid, node.id, arrival.index, arrival.total)
            if state.status != NodeStatus.PENDING:
                return False
            state.input = copy.deepcopy(arrival.output)
            state.transition(NodeStatus.RUNNING)

            extra = dict(arrival.output) if isinstance(arrival.output, dict) else {}
            extra["input"] = arrival.output
            context = build_context(run, arrival.index, extra)
            try:
                edge = select_route(graph, node.id, context)
            except ConditionError as e:
                state.error = {"message": str(e)}
                state.transition(NodeStatus.FAILED)
                return True
            if edge is None:
                state.error = {"message": f"No route matched on Logic node {node.id}"}
                state.transition(NodeStatus.FAILED)
                return True
            state.output = copy.deepcopy(arrival.output)
            state.selected_edge_id = edge.id
            state.transition(NodeStatus.COMPLETED)
            return True

        run, claimed = await self._mutate(run_id, _route)
        if not claimed:
            return
        state = run.state(iid)
        self._notify_node(run_id, iid, state)
        if state.status == NodeStatus.FAILED:
            logger.error(f"[Execution error] run={run_id} node={iid} logic: {state.error}")
            await self._on_failed(run, graph, iid)
            return
        logger.info(f"[Node execution] run={run_id} node={iid} type=Logic route={state.selected_edge_id}")
        await self._walk(run_id, graph, iid)

    async def _enter_worker(self, run_id: str, graph: FlowGraph, node, arrival: Arrival) -> None:
        iid = instance_id(node.id, arrival.index)

        def _claim(run: RunSnapshot) -> bool:
            state = run.ensure_state(iid, node.id, arrival.index, arrival.total)
            if state.status != NodeStatus.PENDING:
                return False
            state.input = self._worker_input(run, node, arrival)
            state.transition(NodeStatus.RUNNING)
            return True

        run, claimed = await self._mutate(run_id, _claim)
        if not claimed:
            return
        state = run.state(iid)
        logger.info(f"[Node execution] run={run_id} node={iid} type=Worker")
        self._notify_node(run_id, iid, state)

        payload = WorkerPayload(
            run_id=run_id,
            node_id=iid,
            input=state.input,
            callback_url=build_callback_url(run_id, iid),
        )
        result = await self.dispatcher.dispatch(node.config.webhook_url, payload)
        if not result.ok:
            await self.fail_instance(run_id, graph, iid, {"message": result.message, "kind": result.error_kind.value})

    def _worker_input(self, run: RunSnapshot, node, arrival: Arrival) -> Any:
        """Default input, shaped by the edge's data_mapping and the node's template."""
        if arrival.edge is not None and arrival.edge.data_mapping:
            default = {
                key: _mapped_value(arrival.output, path)
                for key, path in arrival.edge.data_mapping.items()
            }
        elif arrival.source_node_id is None:
            default = copy.deepcopy(arrival.output) if arrival.output is not None else {}
        elif isinstance(arrival.output, dict):
            default = copy.deepcopy(arrival.output)
        else:
            default = {arrival.source_node_id: copy.deepcopy(arrival.output)}

        template = node.config.input
        if template is None:
            return default
        extra: Dict[str, Any] = {"input": default}
        if arrival.index is not None:
            extra["index"] = arrival.index
            extra["total"] = arrival.total
            if isinstance(default, dict) and "item" in default:
                extra["item"] = default["item"]
        return resolve(template, build_context(run, arrival.index, extra))

    # ─── State helpers ──────────────────────────────────────────────

    async def _mutate(self, run_id: str, fn: Callable[[RunSnapshot], T]) -> Tuple[RunSnapshot, T]:
        """RunStore.mutate plus run-status notifications."""
        previous: Dict[str, RunStatus] = {}

        def _wrapped(run: RunSnapshot) -> T:
            previous["status"] = run.status
            return fn(run)

        run, outcome = await self.runs.mutate(run_id, _wrapped)
        if previous.get("status") != run.status:
            self._notify_run(run)
        return run, outcome

    async def _mark_propagated(self, run_id: str, iid: str) -> None:
        def _mark(run: RunSnapshot) -> None:
            state = run.state(iid)
            if state is not None:
                state.propagated = True

        await self._mutate(run_id, _mark)

    async def _claim_movement(self, run: RunSnapshot, iid: str) -> bool:
        """Take the one entity move an instance is allowed. False when there
        is no entity or an overlapping walk already took it."""
        if not run.entity_id:
            return False

        def _claim(run: RunSnapshot) -> bool:
            state = run.state(iid)
            if state is None or state.moved:
                return False
            state.moved = True
            return True

        _, claimed = await self._mutate(run.id, _claim)
        return claimed

    async def fail_instance(self, run_id: str, graph: FlowGraph, iid: str, error: Any) -> None:
        """Record a running (or pending) instance as failed. No-op once terminal."""

        def _fail(run: RunSnapshot) -> bool:
            state = run.state(iid)
            if state is None or state.is_terminal:
                return False
            if state.status == NodeStatus.PENDING:
                state.transition(NodeStatus.RUNNING)
            state.error = error
            state.transition(NodeStatus.FAILED)
            return True

        run, failed = await self._mutate(run_id, _fail)
        if failed:
            logger.error(f"[Execution error] run={run_id} node={iid}: {error}")
            self._notify_node(run_id, iid, run.state(iid))
            await self._on_failed(run, graph, iid)

    async def _on_failed(self, run: RunSnapshot, graph: FlowGraph, iid: str) -> None:
        state = run.state(iid)
        if state is not None and not state.is_fanned and await self._claim_movement(run, iid):
            await self.mover.on_node_completed(run, graph, state.node_id, False)

    # ─── Notifications ──────────────────────────────────────────────

    def _notify_node(self, run_id: str, iid: str, state) -> None:
        if not self.publish or state is None:
            return
        data = {"node_id": iid, "status": state.status.value}
        if state.status == NodeStatus.COMPLETED:
            data["output"] = state.output
        elif state.status == NodeStatus.FAILED:
            data["error"] = state.error
        self.publish(run_id, "node_status", data)

    def _notify_run(self, run: RunSnapshot) -> None:
        if not self.publish:
            return
        self.publish(run.id, "run_status", {"status": run.status.value})
        if run.status == RunStatus.COMPLETED:
            self.publish(run.id, "run_completed", {"status": run.status.value})
        elif run.status == RunStatus.FAILED:
            self.publish(run.id, "run_failed", {"status": run.status.value})


_engine: Optional[EdgeWalker] = None


def get_engine() -> EdgeWalker:
    """Process-wide EdgeWalker wired to the SSE event bus (FastAPI dependency)."""
    global _engine
    if _engine is None:
        from app.event_bus import push_event

        _engine = EdgeWalker(publish=push_event)
    return _engine
