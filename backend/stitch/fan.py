"""Splitter / Collector fan engine.

Fan-out: a Splitter reads an array from its input and, for every item i
and every outgoing edge, enters the edge target as instance
``{target}_{i}`` carrying ``index``/``total``. Each branch then walks on
independently, possibly through more Workers, until it reaches a
Collector.

Fan-in: a Collector fills ``collected[i]`` as branch i arrives and
completes once every slot 0..expected-1 is filled, with its output in
index order regardless of arrival order. Slot fill and completion happen
in one store mutation, so exactly one arrival observes the completion and
continues the walk. A non-fanned source feeding a Collector fills the slot
matching the ordinal of its inbound edge.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, List, Optional

from .graph import instance_id
from .logging_config import get_engine_logger
from .paths import get_path
from .run_state import CollectorState, NodeStatus, RunSnapshot

if TYPE_CHECKING:
    from .graph import FlowGraph
    from .runner import Arrival, EdgeWalker

logger = get_engine_logger()


def extract_items(value: Any, array_path: str) -> Optional[List[Any]]:
    """Array a Splitter fans over, or None when there is none."""
    if isinstance(value, list):
        return value
    items = get_path(value, array_path) if array_path else None
    return items if isinstance(items, list) else None


async def fan_out(
    walker: "EdgeWalker",
    run_id: str,
    graph: "FlowGraph",
    node,
    arrival: "Arrival",
) -> None:
    """Complete the Splitter and enter one instance per item per outgoing edge."""
    from .runner import Arrival

    iid = instance_id(node.id, arrival.index)
    nested = arrival.index is not None
    items = None if nested else extract_items(arrival.output, node.config.array_path)
    collectors = graph.downstream_collectors(node.id)

    def _split(run: RunSnapshot) -> bool:
        state = run.ensure_state(iid, node.id, arrival.index, arrival.total)
        if state.status != NodeStatus.PENDING:
            return False
        state.input = copy.deepcopy(arrival.output)
        state.transition(NodeStatus.RUNNING)
        if nested:
            state.error = {"message": f"Nested fan-out is not supported (Splitter {node.id} inside a branch)"}
            state.transition(NodeStatus.FAILED)
            return True
        if items is None:
            state.error = {"message": f"Splitter {node.id}: '{node.config.array_path}' is not an array"}
            state.transition(NodeStatus.FAILED)
            return True
        state.output = {"items": copy.deepcopy(items), "total": len(items)}
        state.transition(NodeStatus.COMPLETED)

        if not items:
            # Nothing will ever arrive; close the collectors now
            for cid in collectors:
                cstate = run.ensure_state(cid, cid)
                if cstate.status != NodeStatus.PENDING:
                    continue
                run.collector_states[cid] = CollectorState.empty(0)
                cstate.transition(NodeStatus.RUNNING)
                cstate.output = []
                cstate.transition(NodeStatus.COMPLETED)
        return True

    run, claimed = await walker._mutate(run_id, _split)
    if not claimed:
        return
    state = run.state(iid)
    walker._notify_node(run_id, iid, state)
    if state.status == NodeStatus.FAILED:
        logger.error(f"[Execution error] run={run_id} node={iid}: {state.error['message']}")
        await walker._on_failed(run, graph, iid)
        return

    edges = graph.outgoing(node.id)
    total = len(items)
    logger.info(
        f"[Parallel instances] run={run_id} splitter={node.id} "
        f"items={total} targets={[e.target for e in edges]}"
    )
    if await walker._claim_movement(run, iid):
        await walker.mover.on_node_completed(run, graph, node.id, True, edges[0] if edges else None)

    if total == 0:
        await walker._mark_propagated(run_id, iid)
        for cid in collectors:
            walker._notify_node(run_id, cid, run.state(cid))
            await walker._walk(run_id, graph, cid)
        return

    for index, item in enumerate(items):
        for edge in edges:
            branch = Arrival(
                output={"item": copy.deepcopy(item), "index": index, "total": total},
                source=iid,
                source_node_id=node.id,
                edge=edge,
                index=index,
                total=total,
            )
            await walker._activate(run_id, graph, edge.target, branch)

    await walker._mark_propagated(run_id, iid)


async def collect(
    walker: "EdgeWalker",
    run_id: str,
    graph: "FlowGraph",
    node,
    arrival: "Arrival",
) -> None:
    """Record one arrival at a Collector; continue the walk once complete."""
    inbound = [e.id for e in graph.incoming(node.id)]

    def _fill(run: RunSnapshot) -> bool:
        state = run.ensure_state(node.id, node.id)
        if state.is_terminal:
            return False

        if arrival.index is not None:
            slot, expected = arrival.index, arrival.total
        elif arrival.edge is not None and arrival.edge.id in inbound:
            slot, expected = inbound.index(arrival.edge.id), len(inbound)
        else:
            slot, expected = None, None

        collector = run.collector_states.get(node.id)
        if collector is None and expected is not None:
            collector = CollectorState.empty(expected)
            run.collector_states[node.id] = collector

        if slot is None or collector.expected != expected or not 0 <= slot < expected:
            state.transition(NodeStatus.RUNNING)
            state.error = {
                "message": f"Collector {node.id} cannot place input from {arrival.source} "
                           f"(slot={slot}, expected={expected})",
            }
            state.transition(NodeStatus.FAILED)
            return True

        if not collector.fill(slot, copy.deepcopy(arrival.output)):
            return False
        if not collector.is_complete:
            return False

        state.transition(NodeStatus.RUNNING)
        state.output = list(collector.collected)
        state.transition(NodeStatus.COMPLETED)
        return True

    run, finished = await walker._mutate(run_id, _fill)
    collector = run.collector_states.get(node.id)
    if not finished:
        if collector is not None:
            logger.info(
                f"[Fan-in] run={run_id} collector={node.id} "
                f"received {collector.received}/{collector.expected}"
            )
        return

    state = run.state(node.id)
    walker._notify_node(run_id, node.id, state)
    if state.status == NodeStatus.FAILED:
        logger.error(f"[Execution error] run={run_id} node={node.id}: {state.error['message']}")
        await walker._on_failed(run, graph, node.id)
        return
    logger.info(f"[Fan-in] run={run_id} collector={node.id} complete with {collector.expected} items")
    await walker._walk(run_id, graph, node.id)
