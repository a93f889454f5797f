"""Tests for node/collector state types and run status derivation."""

import pytest

from stitch.errors import InvalidStateError
from stitch.run_state import (
    CollectorState,
    NodeState,
    NodeStatus,
    RunSnapshot,
    RunStatus,
    derive_run_status,
    is_valid_transition,
)


def _state(status: NodeStatus, propagated: bool = True, **kwargs) -> NodeState:
    return NodeState(node_id=kwargs.pop("node_id", "n"), status=status, propagated=propagated, **kwargs)


def _run(states=None, collectors=None) -> RunSnapshot:
    return RunSnapshot(
        id="run-1", flow_id="f", flow_version_id="v",
        node_states=states or {}, collector_states=collectors or {},
    )


class TestNodeTransitions:

    @pytest.mark.parametrize("current,target", [
        (NodeStatus.PENDING, NodeStatus.RUNNING),
        (NodeStatus.PENDING, NodeStatus.WAITING_FOR_USER),
        (NodeStatus.RUNNING, NodeStatus.COMPLETED),
        (NodeStatus.RUNNING, NodeStatus.FAILED),
        (NodeStatus.WAITING_FOR_USER, NodeStatus.COMPLETED),
    ])
    def test_allowed(self, current, target):
        assert is_valid_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (NodeStatus.PENDING, NodeStatus.COMPLETED),
        (NodeStatus.RUNNING, NodeStatus.PENDING),
        (NodeStatus.COMPLETED, NodeStatus.RUNNING),
        (NodeStatus.COMPLETED, NodeStatus.FAILED),
        (NodeStatus.FAILED, NodeStatus.COMPLETED),
        (NodeStatus.WAITING_FOR_USER, NodeStatus.FAILED),
    ])
    def test_rejected(self, current, target):
        state = NodeState(node_id="n", status=current)
        with pytest.raises(InvalidStateError):
            state.transition(target)
        assert state.status == current

    def test_transition_stamps_times(self):
        state = NodeState(node_id="n")
        state.transition(NodeStatus.RUNNING)
        assert state.started_at is not None and state.completed_at is None
        state.transition(NodeStatus.COMPLETED)
        assert state.completed_at is not None
        assert state.is_terminal

    def test_dict_round_trip_keeps_fan_metadata(self):
        state = NodeState(node_id="render", index=2, total=3, status=NodeStatus.COMPLETED,
                          output={"url": "x"}, propagated=True)
        restored = NodeState.from_dict("render_2", state.to_dict())
        assert restored == state
        assert restored.is_fanned


class TestCollectorState:

    def test_complete_only_when_every_slot_filled(self):
        collector = CollectorState.empty(4)
        for i in (3, 2, 1):
            assert collector.fill(i, f"out{i}")
        assert not collector.is_complete
        assert collector.received == 3
        collector.fill(0, "out0")
        assert collector.is_complete
        assert collector.collected == ["out0", "out1", "out2", "out3"]

    def test_none_output_counts_as_filled(self):
        collector = CollectorState.empty(1)
        collector.fill(0, None)
        assert collector.is_complete

    def test_refill_is_rejected(self):
        collector = CollectorState.empty(2)
        assert collector.fill(0, "first")
        assert not collector.fill(0, "second")
        assert collector.collected[0] == "first"

    def test_out_of_range(self):
        with pytest.raises(InvalidStateError):
            CollectorState.empty(2).fill(2, "x")

    def test_from_dict_pads_short_lists(self):
        collector = CollectorState.from_dict({"expected": 3, "collected": ["a"], "filled": [True]})
        assert collector.collected == ["a", None, None]
        assert collector.filled == [True, False, False]


class TestDeriveRunStatus:

    def test_fresh_run_is_running(self):
        assert derive_run_status(_run()) == RunStatus.RUNNING

    def test_failed_beats_everything(self):
        run = _run({
            "a": _state(NodeStatus.FAILED),
            "b": _state(NodeStatus.RUNNING),
            "u": _state(NodeStatus.WAITING_FOR_USER),
        })
        assert derive_run_status(run) == RunStatus.FAILED

    def test_waiting_for_user_beats_running(self):
        run = _run({"b": _state(NodeStatus.RUNNING), "u": _state(NodeStatus.WAITING_FOR_USER)})
        assert derive_run_status(run) == RunStatus.WAITING_FOR_USER

    def test_unpropagated_completion_is_still_running(self):
        run = _run({"a": _state(NodeStatus.COMPLETED, propagated=False)})
        assert derive_run_status(run) == RunStatus.RUNNING

    def test_incomplete_collector_is_still_running(self):
        collector = CollectorState.empty(2)
        collector.fill(0, "x")
        run = _run({"a": _state(NodeStatus.COMPLETED)}, {"c": collector})
        assert derive_run_status(run) == RunStatus.RUNNING

    def test_all_propagated_is_completed(self):
        run = _run({"a": _state(NodeStatus.COMPLETED), "b": _state(NodeStatus.COMPLETED)})
        assert derive_run_status(run) == RunStatus.COMPLETED

    def test_ensure_state_creates_pending_instance(self):
        run = _run()
        state = run.ensure_state("render_1", "render", 1, 3)
        assert state.status == NodeStatus.PENDING
        assert (state.index, state.total) == (1, 3)
        assert run.ensure_state("render_1", "render", 1, 3) is state
