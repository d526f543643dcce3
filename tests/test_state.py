"""Tests for the agent pool state machine and its persistence."""

import json
import threading
from datetime import UTC, datetime

import pytest

from machinator.orchestration.state import (
    AgentNotFoundError,
    AgentPoolState,
    AgentState,
    InvalidTransitionError,
    StateError,
    StatePersistenceError,
    TaskAlreadyAssignedError,
    TaskBarredError,
)


def _on_disk(path):
    return json.loads(path.read_text())


def _ready_agent(state):
    agent = state.add_agent()
    state.set_agent_ready(agent.id)
    return agent.id


def test_new_agents_get_sequential_ids_and_start_pending(state, state_path):
    """Three agents added to an empty pool are 1, 2, 3 and pending."""
    ids = [state.add_agent().id for _ in range(3)]

    assert ids == [1, 2, 3]
    assert [a.state for a in state.agents()] == [AgentState.PENDING] * 3
    assert [a["id"] for a in _on_disk(state_path)["agents"]] == [1, 2, 3]


def test_lifecycle_transitions(state):
    """pending -> ready -> assigned -> ready."""
    agent_id = state.add_agent().id
    state.set_agent_ready(agent_id)
    assigned = state.assign_task(agent_id, "T1", model="m", account="acct")

    assert assigned.state == AgentState.ASSIGNED
    assert assigned.task_id == "T1"
    assert assigned.started_at is not None
    assert assigned.started_at == assigned.last_activity

    assert state.complete_task(agent_id) == "T1"

    agent = state.get_agent(agent_id)
    assert agent.state == AgentState.READY
    assert agent.task_id is None
    assert agent.model is None
    assert agent.account is None
    assert agent.pid is None
    assert agent.started_at is None
    assert agent.last_activity is None


@pytest.mark.parametrize("operation", ["assign", "complete", "pid", "activity"])
def test_pending_agent_rejects_work_transitions(state, operation):
    agent_id = state.add_agent().id
    calls = {
        "assign": lambda: state.assign_task(agent_id, "T1"),
        "complete": lambda: state.complete_task(agent_id),
        "pid": lambda: state.set_agent_pid(agent_id, 42),
        "activity": lambda: state.update_activity(agent_id),
    }

    with pytest.raises(InvalidTransitionError):
        calls[operation]()

    assert state.get_agent(agent_id).state == AgentState.PENDING


def test_set_ready_requires_pending(state):
    agent_id = _ready_agent(state)

    with pytest.raises(InvalidTransitionError):
        state.set_agent_ready(agent_id)


def test_unknown_agent_raises(state):
    with pytest.raises(AgentNotFoundError):
        state.set_agent_ready(99)
    assert state.get_agent(99) is None


def test_task_cannot_be_held_twice(state):
    """At most one assigned agent holds a given task."""
    first = _ready_agent(state)
    second = _ready_agent(state)
    state.assign_task(first, "T1")

    with pytest.raises(TaskAlreadyAssignedError):
        state.assign_task(second, "T1")

    assert state.get_agent(second).state == AgentState.READY
    assert state.is_task_assigned("T1")


def test_barred_task_cannot_be_assigned(state):
    agent_id = _ready_agent(state)

    assert state.bar_task("T1") is True
    assert state.bar_task("T1") is False
    with pytest.raises(TaskBarredError):
        state.assign_task(agent_id, "T1")

    assert state.unbar_task("T1") is True
    assert state.unbar_task("T1") is False
    state.assign_task(agent_id, "T1")


def test_complete_task_checks_expected_task(state):
    """A stale completion for a task the agent no longer holds is rejected."""
    agent_id = _ready_agent(state)
    state.assign_task(agent_id, "T2")

    with pytest.raises(InvalidTransitionError):
        state.complete_task(agent_id, "T1")

    assert state.get_agent(agent_id).task_id == "T2"
    assert state.complete_task(agent_id, "T2") == "T2"


def test_pid_and_activity_updates(state):
    agent_id = _ready_agent(state)
    started = datetime(2026, 1, 1, tzinfo=UTC)
    later = datetime(2026, 1, 1, 0, 5, tzinfo=UTC)
    state.assign_task(agent_id, "T1", now=started)

    state.set_agent_pid(agent_id, 4242)
    state.update_activity(agent_id, now=later)

    agent = state.get_agent(agent_id)
    assert agent.pid == 4242
    assert agent.started_at == started
    assert agent.last_activity == later


def test_queries_return_copies(state):
    """Mutating a returned agent does not change the pool."""
    agent_id = _ready_agent(state)

    snapshot = state.get_agent(agent_id)
    snapshot.state = AgentState.ASSIGNED
    state.agents()[0].task_id = "T9"

    assert state.get_agent(agent_id).state == AgentState.READY
    assert state.get_agent(agent_id).task_id is None


def test_every_mutation_reaches_disk(state, state_path):
    """When a mutating call returns, state.json reflects it."""
    agent_id = _ready_agent(state)
    assert _on_disk(state_path)["agents"][0]["state"] == "ready"

    state.assign_task(agent_id, "T1", model="flash", account="alice")
    record = _on_disk(state_path)["agents"][0]
    assert record["state"] == "assigned"
    assert record["task_id"] == "T1"
    assert record["model"] == "flash"
    assert record["account"] == "alice"

    state.bar_task("T7")
    assert _on_disk(state_path)["barred_tasks"] == ["T7"]

    state.set_assignment_paused(True)
    state.set_launches_paused(True)
    data = _on_disk(state_path)
    assert data["assignment_paused"] is True
    assert data["launches_paused"] is True


def test_round_trip_after_mutations(state, state_path):
    """Reloading the file reproduces the same state."""
    first = _ready_agent(state)
    _ready_agent(state)
    state.add_agent()
    state.assign_task(first, "T1", model="pro", account="bob")
    state.set_agent_pid(first, 100)
    state.bar_task("T9")
    state.set_assignment_paused(True)

    reloaded = AgentPoolState.load(state_path)

    assert reloaded.to_dict() == state.to_dict()
    assert reloaded.get_agent(first).started_at == state.get_agent(first).started_at
    assert reloaded.assignment_paused is True
    assert reloaded.barred_tasks() == ["T9"]


def test_load_missing_file_is_empty(tmp_path):
    state = AgentPoolState.load(tmp_path / "nope.json")

    assert state.agents() == []
    assert state.assignment_paused is False
    assert state.barred_tasks() == []


def test_load_corrupt_file_raises(state_path):
    state_path.write_text("{not json")

    with pytest.raises(StateError):
        AgentPoolState.load(state_path)


def test_write_failure_raises_but_memory_advances(tmp_path):
    """A failed write is reported and the in-memory change still applies."""
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where a directory should be")
    state = AgentPoolState(blocker / "state.json")

    with pytest.raises(StatePersistenceError):
        state.add_agent()

    assert [a.id for a in state.agents()] == [1]
    with pytest.raises(StatePersistenceError):
        state.save()


def test_save_rewrites_current_state(state, state_path):
    state.add_agent()
    state_path.unlink()

    state.save()

    assert len(_on_disk(state_path)["agents"]) == 1


def test_ids_are_not_reused_after_removal(state, state_path):
    state.add_agent()
    second = state.add_agent()

    assert state.remove_agent(second.id) is True
    assert state.add_agent().id == 3

    reloaded = AgentPoolState.load(state_path)
    assert reloaded.add_agent().id == 4


def test_removing_working_agent_marks_it(state):
    """An assigned agent is only marked, and is deleted when its task ends."""
    agent_id = _ready_agent(state)
    state.assign_task(agent_id, "T1")

    assert state.remove_agent(agent_id) is False
    assert state.get_agent(agent_id).marked_for_removal is True

    assert state.complete_task(agent_id) == "T1"
    assert state.get_agent(agent_id) is None


def test_marked_agent_never_returns_to_ready(state):
    working = _ready_agent(state)
    idle = _ready_agent(state)
    state.assign_task(working, "T1")
    state.remove_agent(working)
    state.complete_task(working)

    assert [a.id for a in state.ready_agents()] == [idle]
    assert state.pending_agents() == []
    assert state.assigned_agents() == []


def test_in_memory_state_skips_persistence():
    state = AgentPoolState()
    state.add_agent()
    state.save()

    assert state.path is None
    assert len(state.agents()) == 1


def test_concurrent_mutations_leave_disk_matching_memory(state, state_path):
    """Writers racing from many threads never leave an older state on disk."""

    def churn(worker):
        for i in range(50):
            agent = state.add_agent()
            state.set_agent_ready(agent.id)
            state.bar_task(f"T{worker}-{i}")

    threads = [threading.Thread(target=churn, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert _on_disk(state_path) == state.to_dict()
    assert AgentPoolState.load(state_path).to_dict() == state.to_dict()
    assert len(state.ready_agents()) == 400
    assert len(state.barred_tasks()) == 400


def test_stale_write_never_replaces_newer_state(state, state_path):
    """A flush carrying an older version is dropped."""
    state.add_agent()
    stale = state.to_dict()
    state.add_agent()

    state._flush(1, stale)
    state._flush(1, stale, force=True)

    assert len(_on_disk(state_path)["agents"]) == 2
