"""Tests for the beads task reader and ready-set derivation."""

import json

import pytest

from machinator.tasks.beads import (
    BeadsTaskSource,
    Task,
    TaskSourceError,
    load_tasks,
    parse_tasks,
    ready_tasks,
)

from fakes import make_task


def _write_issues(repo_dir, records, extra_lines=()):
    beads_dir = repo_dir / ".beads"
    beads_dir.mkdir(parents=True, exist_ok=True)
    lines = [json.dumps(r) for r in records] + list(extra_lines)
    (beads_dir / "issues.jsonl").write_text("\n".join(lines) + "\n")


@pytest.mark.parametrize(
    ("blocker_statuses", "expected_ready"),
    [
        ([], True),
        (["closed"], True),
        (["closed", "closed"], True),
        (["open"], False),
        (["in_progress"], False),
        (["closed", "open"], False),
    ],
)
def test_open_task_ready_iff_all_blockers_closed(blocker_statuses, expected_ready):
    """A task is ready iff it is open and every blocker is closed."""
    blockers = [make_task(f"B{i}", status=s) for i, s in enumerate(blocker_statuses)]
    task = make_task("T", blocked_by=[b.id for b in blockers])

    ready_ids = {t.id for t in ready_tasks(blockers + [task])}

    assert ("T" in ready_ids) is expected_ready


@pytest.mark.parametrize("status", ["in_progress", "closed", "", "deferred"])
def test_non_open_tasks_never_ready(status):
    """Only open tasks can be ready."""
    assert ready_tasks([make_task("T", status=status)]) == []


def test_unknown_blocker_keeps_task_blocked():
    """A blocker id that is not in the backlog is not closed."""
    assert ready_tasks([make_task("T", blocked_by=["missing"])]) == []


def test_blocker_closing_unblocks_dependent():
    """T2 blocked by an open T1 becomes ready once T1 closes."""
    t1 = make_task("T1")
    t2 = make_task("T2", blocked_by=["T1"])

    assert [t.id for t in ready_tasks([t1, t2])] == ["T1"]

    t1.status = "closed"

    assert [t.id for t in ready_tasks([t1, t2])] == ["T2"]


def test_ready_tasks_preserve_input_order():
    """Ready set keeps backlog order."""
    tasks = [make_task("C"), make_task("A"), make_task("B")]
    assert [t.id for t in ready_tasks(tasks)] == ["C", "A", "B"]


def test_task_from_record_derives_complexity():
    """The CHALLENGE:complex marker in the description sets is_complex."""
    task = Task.from_record(
        {
            "id": "mach-1",
            "title": "Refactor scheduler",
            "description": "Big one.\nCHALLENGE:complex",
            "status": "open",
            "priority": 2,
            "blocked_by": ["mach-0"],
        }
    )

    assert task.is_complex is True
    assert task.blocked_by == ["mach-0"]
    assert task.priority == 2
    assert Task.from_record({"id": "x", "description": "CHALLENGE:simple"}).is_complex is False


def test_parse_tasks_skips_blank_and_malformed_lines():
    """Malformed entries are dropped without failing the whole read."""
    lines = [
        json.dumps({"id": "a", "status": "open"}),
        "",
        "{not json",
        json.dumps(["not", "an", "object"]),
        json.dumps({"title": "no id"}),
        json.dumps({"id": "b", "status": "closed"}),
    ]

    assert [t.id for t in parse_tasks(lines)] == ["a", "b"]


def test_load_tasks_reads_issues_jsonl(tmp_path):
    """Tasks are read from .beads/issues.jsonl in the repo."""
    _write_issues(
        tmp_path,
        [
            {"id": "a", "status": "closed"},
            {"id": "b", "status": "open", "blocked_by": ["a"]},
            {"id": "c", "status": "open", "blocked_by": ["b"]},
        ],
        extra_lines=["garbage"],
    )

    tasks = load_tasks(tmp_path)
    source = BeadsTaskSource(tmp_path)

    assert [t.id for t in tasks] == ["a", "b", "c"]
    assert [t.id for t in source.ready_tasks()] == ["b"]


def test_load_tasks_missing_file_raises(tmp_path):
    """An unreadable backlog is reported as a task source failure."""
    with pytest.raises(TaskSourceError):
        load_tasks(tmp_path)
