from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import allure
import pytest
from sqlalchemy import true
from sqlalchemy.exc import OperationalError

from agent_engine.executor import EchoStepExecutor, StepContext, TaskTypeRouter
from agent_engine.queue.lease import LeaseProtocol
from agent_engine.queue.models import TaskCreate, TaskStatus, TaskView
from agent_engine.queue.scheduler import CycleSummary, PollScheduler
from agent_engine.queue.store import TaskStore
from agent_engine.storage.common import utc_now

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Poll Scheduler"),
]


class _RecordingExecutor:
    def __init__(self, hook: Callable[[TaskView, StepContext], None] | None = None) -> None:
        self.seen: list[str] = []
        self.hook = hook

    def run(self, task: TaskView, context: StepContext) -> dict[str, Any]:
        self.seen.append(task.id)
        context.checkpoint("working", {"started": True})
        if self.hook is not None:
            self.hook(task, context)
        return {"handled": task.id}


class _FailingExecutor:
    def __init__(self, failing_ids: set[str]) -> None:
        self.failing_ids = failing_ids

    def run(self, task: TaskView, context: StepContext) -> dict[str, Any]:
        context.checkpoint("call")
        if task.id in self.failing_ids:
            raise RuntimeError(f"collaborator rejected {task.id}")
        return {"ok": True}


def _scheduler(
    store: TaskStore,
    lease: LeaseProtocol,
    executor: Any,
    **kwargs: Any,
) -> PollScheduler:
    return PollScheduler(
        store=store,
        lease=lease,
        executor=executor,
        poll_interval_seconds=kwargs.pop("poll_interval_seconds", 0.0),
        **kwargs,
    )


def test_pending_task_is_processed_to_completion(store: TaskStore, make_lease) -> None:
    task = store.enqueue_task(TaskCreate(type="echo", input={"message": "hi"}))
    scheduler = _scheduler(store, make_lease(), TaskTypeRouter({"echo": EchoStepExecutor()}))

    summary = scheduler.run_once()

    assert summary == CycleSummary(cycles=1, fetched=1, claimed=1, completed=1)
    details = store.get_task_details(task_id=task.id)
    assert details is not None
    assert details.task.status == TaskStatus.COMPLETED
    assert details.task.current_step == "done"
    assert details.task.output == {"echo": {"message": "hi"}, "type": "echo"}
    assert [entry.event for entry in details.logs] == [
        "created",
        "claimed",
        "checkpoint",
        "completed",
    ]


def test_tasks_are_processed_oldest_first(store: TaskStore, make_lease) -> None:
    base = utc_now() - timedelta(minutes=1)
    # Ids sort opposite to creation time.
    for offset, task_id in enumerate(("c", "b", "a")):
        store.enqueue_task(TaskCreate(type="echo", task_id=task_id))
        store.conditional_update(
            task_id=task_id,
            expected=true(),
            values={"created_at": base + timedelta(seconds=offset)},
        )
    executor = _RecordingExecutor()

    summary = _scheduler(store, make_lease(), executor).run_once()

    assert executor.seen == ["c", "b", "a"]
    assert summary.completed == 3


def test_batch_size_limits_tasks_per_cycle(store: TaskStore, make_lease) -> None:
    for task_id in ("a", "b", "c"):
        store.enqueue_task(TaskCreate(type="echo", task_id=task_id))
    executor = _RecordingExecutor()

    summary = _scheduler(store, make_lease(), executor, batch_size=2).run_once()

    assert summary.fetched == 2
    assert executor.seen == ["a", "b"]
    remaining = store.get_task(task_id="c")
    assert remaining is not None
    assert remaining.status == TaskStatus.PENDING


def test_abandoned_task_is_recovered_by_next_instance(
    store: TaskStore,
    make_lease,
    force_state,
) -> None:
    task = store.enqueue_task(TaskCreate(type="echo"))
    force_state(
        task.id,
        status=TaskStatus.ACTIVE,
        updated_at=utc_now() - timedelta(minutes=5),
        worker_id="crashed-worker",
    )
    executor = _RecordingExecutor()

    summary = _scheduler(store, make_lease("worker-b"), executor).run_once()

    assert summary.claimed == 1
    assert summary.completed == 1
    details = store.get_task_details(task_id=task.id)
    assert details is not None
    assert details.task.status == TaskStatus.COMPLETED
    assert details.task.worker_id == "worker-b"
    recovered = [entry for entry in details.logs if entry.event == "claimed"]
    assert recovered[-1].data["recovered"] is True


def test_live_holder_is_not_disturbed(store: TaskStore, make_lease, force_state) -> None:
    task = store.enqueue_task(TaskCreate(type="echo"))
    force_state(task.id, status=TaskStatus.ACTIVE, updated_at=utc_now(), worker_id="worker-a")
    executor = _RecordingExecutor()

    summary = _scheduler(store, make_lease("worker-b"), executor).run_once()

    assert summary.fetched == 0
    assert executor.seen == []


def test_executor_failure_marks_task_failed_and_loop_continues(
    store: TaskStore,
    make_lease,
) -> None:
    store.enqueue_task(TaskCreate(type="echo", task_id="bad"))
    store.enqueue_task(TaskCreate(type="echo", task_id="good"))

    summary = _scheduler(store, make_lease(), _FailingExecutor({"bad"})).run_once()

    assert summary.failed == 1
    assert summary.completed == 1
    bad = store.get_task_details(task_id="bad")
    assert bad is not None
    assert bad.task.status == TaskStatus.FAILED
    assert bad.task.current_step == "call"
    assert bad.task.output is not None
    assert bad.task.output["error"] == "collaborator rejected bad"
    assert "RuntimeError" in bad.task.output["trace"]
    assert bad.logs[-1].event == "failed"
    good = store.get_task(task_id="good")
    assert good is not None
    assert good.status == TaskStatus.COMPLETED


def test_unknown_task_type_fails_task(store: TaskStore, make_lease) -> None:
    task = store.enqueue_task(TaskCreate(type="mystery"))
    router = TaskTypeRouter({"echo": EchoStepExecutor()})

    summary = _scheduler(store, make_lease(), router).run_once()

    assert summary.failed == 1
    failed = store.get_task(task_id=task.id)
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.output is not None
    assert "mystery" in failed.output["error"]


def test_task_claimed_by_competitor_after_fetch_is_skipped(
    store: TaskStore,
    make_lease,
) -> None:
    store.enqueue_task(TaskCreate(type="echo", task_id="a"))
    store.enqueue_task(TaskCreate(type="echo", task_id="b"))
    competitor = make_lease("worker-b")

    def _steal_next(task: TaskView, _: StepContext) -> None:
        if task.id == "a":
            snapshot = store.get_task(task_id="b")
            assert snapshot is not None
            assert competitor.claim(snapshot)

    executor = _RecordingExecutor(hook=_steal_next)
    summary = _scheduler(store, make_lease("worker-a"), executor).run_once()

    assert summary.fetched == 2
    assert summary.claimed == 1
    assert summary.lost_races == 1
    assert executor.seen == ["a"]
    stolen = store.get_task(task_id="b")
    assert stolen is not None
    assert stolen.status == TaskStatus.ACTIVE
    assert stolen.worker_id == "worker-b"


def test_lease_lost_mid_task_stops_without_overwriting(
    store: TaskStore,
    make_lease,
    force_state,
) -> None:
    task = store.enqueue_task(TaskCreate(type="echo"))

    def _finished_elsewhere(current: TaskView, context: StepContext) -> None:
        force_state(current.id, status=TaskStatus.COMPLETED, updated_at=utc_now())
        context.checkpoint("after_side_effect")

    summary = _scheduler(
        store,
        make_lease(),
        _RecordingExecutor(hook=_finished_elsewhere),
    ).run_once()

    assert summary.lease_lost == 1
    assert summary.completed == 0
    assert summary.failed == 0
    final = store.get_task(task_id=task.id)
    assert final is not None
    assert final.status == TaskStatus.COMPLETED
    assert final.current_step == "working"


def test_holder_reclaimed_mid_task_leaves_task_to_new_holder(
    store: TaskStore,
    make_lease,
    force_state,
) -> None:
    task = store.enqueue_task(TaskCreate(type="echo"))

    def _reclaimed_elsewhere(current: TaskView, _: StepContext) -> None:
        force_state(
            current.id,
            status=TaskStatus.ACTIVE,
            updated_at=utc_now(),
            worker_id="worker-b",
        )

    summary = _scheduler(
        store,
        make_lease("worker-a"),
        _RecordingExecutor(hook=_reclaimed_elsewhere),
    ).run_once()

    assert summary.lease_lost == 1
    assert summary.completed == 0
    current = store.get_task(task_id=task.id)
    assert current is not None
    assert current.status == TaskStatus.ACTIVE
    assert current.worker_id == "worker-b"
    assert current.output == {"started": True}


def test_fetch_error_is_logged_and_next_cycle_runs(
    store: TaskStore,
    make_lease,
    monkeypatch: pytest.MonkeyPatch,
    caplog,
) -> None:
    store.enqueue_task(TaskCreate(type="echo", task_id="a"))
    original_fetch = store.fetch_candidates
    calls = {"count": 0}

    def _flaky_fetch(**kwargs: Any) -> list[TaskView]:
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return original_fetch(**kwargs)

    monkeypatch.setattr(store, "fetch_candidates", _flaky_fetch)
    executor = _RecordingExecutor()

    summary = _scheduler(store, make_lease(), executor).run_forever(max_cycles=2)

    assert summary.cycles == 2
    assert summary.cycle_errors == 1
    assert summary.completed == 1
    assert executor.seen == ["a"]
    assert "Failed to fetch candidate tasks" in caplog.text


def test_failure_record_error_is_logged(
    store: TaskStore,
    make_lease,
    monkeypatch: pytest.MonkeyPatch,
    caplog,
) -> None:
    task = store.enqueue_task(TaskCreate(type="echo"))
    lease = make_lease()

    def _broken_fail(task_id: str, error: BaseException | str) -> bool:
        raise OperationalError("UPDATE", {}, Exception("disk I/O error"))

    monkeypatch.setattr(lease, "fail", _broken_fail)

    summary = _scheduler(store, lease, _FailingExecutor({task.id})).run_once()

    assert summary.failed == 0
    assert "Failed to mark task" in caplog.text
    # Left active; the stale threshold hands it to the next claimant.
    current = store.get_task(task_id=task.id)
    assert current is not None
    assert current.status == TaskStatus.ACTIVE


def test_stop_request_finishes_current_task_and_exits(store: TaskStore, make_lease) -> None:
    store.enqueue_task(TaskCreate(type="echo", task_id="a"))
    store.enqueue_task(TaskCreate(type="echo", task_id="b"))
    stop = threading.Event()
    executor = _RecordingExecutor(hook=lambda *_: stop.set())

    summary = _scheduler(store, make_lease(), executor, poll_interval_seconds=60.0).run_forever(
        stop=stop,
    )

    assert summary.cycles == 1
    assert summary.completed == 1
    assert executor.seen == ["a"]
    untouched = store.get_task(task_id="b")
    assert untouched is not None
    assert untouched.status == TaskStatus.PENDING


def test_run_forever_honours_max_cycles_on_empty_queue(store: TaskStore, make_lease) -> None:
    summary = _scheduler(store, make_lease(), _RecordingExecutor()).run_forever(max_cycles=3)

    assert summary.cycles == 3
    assert summary.fetched == 0
