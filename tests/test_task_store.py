from __future__ import annotations

import json
import re
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from memento.orchestrator.models import FailureCause, ResultStatus, TaskResult, TaskStatus
from memento.orchestrator.store import AREAS, ClaimConflictError, TaskRecordError, TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Durable Lifecycle Store"),
]


def _areas_holding(store: TaskStore, task_id: str) -> list[TaskStatus]:
    return [area for area in AREAS if store.record_path(task_id, area).exists()]


def _success(summary: str = "done") -> TaskResult:
    return TaskResult(status=ResultStatus.SUCCESS, summary=summary)


def test_create_writes_pending_record_with_snapshot(store: TaskStore) -> None:
    task = store.create("Write the changelog", {"current.md": "# Current"})

    assert re.fullmatch(r"task_\d+_[0-9a-f]{10}", task.id)
    assert _areas_holding(store, task.id) == [TaskStatus.PENDING]
    raw = json.loads(store.record_path(task.id, TaskStatus.PENDING).read_text("utf-8"))
    assert raw["status"] == "pending"
    assert raw["description"] == "Write the changelog"
    assert raw["memoryContext"] == {"current.md": "# Current"}
    assert raw["attempt"] == 1
    assert raw["createdAt"].endswith("Z")


def test_create_generates_distinct_ids(store: TaskStore) -> None:
    ids = {store.create(f"task {index}", {}).id for index in range(50)}

    assert len(ids) == 50
    assert store.counts()[TaskStatus.PENDING] == 50


def test_claim_moves_record_and_stamps_worker(store: TaskStore) -> None:
    task = store.create("Refactor parser", {})

    claimed = store.claim(task.id, worker_id="worker_1", worker_pid=4321)

    assert claimed.status == TaskStatus.PROCESSING
    assert claimed.worker_id == "worker_1"
    assert claimed.worker_pid == 4321
    assert claimed.processing_start_time is not None
    assert _areas_holding(store, task.id) == [TaskStatus.PROCESSING]
    reloaded = store.load(task.id, TaskStatus.PROCESSING)
    assert reloaded.worker_id == "worker_1"


def test_second_claim_is_rejected(store: TaskStore) -> None:
    task = store.create("Only once", {})
    store.claim(task.id, worker_id="worker_1")

    with pytest.raises(ClaimConflictError):
        store.claim(task.id, worker_id="worker_2")

    assert store.load(task.id, TaskStatus.PROCESSING).worker_id == "worker_1"


def test_claim_of_unknown_task_is_conflict(store: TaskStore) -> None:
    with pytest.raises(ClaimConflictError):
        store.claim("task_1_missing", worker_id="worker_1")


def test_concurrent_claims_succeed_exactly_once(store: TaskStore) -> None:
    task = store.create("Race me", {})
    barrier = threading.Barrier(8)
    winners: list[str] = []
    losers: list[str] = []
    lock = threading.Lock()

    def _claim(worker_id: str) -> None:
        barrier.wait()
        try:
            store.claim(task.id, worker_id=worker_id)
        except ClaimConflictError:
            with lock:
                losers.append(worker_id)
        else:
            with lock:
                winners.append(worker_id)

    threads = [threading.Thread(target=_claim, args=(f"worker_{i}",)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(winners) == 1
    assert len(losers) == 7
    assert store.load(task.id, TaskStatus.PROCESSING).worker_id == winners[0]
    assert _areas_holding(store, task.id) == [TaskStatus.PROCESSING]


def test_resolve_success_from_processing(store: TaskStore) -> None:
    task = store.create("Ship it", {})
    store.claim(task.id, worker_id="worker_1")

    resolved = store.resolve(task.id, _success("shipped"))

    assert resolved.status == TaskStatus.COMPLETED
    assert resolved.completed_at is not None
    assert resolved.failed_at is None
    assert resolved.execution_time_ms is not None
    assert resolved.execution_time_ms >= 0
    assert _areas_holding(store, task.id) == [TaskStatus.COMPLETED]
    raw = json.loads(store.record_path(task.id, TaskStatus.COMPLETED).read_text("utf-8"))
    assert raw["status"] == "completed"
    assert raw["result"]["summary"] == "shipped"
    assert "processed" not in raw


def test_resolve_failure_records_failed_at_and_cause(store: TaskStore) -> None:
    task = store.create("Break it", {})
    store.claim(task.id, worker_id="worker_1")

    resolved = store.resolve(
        task.id,
        TaskResult.failure(cause=FailureCause.TIMEOUT, summary="too slow", exit_code=-15),
    )

    assert resolved.failed_at is not None
    assert resolved.completed_at is None
    assert resolved.result is not None
    reloaded = store.load(task.id, TaskStatus.COMPLETED)
    assert reloaded.result is not None
    assert reloaded.result.cause == FailureCause.TIMEOUT
    assert reloaded.result.exit_code == -15


def test_resolve_from_pending_for_crash_recovery(store: TaskStore) -> None:
    task = store.create("Never claimed", {})

    store.resolve(task.id, TaskResult.failure(cause=FailureCause.DISPATCH_FAILED, summary="x"))

    assert _areas_holding(store, task.id) == [TaskStatus.COMPLETED]


def test_resolve_of_completed_task_is_noop(store: TaskStore) -> None:
    task = store.create("Twice", {})
    store.claim(task.id, worker_id="worker_1")
    store.resolve(task.id, _success("first"))

    again = store.resolve(
        task.id,
        TaskResult.failure(cause=FailureCause.COORDINATOR_TIMEOUT, summary="late"),
    )

    assert again.result is not None
    assert again.result.summary == "first"
    assert store.load(task.id, TaskStatus.COMPLETED).result.summary == "first"


def test_resolve_unknown_task_raises(store: TaskStore) -> None:
    with pytest.raises(TaskRecordError):
        store.resolve("task_1_unknown", _success())


def test_execution_time_uses_injected_clock(tmp_path: Path) -> None:
    moments = iter(
        [
            datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC),
            datetime(2026, 1, 1, 12, 0, 5, tzinfo=UTC),
            datetime(2026, 1, 1, 12, 0, 7, 500_000, tzinfo=UTC),
        ],
    )
    store = TaskStore(tmp_path / "tasks", clock=lambda: next(moments))
    store.ensure_layout()
    task = store.create("Timed", {})
    store.claim(task.id, worker_id="worker_1")

    resolved = store.resolve(task.id, _success())

    assert resolved.execution_time_ms == 2500


def test_load_derives_status_from_area(store: TaskStore) -> None:
    task = store.create("Mismatch", {})
    store.claim(task.id, worker_id="worker_1")
    path = store.record_path(task.id, TaskStatus.PROCESSING)
    raw = json.loads(path.read_text("utf-8"))
    raw["status"] = "pending"
    path.write_text(json.dumps(raw), "utf-8")

    assert store.load(task.id, TaskStatus.PROCESSING).status == TaskStatus.PROCESSING
    assert store.locate(task.id) == TaskStatus.PROCESSING


def test_load_of_corrupt_record_raises(store: TaskStore) -> None:
    task = store.create("Corrupt", {})
    store.record_path(task.id, TaskStatus.PENDING).write_text("{not json", "utf-8")

    with pytest.raises(TaskRecordError) as excinfo:
        store.load(task.id, TaskStatus.PENDING)

    assert isinstance(excinfo.value, OSError)
    assert excinfo.value.task_id == task.id


def test_claim_of_corrupt_record_resolves_it_failed(store: TaskStore) -> None:
    task = store.create("Corrupt claim", {})
    store.record_path(task.id, TaskStatus.PENDING).write_text("[]", "utf-8")

    with pytest.raises(TaskRecordError):
        store.claim(task.id, worker_id="worker_1")

    assert _areas_holding(store, task.id) == [TaskStatus.COMPLETED]
    completed = store.load(task.id, TaskStatus.COMPLETED)
    assert completed.result is not None
    assert completed.result.cause == FailureCause.INTERNAL_ERROR


def test_list_unprocessed_skips_corrupt_and_processed(store: TaskStore) -> None:
    first = store.create("first", {})
    second = store.create("second", {})
    broken = store.create("broken", {})
    for task in (first, second, broken):
        store.claim(task.id, worker_id="worker_1")
        store.resolve(task.id, _success(task.description))
    store.record_path(broken.id, TaskStatus.COMPLETED).write_text("{", "utf-8")
    store.mark_processed(first.id)

    unprocessed = [task.id for task in store.list_unprocessed()]

    assert unprocessed == [second.id]


def test_mark_processed_is_idempotent(store: TaskStore) -> None:
    task = store.create("ack", {})
    store.resolve(task.id, _success())

    store.mark_processed(task.id)
    store.mark_processed(task.id)

    assert store.load(task.id, TaskStatus.COMPLETED).processed is True
    assert list(store.list_unprocessed()) == []


def test_list_area_orders_oldest_first(tmp_path: Path) -> None:
    start = datetime(2026, 3, 1, tzinfo=UTC)
    ticks = iter(start + timedelta(seconds=offset) for offset in (30, 10, 20))
    store = TaskStore(tmp_path / "tasks", clock=lambda: next(ticks))
    store.ensure_layout()
    late = store.create("late", {})
    early = store.create("early", {})
    middle = store.create("middle", {})

    ordered = [task.id for task in store.list_area(TaskStatus.PENDING)]

    assert ordered == [early.id, middle.id, late.id]


def test_every_task_lives_in_exactly_one_area(store: TaskStore) -> None:
    created = [store.create(f"task {index}", {}) for index in range(4)]
    store.claim(created[0].id, worker_id="worker_1")
    store.claim(created[1].id, worker_id="worker_2")
    store.resolve(created[1].id, _success())
    store.resolve(created[2].id, TaskResult.failure(cause=FailureCause.DISPATCH_FAILED, summary="x"))

    for task in created:
        assert len(_areas_holding(store, task.id)) == 1
    assert store.counts() == {
        TaskStatus.PENDING: 1,
        TaskStatus.PROCESSING: 1,
        TaskStatus.COMPLETED: 2,
    }


def test_record_path_rejects_path_traversal(store: TaskStore) -> None:
    with pytest.raises(ValueError, match="Invalid task id"):
        store.record_path("../escape", TaskStatus.PENDING)
