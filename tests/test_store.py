from __future__ import annotations

import multiprocessing
import threading
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from runledger.config import Settings
from runledger.orchestrator.errors import (
    InvalidTransition,
    LeaseConflict,
    OrchestratorError,
    RunTerminal,
    TaskImmutable,
    TaskOrderViolation,
)
from runledger.orchestrator.models import (
    BlockReason,
    FeedbackDecision,
    HolderIdentity,
    RunStatus,
    TaskResult,
    TaskSpec,
    TaskStatus,
)
from runledger.orchestrator.store import RunStore
from runledger.storage.common import is_ulid

pytestmark = [
    allure.epic("Run State"),
    allure.feature("Persisted Run Store"),
]


def _tasks(count: int) -> list[TaskSpec]:
    return [TaskSpec(task_id=f"t{index}", task_type="impl") for index in range(1, count + 1)]


def _run_task(store: RunStore, run_id: str, task_id: str) -> None:
    store.append_task_result(run_id, task_id, TaskResult(status=TaskStatus.IN_PROGRESS))
    store.append_task_result(run_id, task_id, TaskResult(status=TaskStatus.FINISHED, exit_code=0))


def _compete_for_lease(  # pragma: no cover - executed in child process
    runs_root: str,
    run_id: str,
    unit_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, str]],
    done_event: multiprocessing.synchronize.Event,
) -> None:
    store = RunStore(Path(runs_root))
    try:
        start_event.wait(timeout=5)
        store.acquire_lease(run_id, unit_id)
        result_queue.put((unit_id, "ok"))
        done_event.wait(timeout=10)
    except LeaseConflict:
        result_queue.put((unit_id, "conflict"))
    except Exception as error:  # noqa: BLE001
        result_queue.put((unit_id, f"error: {error}"))
    finally:
        store.close()


def test_create_run_starts_pending_with_ordered_tasks(store: RunStore) -> None:
    run = store.create_run(
        "spec-a",
        _tasks(3),
        template="large",
        resources={"cpu": 2},
        default_max_attempts=4,
    )

    assert is_ulid(run.run_id)
    assert run.status == RunStatus.PENDING
    assert run.iteration_count == 0
    assert run.resources == {"cpu": 2}
    tasks = store.list_tasks(run.run_id)
    assert [(task.position, task.task_id, task.status) for task in tasks] == [
        (1, "t1", TaskStatus.PENDING),
        (2, "t2", TaskStatus.PENDING),
        (3, "t3", TaskStatus.PENDING),
    ]
    assert {task.max_attempts for task in tasks} == {4}
    lease = store.get_lease(run.run_id)
    assert lease is not None
    assert lease.is_held is False
    assert store.list_run_ids() == [run.run_id]
    assert [event.event_type for event in store.list_events(run.run_id)] == ["created"]


def test_create_run_rejects_bad_input(store: RunStore) -> None:
    with pytest.raises(ValueError, match="no tasks"):
        store.create_run("spec-a", [])
    with pytest.raises(ValueError, match="Duplicate task id"):
        store.create_run(
            "spec-a",
            [TaskSpec(task_id="x", task_type="a"), TaskSpec(task_id="x", task_type="b")],
        )

    store.create_run("spec-a", _tasks(1), run_id="fixed")
    with pytest.raises(OrchestratorError, match="Run already exists"):
        store.create_run("spec-a", _tasks(1), run_id="fixed")


def test_writes_require_the_lease(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))

    with pytest.raises(LeaseConflict, match="does not hold the lease"):
        store.transition_run(run.run_id, RunStatus.RUNNING)
    with pytest.raises(LeaseConflict):
        store.append_task_result(run.run_id, "t1", TaskResult(status=TaskStatus.IN_PROGRESS))


def test_tasks_complete_strictly_in_order(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(3))
    store.acquire_lease(run.run_id, "unit-a")

    with pytest.raises(TaskOrderViolation, match="must continue with task t1"):
        store.append_task_result(run.run_id, "t2", TaskResult(status=TaskStatus.IN_PROGRESS))
    with pytest.raises(TaskOrderViolation, match="no attempt in progress"):
        store.append_task_result(run.run_id, "t1", TaskResult(status=TaskStatus.FINISHED))
    with pytest.raises(TaskOrderViolation, match="does not belong"):
        store.append_task_result(run.run_id, "nope", TaskResult(status=TaskStatus.IN_PROGRESS))

    _run_task(store, run.run_id, "t1")
    with pytest.raises(TaskImmutable):
        store.append_task_result(run.run_id, "t1", TaskResult(status=TaskStatus.IN_PROGRESS))

    store.append_task_result(run.run_id, "t2", TaskResult(status=TaskStatus.IN_PROGRESS))
    with pytest.raises(TaskOrderViolation, match="already has an attempt"):
        store.append_task_result(run.run_id, "t2", TaskResult(status=TaskStatus.IN_PROGRESS))

    plan = store.build_resume_plan(run.run_id)
    assert plan.completed == 1
    assert plan.total == 3
    assert plan.next_task is not None
    assert plan.next_task.task_id == "t2"
    assert plan.next_task.label == "2:impl"


def test_attempts_are_counted_and_refunded(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))
    store.acquire_lease(run.run_id, "unit-a")

    store.append_task_result(run.run_id, "t1", TaskResult(status=TaskStatus.IN_PROGRESS))
    failed = store.append_task_result(
        run.run_id,
        "t1",
        TaskResult(status=TaskStatus.FAILED, exit_code=137, error="killed"),
    )
    assert failed.attempt_count == 1
    assert failed.last_error == "killed"

    store.append_task_result(run.run_id, "t1", TaskResult(status=TaskStatus.IN_PROGRESS))
    refunded = store.append_task_result(
        run.run_id,
        "t1",
        TaskResult(status=TaskStatus.PENDING, error="interrupted", refund_attempt=True),
    )
    assert refunded.attempt_count == 1
    assert refunded.status == TaskStatus.PENDING

    results = store.list_results(run.run_id)
    assert [(result.status, result.attempt) for result in results] == [
        (TaskStatus.IN_PROGRESS, 1),
        (TaskStatus.FAILED, 1),
        (TaskStatus.IN_PROGRESS, 2),
        (TaskStatus.PENDING, 2),
    ]
    assert {result.unit_id for result in results} == {"unit-a"}


def test_reset_in_progress_tasks_keeps_attempt_count(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(2))
    store.acquire_lease(run.run_id, "unit-a")
    store.append_task_result(run.run_id, "t1", TaskResult(status=TaskStatus.IN_PROGRESS))

    assert store.reset_in_progress_tasks(run.run_id) == ["t1"]

    task = store.list_tasks(run.run_id)[0]
    assert task.status == TaskStatus.PENDING
    assert task.attempt_count == 1
    assert store.reset_in_progress_tasks(run.run_id) == []


def test_terminal_run_rejects_further_writes(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(2))
    store.acquire_lease(run.run_id, "unit-a")
    store.transition_run(run.run_id, RunStatus.RUNNING)
    failed = store.transition_run(run.run_id, RunStatus.FAILED, error_summary="boom")

    assert failed.finished_at is not None
    assert failed.error_summary == "boom"
    with pytest.raises(RunTerminal):
        store.append_task_result(run.run_id, "t1", TaskResult(status=TaskStatus.IN_PROGRESS))
    with pytest.raises(InvalidTransition, match="terminal"):
        store.transition_run(run.run_id, RunStatus.RUNNING)
    with pytest.raises(RunTerminal):
        store.request_cancel(run.run_id)
    with pytest.raises(RunTerminal):
        store.submit_feedback(run.run_id, FeedbackDecision.APPROVE)


def test_block_reason_is_recorded_and_cleared(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))
    store.acquire_lease(run.run_id, "unit-a")
    store.transition_run(run.run_id, RunStatus.RUNNING)

    blocked = store.transition_run(
        run.run_id,
        RunStatus.BLOCKED,
        block_reason=BlockReason.HUMAN_GATE,
    )
    assert blocked.block_reason == BlockReason.HUMAN_GATE
    resumed = store.transition_run(run.run_id, RunStatus.RUNNING)
    assert resumed.block_reason is None

    changes = [
        (event.status_from, event.status_to)
        for event in store.list_events(run.run_id)
        if event.event_type == "status_changed"
    ]
    assert changes == [("pending", "running"), ("running", "blocked"), ("blocked", "running")]


def _gated_tasks() -> list[TaskSpec]:
    return [
        TaskSpec(task_id="draft", task_type="impl"),
        TaskSpec(task_id="review-1", task_type="review", human_gate=True),
        TaskSpec(task_id="review-2", task_type="review", human_gate=True),
    ]


def test_feedback_is_consumed_once(store: RunStore) -> None:
    run = store.create_run("spec-a", _gated_tasks())
    store.acquire_lease(run.run_id, "unit-a")
    store.submit_feedback(run.run_id, FeedbackDecision.REJECT, "needs work", task_id="review-1")

    taken = store.take_feedback(run.run_id, task_id="review-1")
    assert taken is not None
    assert taken.decision == FeedbackDecision.REJECT
    assert taken.notes == "needs work"
    assert taken.consumed_at is not None
    assert store.take_feedback(run.run_id, task_id="review-1") is None


def test_feedback_is_stamped_with_the_awaited_gate(store: RunStore) -> None:
    run = store.create_run("spec-a", _gated_tasks())

    feedback = store.submit_feedback(run.run_id, FeedbackDecision.APPROVE)

    assert feedback.task_id == "review-1"
    with pytest.raises(OrchestratorError, match="awaits feedback on task review-1, not review-2"):
        store.submit_feedback(run.run_id, FeedbackDecision.APPROVE, task_id="review-2")
    with pytest.raises(OrchestratorError, match="awaits feedback on task review-1, not draft"):
        store.submit_feedback(run.run_id, FeedbackDecision.APPROVE, task_id="draft")


def test_feedback_without_a_gate_is_refused(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(2))

    with pytest.raises(OrchestratorError, match="no human gate awaiting feedback"):
        store.submit_feedback(run.run_id, FeedbackDecision.APPROVE)


def test_feedback_for_a_passed_gate_is_discarded(store: RunStore) -> None:
    run = store.create_run("spec-a", _gated_tasks())
    store.acquire_lease(run.run_id, "unit-a")
    store.submit_feedback(run.run_id, FeedbackDecision.APPROVE, task_id="review-1")
    store.submit_feedback(run.run_id, FeedbackDecision.APPROVE, task_id="review-1")
    _run_task(store, run.run_id, "draft")
    store.append_task_result(run.run_id, "review-1", TaskResult(status=TaskStatus.IN_PROGRESS))
    assert store.take_feedback(run.run_id, task_id="review-1") is not None
    store.append_task_result(run.run_id, "review-1", TaskResult(status=TaskStatus.FINISHED))

    assert store.take_feedback(run.run_id, task_id="review-2") is None
    assert store.take_feedback(run.run_id, task_id="review-1") is None
    discarded = [
        event
        for event in store.list_events(run.run_id)
        if event.event_type == "feedback_discarded"
    ]
    assert [(event.task_id, event.details["gate_task_id"]) for event in discarded] == [
        ("review-1", "review-2"),
    ]
    with pytest.raises(OrchestratorError, match="awaits feedback on task review-2, not review-1"):
        store.submit_feedback(run.run_id, FeedbackDecision.APPROVE, task_id="review-1")


def test_cancel_request_is_sticky_and_force_accumulates(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))

    first = store.request_cancel(run.run_id)
    second = store.request_cancel(run.run_id, force=True)

    assert first.cancel_requested_at is not None
    assert second.cancel_requested_at == first.cancel_requested_at
    assert second.cancel_force is True
    assert store.load_run(run.run_id).status == RunStatus.PENDING


def test_lease_acquire_adopt_and_release(settings: Settings, store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))

    store.acquire_lease(run.run_id, "unit-a", hold_attach=False)
    lease = store.get_lease(run.run_id)
    assert lease is not None
    assert (lease.unit_id, lease.epoch) == ("unit-a", 1)

    adopter = RunStore(settings.store.runs_root)
    try:
        adopter.acquire_lease(run.run_id, "unit-a")
        assert adopter.holds_lease(run.run_id)
        assert store.get_lease(run.run_id).epoch == 1
        adopter.transition_run(run.run_id, RunStatus.RUNNING)
        assert adopter.release_lease(run.run_id) is True
    finally:
        adopter.close()

    lease = store.get_lease(run.run_id)
    assert lease.unit_id is None
    assert lease.released_at is not None
    event_types = [event.event_type for event in store.list_events(run.run_id)]
    assert event_types.count("lease_acquired") == 1
    assert event_types.count("lease_adopted") == 1
    assert event_types.count("lease_released") == 1


def test_live_holder_blocks_other_units(settings: Settings, store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))
    store.acquire_lease(run.run_id, "unit-a", hold_attach=False)

    other = RunStore(settings.store.runs_root, lease_stale_after_seconds=30)
    try:
        with pytest.raises(LeaseConflict, match="leased by unit unit-a"):
            other.acquire_lease(run.run_id, "unit-b")
        assert not other.holds_lease(run.run_id)
    finally:
        other.close()


def test_stale_heartbeat_alone_does_not_reclaim(
    settings: Settings,
    store: RunStore,
    age_lease: Callable[[str, float], None],
) -> None:
    run = store.create_run("spec-a", _tasks(1))
    store.acquire_lease(run.run_id, "unit-a", hold_attach=False)
    age_lease(run.run_id, 3_600)

    other = RunStore(settings.store.runs_root, lease_stale_after_seconds=30)
    try:
        with pytest.raises(LeaseConflict, match="refusing to reclaim"):
            other.acquire_lease(run.run_id, "unit-b")
    finally:
        other.close()
    assert store.get_lease(run.run_id).unit_id == "unit-a"


def test_dead_stale_holder_is_reclaimed_and_fenced(
    settings: Settings,
    store: RunStore,
    dead_holder: HolderIdentity,
    age_lease: Callable[[str, float], None],
) -> None:
    run = store.create_run("spec-a", _tasks(1))
    store.acquire_lease(run.run_id, "unit-a", holder=dead_holder, hold_attach=False)
    age_lease(run.run_id, 3_600)

    successor = RunStore(settings.store.runs_root, lease_stale_after_seconds=30)
    try:
        successor.acquire_lease(run.run_id, "unit-b")
        lease = successor.get_lease(run.run_id)
        assert (lease.unit_id, lease.epoch) == ("unit-b", 2)

        beat = store.record_heartbeat(run.run_id, "unit-a", phase="executing", current_task=None)
        assert beat is False
        assert store.release_lease(run.run_id, "unit-a") is False
        assert successor.get_lease(run.run_id).unit_id == "unit-b"
        reclaimed = [
            event
            for event in successor.list_events(run.run_id)
            if event.event_type == "lease_reclaimed"
        ]
        assert reclaimed[0].details["previous_unit_id"] == "unit-a"
    finally:
        successor.close()


def test_lease_events_keep_the_ownership_trail(
    settings: Settings,
    store: RunStore,
    dead_holder: HolderIdentity,
    age_lease: Callable[[str, float], None],
) -> None:
    run = store.create_run("spec-a", _tasks(1))
    store.acquire_lease(run.run_id, "unit-a", holder=dead_holder, hold_attach=False)
    age_lease(run.run_id, 3_600)

    successor = RunStore(settings.store.runs_root, lease_stale_after_seconds=30)
    try:
        successor.acquire_lease(run.run_id, "unit-b")
        lease_events = [
            (event.event_type, event.details)
            for event in successor.list_events(run.run_id)
            if event.event_type.startswith("lease_")
        ]
    finally:
        successor.close()

    assert lease_events == [
        ("lease_acquired", {"unit_id": "unit-a", "epoch": 1}),
        (
            "lease_reclaimed",
            {
                "unit_id": "unit-b",
                "previous_unit_id": "unit-a",
                "previous_pid": dead_holder.pid,
                "epoch": 2,
            },
        ),
    ]


def test_attach_lock_keeps_second_store_out(settings: Settings, store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))
    store.acquire_lease(run.run_id, "unit-a")

    other = RunStore(settings.store.runs_root)
    try:
        with pytest.raises(LeaseConflict, match="attached by another process"):
            other.acquire_lease(run.run_id, "unit-a")
    finally:
        other.close()

    store.release_lease(run.run_id)
    other = RunStore(settings.store.runs_root)
    try:
        other.acquire_lease(run.run_id, "unit-b")
        assert other.get_lease(run.run_id).epoch == 2
    finally:
        other.close()


def test_heartbeat_refreshes_lease_and_record(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))
    store.acquire_lease(run.run_id, "unit-a")

    assert store.record_heartbeat(run.run_id, "unit-a", phase="executing", current_task="t1", pid=7)
    assert store.record_heartbeat(run.run_id, "unit-a", phase="idle", current_task=None, pid=7)

    heartbeat = store.get_heartbeat(run.run_id)
    assert heartbeat is not None
    assert heartbeat.sequence == 2
    assert heartbeat.phase == "idle"
    assert heartbeat.pid == 7


def test_concurrent_acquire_has_a_single_winner(settings: Settings, store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))
    contenders = 6
    barrier = threading.Barrier(contenders)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()
    stores = [RunStore(settings.store.runs_root) for _ in range(contenders)]

    def _contend(index: int) -> None:
        barrier.wait(timeout=5)
        try:
            stores[index].acquire_lease(run.run_id, f"unit-{index}")
            outcome = "ok"
        except LeaseConflict:
            outcome = "conflict"
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_contend, args=(index,)) for index in range(contenders)]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
    finally:
        for contender in stores:
            contender.close()

    assert sorted(outcomes) == ["conflict"] * (contenders - 1) + ["ok"]
    assert store.get_lease(run.run_id).epoch == 1


def test_concurrent_acquire_across_processes(settings: Settings, store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    done_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, str]] = context.Queue()
    processes = [
        context.Process(
            target=_compete_for_lease,
            args=(
                str(settings.store.runs_root),
                run.run_id,
                unit_id,
                start_event,
                result_queue,
                done_event,
            ),
        )
        for unit_id in ("unit-a", "unit-b")
    ]
    for process in processes:
        process.start()
    start_event.set()
    results = dict(result_queue.get(timeout=30) for _ in processes)
    done_event.set()
    for process in processes:
        process.join(timeout=10)
        assert process.exitcode == 0

    assert sorted(results.values()) == ["conflict", "ok"]
    winner = next(unit_id for unit_id, outcome in results.items() if outcome == "ok")
    assert store.get_lease(run.run_id).unit_id == winner


def test_delete_run_removes_directory(store: RunStore) -> None:
    run = store.create_run("spec-a", _tasks(1))
    run_dir = store.run_dir(run.run_id)
    assert run_dir.is_dir()

    store.delete_run(run.run_id)

    assert not run_dir.exists()
    assert store.list_run_ids() == []
