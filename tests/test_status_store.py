import pytest

from next_scheduler.background.errors import ErrorClassification
from next_scheduler.background.status_store import (
    StatusStore,
    TaskName,
    TaskSetExistsError,
    TaskState,
)
from tests.fakes import FakeClock

ALL_TASKS = list(TaskName)


def _finish_all(store, appointment_id, state=TaskState.SUCCESS):
    for name in ALL_TASKS:
        store.update(appointment_id, name, TaskState.RUNNING)
        store.update(appointment_id, name, state)


def test_create_registers_every_task_pending():
    store = StatusStore(retention_seconds=60)
    task_set = store.create("appt-1", ALL_TASKS)

    assert set(task_set.tasks) == set(ALL_TASKS)
    assert all(record.state == TaskState.PENDING for record in task_set.tasks.values())
    assert all(record.attempts == 0 for record in task_set.tasks.values())
    assert len(store) == 1


def test_create_rejects_second_task_set_for_same_appointment():
    store = StatusStore(retention_seconds=60)
    store.create("appt-1", ALL_TASKS)

    with pytest.raises(TaskSetExistsError):
        store.create("appt-1", ALL_TASKS)


def test_get_unknown_appointment_returns_none():
    assert StatusStore(retention_seconds=60).get("missing") is None


def test_get_returns_a_copy():
    store = StatusStore(retention_seconds=60)
    store.create("appt-1", ALL_TASKS)

    snapshot = store.get("appt-1")
    snapshot.tasks[TaskName.EMAIL].state = TaskState.SUCCESS

    assert store.get("appt-1").tasks[TaskName.EMAIL].state == TaskState.PENDING


def test_running_then_success_records_timestamps_and_detail():
    store = StatusStore(retention_seconds=60)
    store.create("appt-1", ALL_TASKS)

    assert store.update("appt-1", TaskName.SELLER_CALENDAR, TaskState.RUNNING)
    running = store.get("appt-1").tasks[TaskName.SELLER_CALENDAR]
    assert running.started_at is not None
    assert running.attempts == 1

    assert store.update("appt-1", TaskName.SELLER_CALENDAR, TaskState.SUCCESS, detail={"eventId": "evt-1"})
    record = store.get("appt-1").tasks[TaskName.SELLER_CALENDAR]
    assert record.state == TaskState.SUCCESS
    assert record.detail == {"eventId": "evt-1"}
    assert record.finished_at >= record.started_at


def test_second_terminal_write_is_rejected_and_does_not_overwrite():
    store = StatusStore(retention_seconds=60)
    store.create("appt-1", ALL_TASKS)
    store.update("appt-1", TaskName.EMAIL, TaskState.RUNNING)
    store.update("appt-1", TaskName.EMAIL, TaskState.SUCCESS, detail={"messageId": "msg-1"})

    accepted = store.update(
        "appt-1",
        TaskName.EMAIL,
        TaskState.FAILED,
        classification=ErrorClassification.DELIVERY,
        message="late failure",
    )

    assert accepted is False
    record = store.get("appt-1").tasks[TaskName.EMAIL]
    assert record.state == TaskState.SUCCESS
    assert record.detail == {"messageId": "msg-1"}
    assert record.error_classification is None


def test_running_cannot_be_written_twice():
    store = StatusStore(retention_seconds=60)
    store.create("appt-1", ALL_TASKS)

    assert store.update("appt-1", TaskName.EMAIL, TaskState.RUNNING)
    assert not store.update("appt-1", TaskName.EMAIL, TaskState.RUNNING)


def test_pending_cannot_jump_to_success():
    store = StatusStore(retention_seconds=60)
    store.create("appt-1", ALL_TASKS)

    assert not store.update("appt-1", TaskName.MEETING_LINK, TaskState.SUCCESS)
    assert store.get("appt-1").tasks[TaskName.MEETING_LINK].state == TaskState.PENDING


def test_pending_can_be_failed_directly():
    store = StatusStore(retention_seconds=60)
    store.create("appt-1", ALL_TASKS)

    assert store.update(
        "appt-1", TaskName.EMAIL, TaskState.FAILED, classification=ErrorClassification.TIMEOUT, message="budget"
    )
    record = store.get("appt-1").tasks[TaskName.EMAIL]
    assert record.error_classification == ErrorClassification.TIMEOUT
    assert record.started_at is None


def test_update_for_unknown_task_set_returns_false():
    store = StatusStore(retention_seconds=60)
    assert not store.update("missing", TaskName.EMAIL, TaskState.RUNNING)


def test_complete_task_set_is_evicted_after_retention():
    clock = FakeClock()
    store = StatusStore(retention_seconds=60, clock=clock)
    store.create("appt-1", ALL_TASKS)
    _finish_all(store, "appt-1")

    clock.advance(59)
    assert store.evict_expired() == 0
    assert store.get("appt-1") is not None

    clock.advance(1)
    assert store.evict_expired() == 1
    assert store.get("appt-1") is None
    assert len(store) == 0


def test_expired_task_set_is_evicted_on_access():
    clock = FakeClock()
    store = StatusStore(retention_seconds=60, clock=clock)
    store.create("appt-1", ALL_TASKS)
    _finish_all(store, "appt-1", TaskState.FAILED)

    clock.advance(120)
    assert store.get("appt-1") is None


def test_incomplete_task_set_is_never_evicted():
    clock = FakeClock()
    store = StatusStore(retention_seconds=60, clock=clock)
    store.create("appt-1", ALL_TASKS)
    store.update("appt-1", TaskName.SELLER_CALENDAR, TaskState.RUNNING)

    clock.advance(3600)
    assert store.evict_expired() == 0
    assert store.get("appt-1") is not None


def test_activity_resets_the_retention_window():
    clock = FakeClock()
    store = StatusStore(retention_seconds=60, clock=clock)
    store.create("appt-1", ALL_TASKS)
    for name in ALL_TASKS[:-1]:
        store.update("appt-1", name, TaskState.RUNNING)
        store.update("appt-1", name, TaskState.SUCCESS)

    clock.advance(50)
    store.update("appt-1", TaskName.EMAIL, TaskState.RUNNING)
    store.update("appt-1", TaskName.EMAIL, TaskState.SUCCESS)
    clock.advance(50)

    assert store.evict_expired() == 0


def test_replace_only_allowed_once_complete():
    store = StatusStore(retention_seconds=60)
    store.create("appt-1", ALL_TASKS)

    with pytest.raises(TaskSetExistsError):
        store.replace("appt-1", ALL_TASKS)

    _finish_all(store, "appt-1", TaskState.FAILED)
    fresh = store.replace("appt-1", ALL_TASKS)

    assert all(record.state == TaskState.PENDING for record in fresh.tasks.values())


def test_replace_after_eviction_creates_new_set():
    store = StatusStore(retention_seconds=60)
    task_set = store.replace("appt-1", ALL_TASKS)
    assert task_set.appointment_id == "appt-1"
