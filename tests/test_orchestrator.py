import asyncio
import threading
import time

import pytest

from next_scheduler.background.errors import (
    CalendarAuthError,
    CalendarRateLimitError,
    CalendarTransientError,
    DeliveryError,
    ErrorClassification,
    TaskTimeoutError,
)
from next_scheduler.background.orchestrator import (
    OrchestratorUnavailableError,
    RetryPolicy,
    TaskOrchestrator,
)
from next_scheduler.background.status_store import StatusStore, TaskName, TaskSetExistsError, TaskState
from tests.fakes import (
    MEET_LINK,
    FakeCalendar,
    FakeMailer,
    FakeRecorder,
    make_services,
    make_snapshot,
    wait_until_complete,
)


def _orchestrator(services=None, **kwargs):
    store = StatusStore(retention_seconds=60)
    return TaskOrchestrator(store, services or make_services(), **kwargs)


def _run(services=None, snapshot=None, **kwargs):
    """Dispatch one appointment and return its finished TaskSet"""
    snapshot = snapshot or make_snapshot()

    async def scenario():
        orchestrator = _orchestrator(services, **kwargs)
        await orchestrator.start()
        orchestrator.dispatch(snapshot)
        task_set = await wait_until_complete(orchestrator.store, snapshot.id)
        await orchestrator.shutdown(1)
        return task_set

    return asyncio.run(scenario())


def test_all_tasks_succeed_in_dependency_order():
    services = make_services()
    task_set = _run(services)
    tasks = task_set.tasks

    assert all(record.state == TaskState.SUCCESS for record in tasks.values())
    assert tasks[TaskName.SELLER_CALENDAR].detail["eventId"] == "evt-seller-appt-1"
    assert tasks[TaskName.BUYER_CALENDAR].detail["eventId"] == "evt-buyer-appt-1"
    assert tasks[TaskName.MEETING_LINK].detail == {"meetLink": MEET_LINK, "source": "sellerCalendar"}

    link_started = tasks[TaskName.MEETING_LINK].started_at
    assert link_started >= tasks[TaskName.SELLER_CALENDAR].finished_at
    assert link_started >= tasks[TaskName.BUYER_CALENDAR].finished_at
    assert tasks[TaskName.EMAIL].started_at >= tasks[TaskName.MEETING_LINK].finished_at

    assert services.composer.calls == [MEET_LINK]
    assert services.mailer.sent[0]["to"] == "bea@example.com"
    assert services.recorder.meet_links == {"appt-1": MEET_LINK}
    assert services.recorder.events == {
        "appt-1:sellerCalendar": "evt-seller-appt-1",
        "appt-1:buyerCalendar": "evt-buyer-appt-1",
    }


def test_buyer_calendar_failure_does_not_affect_other_tasks():
    services = make_services(calendar=FakeCalendar(failures={"buyer": CalendarAuthError("token revoked")}))
    tasks = _run(services).tasks

    buyer = tasks[TaskName.BUYER_CALENDAR]
    assert buyer.state == TaskState.FAILED
    assert buyer.error_classification == ErrorClassification.AUTH
    assert buyer.error_message == "token revoked"

    assert tasks[TaskName.SELLER_CALENDAR].state == TaskState.SUCCESS
    assert tasks[TaskName.MEETING_LINK].state == TaskState.SUCCESS
    assert tasks[TaskName.EMAIL].state == TaskState.SUCCESS


def test_meeting_link_waits_for_failed_calendar_task():
    calendar = FakeCalendar(failures={"buyer": CalendarTransientError("503")})
    tasks = _run(make_services(calendar=calendar)).tasks

    assert tasks[TaskName.MEETING_LINK].started_at >= tasks[TaskName.BUYER_CALENDAR].finished_at
    assert tasks[TaskName.MEETING_LINK].detail["meetLink"] == MEET_LINK


def test_both_calendars_failing_degrades_meeting_link_and_email_still_sends():
    calendar = FakeCalendar(
        failures={"seller": CalendarRateLimitError("429"), "buyer": CalendarAuthError("401")}
    )
    services = make_services(calendar=calendar)
    tasks = _run(services).tasks

    link = tasks[TaskName.MEETING_LINK]
    assert link.state == TaskState.FAILED
    assert link.error_classification == ErrorClassification.DEPENDENCY
    assert link.detail == {"meetLink": None}

    email = tasks[TaskName.EMAIL]
    assert email.state == TaskState.SUCCESS
    assert email.detail["meetLink"] is None
    assert services.composer.calls == [None]


def test_buyer_event_link_used_when_seller_calendar_fails():
    calendar = FakeCalendar(
        failures={"seller": CalendarAuthError("no token")},
        conference_link="https://meet.google.com/buy-erli-nk",
    )
    tasks = _run(make_services(calendar=calendar)).tasks

    link = tasks[TaskName.MEETING_LINK]
    assert link.state == TaskState.SUCCESS
    assert link.detail == {"meetLink": "https://meet.google.com/buy-erli-nk", "source": "buyerCalendar"}
    assert ("add_conference", "buyer", "evt-buyer-appt-1") in calendar.calls


def test_delivery_failure_is_recorded():
    tasks = _run(make_services(mailer=FakeMailer(failure=DeliveryError("SMTP down")))).tasks

    email = tasks[TaskName.EMAIL]
    assert email.state == TaskState.FAILED
    assert email.error_classification == ErrorClassification.DELIVERY
    assert tasks[TaskName.SELLER_CALENDAR].state == TaskState.SUCCESS


def test_unexpected_exception_is_classified_internal():
    tasks = _run(make_services(calendar=FakeCalendar(failures={"seller": KeyError("boom")}))).tasks

    seller = tasks[TaskName.SELLER_CALENDAR]
    assert seller.state == TaskState.FAILED
    assert seller.error_classification == ErrorClassification.INTERNAL
    assert "KeyError" in seller.error_message


def test_seller_without_calendar_token_fails_auth():
    tasks = _run(snapshot=make_snapshot(seller_token=False)).tasks

    seller = tasks[TaskName.SELLER_CALENDAR]
    assert seller.error_classification == ErrorClassification.AUTH
    assert tasks[TaskName.BUYER_CALENDAR].state == TaskState.SUCCESS


def test_dispatch_returns_before_tasks_run():
    async def scenario():
        orchestrator = _orchestrator(make_services(calendar=FakeCalendar(delay=0.5)))
        await orchestrator.start()

        started = time.monotonic()
        task_set = orchestrator.dispatch(make_snapshot())
        elapsed = time.monotonic() - started

        assert elapsed < 0.1
        assert all(record.state == TaskState.PENDING for record in task_set.tasks.values())
        await orchestrator.shutdown(0)

    asyncio.run(scenario())


def test_per_call_timeout_fails_the_task():
    tasks = _run(make_services(calendar=FakeCalendar(delay=1.0)), call_timeout=0.05).tasks

    seller = tasks[TaskName.SELLER_CALENDAR]
    assert seller.state == TaskState.FAILED
    assert seller.error_classification == ErrorClassification.TIMEOUT
    assert "timed out" in seller.error_message


def test_background_budget_fails_hung_and_unstarted_tasks():
    tasks = _run(
        make_services(calendar=FakeCalendar(delay=30)), call_timeout=60, budget_seconds=0.2
    ).tasks

    for name in TaskName:
        assert tasks[name].state == TaskState.FAILED
        assert tasks[name].error_classification == ErrorClassification.TIMEOUT
    # Dependents never started
    assert tasks[TaskName.EMAIL].started_at is None
    assert tasks[TaskName.SELLER_CALENDAR].started_at is not None


def test_retry_policy_retries_transient_failures():
    calendar = FakeCalendar(failures={"seller": [CalendarTransientError("503"), None]})
    tasks = _run(
        make_services(calendar=calendar),
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0.01),
    ).tasks

    seller = tasks[TaskName.SELLER_CALENDAR]
    assert seller.state == TaskState.SUCCESS
    assert seller.attempts == 2


def test_default_policy_makes_a_single_attempt():
    calendar = FakeCalendar(failures={"seller": [CalendarTransientError("503"), None]})
    tasks = _run(make_services(calendar=calendar)).tasks

    seller = tasks[TaskName.SELLER_CALENDAR]
    assert seller.state == TaskState.FAILED
    assert seller.attempts == 1
    assert calendar.calls.count(("create_event", "seller")) == 1


def test_auth_failures_are_not_retried():
    calendar = FakeCalendar(failures={"seller": CalendarAuthError("revoked")})
    tasks = _run(
        make_services(calendar=calendar),
        retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0.01),
    ).tasks

    assert tasks[TaskName.SELLER_CALENDAR].attempts == 1
    assert calendar.calls.count(("create_event", "seller")) == 1


def test_retry_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_retry_backoff_is_exponential():
    policy = RetryPolicy(max_attempts=4, backoff_seconds=1.5)
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [1.5, 3.0, 6.0]


def test_dispatch_requires_start():
    orchestrator = _orchestrator()
    with pytest.raises(OrchestratorUnavailableError):
        orchestrator.dispatch(make_snapshot())


def test_shutdown_cancels_in_flight_work_and_refuses_new_dispatches():
    async def scenario():
        orchestrator = _orchestrator(make_services(calendar=FakeCalendar(delay=30)), call_timeout=60)
        await orchestrator.start()
        orchestrator.dispatch(make_snapshot())
        await asyncio.sleep(0.05)

        await orchestrator.shutdown(0.1)

        assert orchestrator.in_flight == 0
        with pytest.raises(OrchestratorUnavailableError):
            orchestrator.dispatch(make_snapshot("appt-2"))
        return orchestrator.store.get("appt-1")

    task_set = asyncio.run(scenario())
    assert task_set.is_complete
    assert all(record.error_classification == ErrorClassification.TIMEOUT for record in task_set.tasks.values())


def test_shutdown_waits_for_work_that_finishes_in_time():
    async def scenario():
        orchestrator = _orchestrator(make_services(calendar=FakeCalendar(delay=0.05)))
        await orchestrator.start()
        orchestrator.dispatch(make_snapshot())
        await orchestrator.shutdown(5)
        return orchestrator.store.get("appt-1")

    task_set = asyncio.run(scenario())
    assert all(record.state == TaskState.SUCCESS for record in task_set.tasks.values())


def test_admission_is_bounded():
    async def scenario():
        orchestrator = _orchestrator(make_services(calendar=FakeCalendar(delay=0.3)), max_concurrent=1)
        await orchestrator.start()
        orchestrator.dispatch(make_snapshot("appt-1"))
        orchestrator.dispatch(make_snapshot("appt-2"))
        await asyncio.sleep(0.1)

        first = orchestrator.store.get("appt-1")
        second = orchestrator.store.get("appt-2")
        assert first.tasks[TaskName.SELLER_CALENDAR].state == TaskState.RUNNING
        assert all(record.state == TaskState.PENDING for record in second.tasks.values())

        await wait_until_complete(orchestrator.store, "appt-2")
        await orchestrator.shutdown(1)

    asyncio.run(scenario())


def test_duplicate_dispatch_is_rejected():
    async def scenario():
        orchestrator = _orchestrator(make_services(calendar=FakeCalendar(delay=0.2)))
        await orchestrator.start()
        orchestrator.dispatch(make_snapshot())
        with pytest.raises(TaskSetExistsError):
            orchestrator.dispatch(make_snapshot())
        await orchestrator.shutdown(0)

    asyncio.run(scenario())


def test_redispatch_only_after_completion():
    calendar = FakeCalendar(failures={"buyer": [CalendarTransientError("503"), None]}, delay=0.05)

    async def scenario():
        orchestrator = _orchestrator(make_services(calendar=calendar))
        await orchestrator.start()
        orchestrator.dispatch(make_snapshot())

        with pytest.raises(TaskSetExistsError):
            orchestrator.redispatch(make_snapshot())

        first = await wait_until_complete(orchestrator.store, "appt-1")
        orchestrator.redispatch(make_snapshot())
        second = await wait_until_complete(orchestrator.store, "appt-1")
        await orchestrator.shutdown(1)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.tasks[TaskName.BUYER_CALENDAR].state == TaskState.FAILED
    assert second.tasks[TaskName.BUYER_CALENDAR].state == TaskState.SUCCESS


def test_dispatch_from_worker_thread_is_scheduled_on_loop():
    async def scenario():
        orchestrator = _orchestrator()
        await orchestrator.start()
        await asyncio.to_thread(orchestrator.dispatch, make_snapshot())
        task_set = await wait_until_complete(orchestrator.store, "appt-1")
        await orchestrator.shutdown(1)
        return task_set

    task_set = asyncio.run(scenario())
    assert all(record.state == TaskState.SUCCESS for record in task_set.tasks.values())


class _SlowSellerEventRecorder(FakeRecorder):
    """The first seller event write outlasts the per-call timeout"""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.slow_writes = 0

    def record_calendar_event(self, appointment_id, task_name, event_id):
        if task_name == TaskName.SELLER_CALENDAR and not self.slow_writes:
            self.slow_writes += 1
            time.sleep(self.delay)
        super().record_calendar_event(appointment_id, task_name, event_id)


class _FlakyMailer(FakeMailer):
    def __init__(self, failures):
        super().__init__()
        self.failures = list(failures)
        self.attempts = 0

    async def send(self, to, subject, html_content):
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        return await super().send(to, subject, html_content)


def test_slow_result_write_is_not_retried_and_side_effects_happen_once():
    calendar = FakeCalendar(conference_link=MEET_LINK)
    services = make_services(calendar=calendar, recorder=_SlowSellerEventRecorder(delay=0.3))
    tasks = _run(
        services,
        call_timeout=0.1,
        retry_policy=RetryPolicy(max_attempts=2, backoff_seconds=0),
    ).tasks

    seller = tasks[TaskName.SELLER_CALENDAR]
    assert seller.state == TaskState.FAILED
    assert seller.error_classification == ErrorClassification.PERSISTENCE
    assert seller.attempts == 1
    assert calendar.calls.count(("create_event", "seller")) == 1
    assert len(services.mailer.sent) == 1


def test_retry_repeats_only_the_failed_call():
    mailer = _FlakyMailer([TaskTimeoutError("Email delivery timed out")])
    calendar = FakeCalendar()
    services = make_services(calendar=calendar, mailer=mailer)
    tasks = _run(services, retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0)).tasks

    email = tasks[TaskName.EMAIL]
    assert email.state == TaskState.SUCCESS
    assert email.attempts == 2
    assert mailer.attempts == 2
    assert len(mailer.sent) == 1
    assert services.composer.calls == [MEET_LINK]
    assert calendar.calls.count(("create_event", "seller")) == 1


def test_budget_counts_time_waiting_for_admission():
    async def scenario():
        orchestrator = _orchestrator(
            make_services(calendar=FakeCalendar(delay=30)),
            call_timeout=60,
            budget_seconds=0.3,
            max_concurrent=1,
        )
        await orchestrator.start()
        started = time.monotonic()
        orchestrator.dispatch(make_snapshot("appt-1"))
        orchestrator.dispatch(make_snapshot("appt-2"))

        queued = await wait_until_complete(orchestrator.store, "appt-2", timeout=2)
        elapsed = time.monotonic() - started
        await orchestrator.shutdown(1)
        return queued, elapsed

    queued, elapsed = asyncio.run(scenario())
    # A budget counted from admission would end near 0.6s
    assert elapsed < 0.5
    for record in queued.tasks.values():
        assert record.state == TaskState.FAILED
        assert record.error_classification == ErrorClassification.TIMEOUT
        assert "budget" in record.error_message


def test_dispatch_racing_shutdown_fails_the_task_set():
    calendar = FakeCalendar()

    async def scenario():
        orchestrator = _orchestrator(make_services(calendar=calendar))
        await orchestrator.start()
        # Blocking join keeps the loop from running the spawn callback until shutdown begins
        worker = threading.Thread(target=orchestrator.dispatch, args=(make_snapshot(),))
        worker.start()
        worker.join()

        await orchestrator.shutdown(1)
        assert orchestrator.in_flight == 0
        return orchestrator.store.get("appt-1")

    task_set = asyncio.run(scenario())
    assert task_set.is_complete
    assert all(record.error_classification == ErrorClassification.TIMEOUT for record in task_set.tasks.values())
    assert calendar.calls == []
