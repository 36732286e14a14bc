"""
Background task orchestrator.

Runs the post-booking tasks for a committed appointment on the application
event loop. dispatch() only registers the TaskSet and schedules work; the
results are observable through the StatusStore. Every task runs inside a
boundary that turns any error into a Failed record, so nothing raised by a
task reaches the booking caller or a sibling task.
"""

import asyncio
import logging
from typing import Dict, Mapping, Optional, Set

from .context import AppointmentSnapshot, BackgroundServices, RetryPolicy, TaskContext
from .errors import ErrorClassification, TaskError
from .graph import resolve_execution_order
from .status_store import StatusStore, TaskName, TaskSet, TaskState
from .tasks import BackgroundTask, TaskOutcome, default_tasks, dependency_graph

logger = logging.getLogger(__name__)


class OrchestratorUnavailableError(Exception):
    """Raised by dispatch() before start() or after shutdown()"""


class TaskOrchestrator:
    def __init__(
        self,
        store: StatusStore,
        services: BackgroundServices,
        tasks: Optional[Mapping[TaskName, BackgroundTask]] = None,
        call_timeout: float = 10.0,
        budget_seconds: float = 120.0,
        max_concurrent: int = 20,
        retry_policy: Optional[RetryPolicy] = None,
        sweep_interval: float = 300.0,
    ):
        self.store = store
        self.services = services
        self.tasks = dict(tasks) if tasks is not None else default_tasks()
        self.call_timeout = call_timeout
        self.budget_seconds = budget_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.sweep_interval = sweep_interval

        # Fails fast on cycles or unknown dependencies
        self.execution_order = resolve_execution_order(dependency_graph(self.tasks))

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._in_flight: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._accepting = False

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._accepting = True
        self._sweeper = asyncio.create_task(self._sweep_loop())
        order = " → ".join("+".join(name.value for name in level) for level in self.execution_order)
        logger.info(f"✅ Task orchestrator started ({order})")

    def dispatch(self, appointment: AppointmentSnapshot) -> TaskSet:
        """
        Register a TaskSet for the appointment and schedule its tasks.

        Returns without waiting for any task. Raises TaskSetExistsError if a
        TaskSet is already registered and OrchestratorUnavailableError when
        the orchestrator is not running.
        """
        self._ensure_accepting()
        task_set = self.store.create(appointment.id, self.tasks)
        self._schedule(appointment)
        logger.info(f"📤 [BACKGROUND-{appointment.id}] Dispatched {len(self.tasks)} tasks")
        return task_set

    def redispatch(self, appointment: AppointmentSnapshot) -> TaskSet:
        """Run the tasks again once the previous TaskSet has fully finished"""
        self._ensure_accepting()
        task_set = self.store.replace(appointment.id, self.tasks)
        self._schedule(appointment)
        logger.info(f"🔄 [BACKGROUND-{appointment.id}] Re-dispatched {len(self.tasks)} tasks")
        return task_set

    async def shutdown(self, timeout: float) -> None:
        """Stop accepting work, wait for in-flight TaskSets, then cancel what is left"""
        self._accepting = False

        if self._sweeper:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        in_flight = list(self._in_flight)
        if not in_flight:
            logger.info("✅ Task orchestrator stopped")
            return

        logger.info(f"⏳ Waiting up to {timeout:g}s for {len(in_flight)} in-flight task set(s)")
        _, pending = await asyncio.wait(in_flight, timeout=timeout)
        for handle in pending:
            handle.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if pending:
            logger.warning(f"⚠️ Cancelled {len(pending)} task set(s) at shutdown")
        logger.info("✅ Task orchestrator stopped")

    def _ensure_accepting(self) -> None:
        if not self._accepting or self._loop is None:
            raise OrchestratorUnavailableError("Task orchestrator is not accepting work")

    def _schedule(self, appointment: AppointmentSnapshot) -> None:
        # The budget runs from dispatch, so time spent waiting for admission counts
        deadline = self._loop.time() + self.budget_seconds
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is self._loop:
            self._spawn(appointment, deadline)
        else:
            # Called from a worker thread (sync route handlers)
            self._loop.call_soon_threadsafe(self._spawn, appointment, deadline)

    def _spawn(self, appointment: AppointmentSnapshot, deadline: float) -> None:
        if not self._accepting:
            # Shutdown started between a worker thread's dispatch and this callback
            self._fail_unfinished(appointment.id, "Orchestrator shut down before tasks started")
            return
        handle = self._loop.create_task(self._run_task_set(appointment, deadline))
        self._in_flight.add(handle)
        handle.add_done_callback(self._on_task_set_done)

    def _on_task_set_done(self, handle: asyncio.Task) -> None:
        self._in_flight.discard(handle)
        if not handle.cancelled() and handle.exception():
            logger.error(f"❌ Task set runner crashed: {handle.exception()!r}")

    def _remaining(self, deadline: float) -> float:
        return max(deadline - self._loop.time(), 0.0)

    async def _run_task_set(self, appointment: AppointmentSnapshot, deadline: float) -> None:
        appointment_id = appointment.id
        exceeded = f"Background budget of {self.budget_seconds:g}s exceeded"
        runners: Dict[TaskName, asyncio.Task] = {}
        try:
            try:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=self._remaining(deadline))
            except asyncio.TimeoutError:
                self._fail_unfinished(appointment_id, f"{exceeded} before admission")
                return

            try:
                logger.info(
                    f"🚀 [BACKGROUND-{appointment_id}] Admitted, {self._remaining(deadline):.1f}s of budget left"
                )
                finished = {name: asyncio.Event() for name in self.tasks}
                runners = {
                    name: asyncio.create_task(self._run_task(task, appointment, finished))
                    for name, task in self.tasks.items()
                }

                _, pending = await asyncio.wait(runners.values(), timeout=self._remaining(deadline))
                if pending:
                    for runner in pending:
                        runner.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    self._fail_unfinished(appointment_id, exceeded)
            finally:
                self._semaphore.release()
        except asyncio.CancelledError:
            for runner in runners.values():
                runner.cancel()
            await asyncio.gather(*runners.values(), return_exceptions=True)
            self._fail_unfinished(appointment_id, "Cancelled at shutdown before completing")
            raise

        self._log_summary(appointment_id)

    async def _run_task(
        self,
        task: BackgroundTask,
        appointment: AppointmentSnapshot,
        finished: Dict[TaskName, asyncio.Event],
    ) -> None:
        try:
            for dependency in task.depends_on:
                await finished[dependency].wait()
            await self._execute(task, appointment)
        finally:
            finished[task.name].set()

    async def _execute(self, task: BackgroundTask, appointment: AppointmentSnapshot) -> None:
        appointment_id = appointment.id
        if not self.store.update(appointment_id, task.name, TaskState.RUNNING):
            return
        logger.info(f"🔄 [BACKGROUND-{appointment_id}] {task.name.value}: running")

        # Retries happen per external call inside the context
        context = self._build_context(task, appointment)
        outcome = await self._attempt(task, context)
        self._record(appointment_id, task.name, outcome, max(context.attempts, 1))

    async def _attempt(self, task: BackgroundTask, context: TaskContext) -> TaskOutcome:
        try:
            return await task.execute(context)
        except TaskError as e:
            return TaskOutcome.failure(e.classification, e.message)
        except asyncio.TimeoutError as e:
            return TaskOutcome.failure(ErrorClassification.TIMEOUT, str(e) or "Operation timed out")
        except Exception as e:
            logger.exception(f"❌ [BACKGROUND-{context.appointment.id}] {task.name.value}: unexpected error")
            return TaskOutcome.failure(ErrorClassification.INTERNAL, f"{type(e).__name__}: {e}")

    def _build_context(self, task: BackgroundTask, appointment: AppointmentSnapshot) -> TaskContext:
        dependencies = {}
        if task.depends_on:
            task_set = self.store.get(appointment.id)
            if task_set:
                dependencies = {name: task_set.tasks[name] for name in task.depends_on}
        return TaskContext(
            appointment=appointment,
            services=self.services,
            call_timeout=self.call_timeout,
            dependencies=dependencies,
            retry_policy=self.retry_policy,
        )

    def _record(self, appointment_id: str, name: TaskName, outcome: TaskOutcome, attempts: int) -> None:
        if outcome.succeeded:
            self.store.update(appointment_id, name, TaskState.SUCCESS, detail=outcome.detail, attempts=attempts)
            logger.info(f"✅ [BACKGROUND-{appointment_id}] {name.value}: success")
            return

        self.store.update(
            appointment_id,
            name,
            TaskState.FAILED,
            detail=outcome.detail,
            classification=outcome.classification,
            message=outcome.message,
            attempts=attempts,
        )
        logger.error(
            f"❌ [BACKGROUND-{appointment_id}] {name.value}: failed "
            f"({outcome.classification.value}) {outcome.message}"
        )

    def _fail_unfinished(self, appointment_id: str, message: str) -> None:
        task_set = self.store.get(appointment_id)
        if not task_set:
            return
        for name, record in task_set.tasks.items():
            if record.is_terminal:
                continue
            self.store.update(
                appointment_id,
                name,
                TaskState.FAILED,
                classification=ErrorClassification.TIMEOUT,
                message=message,
            )
            logger.error(f"❌ [BACKGROUND-{appointment_id}] {name.value}: failed (timeout) {message}")

    def _log_summary(self, appointment_id: str) -> None:
        task_set = self.store.get(appointment_id)
        if not task_set:
            return
        succeeded = sum(1 for record in task_set.tasks.values() if record.state == TaskState.SUCCESS)
        logger.info(f"📊 [BACKGROUND-{appointment_id}] Finished: {succeeded}/{len(task_set.tasks)} succeeded")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.store.evict_expired()
