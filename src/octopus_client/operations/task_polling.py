"""wait_for_task: bounded, cancellable polling of a server task until it is terminal."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog

from octopus_client.errors import OctopusError, PollTimeoutExceeded, ScheduleExpiredError
from octopus_client.models import Task, TaskWaitResult
from octopus_client.repositories import TaskRepository

log = structlog.get_logger()


class Clock(Protocol):
    """Time source and sleep primitive; injected so polling is testable without real delays."""

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(tz=UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class TaskPoller:
    """Polls tasks at a fixed interval within an overall timeout.

    Each iteration: stop if the caller cancelled, fetch the task, return if it is
    terminal, fail if it is still queued past its QueueTimeExpiry, fail if the
    timeout has elapsed, otherwise sleep. Caller cancellation (the ``cancel_event`` or
    cancelling the awaiting coroutine) sends a best-effort cancel request to the
    server; already-created resources are left alone.
    """

    def __init__(
        self,
        tasks: TaskRepository,
        *,
        interval_seconds: float,
        timeout_seconds: float,
        clock: Clock | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._tasks = tasks
        self._interval = interval_seconds
        self._timeout = timeout_seconds
        self._clock = clock or SystemClock()
        self._cancel_event = cancel_event

    def _cancel_requested(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def wait(self, task_or_id: Task | str) -> TaskWaitResult:
        """Wait for one task to finish.

        Raises:
            ScheduleExpiredError: The task was still queued after its QueueTimeExpiry.
            PollTimeoutExceeded: The overall timeout elapsed first.
        """
        task_id = task_or_id.id if isinstance(task_or_id, Task) else task_or_id
        if not task_id:
            msg = "Cannot wait for a task without an Id."
            raise ValueError(msg)
        task: Task | None = task_or_id if isinstance(task_or_id, Task) else None
        deadline = self._clock.now() + timedelta(seconds=self._timeout)
        polls = 0

        try:
            while True:
                if self._cancel_requested():
                    return await self._cancel(task_id, task)

                task = await self._tasks.get(task_id)
                polls += 1
                log.debug("task_poll", task_id=task_id, state=task.state, poll=polls)
                if task.is_terminal:
                    log.info("task_finished", task_id=task_id, state=task.state, polls=polls)
                    return TaskWaitResult(
                        task_id=task_id,
                        state=task.state,
                        outcome=task.state,
                        error_message=task.error_message,
                    )

                now = self._clock.now()
                if task.state == "Queued" and task.queue_time_expiry and now > _aware(task.queue_time_expiry):
                    msg = (
                        f"Task {task_id} did not start before its queue expiry "
                        f"({task.queue_time_expiry.isoformat()})."
                    )
                    raise ScheduleExpiredError(msg)
                if now >= deadline:
                    msg = f"Task {task_id} was still {task.state} after waiting {self._timeout:g}s."
                    raise PollTimeoutExceeded(msg)

                remaining = (deadline - now).total_seconds()
                await self._sleep(min(self._interval, remaining))
        except asyncio.CancelledError:
            await asyncio.shield(self._cancel(task_id, task))
            raise

    async def _sleep(self, seconds: float) -> None:
        if self._cancel_event is None:
            await self._clock.sleep(seconds)
            return
        sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()

    async def _cancel(self, task_id: str, task: Task | None) -> TaskWaitResult:
        state = task.state if task else "Unknown"
        try:
            current = task or await self._tasks.get(task_id)
            state = current.state
            cancelled = await self._tasks.cancel(current)
            state = cancelled.state
        except OctopusError as exc:
            log.warning("task_cancel_failed", task_id=task_id, error=str(exc))
        log.info("task_wait_cancelled", task_id=task_id, state=state)
        return TaskWaitResult(
            task_id=task_id,
            state=state,
            outcome="CancelledByCaller",
            error_message="Waiting was cancelled by the caller.",
        )


async def wait_for_task(
    tasks: TaskRepository,
    task_or_id: Task | str,
    *,
    interval_seconds: float,
    timeout_seconds: float,
    clock: Clock | None = None,
    cancel_event: asyncio.Event | None = None,
) -> TaskWaitResult:
    """Convenience wrapper around TaskPoller for a single task."""
    poller = TaskPoller(
        tasks,
        interval_seconds=interval_seconds,
        timeout_seconds=timeout_seconds,
        clock=clock,
        cancel_event=cancel_event,
    )
    return await poller.wait(task_or_id)
