"""Job Queue / Scheduler.

Owns the workflow registry, the job table and the set of running jobs.
Admission is semaphore-style: at most ``max_concurrent`` jobs run at once
and pending jobs are admitted strictly FIFO. Each admitted job runs in
its own asyncio task with a wall-clock timeout; failures are retried
with exponential backoff until the retry ceiling is reached.

All state mutation happens in synchronous methods on the event loop
thread, so there is no await point between reading and updating the
job table. Executors report back only through their return value.

Lifecycle:
    enqueue -> pending -> running -> completed
                             |-> (failure, retries left) -> pending after backoff
                             |-> (failure, exhausted)    -> failed
    pending/running -> cancelled (cancel)
    failed -> pending (manual retry)
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import pydantic
import structlog

from app.config import Settings, get_settings
from core.exceptions import (
    InvalidWorkflowError,
    QueueClosedError,
    WorkflowDisabledError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
)
from workflow.events import EventStream, EventType, LifecycleEvent
from workflow.models import (
    ExecutionResult,
    JobStatus,
    Workflow,
    WorkflowContext,
    WorkflowJob,
)
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)

JobRunner = Callable[[Workflow, WorkflowContext, str], Awaitable[ExecutionResult]]


@dataclass
class QueueOptions:
    """Scheduler limits. Durations are in milliseconds."""
    max_concurrent: int = 10
    max_retries: int = 3
    retry_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_retry_delay_ms: int = 60000
    job_timeout_ms: Optional[int] = 30000

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "QueueOptions":
        settings = settings or get_settings()
        return cls(
            max_concurrent=settings.WORKFLOW_MAX_CONCURRENT,
            max_retries=settings.WORKFLOW_MAX_RETRIES,
            retry_delay_ms=settings.WORKFLOW_RETRY_DELAY_MS,
            backoff_multiplier=settings.WORKFLOW_BACKOFF_MULTIPLIER,
            max_retry_delay_ms=settings.WORKFLOW_MAX_RETRY_DELAY_MS,
            job_timeout_ms=settings.WORKFLOW_JOB_TIMEOUT_MS,
        )

    def retry_strategy(self, max_retries: int) -> RetryStrategy:
        return RetryStrategy(
            max_retries=max_retries,
            base_delay=self.retry_delay_ms / 1000,
            max_delay=self.max_retry_delay_ms / 1000,
            multiplier=self.backoff_multiplier,
        )


class WorkflowQueue:
    """In-memory job queue with bounded concurrency, timeouts and retries."""

    def __init__(self, runner: JobRunner, options: Optional[QueueOptions] = None):
        """
        Args:
            runner: Async callable(workflow, context, job_id) -> ExecutionResult
            options: Scheduler limits (defaults to values from settings)
        """
        self._runner = runner
        self._options = options or QueueOptions.from_settings()
        if self._options.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self._workflows: dict[str, Workflow] = {}
        self._jobs: dict[str, WorkflowJob] = {}
        self._pending: deque[str] = deque()
        self._running: dict[str, asyncio.Task] = {}
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}
        self._accepting = True

        self.events = EventStream()

    @property
    def options(self) -> QueueOptions:
        return self._options

    # ─── Workflow registry ────────────────────────────────────

    def register_workflow(self, workflow: Union[Workflow, dict[str, Any]]) -> Workflow:
        """Register (or hot-replace) a workflow definition."""
        if isinstance(workflow, dict):
            try:
                workflow = Workflow.model_validate(workflow)
            except pydantic.ValidationError as e:
                raise InvalidWorkflowError(f"Invalid workflow definition: {e}") from e

        self._workflows[workflow.name] = workflow
        logger.info("Workflow registered", workflow=workflow.name, steps=len(workflow.steps))
        self._publish(EventType.WORKFLOW_REGISTERED, workflow_name=workflow.name)
        return workflow

    def unregister_workflow(self, name: str) -> bool:
        """Remove a workflow. Already-enqueued jobs keep their snapshot and still run."""
        removed = self._workflows.pop(name, None) is not None
        if removed:
            logger.info("Workflow unregistered", workflow=name)
            self._publish(EventType.WORKFLOW_UNREGISTERED, workflow_name=name)
        return removed

    def get_workflow(self, name: str) -> Optional[Workflow]:
        return self._workflows.get(name)

    def get_all_workflows(self) -> list[Workflow]:
        return list(self._workflows.values())

    # ─── Enqueue / dispatch ───────────────────────────────────

    def enqueue(
        self,
        workflow_name: str,
        context: WorkflowContext,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
    ) -> WorkflowJob:
        """Create a pending job and kick the dispatch loop.

        Must be called with a running event loop.

        Raises:
            WorkflowNotFoundError: No workflow registered under that name
            WorkflowDisabledError: Workflow is registered with enabled=False
            QueueClosedError: The queue has been shut down
        """
        if not self._accepting:
            raise QueueClosedError()

        workflow = self._workflows.get(workflow_name)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_name)
        if not workflow.enabled:
            raise WorkflowDisabledError(workflow_name)

        job = WorkflowJob(
            workflow_name=workflow_name,
            context=context,
            workflow=workflow,
            max_retries=_first_set(max_retries, workflow.retries, self._options.max_retries),
            timeout_ms=_first_set(timeout_ms, workflow.timeout, self._options.job_timeout_ms),
        )
        self._jobs[job.id] = job
        self._pending.append(job.id)

        logger.info("Job enqueued", job_id=job.id, workflow=workflow_name)
        self._publish(EventType.JOB_ENQUEUED, job)
        self._process_queue()
        return job

    def _process_queue(self) -> None:
        """Admit pending jobs, oldest first, while slots are free."""
        if not self._accepting or not self._pending:
            return

        # Raises before any job leaves the pending deque when no loop is running
        loop = asyncio.get_running_loop()
        while len(self._running) < self._options.max_concurrent and self._pending:
            job = self._jobs.get(self._pending.popleft())
            if job is None or job.status != JobStatus.PENDING:
                continue
            self._start(job, loop)

    def _start(self, job: WorkflowJob, loop: asyncio.AbstractEventLoop) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(timezone.utc)
        job.completed_at = None
        job.attempts += 1

        task = loop.create_task(self._run_job(job))
        self._running[job.id] = task

        logger.info("Job started", job_id=job.id, workflow=job.workflow_name, attempt=job.attempts)
        self._publish(EventType.JOB_STARTED, job)

    async def _run_job(self, job: WorkflowJob) -> None:
        timeout = job.timeout_ms / 1000 if job.timeout_ms else None
        try:
            try:
                result = await asyncio.wait_for(
                    self._runner(job.workflow, job.context, job.id),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                result = ExecutionResult(
                    success=False,
                    error=WorkflowTimeoutError(f"Job timed out after {job.timeout_ms}ms"),
                )
            except Exception as e:
                # Runners are expected to report failures, not raise them
                logger.error("Job runner raised", job_id=job.id, error=str(e), exc_info=True)
                result = ExecutionResult(success=False, error=e)

            if job.status != JobStatus.RUNNING:
                # Cancelled while the attempt was finishing
                return

            if result.success:
                self._complete(job, result.result)
            else:
                self._fail(job, result.error or RuntimeError("Unknown error"))
        finally:
            self._running.pop(job.id, None)
            self._process_queue()

    # ─── Outcomes ─────────────────────────────────────────────

    def _complete(self, job: WorkflowJob, result: Any) -> None:
        job.result = result
        job.last_error = None
        logger.info("Job completed", job_id=job.id, workflow=job.workflow_name, attempts=job.attempts)
        self._finish(job, JobStatus.COMPLETED, EventType.JOB_COMPLETED)

    def _fail(self, job: WorkflowJob, error: Exception) -> None:
        job.last_error = str(error)
        strategy = self._options.retry_strategy(job.max_retries)

        if strategy.should_retry(job.attempts, error):
            job.status = JobStatus.PENDING
            if not self._accepting:
                # Shutting down: no new timers, the job is left pending
                logger.warning(
                    "Job failed during shutdown, left pending",
                    job_id=job.id,
                    workflow=job.workflow_name,
                    attempt=job.attempts,
                    error=job.last_error,
                )
                return

            delay = strategy.compute_delay(job.attempts)
            self._retry_timers[job.id] = asyncio.get_running_loop().call_later(
                delay, self._readmit, job.id
            )
            logger.warning(
                "Job failed, retrying",
                job_id=job.id,
                workflow=job.workflow_name,
                attempt=job.attempts,
                max_retries=job.max_retries,
                delay_ms=int(delay * 1000),
                error=job.last_error,
            )
            self._publish(
                EventType.JOB_RETRY,
                job,
                delay_ms=int(delay * 1000),
                attempt=job.attempts,
                error=job.last_error,
            )
            return

        logger.error(
            "Job failed",
            job_id=job.id,
            workflow=job.workflow_name,
            attempts=job.attempts,
            error=job.last_error,
        )
        self._finish(job, JobStatus.FAILED, EventType.JOB_FAILED, error=job.last_error)

    def _readmit(self, job_id: str) -> None:
        self._retry_timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return
        self._pending.append(job_id)
        self._process_queue()

    def _finish(self, job: WorkflowJob, status: JobStatus, event_type: EventType, **data: Any) -> None:
        job.status = status
        job.completed_at = datetime.now(timezone.utc)
        self._publish(event_type, job, **data)
        for waiter in self._waiters.pop(job.id, []):
            if not waiter.done():
                waiter.set_result(job)

    # ─── Job control ──────────────────────────────────────────

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending or running job.

        A running job's task is cancelled, which raises CancelledError in
        whatever collaborator call its current step is awaiting.
        """
        job = self._jobs.get(job_id)
        if job is None or job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
            return False

        was_running = job.status == JobStatus.RUNNING
        if not was_running:
            try:
                self._pending.remove(job_id)
            except ValueError:
                pass  # waiting out a retry backoff
            timer = self._retry_timers.pop(job_id, None)
            if timer:
                timer.cancel()

        logger.info("Job cancelled", job_id=job_id, workflow=job.workflow_name, was_running=was_running)
        self._finish(job, JobStatus.CANCELLED, EventType.JOB_CANCELLED)

        if was_running:
            # The slot is freed now; the task may not have started yet
            task = self._running.pop(job_id, None)
            if task and not task.done():
                task.cancel()
            self._process_queue()
        return True

    def retry(self, job_id: str) -> bool:
        """Manually re-run a terminally failed job.

        The attempt counter is kept, so the job gets exactly one more
        attempt unless its retry ceiling still has room.
        """
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return False
        if not self._accepting:
            raise QueueClosedError()

        job.status = JobStatus.PENDING
        job.started_at = None
        job.completed_at = None
        self._pending.append(job.id)

        logger.info("Job manually retried", job_id=job_id, attempts=job.attempts)
        self._publish(EventType.JOB_RETRY, job, manual=True, attempt=job.attempts)
        self._process_queue()
        return True

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> WorkflowJob:
        """Wait until a job reaches a terminal status.

        Raises:
            KeyError: Unknown job id
            asyncio.TimeoutError: The job did not finish in time
        """
        job = self._jobs[job_id]
        if job.status.is_terminal:
            return job
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, []).append(waiter)
        return await asyncio.wait_for(waiter, timeout=timeout)

    # ─── Queries ──────────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[WorkflowJob]:
        return self._jobs.get(job_id)

    def get_jobs(
        self,
        status: Optional[Union[JobStatus, str]] = None,
        workflow_name: Optional[str] = None,
    ) -> list[WorkflowJob]:
        jobs = list(self._jobs.values())
        if status is not None:
            status = JobStatus(status)
            jobs = [job for job in jobs if job.status == status]
        if workflow_name is not None:
            jobs = [job for job in jobs if job.workflow_name == workflow_name]
        return jobs

    def get_stats(self) -> dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        stats["waiting_retry"] = len(self._retry_timers)
        stats["workflows"] = len(self._workflows)
        return stats

    def cleanup(self, older_than_ms: int = 3600000) -> int:
        """Purge terminal jobs that finished at least older_than_ms ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(milliseconds=older_than_ms)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.completed_at and job.completed_at <= cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]

        if expired:
            logger.info("Queue cleaned", purged=len(expired))
            self._publish(EventType.QUEUE_CLEANED, count=len(expired))
        return len(expired)

    # ─── Shutdown ─────────────────────────────────────────────

    async def shutdown(self, timeout_ms: int = 30000) -> None:
        """Stop admitting jobs and wait for running ones.

        Jobs still running after timeout_ms are cancelled.
        Pending jobs stay pending.
        """
        logger.info("Shutting down workflow queue", running=len(self._running), pending=len(self._pending))
        self._accepting = False
        self._pending.clear()
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()

        tasks = list(self._running.values())
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=timeout_ms / 1000)
            if still_running:
                logger.warning("Timeout waiting for running jobs, cancelling", count=len(still_running))
                for job_id in list(self._running):
                    self.cancel(job_id)
                await asyncio.gather(*still_running, return_exceptions=True)

        self.events.close()
        logger.info("Workflow queue shut down")

    # ─── Events ───────────────────────────────────────────────

    def _publish(self, event_type: EventType, job: Optional[WorkflowJob] = None, **data: Any) -> None:
        workflow_name = data.pop("workflow_name", None) or (job.workflow_name if job else None)
        self.events.publish(LifecycleEvent(
            type=event_type,
            job=job,
            workflow_name=workflow_name,
            status=job.status if job else None,
            data=data,
        ))


def _first_set(*values: Optional[int]) -> Optional[int]:
    for value in values:
        if value is not None:
            return value
    return None
