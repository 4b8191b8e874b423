"""
Job Orchestrator - lifecycle of asynchronous multi-step operations.

State machine:

    pending --update_progress--> running --complete_job--> completed
       |                            |
       +----complete/fail_job-------+------fail_job------> failed

Terminal jobs are immutable: later mutations are logged and ignored.
Writes to one job are serialized with a per-job lock; different jobs never
wait on each other.

The JobSupervisor runs job bodies as tracked asyncio tasks and guarantees
that every job reaches a terminal state:
    - an exception from the body fails the job with a remediation suggestion
    - a body that returns without finishing the job completes it
    - shutdown() fails whatever is still running
"""
import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pyminerfleet.api_lock import KeyedLocks
from pyminerfleet.exceptions import JobNotFoundError, ValidationError, wrap_error
from pyminerfleet.models import Job, JobError, JobProgress, JobStatus, utcnow
from pyminerfleet.store import KeyValueStore

log = logging.getLogger(__name__)

DEFAULT_JOB_TTL = 86400
FAIL_SUGGESTION = "Check miner connectivity and try again"
SHUTDOWN_SUGGESTION = "Start the operation again once the service is back"


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def percentage(completed: int, total: int) -> int:
    """completed / total * 100 rounded half-up."""
    if total <= 0:
        return 0
    return (completed * 200 + total) // (2 * total)


class JobOrchestrator:

    def __init__(self, store: KeyValueStore, job_ttl: float = DEFAULT_JOB_TTL):
        self.store = store
        self.job_ttl = job_ttl
        self._locks = KeyedLocks()

    async def create_job(self, job_type: str, total_units: int,
                         metadata: Optional[Dict[str, Any]] = None) -> Job:
        if total_units < 0:
            raise ValidationError("total_units must not be negative", {"totalUnits": total_units})
        job = Job(
            job_id=f"job-{uuid.uuid4().hex}",
            type=job_type,
            progress=JobProgress(total=total_units),
            metadata=dict(metadata or {}),
        )
        await self._save(job)
        log.info(f"Created job {job.job_id} ({job_type}, {total_units} units)")
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self.store.get(job_key(job_id))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def update_progress(self, job_id: str, completed: int, failed: int) -> Job:
        if completed < 0 or failed < 0:
            raise ValidationError("Progress counters must not be negative",
                                  {"completed": completed, "failed": failed})

        def apply(job: Job):
            total = job.progress.total
            if completed + failed > total:
                raise ValidationError(f"Progress {completed}+{failed} exceeds total {total}",
                                      {"jobId": job_id, "completed": completed, "failed": failed,
                                       "total": total})
            job.progress = JobProgress(total=total, completed=completed, failed=failed,
                                       percentage=percentage(completed, total))
            if job.status == JobStatus.PENDING:
                job.status = JobStatus.RUNNING
                log.info(f"Job {job_id} running")

        return await self._mutate(job_id, "update_progress", apply)

    async def add_error(self, job_id: str, error: Union[str, JobError], suggestion: Optional[str] = None,
                        device_id: Optional[str] = None) -> Job:
        if isinstance(error, str):
            error = JobError(error=error, suggestion=suggestion, device_id=device_id)
        return await self._mutate(job_id, "add_error", lambda job: job.errors.append(error))

    async def set_results(self, job_id: str, results: Dict[str, Any]) -> Job:
        def apply(job: Job):
            job.results = results

        return await self._mutate(job_id, "set_results", apply)

    async def complete_job(self, job_id: str) -> Job:
        def apply(job: Job):
            job.status = JobStatus.COMPLETED
            job.completed_at = utcnow()
            if job.progress.total == 0:
                job.progress.percentage = 100
            log.info(f"Job {job_id} completed ({job.progress.completed} succeeded, "
                     f"{job.progress.failed} failed)")

        return await self._mutate(job_id, "complete_job", apply)

    async def fail_job(self, job_id: str, reason: str, suggestion: Optional[str] = None) -> Job:
        def apply(job: Job):
            job.status = JobStatus.FAILED
            job.completed_at = utcnow()
            job.errors.append(JobError(error=reason, suggestion=suggestion or FAIL_SUGGESTION))
            log.error(f"Job {job_id} failed: {reason}")

        return await self._mutate(job_id, "fail_job", apply)

    async def delete_job(self, job_id: str):
        await self.store.delete(job_key(job_id))
        self._locks.discard(job_id)

    async def _mutate(self, job_id: str, action: str, apply: Callable[[Job], Any]) -> Job:
        async with self._locks.acquire(job_id):
            job = await self.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status.terminal:
                log.warning(f"Ignoring {action} on {job.status.value} job {job_id}")
                return job
            apply(job)
            await self._save(job)
        if job.status.terminal:
            self._locks.discard(job_id)
        return job

    async def _save(self, job: Job):
        await self.store.put(job_key(job.job_id), job.model_dump_json(), ttl=self.job_ttl)


class JobSupervisor:
    """Runs job bodies as tracked tasks; no job is left pending or running."""

    def __init__(self, jobs: JobOrchestrator):
        self.jobs = jobs
        self.tasks: Dict[str, asyncio.Task] = {}

    def submit(self, job_id: str, body: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(self._run(job_id, body), name=f"job:{job_id}")
        self.tasks[job_id] = task
        task.add_done_callback(lambda t: self.tasks.pop(job_id, None))
        return task

    async def wait(self, job_id: str):
        """Wait for a submitted job body to finish (no-op if not running)."""
        task = self.tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self):
        tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info(f"Interrupted {len(tasks)} running job(s)")

    async def _run(self, job_id: str, body: Awaitable[Any]):
        try:
            await body
        except asyncio.CancelledError:
            await self._fail(job_id, "Job interrupted by shutdown", SHUTDOWN_SUGGESTION)
            raise
        except Exception as e:
            error = wrap_error(e)
            log.error(f"Background task for job {job_id} raised {e.__class__.__name__}: {error.message}")
            await self._fail(job_id, error.message, error.suggestion)
        else:
            job = await self.jobs.get_job(job_id)
            if job is not None and not job.status.terminal:
                await self.jobs.complete_job(job_id)

    async def _fail(self, job_id: str, reason: str, suggestion: Optional[str]):
        try:
            await self.jobs.fail_job(job_id, reason, suggestion)
        except Exception as e:
            log.error(f"Unable to record failure of job {job_id}: {e}")
