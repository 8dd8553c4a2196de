"""Background job runner using asyncio."""
import asyncio
import logging
import traceback
from typing import Any, Callable, Dict, Optional, Tuple

from milkmobs.pipeline.errors import ConflictError

logger = logging.getLogger(__name__)

REBUILD_JOB_KEY = "rebuild"


class JobRunner:
    """
    Async background job runner.

    Jobs are keyed; at most one job per key runs at a time. Pipeline jobs are
    keyed by content item id, so one item never has two executions in flight
    within this process.
    """

    def __init__(self):
        self._running_jobs: Dict[str, Tuple[asyncio.Task, asyncio.Event]] = {}
        self._job_handlers: Dict[str, Callable] = {}
        self._context: Dict[str, Any] = {}
        self._schedule_task: Optional[asyncio.Task] = None

    def register_handler(self, job_type: str, handler: Callable):
        """Register a handler for a job type."""
        self._job_handlers[job_type] = handler

    def configure(self, **context):
        """Set keyword arguments passed to every handler (e.g. the service)."""
        self._context.update(context)

    async def start_job(self, job_key: str, job_type: str, **kwargs) -> asyncio.Task:
        """
        Start a background job.

        Args:
            job_key: Key that identifies the job (content item id, or "rebuild")
            job_type: Type of job to run
            **kwargs: Arguments to pass to the job handler

        Returns:
            The task running the job

        Raises:
            ConflictError: A job with the same key is already running
            ValueError: No handler is registered for the job type
        """
        if job_key in self._running_jobs:
            logger.warning(f"Job {job_key} is already running")
            raise ConflictError(job_key)

        handler = self._job_handlers.get(job_type)
        if not handler:
            raise ValueError(f"No handler registered for job type: {job_type}")

        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._run_job(job_key, handler, cancel_event, **kwargs)
        )
        self._running_jobs[job_key] = (task, cancel_event)
        return task

    async def _run_job(
        self,
        job_key: str,
        handler: Callable,
        cancel_event: asyncio.Event,
        **kwargs
    ) -> Optional[dict]:
        """Run a job with error handling."""
        try:
            result = await handler(cancel_event=cancel_event, **self._context, **kwargs)
            logger.info(f"Job {job_key} completed: {result}")
            return result

        except asyncio.CancelledError:
            logger.info(f"Job {job_key} was cancelled")
            raise

        except Exception as e:
            error_trace = traceback.format_exc()
            logger.error(f"Job {job_key} failed: {e}\n{error_trace}")
            return None

        finally:
            # Remove from running jobs
            self._running_jobs.pop(job_key, None)

    def cancel_job(self, job_key: str, force: bool = False) -> bool:
        """
        Cancel a running job.

        By default the job stops at its next stage boundary. ``force`` also
        cancels the task immediately.
        """
        entry = self._running_jobs.get(job_key)
        if not entry:
            return False
        task, cancel_event = entry
        cancel_event.set()
        if force:
            task.cancel()
        return True

    def is_job_running(self, job_key: str) -> bool:
        """Check if a job is currently running."""
        return job_key in self._running_jobs

    @property
    def running_count(self) -> int:
        return len(self._running_jobs)

    async def wait(self, job_key: str) -> Optional[dict]:
        """Wait for a running job and return its result."""
        entry = self._running_jobs.get(job_key)
        if not entry:
            return None
        return await entry[0]

    # =========================================================================
    # Periodic rebuild
    # =========================================================================

    def start_schedule(self, interval_seconds: float, job_type: str = REBUILD_JOB_KEY):
        """Run a rebuild job every ``interval_seconds``."""
        if self._schedule_task is not None:
            return
        self._schedule_task = asyncio.create_task(self._schedule_loop(interval_seconds, job_type))
        logger.info(f"Scheduled {job_type} every {interval_seconds:.0f}s")

    async def _schedule_loop(self, interval_seconds: float, job_type: str):
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                task = await self.start_job(REBUILD_JOB_KEY, job_type)
            except ConflictError:
                logger.info("Previous rebuild still running, skipping this tick")
                continue
            # A cancelled rebuild must not end the schedule
            await asyncio.wait({task})
            if task.cancelled():
                logger.info("Scheduled rebuild was cancelled, schedule continues")

    async def shutdown(self):
        """Cancel the schedule and all running jobs."""
        if self._schedule_task is not None:
            self._schedule_task.cancel()
            await asyncio.gather(self._schedule_task, return_exceptions=True)
            self._schedule_task = None

        tasks = [task for task, _ in self._running_jobs.values()]
        for task in tasks:
            task.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._running_jobs.clear()


# Global job runner instance
job_runner = JobRunner()
