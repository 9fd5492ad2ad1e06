"""
Task Scheduler for the article processing workflow.

Manages scheduled tasks:
- Polling: run an automatic batch every N minutes
- Recovery: fail articles stuck in processing after a crash

Batches are blocking work (HTTP calls, uploads), so they run in a worker
thread while the event loop keeps checking the schedule.
"""

import logging
import asyncio
from datetime import datetime
from typing import Optional
from dataclasses import dataclass
from enum import Enum

import schedule

from .orchestrator import BatchSummary, Orchestrator

logger = logging.getLogger(__name__)


class TaskType(Enum):
    """Types of scheduled tasks."""
    POLL_BATCH = "poll_batch"
    RECOVER_STALE = "recover_stale"


@dataclass
class ScheduledTask:
    """Represents a scheduled task."""
    task_type: TaskType
    interval_minutes: int
    last_run: Optional[datetime] = None


class ContentScheduler:
    """
    Triggers orchestrator batches on a timer or on demand.

    At most one batch runs at a time; a tick that arrives while a batch is
    still running is skipped.
    """

    def __init__(self, orchestrator: Orchestrator):
        """
        Initialize scheduler.

        Args:
            orchestrator: Orchestrator instance that does the work
        """
        self.orchestrator = orchestrator

        self.tasks: list[ScheduledTask] = []
        self.last_summary: Optional[BatchSummary] = None
        self._running = False
        self._batch_running = False

    def schedule_polling(self, interval_minutes: int = 30) -> None:
        """
        Schedule periodic batch processing.

        Args:
            interval_minutes: Minutes between batches
        """
        schedule.every(interval_minutes).minutes.do(
            lambda: asyncio.create_task(self._run_scheduled_batch())
        )

        self.tasks.append(ScheduledTask(
            task_type=TaskType.POLL_BATCH,
            interval_minutes=interval_minutes,
        ))

        logger.info(f"Scheduled batch processing every {interval_minutes} min")

    def schedule_recovery(self, interval_minutes: int = 60) -> None:
        """
        Schedule periodic stale-processing recovery.

        Args:
            interval_minutes: Minutes between checks
        """
        schedule.every(interval_minutes).minutes.do(
            lambda: asyncio.create_task(self._run_recovery())
        )

        self.tasks.append(ScheduledTask(
            task_type=TaskType.RECOVER_STALE,
            interval_minutes=interval_minutes,
        ))

        logger.info(f"Scheduled stale recovery every {interval_minutes} min")

    async def run_batch(
        self,
        limit: Optional[int] = None,
        article_id: Optional[int] = None,
    ) -> Optional[BatchSummary]:
        """
        Run one batch now.

        Args:
            limit: Batch size override
            article_id: Process only this article

        Returns:
            BatchSummary, or None if another batch is already running
        """
        if self._batch_running:
            logger.warning("Batch already running, skipping")
            return None

        self._batch_running = True
        try:
            summary = await asyncio.to_thread(
                self.orchestrator.run_batch, limit=limit, article_id=article_id,
            )
        finally:
            self._batch_running = False

        self.last_summary = summary
        self._mark_run(TaskType.POLL_BATCH)
        return summary

    async def _run_scheduled_batch(self) -> None:
        """Execute polling task."""
        logger.info("Running scheduled batch...")
        try:
            summary = await self.run_batch()
            if summary and summary.results:
                logger.info(
                    f"Scheduled batch done: {summary.completed} completed, {summary.failed} failed"
                )
        except Exception as e:
            logger.error(f"Scheduled batch failed: {e}")

    async def _run_recovery(self) -> None:
        """Execute recovery task."""
        logger.debug("Checking for stale articles...")
        if self._batch_running:
            return
        try:
            recovered = await asyncio.to_thread(self.orchestrator.recover_stale)
            if recovered:
                logger.info(f"Recovered {recovered} stale article(s)")
            self._mark_run(TaskType.RECOVER_STALE)
        except Exception as e:
            logger.error(f"Stale recovery failed: {e}")

    def _mark_run(self, task_type: TaskType) -> None:
        for task in self.tasks:
            if task.task_type == task_type:
                task.last_run = datetime.now()
                break

    async def run_loop(self, check_interval: int = 60) -> None:
        """
        Run scheduler loop.

        Args:
            check_interval: Seconds between schedule checks
        """
        self._running = True
        logger.info("Scheduler started")

        while self._running:
            schedule.run_pending()
            await asyncio.sleep(check_interval)

        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop scheduler loop."""
        self._running = False

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "running": self._running,
            "batch_running": self._batch_running,
            "tasks": [
                {
                    "type": task.task_type.value,
                    "interval_minutes": task.interval_minutes,
                    "last_run": task.last_run.isoformat() if task.last_run else None,
                }
                for task in self.tasks
            ],
            "pending_jobs": len(schedule.jobs),
            "last_batch": self.last_summary.to_dict() if self.last_summary else None,
        }

    def clear_all(self) -> None:
        """Clear all scheduled tasks."""
        schedule.clear()
        self.tasks.clear()
        logger.info("All scheduled tasks cleared")
