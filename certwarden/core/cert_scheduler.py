"""
Certificate reconciliation scheduler.

Single control loop driving reconciliation passes for every configured
domain group: once at startup, after every change to the domains file and
on a fixed interval (APScheduler). Events are queued and handled one at a
time, so two passes never overlap.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import ConfigError, load_domains_config
from core.change_notifier import ChangeEvent, ChangeNotifier
from core.reconciler import ReconcileError
from core.storage.base import StorageBackend
from models.certificate import DomainGroup, ReconcileResult

logger = logging.getLogger(__name__)


class SchedulerEventKind(str, Enum):
    CHANGE = "change"
    TIMER = "timer"
    STOP = "stop"


@dataclass(frozen=True)
class SchedulerEvent:
    kind: SchedulerEventKind
    change: ChangeEvent | None = None


class CertScheduler:
    """
    Process-wide reconciliation driver.

    Runs:
    - A startup pass over every configured group
    - A reload and pass after each write/create of the domains file
    - A pass over the known groups every check interval
    """

    def __init__(
        self,
        storage: StorageBackend,
        domains_file: Path,
        groups: list[DomainGroup],
        interval_hours: float = 24,
        settle_delay: float = 0.1,
        notifier_factory=ChangeNotifier,
    ):
        self.storage = storage
        self.domains_file = Path(domains_file)
        self.groups: list[DomainGroup] = list(groups)
        self.interval_hours = interval_hours
        self.settle_delay = settle_delay
        self.notifier_factory = notifier_factory
        self.scheduler: AsyncIOScheduler | None = None
        self._queue: asyncio.Queue[SchedulerEvent] = asyncio.Queue()
        self._watch_stop = asyncio.Event()
        self._running = False

    async def run_pass(self, reason: str) -> list[ReconcileResult]:
        """Reconcile every known group sequentially, in configuration order."""
        groups = list(self.groups)
        logger.info(f"Starting {reason} reconciliation pass for {len(groups)} domain groups")

        results = []
        failed_count = 0
        for group in groups:
            logger.info(f"Processing certificate for domains: {group.domains}")
            try:
                result = await self.storage.reconcile(group)
                results.append(result)
            except ReconcileError as e:
                logger.error(f"Error reconciling certificate for {group.domains} at step {e.step}: {e.message}")
                failed_count += 1
            except Exception as e:
                logger.exception(f"Unexpected error reconciling certificate for {group.domains}: {e}")
                failed_count += 1

        degraded = sum(1 for result in results if result.degraded)
        renewed = sum(1 for result in results if result.renewed)
        logger.info(
            f"Reconciliation pass ({reason}) complete: {renewed} renewed, "
            f"{degraded} self-signed, {failed_count} failed"
        )
        return results

    async def reload_domains(self) -> bool:
        """
        Reload the domains file after the settle delay.

        A malformed file leaves the current groups untouched.
        """
        await asyncio.sleep(self.settle_delay)
        try:
            domains_config = load_domains_config(self.domains_file)
        except ConfigError as e:
            logger.error(f"Error loading domains, keeping {len(self.groups)} known groups: {e.message}")
            return False

        self.groups = domains_config.groups
        logger.info(f"Loaded {len(self.groups)} domain groups")
        return True

    async def handle_event(self, event: SchedulerEvent) -> None:
        if event.kind == SchedulerEventKind.CHANGE:
            logger.info(f"Domains file modified: {event.change.path if event.change else self.domains_file}")
            if await self.reload_domains():
                await self.run_pass("change")
        elif event.kind == SchedulerEventKind.TIMER:
            await self.run_pass("timer")

    async def _enqueue_timer(self) -> None:
        self._queue.put_nowait(SchedulerEvent(SchedulerEventKind.TIMER))

    async def _watch(self, notifier) -> None:
        try:
            async for change in notifier:
                self._queue.put_nowait(SchedulerEvent(SchedulerEventKind.CHANGE, change=change))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Watcher error, domains file changes are no longer tracked: {e}")

    async def run(self) -> None:
        """
        Run until stop() is called.

        Raises:
            WatchError: if the domains file cannot be watched
        """
        notifier = self.notifier_factory(self.domains_file, stop_event=self._watch_stop)

        await self.run_pass("startup")

        self.scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self.scheduler.add_job(
            self._enqueue_timer,
            IntervalTrigger(hours=self.interval_hours),
            id="cert_reconcile_interval",
            name="Certificate Reconciliation",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        watch_task = asyncio.create_task(self._watch(notifier))
        self._running = True
        logger.info(f"Watching {self.domains_file} for changes...")

        try:
            while True:
                event = await self._queue.get()
                if event.kind == SchedulerEventKind.STOP:
                    break
                await self.handle_event(event)
        finally:
            self._running = False
            self.scheduler.shutdown(wait=False)
            self._watch_stop.set()
            watch_task.cancel()
            await asyncio.gather(watch_task, return_exceptions=True)
            logger.info("Certificate scheduler stopped")

    def stop(self) -> None:
        """Stop the loop after the event being handled."""
        self._queue.put_nowait(SchedulerEvent(SchedulerEventKind.STOP))

    def trigger_pass(self) -> None:
        """Queue a pass over the known groups, as the timer does."""
        self._queue.put_nowait(SchedulerEvent(SchedulerEventKind.TIMER))

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times for all jobs."""
        jobs = {}
        if self.scheduler is None:
            return jobs
        for job in self.scheduler.get_jobs():
            jobs[job.id] = {"name": job.name, "next_run": job.next_run_time.isoformat() if job.next_run_time else None}
        return jobs
