"""
Backup scheduling.

Manages:
- One scheduled job per enabled storage config (cron expressions)
- Admission of due jobs onto a worker pool bounded by maxParallelJobs
- Retries with exponential backoff
- Daily retention cleanup
- Manual triggers

The time-driven loop is an APScheduler interval job that calls ``tick()``.
Cron parsing and next-fire computation are delegated to APScheduler's
CronTrigger.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.executors.pool import ThreadPoolExecutor as APThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from backup_orchestrator.backup.config import (
    BackupConfig, BackupSchedule, StorageBackupConfig, DEFAULT_STORAGE_TYPE,
)
from backup_orchestrator.backup.errors import ConfigError, ConflictError, ShutdownError, error_code
from backup_orchestrator.backup.models import BackupRecord


logger = logging.getLogger(__name__)

TICK_JOB_ID = 'scheduler_tick'
RETENTION_JOB_ID = 'retention_cleanup'
DEFAULT_TICK_SECONDS = 30
RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 300.0
CANCEL_DRAIN_SECONDS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def job_id_for(storage_type: str) -> str:
    return f"backup_{storage_type}"


def build_trigger(cron: str, tz: str) -> CronTrigger:
    """
    Parse a crontab expression.

    Raises:
        ConfigError: If the expression or timezone is invalid
    """
    try:
        return CronTrigger.from_crontab(cron, timezone=tz)
    except (ValueError, KeyError, TypeError) as e:
        raise ConfigError(f"Invalid schedule '{cron}' ({tz}): {e}", {'cron': cron, 'timezone': tz})


def next_fire_time(trigger: CronTrigger, now: datetime) -> Optional[datetime]:
    """Earliest fire time strictly after ``now``, in UTC."""
    fire_time = trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
    return fire_time.astimezone(timezone.utc) if fire_time else None


class JobState(str, Enum):
    IDLE = 'idle'
    DUE = 'due'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclass
class ScheduledJob:
    job_id: str
    storage_config: StorageBackupConfig
    cron: str
    timezone: str
    enabled: bool
    timeout_seconds: int
    max_retries: int
    trigger: CronTrigger = field(repr=False)

    state: JobState = JobState.IDLE
    last_run: Optional[datetime] = None
    last_status: Optional[JobState] = None
    last_error: Optional[str] = None
    last_record_id: Optional[str] = None
    next_execution: Optional[datetime] = None
    retry_at: Optional[datetime] = None
    retry_count: int = 0
    manual_requested_at: Optional[datetime] = None

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0

    @property
    def storage_type(self) -> str:
        return self.storage_config.type

    @property
    def due_at(self) -> Optional[datetime]:
        times = [t for t in (self.retry_at, self.next_execution, self.manual_requested_at) if t is not None]
        return min(times) if times else None

    def is_due(self, now: datetime) -> bool:
        if self.state not in (JobState.IDLE, JobState.DUE):
            return False
        if not self.enabled and self.manual_requested_at is None:
            return False
        due_at = self.due_at
        return due_at is not None and now >= due_at

    def recompute_next(self, now: datetime):
        self.next_execution = next_fire_time(self.trigger, now) if self.enabled else None

    def snapshot(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value else None

        return {
            'id': self.job_id,
            'storageType': self.storage_type,
            'cron': self.cron,
            'timezone': self.timezone,
            'enabled': self.enabled,
            'state': self.state.value,
            'timeoutSeconds': self.timeout_seconds,
            'maxRetries': self.max_retries,
            'retryCount': self.retry_count,
            'retryAt': iso(self.retry_at),
            'lastRun': iso(self.last_run),
            'lastStatus': self.last_status.value if self.last_status else None,
            'lastError': self.last_error,
            'lastRecordId': self.last_record_id,
            'nextExecution': iso(self.next_execution),
            'totalRuns': self.total_runs,
            'successfulRuns': self.successful_runs,
            'failedRuns': self.failed_runs,
        }


class BackupScheduler:
    """
    Owns the job table and admits due jobs onto a bounded worker pool.

    Args:
        tick_seconds: Interval of the time-driven loop once started
        retry_base_delay: First retry delay in seconds (doubles per attempt)
        retry_max_delay: Cap on the retry delay in seconds
        clock: Returns the current time (timezone-aware)
    """

    def __init__(
        self,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        retry_base_delay: float = RETRY_BASE_DELAY,
        retry_max_delay: float = RETRY_MAX_DELAY,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.tick_seconds = tick_seconds
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.clock = clock

        self._lock = threading.RLock()
        self._jobs: Dict[str, ScheduledJob] = {}
        self._max_parallel = 1
        self._running = 0
        self._pool: Optional[ThreadPoolExecutor] = None
        self._futures: Set[Future] = set()
        self._manager = None
        self._scheduler: Optional[BackgroundScheduler] = None
        self._config: Optional[BackupConfig] = None
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, manager):
        """
        Bind the manager that executes jobs and build the trigger loop.

        Idempotent: later calls keep the first manager.
        """
        with self._lock:
            if self._manager is not None:
                return self
            self._manager = manager

            self._scheduler = BackgroundScheduler(
                executors={'default': APThreadPoolExecutor(max_workers=2)},
                job_defaults={
                    'coalesce': True,  # Combine multiple pending instances into one
                    'max_instances': 1,  # Only one instance of a job at a time
                    'misfire_grace_time': 60
                },
                timezone='UTC'
            )
            self._scheduler.add_job(
                func=self._tick_job,
                trigger=IntervalTrigger(seconds=self.tick_seconds),
                id=TICK_JOB_ID,
                name='Backup Scheduler Tick',
                replace_existing=True
            )
        logger.info(f"Backup scheduler initialized (tick every {self.tick_seconds}s)")
        return self

    @property
    def initialized(self) -> bool:
        return self._manager is not None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running and not self._shutting_down

    def start(self):
        """
        Start the time-driven loop.

        Raises:
            RuntimeError: If initialize() was not called
        """
        if self._scheduler is None:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")
        if self._shutting_down:
            raise ShutdownError("Scheduler has been shut down")

        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"Backup scheduler started with {len(self._jobs)} job(s)")
            for job in self.get_scheduled_jobs():
                logger.info(f"  - {job['id']}: {job['cron']} (next run: {job['nextExecution'] or 'N/A'})")
        else:
            logger.info("Backup scheduler already running")

    def shutdown(self, grace_period: float = 30):
        """
        Stop admitting jobs and wait for in-flight runs.

        Runs not finished after ``grace_period`` seconds are cancelled through
        the manager and recorded as failed with ShutdownError.
        """
        with self._lock:
            if self._shutting_down:
                return
            self._shutting_down = True

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        with self._lock:
            futures = list(self._futures)

        if futures:
            logger.info(f"Waiting up to {grace_period}s for {len(futures)} running backup(s)")
            _, pending = wait(futures, timeout=grace_period)
            if pending:
                logger.warning(f"Cancelling {len(pending)} backup(s) still running after grace period")
                for future in pending:
                    future.cancel()
                if self._manager is not None:
                    self._manager.cancel_active_runs()
                _, pending = wait(pending, timeout=CANCEL_DRAIN_SECONDS)
                if pending:
                    logger.error(f"{len(pending)} backup(s) did not stop after cancellation")

        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            self._jobs.clear()
        logger.info("Backup scheduler stopped")

    # ------------------------------------------------------------------
    # Job table
    # ------------------------------------------------------------------

    def _build_job(self, storage_config: StorageBackupConfig, schedule: BackupSchedule,
                   now: datetime) -> ScheduledJob:
        job = ScheduledJob(
            job_id=job_id_for(storage_config.type),
            storage_config=storage_config,
            cron=schedule.cron,
            timezone=schedule.timezone,
            enabled=schedule.enabled,
            timeout_seconds=schedule.timeout_seconds,
            max_retries=schedule.max_retries,
            trigger=build_trigger(schedule.cron, schedule.timezone),
        )
        job.recompute_next(now)
        return job

    def schedule_from_config(self, config: BackupConfig) -> List[str]:
        """
        Derive one job per enabled storage config.

        Storage configs without their own schedule use ``defaultSchedule``.
        With no enabled storage config a single job for the default storage
        type is created. Existing jobs with the same id are replaced and keep
        their run counters; jobs no longer in the config are removed.

        Returns:
            Ids of the scheduled jobs

        Raises:
            ConfigError: If a cron expression is invalid or maxParallelJobs < 1
        """
        max_parallel = config.global_settings.max_parallel_jobs
        if max_parallel < 1:
            raise ConfigError(f"maxParallelJobs must be >= 1, got {max_parallel}")

        now = self.clock()
        enabled_configs = [s for s in config.storage_configs if s.enabled]
        if enabled_configs:
            new_jobs = [
                self._build_job(s, s.schedule or config.default_schedule, now) for s in enabled_configs
            ]
        else:
            new_jobs = [
                self._build_job(StorageBackupConfig(type=DEFAULT_STORAGE_TYPE), config.default_schedule, now)
            ]

        with self._lock:
            for job in new_jobs:
                existing = self._jobs.get(job.job_id)
                if existing is not None:
                    job.total_runs = existing.total_runs
                    job.successful_runs = existing.successful_runs
                    job.failed_runs = existing.failed_runs
                    job.last_run = existing.last_run
                    job.last_status = existing.last_status
                    job.last_error = existing.last_error
                    job.last_record_id = existing.last_record_id
                    if existing.state == JobState.RUNNING:
                        job.state = JobState.RUNNING

            new_ids = {job.job_id for job in new_jobs}
            for removed in set(self._jobs) - new_ids:
                logger.info(f"Unscheduled backup job: {removed}")

            self._jobs = {job.job_id: job for job in new_jobs}
            self._config = config
            self._resize_pool(max_parallel)

        if self._scheduler is not None and not self._shutting_down:
            self._scheduler.add_job(
                func=self._run_retention,
                trigger=CronTrigger(hour=3, minute=0, timezone=config.default_schedule.timezone),
                id=RETENTION_JOB_ID,
                name='Daily Retention Cleanup',
                replace_existing=True
            )

        for job in new_jobs:
            next_run = job.next_execution.isoformat() if job.next_execution else 'N/A'
            logger.info(f"Scheduled backup job: {job.job_id} ({job.cron}, next run: {next_run})")
        return [job.job_id for job in new_jobs]

    def _resize_pool(self, max_parallel: int):
        if self._pool is not None and self._max_parallel == max_parallel:
            return
        old_pool = self._pool
        self._max_parallel = max_parallel
        self._pool = ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix='backup-worker')
        if old_pool is not None:
            # In-flight runs keep their threads until they finish
            old_pool.shutdown(wait=False)

    def unschedule(self, job_id: str) -> bool:
        """Remove a job. A running instance is allowed to finish."""
        with self._lock:
            removed = self._jobs.pop(job_id, None)
        if removed:
            logger.info(f"Unscheduled backup job: {job_id}")
        return removed is not None

    def set_enabled(self, job_id: str, enabled: bool) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            job.enabled = enabled
            if not enabled:
                job.retry_at = None
            if job.state == JobState.DUE:
                job.state = JobState.IDLE
            job.recompute_next(self.clock())
        logger.info(f"Backup job {job_id} {'enabled' if enabled else 'disabled'}")
        return True

    def update_schedule(self, job_id: str, cron: Optional[str] = None, tz: Optional[str] = None,
                        timeout_seconds: Optional[int] = None, max_retries: Optional[int] = None) -> bool:
        """
        Change a job's schedule.

        Raises:
            ConfigError: If the new cron expression or timezone is invalid
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            new_cron = cron or job.cron
            new_tz = tz or job.timezone
            trigger = build_trigger(new_cron, new_tz)
            if timeout_seconds is not None:
                if timeout_seconds < 1:
                    raise ConfigError(f"timeout_seconds must be >= 1, got {timeout_seconds}")
                job.timeout_seconds = timeout_seconds
            if max_retries is not None:
                if max_retries < 0:
                    raise ConfigError(f"max_retries must be >= 0, got {max_retries}")
                job.max_retries = max_retries
            job.cron, job.timezone, job.trigger = new_cron, new_tz, trigger
            job.recompute_next(self.clock())
        logger.info(f"Updated schedule of {job_id}: {new_cron} ({new_tz})")
        return True

    def trigger_now(self, job_id: str) -> bool:
        """Make a job due immediately without moving its cron schedule."""
        now = self.clock()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            job.manual_requested_at = now

        if self.running:
            # Run the loop right away instead of waiting for the next tick
            self._scheduler.add_job(
                func=self._tick_job,
                trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=1)),
                id=f"manual_{job_id}_{int(now.timestamp())}",
                name=f"Manual: {job_id}",
                replace_existing=True
            )
        logger.info(f"Manually triggered backup job: {job_id}")
        return True

    # ------------------------------------------------------------------
    # Trigger loop
    # ------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> List[Future]:
        """
        Admit due jobs while worker slots are free.

        Due jobs are admitted earliest due time first. Jobs that find no free
        slot stay DUE and are picked up by a later tick.

        Returns:
            Futures of the runs submitted by this tick
        """
        now = now or self.clock()
        submitted = []

        with self._lock:
            if self._shutting_down or self._manager is None or self._pool is None:
                return []

            due = sorted(
                (job for job in self._jobs.values() if job.is_due(now)),
                key=lambda job: (job.due_at, job.job_id)
            )
            for job in due:
                job.state = JobState.DUE

            for job in due:
                if self._running >= self._max_parallel:
                    break
                self._running += 1

                is_retry = job.retry_at is not None and job.retry_at <= now
                if not is_retry and job.retry_at is None:
                    # Natural firing: a new cycle starts with zero retries
                    job.retry_count = 0
                job.retry_at = None
                job.manual_requested_at = None
                job.state = JobState.RUNNING
                job.last_run = now

                future = self._pool.submit(self._run_job, job.job_id, job.storage_config, job.timeout_seconds)
                self._futures.add(future)
                future.add_done_callback(self._discard_future)
                submitted.append(future)

            waiting = len(due) - len(submitted)

        if submitted:
            logger.debug(f"Admitted {len(submitted)} backup job(s)")
        if waiting:
            logger.debug(f"{waiting} due job(s) waiting for a free worker slot")
        return submitted

    def _discard_future(self, future: Future):
        with self._lock:
            self._futures.discard(future)

    def _tick_job(self):
        try:
            self.tick()
        except Exception as e:
            logger.exception(f"Scheduler tick failed: {e}")

    def _run_job(self, job_id: str, storage_config: StorageBackupConfig, timeout_seconds: int):
        record = None
        error = None
        counted = True
        try:
            record = self._manager.run_backup(storage_config, timeout_seconds=timeout_seconds)
        except ConflictError as e:
            logger.warning(f"Skipped {job_id}: {e}")
            counted = False
        except ShutdownError as e:
            logger.info(f"Skipped {job_id}: {e}")
            counted = False
        except Exception as e:
            logger.exception(f"Backup job {job_id} raised: {e}")
            error = e
        finally:
            self._complete(job_id, record, error, counted)
        return record

    def _complete(self, job_id: str, record: Optional[BackupRecord], error: Optional[BaseException],
                  counted: bool):
        now = self.clock()
        with self._lock:
            self._running -= 1
            job = self._jobs.get(job_id)
            if job is None:
                return

            if counted:
                job.total_runs += 1
                if record is not None and record.success:
                    job.successful_runs += 1
                    job.last_status = JobState.SUCCEEDED
                    job.last_error = None
                    job.retry_count = 0
                    job.retry_at = None
                else:
                    job.failed_runs += 1
                    job.last_status = JobState.FAILED
                    job.last_error = record.error if record is not None else str(error)
                    code = record.error_code if record is not None else error_code(error)
                    self._schedule_retry(job, code, now)

                if record is not None:
                    job.last_record_id = record.id

            job.state = JobState.IDLE
            job.recompute_next(now)

    def _schedule_retry(self, job: ScheduledJob, code: Optional[str], now: datetime):
        if code == ShutdownError.code or self._shutting_down:
            job.retry_at = None
            return
        if job.retry_count < job.max_retries:
            delay = min(self.retry_base_delay * 2 ** job.retry_count, self.retry_max_delay)
            job.retry_count += 1
            job.retry_at = now + timedelta(seconds=delay)
            logger.info(
                f"Retrying {job.job_id} in {delay:.0f}s (attempt {job.retry_count}/{job.max_retries})"
            )
        else:
            job.retry_at = None
            logger.warning(f"{job.job_id} exhausted {job.max_retries} retries; waiting for next scheduled run")

    def _run_retention(self):
        if self._manager is None:
            return
        try:
            if not self._manager.get_config().retention_policy.auto_cleanup:
                return
            report = self._manager.cleanup_old_backups()
            logger.info(f"Retention cleanup deleted {len(report.deleted)} backup(s)")
        except Exception as e:
            logger.exception(f"Retention cleanup failed: {e}")

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_next_executions(self) -> Dict[str, Optional[datetime]]:
        with self._lock:
            return {job_id: job.next_execution for job_id, job in self._jobs.items()}

    def get_scheduled_jobs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._jobs[job_id].snapshot() for job_id in sorted(self._jobs)]

    def get_scheduled_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def get_job_state(self, job_id: str) -> Optional[JobState]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.state if job else None

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            jobs = list(self._jobs.values())
            total_runs = sum(job.total_runs for job in jobs)
            successful_runs = sum(job.successful_runs for job in jobs)
            next_times = [job.next_execution for job in jobs if job.enabled and job.next_execution]
            next_execution = min(next_times) if next_times else None

            by_type = {
                job.storage_type: {
                    'jobId': job.job_id,
                    'enabled': job.enabled,
                    'state': job.state.value,
                    'totalRuns': job.total_runs,
                    'successfulRuns': job.successful_runs,
                    'failedRuns': job.failed_runs,
                    'lastRun': job.last_run.isoformat() if job.last_run else None,
                    'nextExecution': job.next_execution.isoformat() if job.next_execution else None,
                }
                for job in jobs
            }

            return {
                'running': self.running,
                'totalJobs': len(jobs),
                'enabledJobs': sum(1 for job in jobs if job.enabled),
                'runningJobs': self._running,
                'maxParallelJobs': self._max_parallel,
                'totalRuns': total_runs,
                'successfulRuns': successful_runs,
                'failedRuns': total_runs - successful_runs,
                'successRate': successful_runs / total_runs * 100 if total_runs else 0,
                'nextExecution': next_execution.isoformat() if next_execution else None,
                'storageTypes': by_type,
            }
