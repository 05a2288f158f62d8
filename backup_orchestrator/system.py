"""
Process lifecycle entry points for the backup engine.

The hosting application builds one BackupSystem at startup and passes it to
everything that needs the manager or scheduler. There is no module-level
engine state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Union

from backup_orchestrator.backup.catalog import RecordCatalog
from backup_orchestrator.backup.config import BackupConfig, default_backup_config
from backup_orchestrator.backup.handlers import HandlerRegistry, StorageBackupHandler
from backup_orchestrator.backup.manager import BackupManager
from backup_orchestrator.backup.notifications import Notifier
from backup_orchestrator.backup.storage import DestinationRegistry
from backup_orchestrator.scheduler import BackupScheduler, DEFAULT_TICK_SECONDS


logger = logging.getLogger(__name__)

# Minimum success rate (percent) for a healthy system
HEALTHY_SUCCESS_RATE = 80


@dataclass
class BackupSystem:
    manager: BackupManager
    scheduler: BackupScheduler


def initialize_backup_system(
    config: Optional[BackupConfig] = None,
    handlers: Optional[Union[HandlerRegistry, Iterable[StorageBackupHandler]]] = None,
    destinations: Optional[DestinationRegistry] = None,
    catalog_url: str = 'sqlite://',
    temp_dir: Optional[str] = None,
    notifier: Optional[Notifier] = None,
    tick_seconds: float = DEFAULT_TICK_SECONDS,
    start: bool = True,
) -> BackupSystem:
    """
    Build the manager and scheduler and start scheduling.

    Order: manager storage is initialized, then the scheduler is bound to the
    manager, then jobs are scheduled from config (only when backups are
    enabled) and the trigger loop is started.

    Args:
        config: Backup configuration (default: from BACKUP_* environment variables)
        handlers: Storage handlers
        destinations: Destination sinks (default: local, aws-s3 and sftp)
        catalog_url: SQLAlchemy URL of the record catalog
        temp_dir: Work directory for runs
        notifier: Run outcome notifier
        tick_seconds: Interval of the scheduler loop
        start: Start the trigger loop (False lets callers drive ``tick()`` themselves)

    Returns:
        BackupSystem holding the manager and scheduler

    Raises:
        ConfigError: If the configuration or a schedule is invalid. Nothing is
            left running when initialization fails.
    """
    if config is None:
        config = default_backup_config()

    manager = BackupManager(
        config,
        handlers=handlers,
        destinations=destinations,
        catalog=RecordCatalog(catalog_url),
        temp_dir=temp_dir,
        notifier=notifier,
    )
    scheduler = BackupScheduler(tick_seconds=tick_seconds)

    try:
        manager.initialize()
        scheduler.initialize(manager)
        if config.enabled:
            scheduler.schedule_from_config(config)
            if start:
                scheduler.start()
        else:
            logger.info("Backups are disabled; scheduler not started")
    except Exception:
        logger.error("Backup system initialization failed", exc_info=True)
        scheduler.shutdown(grace_period=0)
        manager.shutdown(grace_period=0)
        raise

    logger.info("Backup system initialized")
    return BackupSystem(manager=manager, scheduler=scheduler)


def shutdown_backup_system(system: BackupSystem, grace_period: float = 30):
    """Stop the scheduler first so no new runs start, then drain the manager."""
    logger.info("Shutting down backup system")
    system.scheduler.shutdown(grace_period=grace_period)
    system.manager.shutdown(grace_period=grace_period)
    logger.info("Backup system shut down")


def check_backup_system_health(manager: BackupManager, scheduler: BackupScheduler) -> Dict[str, Any]:
    """
    Combine manager and scheduler state into a health verdict.

    Healthy means: backups enabled, success rate of at least 80%, at least
    one enabled job and at least one destination. Never raises; any error
    yields an unhealthy report carrying the error.

    Returns:
        {'healthy': bool, 'details': {...}}
    """
    details: Dict[str, Any] = {}
    try:
        config = manager.get_config()
        statistics = manager.get_statistics()

        details['manager'] = {
            'enabled': config.enabled,
            'maxParallelJobs': config.global_settings.max_parallel_jobs,
            'totalBackups': statistics.total_backups,
            'successfulBackups': statistics.successful_backups,
            'successRate': statistics.success_rate,
            'lastBackupTime': statistics.last_backup_time.isoformat() if statistics.last_backup_time else None,
            'activeRuns': manager.active_runs(),
        }

        scheduler_stats = scheduler.get_statistics()
        next_executions = scheduler.get_next_executions()
        details['scheduler'] = {
            'running': scheduler_stats['running'],
            'totalJobs': scheduler_stats['totalJobs'],
            'enabledJobs': scheduler_stats['enabledJobs'],
            'totalRuns': scheduler_stats['totalRuns'],
            'successRate': scheduler_stats['successRate'],
            'nextExecution': scheduler_stats['nextExecution'],
            'upcomingJobs': sum(1 for value in next_executions.values() if value is not None),
        }

        details['storage'] = {
            storage_config.type: {
                'enabled': storage_config.enabled,
                'backupType': storage_config.backup_type,
                'compression': storage_config.compression,
                'hasPreHooks': bool(storage_config.pre_backup_hooks),
                'hasPostHooks': bool(storage_config.post_backup_hooks),
                'handlerRegistered': storage_config.type in manager.handlers,
            }
            for storage_config in config.storage_configs
        }

        details['destinations'] = [
            {'type': d.type, 'path': d.path, 'encryption': d.encryption}
            for d in config.destinations
        ]

        healthy = (
            config.enabled
            and statistics.success_rate >= HEALTHY_SUCCESS_RATE
            and scheduler_stats['enabledJobs'] > 0
            and len(config.destinations) > 0
        )
        return {'healthy': bool(healthy), 'details': details}

    except Exception as e:
        logger.error(f"Backup health check failed: {e}")
        return {
            'healthy': False,
            'details': {
                'error': str(e),
                'timestamp': datetime.now(timezone.utc).isoformat(),
            },
        }
