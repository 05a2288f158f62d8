# Gunicorn configuration for the backup orchestrator
# Only one worker owns the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
wsgi_app = 'backup_orchestrator:create_app()'

# Running backups are drained on shutdown
graceful_timeout = int(os.environ.get('SHUTDOWN_GRACE_SECONDS', 30)) + 10


def post_fork(server, worker):
    """
    Called in the worker right after fork, before the app is loaded.

    Designates the first worker (worker.age == 0) as the scheduler owner so
    that create_app() starts the backup scheduler in exactly one process.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
