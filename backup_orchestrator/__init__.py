import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backup_orchestrator.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # APScheduler logs every tick at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def load_engine_config(app):
    """Backup configuration from a template, or a config file merged over BACKUP_* env defaults."""
    from backup_orchestrator.backup.config import config_from_template, load_backup_config

    template = app.config.get('BACKUP_TEMPLATE')
    if template:
        app.logger.info(f"Using backup config template: {template}")
        return config_from_template(template)

    path = app.config.get('BACKUP_CONFIG_PATH')
    if path:
        app.logger.info(f"Loading backup config from {path}")
    return load_backup_config(path)


def default_handlers():
    from backup_orchestrator.backup.handlers import (
        HandlerRegistry, FileSystemBackupHandler, SQLiteBackupHandler,
    )
    return HandlerRegistry([FileSystemBackupHandler(), SQLiteBackupHandler()])


def create_app(config_name=None, backup_system=None):
    """
    Flask application factory

    Args:
        config_name: 'development', 'production' or 'testing' (default: FLASK_ENV)
        backup_system: Prebuilt BackupSystem to serve instead of building one from config
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from backup_orchestrator.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    catalog_url = app.config['CATALOG_DATABASE_URL']
    if catalog_url.startswith('sqlite:///') and catalog_url != 'sqlite:///:memory:':
        os.makedirs(os.path.dirname(os.path.abspath(catalog_url.replace('sqlite:///', '', 1))), exist_ok=True)

    # Register blueprints
    from backup_orchestrator.routes import health_routes, backup_routes
    app.register_blueprint(health_routes.bp)
    app.register_blueprint(backup_routes.bp)

    if backup_system is not None:
        app.extensions['backup_system'] = backup_system
        return app

    # Decide whether this process owns the scheduler loop
    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    if is_development:
        should_start_scheduler = is_reloader_child
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
    else:
        should_start_scheduler = is_scheduler_worker
        app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")
    should_start_scheduler = should_start_scheduler and app.config.get('SCHEDULER_ENABLED', True)

    from backup_orchestrator.system import initialize_backup_system, shutdown_backup_system

    system = initialize_backup_system(
        config=load_engine_config(app),
        handlers=default_handlers(),
        catalog_url=catalog_url,
        temp_dir=app.config['TEMP_DIR'],
        tick_seconds=app.config['SCHEDULER_TICK_SECONDS'],
        start=should_start_scheduler,
    )
    app.extensions['backup_system'] = system

    # Stop the scheduler and drain running backups on exit
    atexit.register(shutdown_backup_system, system, app.config['SHUTDOWN_GRACE_SECONDS'])

    if should_start_scheduler:
        app.logger.info("Backup scheduler started in this process")
    else:
        app.logger.info("Backup scheduler not started in this process (not designated scheduler worker)")

    return app
