import os
import tempfile


class Config:
    """Base configuration"""

    DEBUG = False
    TESTING = False

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

    # Backup engine
    BACKUP_CONFIG_PATH = os.environ.get('BACKUP_CONFIG_PATH')  # .json / .yaml merged over env defaults
    BACKUP_TEMPLATE = os.environ.get('BACKUP_TEMPLATE')  # 'minimal' or 'production'

    # Record catalog (SQLAlchemy URL)
    CATALOG_DATABASE_URL = os.environ.get('CATALOG_DATABASE_URL') or 'sqlite:////data/backup_catalog.db'

    # Logging / temp
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TICK_SECONDS = int(os.environ.get('SCHEDULER_TICK_SECONDS', 30))
    SHUTDOWN_GRACE_SECONDS = int(os.environ.get('SHUTDOWN_GRACE_SECONDS', 30))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    DATA_DIR = os.path.join(Config.BASE_DIR, 'data')
    CATALOG_DATABASE_URL = f'sqlite:///{os.path.join(DATA_DIR, "backup_catalog.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    CATALOG_DATABASE_URL = 'sqlite://'
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'backup_orchestrator_test', 'logs')
    TEMP_DIR = os.path.join(tempfile.gettempdir(), 'backup_orchestrator_test', 'temp')
    SCHEDULER_ENABLED = False
    SCHEDULER_TICK_SECONDS = 1
    SHUTDOWN_GRACE_SECONDS = 1


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
