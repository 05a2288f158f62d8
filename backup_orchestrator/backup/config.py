"""
Backup engine configuration.

BackupConfig is created once at startup, either from an explicit document,
from a file merged over environment defaults, or from one of the built-in
templates. It is mutated only through the update helpers below, which all
return a new, validated config.

Recognized document keys follow the camelCase names of the configuration
surface (``defaultSchedule.timeout``); snake_case spellings are accepted too.
"""

import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml

from .errors import ConfigError


SUPPORTED_STORAGE_TYPES = (
    'sqlite', 'postgres', 'redis', 'neo4j', 'qdrant', 'milvus', 'chroma',
    'pinecone', 'pgvector', 'faiss', 'weaviate', 'file-system', 'monitoring-data',
)
SUPPORTED_BACKUP_TYPES = ('full', 'incremental', 'differential')
SUPPORTED_COMPRESSION_TYPES = ('none', 'gzip', 'brotli', 'lz4')
SUPPORTED_DESTINATION_TYPES = ('local', 'aws-s3', 'azure-blob', 'gcp-storage', 'ftp', 'sftp')
SUPPORTED_VERIFICATION_TYPES = ('checksum', 'integrity-check', 'restore-test', 'size-validation')
SUPPORTED_METADATA_FORMATS = ('json', 'yaml')

# Storage type of the job created when no storage config is enabled
DEFAULT_STORAGE_TYPE = 'default'

Hook = Union[str, Callable[[], Any]]


@dataclass
class BackupSchedule:
    cron: str = '0 2 * * *'
    timezone: str = 'UTC'
    enabled: bool = True
    timeout_seconds: int = 3600
    max_retries: int = 3


@dataclass
class BackupDestination:
    type: str = 'local'
    path: str = './backups'
    encryption: bool = False
    encryption_key: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetentionPolicy:
    daily_retention_days: int = 7
    weekly_retention_weeks: int = 4
    monthly_retention_months: int = 12
    max_backups: int = 100
    auto_cleanup: bool = True


@dataclass
class StorageBackupConfig:
    type: str
    enabled: bool = True
    backup_type: str = 'full'
    compression: str = 'gzip'
    options: Dict[str, Any] = field(default_factory=dict)
    pre_backup_hooks: List[Hook] = field(default_factory=list)
    post_backup_hooks: List[Hook] = field(default_factory=list)
    schedule: Optional[BackupSchedule] = None


@dataclass
class NotificationSettings:
    on_success: bool = False
    on_failure: bool = True
    channels: List[str] = field(default_factory=list)


@dataclass
class GlobalSettings:
    max_parallel_jobs: int = 3
    enable_verification: bool = True
    verification_types: List[str] = field(default_factory=lambda: ['checksum', 'size-validation'])
    metadata_format: str = 'json'
    notifications: NotificationSettings = field(default_factory=NotificationSettings)


@dataclass
class BackupConfig:
    enabled: bool = True
    default_schedule: BackupSchedule = field(default_factory=BackupSchedule)
    destinations: List[BackupDestination] = field(default_factory=list)
    retention_policy: RetentionPolicy = field(default_factory=RetentionPolicy)
    storage_configs: List[StorageBackupConfig] = field(default_factory=list)
    global_settings: GlobalSettings = field(default_factory=GlobalSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'BackupConfig':
        """
        Build and validate a BackupConfig from a configuration document.

        Raises:
            ConfigError: If any value is missing, out of range or of the wrong type
        """
        if not isinstance(data, Mapping):
            raise ConfigError("Backup configuration must be a mapping")

        config = cls(
            enabled=_bool(_get(data, 'enabled', default=True), 'enabled'),
            default_schedule=_parse_schedule(
                _get(data, 'defaultSchedule', 'default_schedule', default={}), 'defaultSchedule'
            ),
            destinations=[
                _parse_destination(item, f'destinations[{i}]')
                for i, item in enumerate(_list(_get(data, 'destinations', default=[]), 'destinations'))
            ],
            retention_policy=_parse_retention(
                _get(data, 'retentionPolicy', 'retention_policy', default={}), 'retentionPolicy'
            ),
            storage_configs=[
                _parse_storage_config(item, f'storageConfigs[{i}]')
                for i, item in enumerate(
                    _list(_get(data, 'storageConfigs', 'storage_configs', default=[]), 'storageConfigs')
                )
            ],
            global_settings=_parse_global(
                _get(data, 'global', 'global_settings', default={}), 'global'
            ),
        )
        config.validate()
        return config

    def validate(self) -> 'BackupConfig':
        """Check cross-field invariants. Returns self for chaining."""
        if self.enabled and not self.destinations:
            raise ConfigError("At least one backup destination is required when backups are enabled")
        if self.global_settings.max_parallel_jobs < 1:
            raise ConfigError(
                f"global.maxParallelJobs must be >= 1, got {self.global_settings.max_parallel_jobs}"
            )
        seen = set()
        for storage_config in self.storage_configs:
            if storage_config.type in seen:
                raise ConfigError(f"Duplicate storage config for type: {storage_config.type}")
            seen.add(storage_config.type)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase configuration document."""
        return {
            'enabled': self.enabled,
            'defaultSchedule': _schedule_to_dict(self.default_schedule),
            'destinations': [
                {
                    'type': d.type,
                    'path': d.path,
                    'encryption': d.encryption,
                    'encryptionKey': d.encryption_key,
                    'config': dict(d.config),
                }
                for d in self.destinations
            ],
            'retentionPolicy': {
                'dailyRetentionDays': self.retention_policy.daily_retention_days,
                'weeklyRetentionWeeks': self.retention_policy.weekly_retention_weeks,
                'monthlyRetentionMonths': self.retention_policy.monthly_retention_months,
                'maxBackups': self.retention_policy.max_backups,
                'autoCleanup': self.retention_policy.auto_cleanup,
            },
            'storageConfigs': [
                {
                    'type': s.type,
                    'enabled': s.enabled,
                    'backupType': s.backup_type,
                    'compression': s.compression,
                    'options': dict(s.options),
                    # Callable hooks only exist in-process
                    'preBackupHooks': [h for h in s.pre_backup_hooks if isinstance(h, str)],
                    'postBackupHooks': [h for h in s.post_backup_hooks if isinstance(h, str)],
                    'schedule': _schedule_to_dict(s.schedule) if s.schedule else None,
                }
                for s in self.storage_configs
            ],
            'global': {
                'maxParallelJobs': self.global_settings.max_parallel_jobs,
                'enableVerification': self.global_settings.enable_verification,
                'verificationTypes': list(self.global_settings.verification_types),
                'metadataFormat': self.global_settings.metadata_format,
                'notifications': {
                    'onSuccess': self.global_settings.notifications.on_success,
                    'onFailure': self.global_settings.notifications.on_failure,
                    'channels': list(self.global_settings.notifications.channels),
                },
            },
        }

    def copy(self) -> 'BackupConfig':
        return copy.deepcopy(self)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

_MISSING = object()


def _get(data: Mapping[str, Any], *keys: str, default: Any = _MISSING) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    if default is _MISSING:
        raise ConfigError(f"Missing required configuration key: {keys[0]}")
    return default


def _mapping(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{path} must be a mapping, got {type(value).__name__}")
    return value


def _list(value: Any, path: str) -> list:
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{path} must be a list, got {type(value).__name__}")
    return list(value)


def _bool(value: Any, path: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{path} must be a boolean, got {value!r}")


def _int(value: Any, path: str, minimum: int, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{path} must be an integer, got {value!r}")
    if value < minimum or value > maximum:
        raise ConfigError(f"{path} must be between {minimum} and {maximum}, got {value}")
    return value


def _choice(value: Any, path: str, choices) -> str:
    if value not in choices:
        raise ConfigError(f"Invalid value for {path}: {value!r}. Valid options: {list(choices)}")
    return value


def _string(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{path} must be a non-empty string")
    return value


def _hooks(value: Any, path: str) -> List[Hook]:
    hooks = _list(value, path)
    for i, hook in enumerate(hooks):
        if not (isinstance(hook, str) or callable(hook)):
            raise ConfigError(f"{path}[{i}] must be a command string or a callable")
    return hooks


def _parse_schedule(data: Any, path: str) -> BackupSchedule:
    data = _mapping(data, path)
    if 'timeoutSeconds' in data or 'timeout_seconds' in data:
        timeout_seconds = _int(
            _get(data, 'timeoutSeconds', 'timeout_seconds'), f'{path}.timeoutSeconds', 1, 1440 * 60
        )
    else:
        # "timeout" is expressed in minutes
        timeout_seconds = _int(_get(data, 'timeout', default=60), f'{path}.timeout', 1, 1440) * 60

    return BackupSchedule(
        cron=_string(_get(data, 'cron', default='0 2 * * *'), f'{path}.cron'),
        timezone=_string(_get(data, 'timezone', default='UTC'), f'{path}.timezone'),
        enabled=_bool(_get(data, 'enabled', default=True), f'{path}.enabled'),
        timeout_seconds=timeout_seconds,
        max_retries=_int(
            _get(data, 'retries', 'maxRetries', 'max_retries', default=3), f'{path}.retries', 0, 10
        ),
    )


def _parse_destination(data: Any, path: str) -> BackupDestination:
    data = _mapping(data, path)
    return BackupDestination(
        type=_choice(_get(data, 'type'), f'{path}.type', SUPPORTED_DESTINATION_TYPES),
        path=_string(_get(data, 'path'), f'{path}.path'),
        encryption=_bool(_get(data, 'encryption', default=False), f'{path}.encryption'),
        encryption_key=_get(data, 'encryptionKey', 'encryption_key', default=None),
        config=dict(_mapping(_get(data, 'config', default={}), f'{path}.config')),
    )


def _parse_retention(data: Any, path: str) -> RetentionPolicy:
    data = _mapping(data, path)
    return RetentionPolicy(
        daily_retention_days=_int(
            _get(data, 'dailyRetentionDays', 'daily_retention_days', default=7),
            f'{path}.dailyRetentionDays', 1, 365
        ),
        weekly_retention_weeks=_int(
            _get(data, 'weeklyRetentionWeeks', 'weekly_retention_weeks', default=4),
            f'{path}.weeklyRetentionWeeks', 1, 104
        ),
        monthly_retention_months=_int(
            _get(data, 'monthlyRetentionMonths', 'monthly_retention_months', default=12),
            f'{path}.monthlyRetentionMonths', 1, 60
        ),
        max_backups=_int(
            _get(data, 'maxBackups', 'max_backups', default=100), f'{path}.maxBackups', 1, 1000
        ),
        auto_cleanup=_bool(
            _get(data, 'autoCleanup', 'auto_cleanup', default=True), f'{path}.autoCleanup'
        ),
    )


def _parse_storage_config(data: Any, path: str) -> StorageBackupConfig:
    data = _mapping(data, path)
    schedule = _get(data, 'schedule', default=None)
    return StorageBackupConfig(
        type=_string(_get(data, 'type'), f'{path}.type'),
        enabled=_bool(_get(data, 'enabled', default=True), f'{path}.enabled'),
        backup_type=_choice(
            _get(data, 'backupType', 'backup_type', default='full'), f'{path}.backupType',
            SUPPORTED_BACKUP_TYPES
        ),
        compression=_choice(
            _get(data, 'compression', default='gzip'), f'{path}.compression',
            SUPPORTED_COMPRESSION_TYPES
        ),
        options=dict(_mapping(_get(data, 'options', 'config', default={}), f'{path}.options')),
        pre_backup_hooks=_hooks(
            _get(data, 'preBackupHooks', 'pre_backup_hooks', default=[]), f'{path}.preBackupHooks'
        ),
        post_backup_hooks=_hooks(
            _get(data, 'postBackupHooks', 'post_backup_hooks', default=[]), f'{path}.postBackupHooks'
        ),
        schedule=_parse_schedule(schedule, f'{path}.schedule') if schedule is not None else None,
    )


def _parse_global(data: Any, path: str) -> GlobalSettings:
    data = _mapping(data, path)
    notifications = _mapping(_get(data, 'notifications', default={}), f'{path}.notifications')
    verification_types = _list(
        _get(data, 'verificationTypes', 'verification_types', default=['checksum', 'size-validation']),
        f'{path}.verificationTypes'
    )
    for vtype in verification_types:
        _choice(vtype, f'{path}.verificationTypes', SUPPORTED_VERIFICATION_TYPES)

    return GlobalSettings(
        max_parallel_jobs=_int(
            _get(data, 'maxParallelJobs', 'max_parallel_jobs', default=3),
            f'{path}.maxParallelJobs', 1, 10
        ),
        enable_verification=_bool(
            _get(data, 'enableVerification', 'enable_verification', default=True),
            f'{path}.enableVerification'
        ),
        verification_types=list(dict.fromkeys(verification_types)),
        metadata_format=_choice(
            _get(data, 'metadataFormat', 'metadata_format', default='json'),
            f'{path}.metadataFormat', SUPPORTED_METADATA_FORMATS
        ),
        notifications=NotificationSettings(
            on_success=_bool(
                _get(notifications, 'onSuccess', 'on_success', default=False),
                f'{path}.notifications.onSuccess'
            ),
            on_failure=_bool(
                _get(notifications, 'onFailure', 'on_failure', default=True),
                f'{path}.notifications.onFailure'
            ),
            channels=[str(c) for c in _list(_get(notifications, 'channels', default=[]),
                                            f'{path}.notifications.channels')],
        ),
    )


def _schedule_to_dict(schedule: BackupSchedule) -> Dict[str, Any]:
    return {
        'cron': schedule.cron,
        'timezone': schedule.timezone,
        'enabled': schedule.enabled,
        'timeoutSeconds': schedule.timeout_seconds,
        'retries': schedule.max_retries,
    }


# ---------------------------------------------------------------------------
# Environment defaults and file loading
# ---------------------------------------------------------------------------

def _env_flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() not in ('false', '0', 'no', 'off')


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Environment variable {name} must be an integer, got {value!r}")


def _env_list(environ: Mapping[str, str], name: str, default: str = '') -> List[str]:
    raw = environ.get(name) or default
    return [item.strip() for item in raw.split(',') if item.strip()]


def default_backup_config(environ: Optional[Mapping[str, str]] = None) -> BackupConfig:
    """
    Build the default backup configuration from BACKUP_* environment variables.

    Args:
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated BackupConfig
    """
    env = os.environ if environ is None else environ

    base_path = env.get('BACKUP_BASE_PATH') or './backups'
    compression = env.get('BACKUP_DEFAULT_COMPRESSION') or 'gzip'

    storage_configs = []
    if _env_flag(env, 'BACKUP_SQLITE_ENABLED', False):
        storage_configs.append({
            'type': 'sqlite',
            'backupType': 'full',
            'compression': compression,
            'options': {'database': env.get('BACKUP_SQLITE_PATH', './data/app.db')},
        })
    if _env_flag(env, 'BACKUP_FILE_SYSTEM_ENABLED', False):
        storage_configs.append({
            'type': 'file-system',
            'backupType': 'full',
            'compression': compression,
            'options': {
                'paths': _env_list(env, 'BACKUP_FILE_SYSTEM_PATHS', './config,./data'),
                'exclude_patterns': ['*.tmp', '*.log', '.git', '__pycache__'],
            },
        })

    document = {
        'enabled': _env_flag(env, 'BACKUP_ENABLED', True),
        'defaultSchedule': {
            'cron': env.get('BACKUP_DEFAULT_CRON') or '0 2 * * *',
            'timezone': env.get('BACKUP_DEFAULT_TIMEZONE') or 'UTC',
            'enabled': True,
            'timeout': _env_int(env, 'BACKUP_DEFAULT_TIMEOUT', 60),
            'retries': _env_int(env, 'BACKUP_DEFAULT_RETRIES', 3),
        },
        'destinations': [{
            'type': env.get('BACKUP_DESTINATION_TYPE') or 'local',
            'path': env.get('BACKUP_DESTINATION_PATH') or base_path,
            'encryption': _env_flag(env, 'BACKUP_DESTINATION_ENCRYPTION', False),
            'encryptionKey': env.get('BACKUP_DESTINATION_ENCRYPTION_KEY'),
        }],
        'retentionPolicy': {
            'dailyRetentionDays': _env_int(env, 'BACKUP_DAILY_RETENTION_DAYS', 7),
            'weeklyRetentionWeeks': _env_int(env, 'BACKUP_WEEKLY_RETENTION_WEEKS', 4),
            'monthlyRetentionMonths': _env_int(env, 'BACKUP_MONTHLY_RETENTION_MONTHS', 12),
            'maxBackups': _env_int(env, 'BACKUP_MAX_BACKUPS', 100),
            'autoCleanup': _env_flag(env, 'BACKUP_AUTO_CLEANUP', True),
        },
        'storageConfigs': storage_configs,
        'global': {
            'maxParallelJobs': _env_int(env, 'BACKUP_MAX_PARALLEL_JOBS', 3),
            'enableVerification': _env_flag(env, 'BACKUP_ENABLE_VERIFICATION', True),
            'verificationTypes': [
                t for t in _env_list(env, 'BACKUP_VERIFICATION_TYPES', 'checksum,size-validation')
                if t in SUPPORTED_VERIFICATION_TYPES
            ],
            'metadataFormat': 'json',
            'notifications': {
                'onSuccess': _env_flag(env, 'BACKUP_NOTIFY_ON_SUCCESS', False),
                'onFailure': _env_flag(env, 'BACKUP_NOTIFY_ON_FAILURE', True),
                'channels': _env_list(env, 'BACKUP_NOTIFICATION_CHANNELS'),
            },
        },
    }
    return BackupConfig.from_dict(document)


def merge_backup_config(base: BackupConfig, overrides: Optional[Mapping[str, Any]]) -> BackupConfig:
    """
    Merge a partial configuration document over a base config.

    Nested sections are merged key by key, destinations are appended and
    storage configs are merged by type.
    """
    if not overrides:
        return base

    merged = base.to_dict()
    for key in ('enabled',):
        if key in overrides:
            merged[key] = overrides[key]

    for section, alias in (('defaultSchedule', 'default_schedule'),
                           ('retentionPolicy', 'retention_policy'),
                           ('global', 'global_settings')):
        update = overrides.get(section, overrides.get(alias))
        if update:
            update = dict(_mapping(update, section))
            if section == 'defaultSchedule' and 'timeout' in update:
                merged[section].pop('timeoutSeconds', None)
            if section == 'global' and 'notifications' in update:
                notifications = dict(merged['global']['notifications'])
                notifications.update(_mapping(update.pop('notifications'), 'global.notifications'))
                merged['global']['notifications'] = notifications
            merged[section].update(update)

    if overrides.get('destinations'):
        merged['destinations'] = merged['destinations'] + _list(overrides['destinations'], 'destinations')

    storage_overrides = overrides.get('storageConfigs', overrides.get('storage_configs'))
    if storage_overrides:
        by_type = {item['type']: item for item in merged['storageConfigs']}
        order = [item['type'] for item in merged['storageConfigs']]
        # Keep in-process callable hooks from the base config
        base_hooks = {s.type: s for s in base.storage_configs}
        for item in _list(storage_overrides, 'storageConfigs'):
            item = dict(_mapping(item, 'storageConfigs[]'))
            storage_type = _get(item, 'type')
            if storage_type in by_type:
                by_type[storage_type] = {**by_type[storage_type], **item}
            else:
                by_type[storage_type] = item
                order.append(storage_type)
        merged['storageConfigs'] = [by_type[t] for t in order]
        result = BackupConfig.from_dict(merged)
        for storage_config in result.storage_configs:
            original = base_hooks.get(storage_config.type)
            if original and not any(
                o.get('type') == storage_config.type and ('preBackupHooks' in o or 'postBackupHooks' in o)
                for o in storage_overrides
            ):
                storage_config.pre_backup_hooks = list(original.pre_backup_hooks)
                storage_config.post_backup_hooks = list(original.post_backup_hooks)
        return result

    return BackupConfig.from_dict(merged)


def load_backup_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> BackupConfig:
    """
    Load backup configuration from a JSON or YAML file merged over the environment defaults.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    config = default_backup_config(environ)
    if not path:
        return config

    config_path = Path(path)
    ext = config_path.suffix.lower()
    if ext not in ('.json', '.yaml', '.yml'):
        raise ConfigError(f"Unsupported config file format: {ext}")

    try:
        content = config_path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Failed to read backup config {path}: {e}")

    try:
        document = json.loads(content) if ext == '.json' else yaml.safe_load(content)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse backup config {path}: {e}")

    return merge_backup_config(config, document or {})


def save_backup_config(config: BackupConfig, path: str):
    """Write a config document as JSON or YAML depending on the file extension."""
    config_path = Path(path)
    ext = config_path.suffix.lower()
    if ext == '.json':
        content = json.dumps(config.to_dict(), indent=2)
    elif ext in ('.yaml', '.yml'):
        content = yaml.safe_dump(config.to_dict(), sort_keys=False)
    else:
        raise ConfigError(f"Unsupported config file format: {ext}")

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(content, encoding='utf-8')


def get_storage_config(config: BackupConfig, storage_type: str) -> Optional[StorageBackupConfig]:
    for storage_config in config.storage_configs:
        if storage_config.type == storage_type:
            return storage_config
    return None


def update_storage_config(config: BackupConfig, storage_type: str, **updates) -> BackupConfig:
    """Return a new config with the given storage config's fields replaced."""
    updated = config.copy()
    target = get_storage_config(updated, storage_type)
    if target is None:
        raise ConfigError(f"Unknown storage type: {storage_type}")
    for name, value in updates.items():
        if not hasattr(target, name):
            raise ConfigError(f"Unknown storage config field: {name}")
        setattr(target, name, value)
    return updated.validate()


def update_destination(config: BackupConfig, destination: BackupDestination,
                       index: Optional[int] = None) -> BackupConfig:
    """Replace the destination at ``index`` or append it."""
    updated = config.copy()
    if index is not None and 0 <= index < len(updated.destinations):
        updated.destinations[index] = destination
    else:
        updated.destinations.append(destination)
    return updated.validate()


def remove_destination(config: BackupConfig, index: int) -> BackupConfig:
    updated = config.copy()
    destinations = [d for i, d in enumerate(updated.destinations) if i != index]
    if not destinations:
        raise ConfigError("At least one backup destination is required")
    updated.destinations = destinations
    return updated.validate()


BACKUP_CONFIG_TEMPLATES: Dict[str, Dict[str, Any]] = {
    'minimal': {
        'enabled': True,
        'defaultSchedule': {
            'cron': '0 2 * * *',
            'timezone': 'UTC',
            'enabled': True,
            'timeout': 60,
            'retries': 3,
        },
        'destinations': [{'type': 'local', 'path': './backups', 'encryption': False}],
        'retentionPolicy': {
            'dailyRetentionDays': 7,
            'weeklyRetentionWeeks': 4,
            'monthlyRetentionMonths': 12,
            'maxBackups': 100,
            'autoCleanup': True,
        },
        'storageConfigs': [],
        'global': {
            'maxParallelJobs': 2,
            'enableVerification': True,
            'verificationTypes': ['checksum', 'size-validation'],
            'metadataFormat': 'json',
        },
    },
    'production': {
        'enabled': True,
        'defaultSchedule': {
            'cron': '0 1 * * *',
            'timezone': 'UTC',
            'enabled': True,
            'timeout': 120,
            'retries': 5,
        },
        'destinations': [
            {'type': 'local', 'path': './backups', 'encryption': True},
            {'type': 'aws-s3', 'path': 'backup-bucket', 'encryption': True},
        ],
        'retentionPolicy': {
            'dailyRetentionDays': 30,
            'weeklyRetentionWeeks': 12,
            'monthlyRetentionMonths': 24,
            'maxBackups': 200,
            'autoCleanup': True,
        },
        'storageConfigs': [],
        'global': {
            'maxParallelJobs': 5,
            'enableVerification': True,
            'verificationTypes': ['checksum', 'integrity-check', 'size-validation'],
            'metadataFormat': 'json',
            'notifications': {
                'onSuccess': False,
                'onFailure': True,
                'channels': ['email', 'slack'],
            },
        },
    },
}


def config_from_template(name: str) -> BackupConfig:
    if name not in BACKUP_CONFIG_TEMPLATES:
        raise ConfigError(
            f"Unknown config template: {name}. Valid options: {list(BACKUP_CONFIG_TEMPLATES)}"
        )
    return BackupConfig.from_dict(copy.deepcopy(BACKUP_CONFIG_TEMPLATES[name]))
