"""
Unit tests for backup configuration (backup_orchestrator/backup/config.py).

Tests document parsing, validation, environment defaults, file loading,
templates and the update helpers.
"""

import json

import pytest
import yaml

from backup_orchestrator.backup.config import (
    BackupConfig,
    BackupDestination,
    config_from_template,
    default_backup_config,
    get_storage_config,
    load_backup_config,
    merge_backup_config,
    remove_destination,
    save_backup_config,
    update_destination,
    update_storage_config,
)
from backup_orchestrator.backup.errors import ConfigError


class TestBackupConfigParsing:
    """Test BackupConfig.from_dict."""

    def test_minimal_document_uses_defaults(self):
        """Test a document with only a destination gets the documented defaults."""
        config = BackupConfig.from_dict({'destinations': [{'type': 'local', 'path': '/backups'}]})

        assert config.enabled is True
        assert config.default_schedule.cron == '0 2 * * *'
        assert config.default_schedule.timezone == 'UTC'
        assert config.default_schedule.timeout_seconds == 3600
        assert config.default_schedule.max_retries == 3
        assert config.retention_policy.daily_retention_days == 7
        assert config.retention_policy.max_backups == 100
        assert config.global_settings.max_parallel_jobs == 3
        assert config.global_settings.verification_types == ['checksum', 'size-validation']
        assert config.storage_configs == []

    def test_timeout_is_minutes(self):
        """Test defaultSchedule.timeout is read as minutes."""
        config = BackupConfig.from_dict({
            'defaultSchedule': {'timeout': 5, 'retries': 2},
            'destinations': [{'type': 'local', 'path': '/backups'}],
        })

        assert config.default_schedule.timeout_seconds == 300
        assert config.default_schedule.max_retries == 2

    def test_snake_case_keys_accepted(self):
        """Test snake_case spellings of the camelCase keys."""
        config = BackupConfig.from_dict({
            'destinations': [{'type': 'local', 'path': '/backups'}],
            'storage_configs': [{'type': 'sqlite', 'backup_type': 'incremental', 'compression': 'lz4'}],
            'global_settings': {'max_parallel_jobs': 4},
        })

        assert config.storage_configs[0].backup_type == 'incremental'
        assert config.storage_configs[0].compression == 'lz4'
        assert config.global_settings.max_parallel_jobs == 4

    def test_storage_schedule_override(self):
        """Test a storage config can carry its own schedule."""
        config = BackupConfig.from_dict({
            'destinations': [{'type': 'local', 'path': '/backups'}],
            'storageConfigs': [{'type': 'sqlite', 'schedule': {'cron': '*/15 * * * *'}}],
        })

        assert config.storage_configs[0].schedule.cron == '*/15 * * * *'

    def test_invalid_compression_rejected(self):
        """Test unknown compression types raise ConfigError naming the key."""
        with pytest.raises(ConfigError, match='compression'):
            BackupConfig.from_dict({
                'destinations': [{'type': 'local', 'path': '/backups'}],
                'storageConfigs': [{'type': 'sqlite', 'compression': 'zip'}],
            })

    def test_invalid_destination_type_rejected(self):
        with pytest.raises(ConfigError, match='destinations\\[0\\].type'):
            BackupConfig.from_dict({'destinations': [{'type': 'dropbox', 'path': '/backups'}]})

    def test_enabled_requires_destination(self):
        """Test an enabled config without destinations is rejected."""
        with pytest.raises(ConfigError, match='destination'):
            BackupConfig.from_dict({'enabled': True})

    def test_disabled_config_without_destinations(self):
        config = BackupConfig.from_dict({'enabled': False})

        assert config.enabled is False
        assert config.destinations == []

    @pytest.mark.parametrize('value', [0, 11, 'three'])
    def test_max_parallel_jobs_range(self, value):
        """Test maxParallelJobs outside 1..10 is rejected."""
        with pytest.raises(ConfigError, match='maxParallelJobs'):
            BackupConfig.from_dict({
                'destinations': [{'type': 'local', 'path': '/backups'}],
                'global': {'maxParallelJobs': value},
            })

    def test_unknown_verification_type_rejected(self):
        with pytest.raises(ConfigError, match='verificationTypes'):
            BackupConfig.from_dict({
                'destinations': [{'type': 'local', 'path': '/backups'}],
                'global': {'verificationTypes': ['checksum', 'virus-scan']},
            })

    def test_duplicate_storage_types_rejected(self):
        with pytest.raises(ConfigError, match='Duplicate'):
            BackupConfig.from_dict({
                'destinations': [{'type': 'local', 'path': '/backups'}],
                'storageConfigs': [{'type': 'sqlite'}, {'type': 'sqlite'}],
            })

    def test_to_dict_round_trip(self, config_document):
        """Test to_dict produces a document that parses back to an equal config."""
        config = BackupConfig.from_dict(config_document)

        assert BackupConfig.from_dict(config.to_dict()) == config

    def test_to_dict_drops_callable_hooks(self):
        """Test callable hooks stay in-process and are not serialized."""
        config = BackupConfig.from_dict({
            'destinations': [{'type': 'local', 'path': '/backups'}],
            'storageConfigs': [{'type': 'sqlite', 'preBackupHooks': ['sync', lambda: None]}],
        })

        assert config.to_dict()['storageConfigs'][0]['preBackupHooks'] == ['sync']

    def test_copy_is_deep(self, backup_config):
        copied = backup_config.copy()
        copied.destinations[0].path = '/elsewhere'

        assert backup_config.destinations[0].path != '/elsewhere'


class TestEnvironmentDefaults:
    """Test default_backup_config from BACKUP_* variables."""

    def test_empty_environment(self):
        """Test the built-in defaults with no environment variables."""
        config = default_backup_config({})

        assert config.enabled is True
        assert len(config.destinations) == 1
        assert config.destinations[0].type == 'local'
        assert config.destinations[0].path == './backups'
        assert config.storage_configs == []

    def test_environment_overrides(self):
        """Test environment variables feed the config document."""
        config = default_backup_config({
            'BACKUP_SQLITE_ENABLED': 'true',
            'BACKUP_SQLITE_PATH': '/data/app.db',
            'BACKUP_MAX_PARALLEL_JOBS': '5',
            'BACKUP_DEFAULT_CRON': '30 4 * * *',
            'BACKUP_DESTINATION_PATH': '/mnt/backups',
            'BACKUP_NOTIFICATION_CHANNELS': 'email, slack',
        })

        assert [s.type for s in config.storage_configs] == ['sqlite']
        assert config.storage_configs[0].options['database'] == '/data/app.db'
        assert config.global_settings.max_parallel_jobs == 5
        assert config.default_schedule.cron == '30 4 * * *'
        assert config.destinations[0].path == '/mnt/backups'
        assert config.global_settings.notifications.channels == ['email', 'slack']

    def test_non_integer_environment_value(self):
        with pytest.raises(ConfigError, match='BACKUP_MAX_PARALLEL_JOBS'):
            default_backup_config({'BACKUP_MAX_PARALLEL_JOBS': 'many'})


class TestConfigFiles:
    """Test loading, merging and saving config files."""

    def test_load_yaml_merges_over_environment(self, tmp_path):
        """Test a YAML file is merged over the environment defaults."""
        path = tmp_path / 'backup.yaml'
        path.write_text(yaml.safe_dump({
            'global': {'maxParallelJobs': 4},
            'storageConfigs': [{'type': 'file-system', 'options': {'paths': ['/etc']}}],
        }))

        config = load_backup_config(str(path), environ={})

        assert config.global_settings.max_parallel_jobs == 4
        # Untouched global keys keep their defaults
        assert config.global_settings.enable_verification is True
        assert [s.type for s in config.storage_configs] == ['file-system']
        assert config.destinations[0].path == './backups'

    def test_merge_appends_destinations_and_merges_storage_by_type(self):
        base = default_backup_config({'BACKUP_SQLITE_ENABLED': 'true'})

        merged = merge_backup_config(base, {
            'destinations': [{'type': 'aws-s3', 'path': 'bucket'}],
            'storageConfigs': [{'type': 'sqlite', 'compression': 'brotli'}],
        })

        assert [d.type for d in merged.destinations] == ['local', 'aws-s3']
        assert len(merged.storage_configs) == 1
        assert merged.storage_configs[0].compression == 'brotli'
        assert merged.storage_configs[0].options['database'] == './data/app.db'

    def test_merge_retries_keeps_timeout(self):
        """Test overriding only retries does not reset the schedule timeout."""
        base = default_backup_config({'BACKUP_DEFAULT_TIMEOUT': '30'})

        merged = merge_backup_config(base, {'defaultSchedule': {'retries': 1}})

        assert merged.default_schedule.max_retries == 1
        assert merged.default_schedule.timeout_seconds == 1800

    def test_load_unsupported_extension(self, tmp_path):
        path = tmp_path / 'backup.toml'
        path.write_text('enabled = true')

        with pytest.raises(ConfigError, match='Unsupported'):
            load_backup_config(str(path), environ={})

    def test_load_invalid_json(self, tmp_path):
        path = tmp_path / 'backup.json'
        path.write_text('{not json')

        with pytest.raises(ConfigError, match='parse'):
            load_backup_config(str(path), environ={})

    def test_load_without_path_returns_environment_defaults(self):
        config = load_backup_config(None, environ={'BACKUP_MAX_BACKUPS': '10'})

        assert config.retention_policy.max_backups == 10

    def test_save_json(self, tmp_path, backup_config):
        """Test save_backup_config writes the camelCase document."""
        path = tmp_path / 'out' / 'backup.json'

        save_backup_config(backup_config, str(path))

        document = json.loads(path.read_text())
        assert document['global']['maxParallelJobs'] == 2
        assert document['storageConfigs'][0]['type'] == 'scripted'
        assert BackupConfig.from_dict(document) == backup_config


class TestUpdateHelpers:
    """Test helpers that return updated configs."""

    def test_update_storage_config(self, backup_config):
        updated = update_storage_config(backup_config, 'scripted', compression='lz4')

        assert get_storage_config(updated, 'scripted').compression == 'lz4'
        # Original is unchanged
        assert get_storage_config(backup_config, 'scripted').compression == 'gzip'

    def test_update_unknown_storage_type(self, backup_config):
        with pytest.raises(ConfigError, match='Unknown storage type'):
            update_storage_config(backup_config, 'redis', enabled=False)

    def test_update_unknown_field(self, backup_config):
        with pytest.raises(ConfigError, match='field'):
            update_storage_config(backup_config, 'scripted', retention=3)

    def test_update_and_remove_destination(self, backup_config):
        """Test appending, replacing and removing destinations."""
        appended = update_destination(backup_config, BackupDestination(type='aws-s3', path='bucket'))
        assert [d.type for d in appended.destinations] == ['local', 'aws-s3']

        replaced = update_destination(appended, BackupDestination(type='sftp', path='/remote'), index=1)
        assert [d.type for d in replaced.destinations] == ['local', 'sftp']

        removed = remove_destination(replaced, 0)
        assert [d.type for d in removed.destinations] == ['sftp']

    def test_remove_last_destination(self, backup_config):
        with pytest.raises(ConfigError, match='At least one'):
            remove_destination(backup_config, 0)


class TestTemplates:
    """Test built-in configuration templates."""

    def test_production_template(self):
        config = config_from_template('production')

        assert [d.type for d in config.destinations] == ['local', 'aws-s3']
        assert all(d.encryption for d in config.destinations)
        assert config.global_settings.max_parallel_jobs == 5
        assert config.default_schedule.timeout_seconds == 120 * 60

    def test_minimal_template(self):
        config = config_from_template('minimal')

        assert config.global_settings.max_parallel_jobs == 2
        assert len(config.destinations) == 1

    def test_unknown_template(self):
        with pytest.raises(ConfigError, match='template'):
            config_from_template('enterprise')
