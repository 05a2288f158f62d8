"""
Unit tests for run notifications (backup_orchestrator/backup/notifications.py).
"""

from unittest.mock import MagicMock

from backup_orchestrator.backup.config import NotificationSettings
from backup_orchestrator.backup.notifications import Notifier


class TestNotifier:
    """Test Notifier dispatch rules."""

    def test_failure_notifies_channels(self, make_record):
        email = MagicMock()
        notifier = Notifier({'email': email})
        record = make_record(success=False)

        delivered = notifier.notify(record, NotificationSettings(on_failure=True, channels=['email']))

        assert delivered == 1
        message, sent_record = email.call_args.args
        assert message.startswith('Backup failed for sqlite (full)')
        assert sent_record is record

    def test_success_not_notified_by_default(self, make_record):
        email = MagicMock()
        notifier = Notifier({'email': email})

        delivered = notifier.notify(make_record(success=True), NotificationSettings(channels=['email']))

        assert delivered == 0
        email.assert_not_called()

    def test_success_notification(self, make_record):
        slack = MagicMock()
        notifier = Notifier()
        notifier.register_channel('slack', slack)

        delivered = notifier.notify(
            make_record(success=True, warnings=('Destination ftp:/x failed',)),
            NotificationSettings(on_success=True, channels=['slack'])
        )

        assert delivered == 1
        assert 'with 1 warning(s)' in slack.call_args.args[0]

    def test_unregistered_and_failing_channels(self, make_record):
        """Test missing channels are skipped and failing callbacks do not raise."""
        broken = MagicMock(side_effect=ConnectionError('smtp down'))
        working = MagicMock()
        notifier = Notifier({'email': broken, 'slack': working})

        delivered = notifier.notify(
            make_record(success=False),
            NotificationSettings(on_failure=True, channels=['pager', 'email', 'slack'])
        )

        assert delivered == 1
        working.assert_called_once()
