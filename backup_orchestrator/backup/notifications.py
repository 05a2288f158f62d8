"""
Run outcome notifications.

Channels are names from ``global.notifications.channels``; the hosting
application registers a callback per channel that knows how to deliver.
"""

import logging
from typing import Callable, Dict, Optional

from .config import NotificationSettings
from .models import BackupRecord


logger = logging.getLogger(__name__)

NotificationCallback = Callable[[str, BackupRecord], None]


class Notifier:
    """Dispatches run outcomes to registered channel callbacks."""

    def __init__(self, channels: Optional[Dict[str, NotificationCallback]] = None):
        self._channels: Dict[str, NotificationCallback] = dict(channels or {})

    def register_channel(self, name: str, callback: NotificationCallback):
        self._channels[name] = callback

    @staticmethod
    def format_message(record: BackupRecord) -> str:
        if record.success:
            message = (
                f"Backup succeeded for {record.storage_type} ({record.backup_type}): "
                f"{record.size} bytes to {len(record.destinations)} destination(s)"
            )
            if record.warnings:
                message += f" with {len(record.warnings)} warning(s)"
            return message
        return f"Backup failed for {record.storage_type} ({record.backup_type}): {record.error}"

    def notify(self, record: BackupRecord, settings: NotificationSettings) -> int:
        """
        Send the outcome of a run to every configured channel if the settings ask for it.

        Returns:
            Number of channels the message was delivered to
        """
        if record.success and not settings.on_success:
            return 0
        if not record.success and not settings.on_failure:
            return 0

        message = self.format_message(record)
        delivered = 0
        for channel in settings.channels:
            callback = self._channels.get(channel)
            if callback is None:
                logger.info(f"No delivery registered for notification channel '{channel}': {message}")
                continue
            try:
                callback(message, record)
                delivered += 1
            except Exception as e:
                logger.error(f"Notification channel '{channel}' failed: {e}")
        return delivered
