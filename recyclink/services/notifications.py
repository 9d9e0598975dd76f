from typing import Protocol

from loguru import logger

from recyclink.models.notification import Notification, NotificationLevel


class NotificationSink(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Default sink: banners go to the log when no UI is attached."""

    def notify(self, notification: Notification) -> None:
        if notification.level == NotificationLevel.ERROR:
            logger.warning("Notification level={} message={}", notification.level.value, notification.message)
        else:
            logger.info("Notification level={} message={}", notification.level.value, notification.message)
