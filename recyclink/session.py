from typing import TYPE_CHECKING, Any
from uuid import uuid4

from loguru import logger

from recyclink.config import Settings, settings
from recyclink.errors import NotAuthenticated
from recyclink.models.chat import UserProfile
from recyclink.models.notification import Notification, NotificationLevel
from recyclink.services.documents import DocumentStore
from recyclink.services.identity import Identity
from recyclink.services.notifications import LoggingNotifier, NotificationSink
from recyclink.services.storage import ObjectStore

if TYPE_CHECKING:
    from recyclink.services.subscriptions import Subscription


class Session:
    """Caller-owned context shared by the chat and upload operations."""

    def __init__(
        self,
        documents: DocumentStore,
        objects: ObjectStore,
        identity: Identity,
        notifier: NotificationSink | None = None,
        app_settings: Settings = settings,
    ):
        self.documents = documents
        self.objects = objects
        self.identity = identity
        self.notifier = notifier or LoggingNotifier()
        self.settings = app_settings
        self.session_id = uuid4().hex[:12]
        self.logger = logger.bind(session_id=self.session_id)
        self.active_conversation_id: str | None = None
        self.message_subscription: "Subscription[Any] | None" = None
        self.subscriptions: list["Subscription[Any]"] = []

    def require_user(self) -> UserProfile:
        user = self.identity.current_user()
        if user is None:
            raise NotAuthenticated("User not authenticated")
        return user

    def notify(self, level: NotificationLevel, message: str) -> None:
        self.notifier.notify(Notification(level=level, message=message))

    def notify_error(self, message: str) -> None:
        self.notify(NotificationLevel.ERROR, message)

    def track(self, subscription: "Subscription[Any]") -> None:
        self.subscriptions = [sub for sub in self.subscriptions if sub.active]
        self.subscriptions.append(subscription)

    async def close(self) -> None:
        for subscription in self.subscriptions:
            await subscription.cancel()
        self.subscriptions = []
        self.message_subscription = None
        self.active_conversation_id = None
        self.logger.info("Session closed")
