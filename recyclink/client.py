import sys

from loguru import logger

from recyclink.config import Settings, settings
from recyclink.models.chat import UserProfile
from recyclink.services.documents import MemoryDocumentStore
from recyclink.services.identity import Identity, StaticIdentity
from recyclink.services.notifications import NotificationSink
from recyclink.services.storage import LocalObjectStore
from recyclink.session import Session

_logging_configured = False


def configure_logging(app_settings: Settings) -> None:
    global _logging_configured
    logger.configure(patcher=lambda record: record["extra"].setdefault("session_id", "-"))
    logger.remove()
    logger.add(
        sys.stderr,
        level=app_settings.log_level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | sess={extra[session_id]} | {name}:{function}:{line} | {message}",
    )
    _logging_configured = True


def create_session(
    app_settings: Settings = settings,
    identity: Identity | None = None,
    user: UserProfile | None = None,
    notifier: NotificationSink | None = None,
) -> Session:
    if not _logging_configured:
        configure_logging(app_settings)

    if app_settings.backend == "firebase":
        from recyclink.services.firebase import FirebaseObjectStore, FirestoreDocumentStore, initialize_app

        initialize_app(app_settings)
        documents = FirestoreDocumentStore()
        objects = FirebaseObjectStore()
    else:
        documents = MemoryDocumentStore()
        objects = LocalObjectStore(app_settings)

    session = Session(
        documents=documents,
        objects=objects,
        identity=identity or StaticIdentity(user),
        notifier=notifier,
        app_settings=app_settings,
    )
    session.logger.info(
        "Session created app_name={} backend={} debug={} log_level={}",
        app_settings.app_name,
        app_settings.backend,
        app_settings.debug,
        app_settings.log_level,
    )
    return session
