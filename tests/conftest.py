import asyncio
import io

import pytest
from loguru import logger
from PIL import Image

from recyclink.config import Settings
from recyclink.models.chat import UserProfile
from recyclink.models.image import ImageFile
from recyclink.services.documents import MemoryDocumentStore
from recyclink.services.identity import StaticIdentity
from recyclink.services.storage import LocalObjectStore
from recyclink.session import Session

FORMATS = {"JPEG": ("image/jpeg", "jpg"), "PNG": ("image/png", "png")}


class CollectingNotifier:
    def __init__(self):
        self.notifications = []

    def notify(self, notification):
        self.notifications.append(notification)

    @property
    def messages(self):
        return [n.message for n in self.notifications]


class RecordingObjectStore:
    def __init__(self, fail_on: str | None = None):
        self.puts = []
        self.fail_on = fail_on

    async def put(self, path, data, content_type):
        if self.fail_on and self.fail_on in path:
            raise RuntimeError("bucket unavailable")
        self.puts.append((path, data, content_type))
        return f"https://cdn.example.test/{path}"

    async def delete(self, path):
        raise RuntimeError("bucket unavailable")


def make_image(width, height, fmt="JPEG", mode="RGB", name=None, color=(40, 160, 90)) -> ImageFile:
    content_type, extension = FORMATS[fmt]
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return ImageFile(name=name or f"photo.{extension}", content_type=content_type, data=buffer.getvalue())


async def _next_view(subscription, predicate=lambda view: True, timeout=2.0):
    async def _wait():
        async for view in subscription:
            if predicate(view):
                return view
        raise AssertionError("subscription ended before a matching view")

    return await asyncio.wait_for(_wait(), timeout)


@pytest.fixture
def next_view():
    return _next_view


@pytest.fixture
def app_settings(tmp_path):
    return Settings(_env_file=None, upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def notifier():
    return CollectingNotifier()


@pytest.fixture
def alice():
    return UserProfile(id="alice", display_name="Alice", photo_url="https://img.example.test/alice.png")


@pytest.fixture
def bob():
    return UserProfile(id="bob", display_name="Bob")


@pytest.fixture
def objects(app_settings):
    return LocalObjectStore(app_settings)


@pytest.fixture
async def session(store, objects, alice, notifier, app_settings):
    session = Session(store, objects, StaticIdentity(alice), notifier, app_settings)
    yield session
    await session.close()


@pytest.fixture
async def bob_session(store, objects, bob, app_settings):
    session = Session(store, objects, StaticIdentity(bob), CollectingNotifier(), app_settings)
    yield session
    await session.close()


@pytest.fixture
def log_messages():
    messages = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
