import asyncio
from pathlib import Path
from typing import Protocol

from loguru import logger

from recyclink.config import Settings, settings
from recyclink.errors import ServiceError


class ObjectStore(Protocol):
    async def put(self, path: str, data: bytes, content_type: str) -> str: ...

    async def delete(self, path: str) -> None: ...


class LocalObjectStore:
    """Object store rooted at the configured upload directory."""

    def __init__(self, app_settings: Settings = settings, root: Path | None = None):
        self.root = (root or app_settings.upload_path).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = app_settings.public_base_url

    def _destination(self, path: str) -> Path:
        destination = (self.root / path.lstrip("/")).resolve()
        if not destination.is_relative_to(self.root):
            raise ServiceError(f"Storage path escapes upload root: {path}")
        return destination

    def locator(self, path: str) -> str:
        key = path.lstrip("/")
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return self._destination(key).as_uri()

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        destination = self._destination(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(destination.write_bytes, data)
        logger.debug(
            "File saved storage_key={} destination={} content_type={} size_bytes={}",
            path,
            str(destination),
            content_type,
            len(data),
        )
        return self.locator(path)

    async def delete(self, path: str) -> None:
        destination = self._destination(path)
        if not destination.exists():
            logger.error("Storage key not found storage_key={} path={}", path, str(destination))
            raise FileNotFoundError(f"Object not found: {path}")
        await asyncio.to_thread(destination.unlink)
        logger.debug("File deleted storage_key={} path={}", path, str(destination))

    def read_bytes(self, path: str) -> bytes:
        destination = self._destination(path)
        if not destination.exists():
            logger.error("Storage key not found storage_key={} path={}", path, str(destination))
            raise FileNotFoundError(f"Object not found: {path}")
        logger.debug("Reading object bytes storage_key={} path={}", path, str(destination))
        return destination.read_bytes()
