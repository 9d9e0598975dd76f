import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from loguru import logger

from recyclink.errors import ServiceError
from recyclink.models.store import QuerySnapshot
from recyclink.services.documents import SnapshotStream, put_latest

T = TypeVar("T")


class _Ended:
    pass


_ENDED = _Ended()


class Subscription(Generic[T]):
    """Cancellable stream of rendered views built from a standing query.

    Rendering runs in a background task; consumers iterate finished views with
    ``async for`` and stop the stream with ``cancel()``. Only the newest
    unread view is kept, so a consumer that falls behind skips stale views.
    """

    def __init__(
        self,
        name: str,
        stream: SnapshotStream,
        render: Callable[[QuerySnapshot], Awaitable[T]],
        after_render: Callable[[T], Awaitable[None]] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.name = name
        self._stream = stream
        self._render = render
        self._after_render = after_render
        self._on_error = on_error
        self._views: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._ended = False
        self.latest: T | None = None

    @property
    def active(self) -> bool:
        return not self._ended

    def start(self) -> "Subscription[T]":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"subscription:{self.name}")
        return self

    async def _run(self) -> None:
        try:
            async for snapshot in self._stream:
                view = await self._render(snapshot)
                self.latest = view
                put_latest(self._views, view)
                if self._after_render is not None:
                    await self._after_render(view)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Subscription failed name={} error={}", self.name, str(exc))
            if self._on_error is not None:
                self._on_error(exc)
            self._views.put_nowait(exc)
        finally:
            self._stream.close()
            self._finish()

    def _finish(self) -> None:
        if not self._ended:
            self._ended = True
            self._views.put_nowait(_ENDED)

    async def cancel(self) -> None:
        if self._ended and self._task is None:
            return
        self._stream.close()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._finish()
        logger.debug("Subscription cancelled name={}", self.name)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        item = await self._views.get()
        if item is _ENDED:
            self._views.put_nowait(_ENDED)
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise ServiceError(f"Subscription {self.name} failed: {item}") from item
        return item
