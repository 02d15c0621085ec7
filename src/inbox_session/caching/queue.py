"""Throttled, pausable worker warming the local message cache."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from ..core.config import CacheQueueSettings
from ..core.models import CacheEvent
from ..transport.imap_client import describe_error

LOGGER = logging.getLogger(__name__)

FetchOne = Callable[[int], Awaitable[Any]]
EventSink = Callable[[CacheEvent], None]


class BackgroundCacheQueue:
    """Fetch full messages one at a time, reporting each through ``on_event``.

    Events: ``email_fetched``, ``progress``, ``error``, ``paused``,
    ``resumed``, ``stopped`` and ``done``.
    """

    def __init__(
        self,
        fetch_one: FetchOne,
        on_event: EventSink,
        settings: CacheQueueSettings | None = None,
    ) -> None:
        self._fetch_one = fetch_one
        self._on_event = on_event
        self._settings = settings or CacheQueueSettings()
        self._queue: deque[int] = deque()
        self._paused = False
        self._stopped = False
        self._task: asyncio.Task[None] | None = None

    @property
    def remaining(self) -> int:
        return len(self._queue)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, uids: Iterable[int]) -> None:
        """Replace the queue with ``uids`` and start working through it."""
        self._queue = deque(uids)
        self._paused = False
        self._stopped = False
        LOGGER.info("Background caching started for %d messages", len(self._queue))
        if not self.running:
            self._task = asyncio.create_task(self._run())

    def pause(self) -> None:
        self._paused = True
        self._emit(CacheEvent(type="paused"))

    def resume(self) -> None:
        self._paused = False
        self._emit(CacheEvent(type="resumed"))

    def stop(self) -> None:
        """Drop the remaining items; the worker halts at its next check."""
        self._stopped = True
        self._queue.clear()
        self._emit(CacheEvent(type="stopped"))

    async def wait(self) -> None:
        """Wait for the worker to finish."""
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while self._queue and not self._stopped:
            while self._paused and not self._stopped:
                await asyncio.sleep(self._settings.pause_poll_seconds)
            if self._stopped or not self._queue:
                break

            uid = self._queue.popleft()
            try:
                email = await self._fetch_one(uid)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.warning("Background fetch of UID %s failed: %s", uid, describe_error(exc))
                self._emit(CacheEvent(type="error", uid=uid, error=describe_error(exc)))
            else:
                if email is None:
                    self._emit(CacheEvent(type="error", uid=uid, error=f"Message {uid} not found"))
                else:
                    self._emit(CacheEvent(type="email_fetched", uid=uid, email=email))
                    self._emit(CacheEvent(type="progress", remaining=len(self._queue)))

            if self._queue and not self._stopped:
                await asyncio.sleep(self._settings.delay_seconds)

        LOGGER.info("Background caching finished")
        self._emit(CacheEvent(type="done"))

    def _emit(self, event: CacheEvent) -> None:
        try:
            self._on_event(event)
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Cache event handler failed for %s event", event.type)


__all__ = ["BackgroundCacheQueue", "EventSink", "FetchOne"]
