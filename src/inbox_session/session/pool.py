"""Two-pool IMAP connection manager.

* Background pool: pagination, header loading and other bulk work.
* Priority pool: user initiated reads and mutations.

Each pool holds at most one session per account key. The pools never share
sessions, so an interactive request is never queued behind a long running
background fetch for the same account.

All map mutations happen on the event loop thread between awaits; no lock
guards the maps.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from contextlib import AbstractAsyncContextManager
from typing import Protocol, TypeVar

from ..core.config import SessionSettings
from ..core.logging import session_context
from ..core.models import Account, CleanupResult, PoolKind
from ..transport.imap_client import ImapSession, describe_error, is_transient

LOGGER = logging.getLogger(__name__)

R = TypeVar("R")


class PooledSession(Protocol):
    """What the pool needs from a protocol session."""

    key: str

    @property
    def usable(self) -> bool:
        """Whether the session can still carry commands."""
        raise NotImplementedError

    @property
    def busy(self) -> bool:
        """Whether a unit of work currently holds the session."""
        raise NotImplementedError

    def add_unusable_listener(self, listener: Callable[[PooledSession], None]) -> None:
        """Register a callback fired when the session errors or closes."""
        raise NotImplementedError

    def exclusive(self) -> AbstractAsyncContextManager[PooledSession]:
        """Hold the session for a command outside any folder."""
        raise NotImplementedError

    async def noop(self) -> None:
        """Round-trip a NOOP to the server."""
        raise NotImplementedError

    async def logout(self) -> CleanupResult:
        """Close the session best-effort."""
        raise NotImplementedError


SessionFactory = Callable[[Account], Awaitable[PooledSession]]
Operation = Callable[[PooledSession], Awaitable[R]]


class ConnectionPoolManager:
    """Own the background and priority session maps for one application."""

    def __init__(
        self,
        settings: SessionSettings | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        """Initialise empty pools.

        Args:
            settings: Timeouts, sweep interval and reuse policy
            session_factory: Coroutine creating an authenticated session;
                defaults to :meth:`ImapSession.open`
        """
        self._settings = settings or SessionSettings()
        self._factory = session_factory or self._open_imap_session
        self._pools: dict[PoolKind, dict[str, PooledSession]] = {
            kind: {} for kind in PoolKind
        }
        self._sweeper: asyncio.Task[None] | None = None
        self._cleanups: set[asyncio.Task[CleanupResult]] = set()
        # Sessions displaced from their slot by a concurrent create.
        self._orphans: set[PooledSession] = set()

    async def _open_imap_session(self, account: Account) -> PooledSession:
        return await ImapSession.open(account, self._settings)

    async def open_session(self, account: Account) -> PooledSession:
        """Open a session that belongs to neither pool; the caller logs it out."""
        return await self._factory(account)

    # Introspection ------------------------------------------------------------
    def get(self, account: Account, pool: PoolKind | str) -> PooledSession | None:
        """Return the pooled session for ``account`` without creating one."""
        return self._pools[PoolKind(pool)].get(account.pool_key)

    def keys(self, pool: PoolKind | str) -> list[str]:
        return list(self._pools[PoolKind(pool)])

    def connection_count(self, pool: PoolKind | str | None = None) -> int:
        """Number of pooled sessions, for one pool or both."""
        if pool is not None:
            return len(self._pools[PoolKind(pool)])
        return sum(len(sessions) for sessions in self._pools.values())

    # Acquisition --------------------------------------------------------------
    async def acquire(self, account: Account, pool: PoolKind | str) -> PooledSession:
        """Return a usable session for ``account`` from ``pool``.

        A pooled session that is still usable is returned as is. A stale one
        is evicted and logged out before a replacement is created.
        """
        kind = PoolKind(pool)
        key = account.pool_key
        existing = self._pools[kind].get(key)
        if existing is not None:
            if existing.usable and await self._still_alive(existing):
                return existing
            LOGGER.info(
                "Pooled %s session for %s is stale, replacing",
                kind.value,
                key,
                extra=session_context(account.email, kind.value),
            )
            self._evict(kind, key, existing)
            self._log_cleanup(key, await existing.logout())
        return await self._create(account, kind)

    async def with_session(
        self,
        account: Account,
        pool: PoolKind | str,
        operation: Operation[R],
    ) -> R:
        """Run ``operation`` on a pooled session with a single transient retry.

        Whatever fails, the session involved is removed from the pool. Only
        timeouts, resets and socket level failures are retried, once, on a
        freshly created session. The retry's failure propagates.
        """
        kind = PoolKind(pool)
        key = account.pool_key
        session: PooledSession | None = None
        try:
            session = await self.acquire(account, kind)
            result = await operation(session)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "IMAP %s operation failed for %s: %s",
                kind.value,
                account.email,
                describe_error(exc),
                extra=session_context(account.email, kind.value),
            )
            if session is not None:
                self._discard(kind, key, session)
            if not is_transient(exc):
                raise
            LOGGER.info(
                "Retrying %s connection for %s",
                kind.value,
                account.email,
                extra=session_context(account.email, kind.value),
            )
            return await self._retry(account, kind, operation)
        self._release(kind, key, session)
        return result

    async def _retry(self, account: Account, kind: PoolKind, operation: Operation[R]) -> R:
        key = account.pool_key
        session: PooledSession | None = None
        try:
            session = await self._create(account, kind)
            result = await operation(session)
        except Exception:
            if session is not None:
                self._discard(kind, key, session)
            raise
        self._release(kind, key, session)
        return result

    async def _create(self, account: Account, kind: PoolKind) -> PooledSession:
        key = account.pool_key
        LOGGER.info(
            "Creating new %s IMAP connection for %s",
            kind.value,
            account.email,
            extra=session_context(account.email, kind.value),
        )
        session = await self._factory(account)
        session.add_unusable_listener(self._on_unusable)
        sessions = self._pools[kind]
        previous = sessions.get(key)
        sessions[key] = session
        if previous is not None and previous is not session:
            # Two callers raced to create; the older session leaves the pool.
            LOGGER.debug("Replacing concurrently created %s session for %s", kind.value, key)
            self._orphans.add(previous)
        return session

    async def _still_alive(self, session: PooledSession) -> bool:
        if not self._settings.probe_before_reuse or session.busy:
            return True
        try:
            async with session.exclusive():
                await session.noop()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.debug("NOOP before reuse failed for %s: %s", session.key, describe_error(exc))
            return False
        return True

    # Eviction -----------------------------------------------------------------
    def _on_unusable(self, session: PooledSession) -> None:
        """Drop ``session`` from whichever pool holds it."""
        for kind, sessions in self._pools.items():
            if sessions.get(session.key) is session:
                del sessions[session.key]
                LOGGER.info("Removed closed %s session %s", kind.value, session.key)

    def _evict(self, kind: PoolKind, key: str, session: PooledSession) -> None:
        sessions = self._pools[kind]
        if sessions.get(key) is session:
            del sessions[key]

    def _discard(self, kind: PoolKind, key: str, session: PooledSession) -> None:
        self._evict(kind, key, session)
        self._orphans.discard(session)
        self._schedule_cleanup(session)

    def _release(self, kind: PoolKind, key: str, session: PooledSession) -> None:
        """Close a session that lost its pool slot while it was in use."""
        if not session.usable:
            self._evict(kind, key, session)
            self._orphans.discard(session)
            return
        if self._pools[kind].get(key) is not session:
            self._orphans.discard(session)
            self._schedule_cleanup(session)

    def _schedule_cleanup(self, session: PooledSession) -> None:
        task = asyncio.create_task(session.logout())
        self._cleanups.add(task)

        def _finished(done: asyncio.Task[CleanupResult]) -> None:
            self._cleanups.discard(done)
            if not done.cancelled() and done.exception() is None:
                self._log_cleanup(session.key, done.result())

        task.add_done_callback(_finished)

    @staticmethod
    def _log_cleanup(key: str, result: CleanupResult) -> None:
        if not result.ok:
            LOGGER.debug("Ignoring logout failure for %s: %s", key, result.error)

    async def sweep(
        self, pools: Iterable[PoolKind] = (PoolKind.BACKGROUND, PoolKind.PRIORITY)
    ) -> int:
        """Evict and log out every pooled session that is no longer usable."""
        removed = 0
        for kind in pools:
            sessions = self._pools[kind]
            for key, session in list(sessions.items()):
                if session.usable:
                    continue
                LOGGER.info("Removing stale %s connection: %s", kind.value, key)
                self._evict(kind, key, session)
                self._log_cleanup(key, await session.logout())
                removed += 1
        for orphan in [item for item in self._orphans if not item.usable and not item.busy]:
            self._orphans.discard(orphan)
            self._log_cleanup(orphan.key, await orphan.logout())
        return removed

    async def _sweep_forever(self) -> None:
        interval = self._settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    # Lifecycle ----------------------------------------------------------------
    def start(self) -> None:
        """Start the periodic stale-session sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def disconnect(self, account: Account) -> None:
        """Close ``account``'s sessions in both pools."""
        key = account.pool_key
        for kind, sessions in self._pools.items():
            session = sessions.pop(key, None)
            if session is not None:
                self._log_cleanup(key, await session.logout())
                LOGGER.debug("Disconnected %s session for %s", kind.value, key)
        LOGGER.info("Disconnected IMAP for %s", account.email)

    async def shutdown(self) -> None:
        """Stop sweeping and log out every session; failures are ignored."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        drained: list[tuple[str, PooledSession]] = []
        for sessions in self._pools.values():
            drained.extend(sessions.items())
            sessions.clear()
        drained.extend((orphan.key, orphan) for orphan in self._orphans)
        self._orphans.clear()
        for key, _ in drained:
            LOGGER.info("Closing IMAP connection: %s", key)
        results = await asyncio.gather(
            *(session.logout() for _, session in drained), return_exceptions=True
        )
        for (key, _), result in zip(drained, results):
            if isinstance(result, CleanupResult):
                self._log_cleanup(key, result)
            else:
                LOGGER.debug("Ignoring logout failure for %s: %s", key, result)
        if self._cleanups:
            await asyncio.gather(*self._cleanups, return_exceptions=True)

    async def __aenter__(self) -> ConnectionPoolManager:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()


__all__ = [
    "ConnectionPoolManager",
    "PooledSession",
    "SessionFactory",
]
