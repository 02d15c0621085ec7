"""IMAP transport adapter providing one authenticated protocol session."""

from __future__ import annotations

import asyncio
import base64
import imaplib
import logging
import socket
import ssl
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from ..core.config import SessionSettings
from ..core.models import Account, CleanupResult, MailboxStatus
from .responses import (
    FetchRecord,
    ListEntry,
    parse_fetch_response,
    parse_list_response,
    parse_search_response,
    quote_mailbox,
)

LOGGER = logging.getLogger(__name__)

# Failures that are usually cured by reconnecting.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    ssl.SSLError,
    imaplib.IMAP4.abort,
    OSError,
)


class ImapError(RuntimeError):
    """Wrap low level IMAP errors with additional context."""

    def __init__(
        self,
        message: str,
        *,
        response: str | None = None,
        code: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.response = response
        self.code = code
        self.transient = transient


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` warrants a retry on a fresh connection."""
    if isinstance(exc, ImapError):
        return exc.transient
    return isinstance(exc, TRANSIENT_ERRORS)


def describe_error(exc: BaseException) -> str:
    """Join an error message with whatever server detail it carries."""
    parts = [str(exc) or type(exc).__name__]
    response = getattr(exc, "response", None)
    if response and response not in parts[0]:
        parts.append(f"Server: {response}")
    code = getattr(exc, "code", None)
    if code and code != parts[0]:
        parts.append(f"Code: {code}")
    errno = getattr(exc, "errno", None)
    if errno is not None:
        parts.append(f"({errno})")
    return " | ".join(part for part in parts if part)


def connect_ipv4(host: str, port: int, timeout: float | None) -> socket.socket:
    """Open a TCP connection using the first reachable IPv4 address."""
    last_error: OSError | None = None
    for family, kind, proto, _, address in socket.getaddrinfo(
        host, port, socket.AF_INET, socket.SOCK_STREAM
    ):
        sock = socket.socket(family, kind, proto)
        try:
            sock.settimeout(timeout)
            sock.connect(address)
            return sock
        except OSError as exc:
            last_error = exc
            sock.close()
    if last_error is not None:
        raise last_error
    raise OSError(f"No IPv4 address found for {host}")


class _IPv4IMAP4(imaplib.IMAP4):
    """``IMAP4`` resolving the server over IPv4 only."""

    def _create_socket(self, timeout: float | None) -> socket.socket:
        return connect_ipv4(self.host, self.port, timeout)


class _IPv4IMAP4SSL(imaplib.IMAP4_SSL):
    """``IMAP4_SSL`` resolving the server over IPv4 only."""

    def _create_socket(self, timeout: float | None) -> socket.socket:
        sock = connect_ipv4(self.host, self.port, timeout)
        return self.ssl_context.wrap_socket(sock, server_hostname=self.host)


def xoauth2_string(username: str, access_token: str) -> bytes:
    """Return the SASL XOAUTH2 initial response for ``username``."""
    return f"user={username}\x01auth=Bearer {access_token}\x01\x01".encode()


def open_imap_connection(account: Account, settings: SessionSettings) -> imaplib.IMAP4:
    """Connect and authenticate synchronously; run in a worker thread."""
    timeout = settings.connect_timeout_seconds
    if account.imap_secure:
        ssl_cls = _IPv4IMAP4SSL if settings.force_ipv4 else imaplib.IMAP4_SSL
        LOGGER.debug(
            "Connecting to IMAP host %s:%s via SSL", account.imap_host, account.imap_port
        )
        connection: imaplib.IMAP4 = ssl_cls(
            account.imap_host,
            account.imap_port,
            ssl_context=ssl.create_default_context(),
            timeout=timeout,
        )
    else:
        plain_cls = _IPv4IMAP4 if settings.force_ipv4 else imaplib.IMAP4
        LOGGER.debug(
            "Connecting to IMAP host %s:%s without SSL",
            account.imap_host,
            account.imap_port,
        )
        connection = plain_cls(account.imap_host, account.imap_port, timeout=timeout)

    try:
        if account.is_oauth2:
            token = account.oauth2_access_token
            if not token:
                raise ImapError("OAuth2 access token is not available")
            LOGGER.debug("Authenticating as %s via XOAUTH2", account.email)
            auth_string = xoauth2_string(account.email, token)
            connection.authenticate("XOAUTH2", lambda _: auth_string)
        else:
            if account.password is None:
                raise ImapError("IMAP credentials are not configured")
            LOGGER.debug("Authenticating as %s", account.email)
            connection.login(account.email, account.password)
    except imaplib.IMAP4.abort:
        _shutdown_quietly(connection)
        raise
    except imaplib.IMAP4.error as exc:
        _shutdown_quietly(connection)
        raise ImapError(
            "IMAP authentication failed", response=_decode(exc.args[0] if exc.args else "")
        ) from exc
    except ImapError:
        _shutdown_quietly(connection)
        raise
    return connection


def _shutdown_quietly(connection: imaplib.IMAP4) -> None:
    try:
        connection.shutdown()
    except OSError:  # pragma: no cover - depends on socket state
        LOGGER.debug("Socket shutdown raised after failed login")


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


UnusableListener = Callable[["ImapSession"], None]


class ImapSession:
    """One authenticated connection to an account's retrieval server.

    ``imaplib`` is blocking, so every command runs in a worker thread. The
    folder lock makes sure only one unit of work drives the connection at a
    time. Transport failures flip :attr:`usable` and notify listeners inline,
    before the error reaches the caller.
    """

    def __init__(self, account: Account, connection: imaplib.IMAP4) -> None:
        """Wrap an already authenticated ``imaplib`` connection."""
        self.account = account
        self.key = account.pool_key
        self._connection = connection
        self._lock = asyncio.Lock()
        self._usable = True
        self._closed = False
        self._listeners: list[UnusableListener] = []
        self.selected: str | None = None

    @classmethod
    async def open(cls, account: Account, settings: SessionSettings) -> ImapSession:
        """Connect and authenticate ``account`` without blocking the loop."""
        try:
            connection = await asyncio.to_thread(open_imap_connection, account, settings)
        except ImapError:
            raise
        except TRANSIENT_ERRORS as exc:
            raise ImapError(
                f"Failed to connect to {account.imap_host}:{account.imap_port}: {exc}",
                code=type(exc).__name__,
                transient=True,
            ) from exc
        except imaplib.IMAP4.error as exc:
            raise ImapError(
                f"Failed to connect to {account.imap_host}:{account.imap_port}",
                response=_decode(exc.args[0] if exc.args else ""),
            ) from exc
        LOGGER.info("Opened IMAP session for %s", account.email)
        return cls(account, connection)

    # Liveness -----------------------------------------------------------------
    @property
    def usable(self) -> bool:
        return self._usable

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def closed(self) -> bool:
        return self._closed

    def add_unusable_listener(self, listener: UnusableListener) -> None:
        """Register a callback fired once when the session becomes unusable."""
        self._listeners.append(listener)

    def mark_unusable(self, reason: str) -> None:
        """Flip the liveness flag and notify listeners synchronously."""
        if not self._usable:
            return
        self._usable = False
        LOGGER.debug("IMAP session %s unusable: %s", self.key, reason)
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(self)

    # Units of work --------------------------------------------------------------
    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[ImapSession]:
        """Hold the session for commands that need no selected folder."""
        async with self._lock:
            yield self

    @asynccontextmanager
    async def folder(self, path: str, *, readonly: bool = False) -> AsyncIterator[MailboxStatus]:
        """Lock the session and select ``path`` for the duration of the block."""
        async with self._lock:
            status = await self._select(path, readonly=readonly)
            try:
                yield status
            finally:
                LOGGER.debug("Released folder %s on %s", path, self.key)

    # Commands -----------------------------------------------------------------
    async def noop(self) -> None:
        await self._command("NOOP", "noop")

    async def list_folders(self) -> list[ListEntry]:
        data = await self._command("LIST", "list", '""', "*")
        return parse_list_response(data)

    @property
    def capabilities(self) -> tuple[str, ...]:
        return tuple(
            cap.decode() if isinstance(cap, bytes) else str(cap)
            for cap in self._connection.capabilities
        )

    async def fetch(self, message_set: str, items: str, *, uid: bool = False) -> list[FetchRecord]:
        if uid:
            data = await self._command("UID FETCH", "uid", "FETCH", message_set, items)
        else:
            data = await self._command("FETCH", "fetch", message_set, items)
        return parse_fetch_response(data)

    async def search(self, *criteria: str | bytes) -> list[int]:
        data = await self._command("UID SEARCH", "uid", "SEARCH", *criteria)
        return parse_search_response(data)

    async def store(self, uid: int | str, operation: str, flags: str) -> None:
        await self._command("UID STORE", "uid", "STORE", str(uid), operation, flags)

    async def move(self, uid: int | str, destination: str) -> None:
        """Move a message, falling back to COPY + delete without MOVE support."""
        target = quote_mailbox(destination)
        if "MOVE" in self.capabilities:
            await self._command("UID MOVE", "uid", "MOVE", str(uid), target)
            return
        await self._command("UID COPY", "uid", "COPY", str(uid), target)
        await self.store(uid, "+FLAGS.SILENT", r"(\Deleted)")
        await self.expunge(uid)

    async def expunge(self, uid: int | str | None = None) -> None:
        if uid is not None and "UIDPLUS" in self.capabilities:
            await self._command("UID EXPUNGE", "uid", "EXPUNGE", str(uid))
        else:
            await self._command("EXPUNGE", "expunge")

    async def logout(self) -> CleanupResult:
        """Log out best-effort; failures are reported, never raised.

        Waiters queued on the folder lock fail with ``ECLOSED`` once they get
        it; LOGOUT is only sent after the unit of work in flight has finished.
        """
        self.mark_unusable("logout")
        async with self._lock:
            if self._closed:
                return CleanupResult(ok=True)
            self._closed = True
            try:
                await asyncio.to_thread(self._connection.logout)
            except (imaplib.IMAP4.error, OSError) as exc:
                LOGGER.debug("IMAP logout raised; suppressing during cleanup: %s", exc)
                return CleanupResult(ok=False, error=describe_error(exc))
        return CleanupResult(ok=True)

    # Internal helpers ---------------------------------------------------------
    async def _select(self, path: str, *, readonly: bool) -> MailboxStatus:
        data = await self._command(
            f"SELECT {path}", "select", quote_mailbox(path), readonly
        )
        self.selected = path
        exists = int(data[0]) if data and data[0] is not None else 0
        return MailboxStatus(
            exists=exists,
            uid_validity=self._untagged_int("UIDVALIDITY"),
            uid_next=self._untagged_int("UIDNEXT"),
        )

    def _untagged_int(self, name: str) -> int | None:
        _, data = self._connection.response(name)
        if not data or data[0] is None:
            return None
        try:
            return int(data[0])
        except (TypeError, ValueError):
            return None

    async def _command(self, label: str, method: str, *args: Any) -> list[Any]:
        if not self._usable:
            raise ImapError(
                f"{label} failed: session is closed", code="ECLOSED", transient=True
            )
        func = getattr(self._connection, method)
        try:
            status, data = await asyncio.to_thread(func, *args)
        except imaplib.IMAP4.abort as exc:
            self.mark_unusable(f"{label} aborted")
            raise ImapError(
                f"{label} failed: connection aborted",
                response=_decode(exc.args[0] if exc.args else ""),
                code="EABORT",
                transient=True,
            ) from exc
        except imaplib.IMAP4.error as exc:
            raise ImapError(
                f"{label} failed", response=_decode(exc.args[0] if exc.args else "")
            ) from exc
        except TRANSIENT_ERRORS as exc:
            self.mark_unusable(f"{label} raised {type(exc).__name__}")
            raise ImapError(
                f"{label} failed: {exc}",
                code=type(exc).__name__,
                transient=True,
            ) from exc
        if status != "OK":
            detail = " ".join(_decode(item) for item in data or () if item is not None)
            raise ImapError(f"{label} failed", response=detail, code=status)
        return list(data or [])


def encode_xoauth2_for_smtp(username: str, access_token: str) -> str:
    """Return the base64 XOAUTH2 argument used with ``AUTH XOAUTH2``."""
    return base64.b64encode(xoauth2_string(username, access_token)).decode("ascii")


__all__ = [
    "ImapError",
    "ImapSession",
    "TRANSIENT_ERRORS",
    "connect_ipv4",
    "describe_error",
    "encode_xoauth2_for_smtp",
    "is_transient",
    "open_imap_connection",
    "xoauth2_string",
]
