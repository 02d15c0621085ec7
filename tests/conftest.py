"""Shared test doubles for the session layer."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from inbox_session.core.models import Account, CleanupResult, MailboxStatus
from inbox_session.transport.imap_client import ImapError
from inbox_session.transport.responses import FetchRecord, ListEntry


@pytest.fixture
def account() -> Account:
    return Account(
        email="user@example.com",
        name="Test User",
        imap_host="imap.example.com",
        smtp_host="smtp.example.com",
        password="secret",
    )


class FakeSession:
    """Pool-facing session double recording its lifecycle."""

    def __init__(self, key: str, serial: int = 0) -> None:
        self.key = key
        self.serial = serial
        self._usable = True
        self._listeners: list[Callable[[FakeSession], None]] = []
        self._lock = asyncio.Lock()
        self.logged_out = False
        self.noop_calls = 0
        self.noop_error: BaseException | None = None

    @property
    def usable(self) -> bool:
        return self._usable

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def add_unusable_listener(self, listener: Callable[[FakeSession], None]) -> None:
        self._listeners.append(listener)

    def mark_unusable(self, reason: str = "test") -> None:
        if not self._usable:
            return
        self._usable = False
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(self)

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[FakeSession]:
        async with self._lock:
            yield self

    async def noop(self) -> None:
        self.noop_calls += 1
        if self.noop_error is not None:
            raise self.noop_error

    async def logout(self) -> CleanupResult:
        self.mark_unusable("logout")
        self.logged_out = True
        return CleanupResult(ok=True)


class SessionFactory:
    """Counting factory producing :class:`FakeSession` objects."""

    def __init__(self) -> None:
        self.created: list[FakeSession] = []
        self.failures: list[BaseException] = []

    async def __call__(self, account: Account) -> FakeSession:
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)
        session = FakeSession(account.pool_key, serial=len(self.created))
        self.created.append(session)
        return session


@pytest.fixture
def session_factory() -> SessionFactory:
    return SessionFactory()


@dataclass
class FakeMessage:
    uid: int
    subject: str
    sender: str = "Alice <alice@example.com>"
    date: datetime = field(
        default_factory=lambda: datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    )
    flags: tuple[str, ...] = ()
    body: bytes | None = None

    def headers(self) -> bytes:
        return (
            f"Subject: {self.subject}\r\n"
            f"From: {self.sender}\r\n"
            f"To: user@example.com\r\n"
            f"Date: {self.date.strftime('%a, %d %b %Y %H:%M:%S +0000')}\r\n"
            f"Message-ID: <{self.uid}@example.com>\r\n\r\n"
        ).encode()

    def source(self) -> bytes:
        return self.body if self.body is not None else self.headers() + b"Hello\r\n"


def _record(seq: int, message: FakeMessage, *, full: bool) -> FetchRecord:
    flags = " ".join(message.flags)
    internal = message.date.strftime("%d-%b-%Y %H:%M:%S +0000")
    text = f' UID {message.uid} FLAGS ({flags}) INTERNALDATE "{internal}" RFC822.SIZE 120'
    if full:
        return FetchRecord(seq=seq, text=text, literals={"BODY[]": message.source()})
    return FetchRecord(
        seq=seq,
        text=text + ' BODYSTRUCTURE ("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 5 1 NIL NIL NIL)',
        literals={
            "BODY[HEADER.FIELDS (SUBJECT FROM TO CC BCC DATE MESSAGE-ID)]": message.headers()
        },
    )


def _expand(message_set: str) -> list[int]:
    numbers: list[int] = []
    for part in message_set.split(","):
        if ":" in part:
            low, high = part.split(":")
            numbers.extend(range(int(low), int(high) + 1))
        else:
            numbers.append(int(part))
    return numbers


class FakeMailboxSession:
    """In-memory stand-in for :class:`ImapSession` used by operation tests."""

    def __init__(
        self,
        folders: dict[str, list[FakeMessage]] | None = None,
        *,
        list_entries: list[ListEntry] | None = None,
        search_hits: list[int] | None = None,
        rejected_moves: tuple[str, ...] = (),
    ) -> None:
        self.folders = folders if folders is not None else {"INBOX": []}
        self.list_entries = list_entries or []
        self.search_hits = search_hits
        self.rejected_moves = rejected_moves
        self.selected: str | None = None
        self.calls: list[tuple] = []
        self._lock = asyncio.Lock()
        self.key = "user@example.com-imap.example.com"
        self.listeners: list[Callable[[FakeMailboxSession], None]] = []
        self.usable = True
        self.logged_out = False

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def add_unusable_listener(self, listener: Callable[[FakeMailboxSession], None]) -> None:
        self.listeners.append(listener)

    async def noop(self) -> None:
        self.calls.append(("NOOP",))

    async def logout(self) -> CleanupResult:
        self.usable = False
        self.logged_out = True
        return CleanupResult(ok=True)

    @asynccontextmanager
    async def folder(self, path: str, *, readonly: bool = False) -> AsyncIterator[MailboxStatus]:
        async with self._lock:
            if path not in self.folders:
                raise ImapError(f"SELECT {path} failed", response="Mailbox doesn't exist", code="NO")
            self.selected = path
            self.calls.append(("SELECT", path))
            messages = self.folders[path]
            yield MailboxStatus(
                exists=len(messages),
                uid_validity=7,
                uid_next=(messages[-1].uid + 1) if messages else 1,
            )

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[FakeMailboxSession]:
        async with self._lock:
            yield self

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def list_folders(self) -> list[ListEntry]:
        self.calls.append(("LIST",))
        return self.list_entries

    async def fetch(self, message_set: str, items: str, *, uid: bool = False) -> list[FetchRecord]:
        self.calls.append(("UID FETCH" if uid else "FETCH", message_set))
        messages = self.folders[self.selected or "INBOX"]
        full = "BODY.PEEK[]" in items
        wanted = _expand(message_set)
        records = []
        for seq, message in enumerate(messages, start=1):
            key = message.uid if uid else seq
            if key in wanted:
                records.append(_record(seq, message, full=full))
        return records

    async def search(self, *criteria: str | bytes) -> list[int]:
        self.calls.append(("SEARCH", *criteria))
        if self.search_hits is not None:
            return list(self.search_hits)
        return [message.uid for message in self.folders[self.selected or "INBOX"]]

    async def store(self, uid: int | str, operation: str, flags: str) -> None:
        self.calls.append(("STORE", str(uid), operation, flags))

    async def move(self, uid: int | str, destination: str) -> None:
        if destination in self.rejected_moves or destination not in self.folders:
            self.calls.append(("MOVE REJECTED", str(uid), destination))
            raise ImapError("UID MOVE failed", response="No such mailbox", code="NO")
        self.calls.append(("MOVE", str(uid), destination))

    async def expunge(self, uid: int | str | None = None) -> None:
        self.calls.append(("EXPUNGE", None if uid is None else str(uid)))


def make_messages(count: int, *, start: datetime | None = None) -> list[FakeMessage]:
    """Messages with ascending UIDs and dates, oldest first."""
    base = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [
        FakeMessage(uid=100 + index, subject=f"Message {index + 1}", date=base + timedelta(hours=index))
        for index in range(count)
    ]


@pytest.fixture
def mailbox_factory() -> Callable[..., FakeMailboxSession]:
    return FakeMailboxSession


@pytest.fixture
def messages_factory() -> Callable[..., list[FakeMessage]]:
    return make_messages
