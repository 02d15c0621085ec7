"""Mailbox operations run against one protocol session.

Every operation that touches a folder runs inside ``session.folder(path)``,
which holds the session's folder lock and selects the folder first. The
lock is released on every exit path.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Iterator, Sequence
from datetime import date, datetime, timezone
from typing import Any, Protocol

from ..core.config import DEFAULT_TRASH_FOLDERS, SessionSettings
from ..core.models import (
    EmailDetail,
    EmailSummary,
    FetchPageResult,
    FetchRangeResult,
    FlagAction,
    FolderNode,
    MailboxStatus,
    SearchFilters,
    SearchResult,
)
from ..transport.imap_client import ImapError
from ..transport.responses import (
    SOURCE_FETCH_ITEMS,
    SUMMARY_FETCH_ITEMS,
    FetchRecord,
    ListEntry,
    summary_from_record,
)
from .parser import MessageParser

LOGGER = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_SYSTEM_FLAGS = {"seen", "answered", "flagged", "deleted", "draft"}
_ATTRIBUTE_SPECIAL_USE = (
    (("sent",), "\\Sent"),
    (("trash", "deleted"), "\\Trash"),
    (("draft",), "\\Drafts"),
    (("junk", "spam"), "\\Junk"),
    (("archive",), "\\Archive"),
)
_NAME_SPECIAL_USE = (
    (("sent",), "\\Sent"),
    (("trash", "deleted"), "\\Trash"),
    (("draft",), "\\Drafts"),
)


class MailboxSession(Protocol):
    """Subset of :class:`ImapSession` used by the operations."""

    def folder(self, path: str, *, readonly: bool = False) -> Any:
        """Async context manager selecting ``path`` under the folder lock."""
        raise NotImplementedError

    def exclusive(self) -> Any:
        """Async context manager holding the session without a folder."""
        raise NotImplementedError

    async def list_folders(self) -> list[ListEntry]:
        raise NotImplementedError

    async def fetch(self, message_set: str, items: str, *, uid: bool = False) -> list[FetchRecord]:
        raise NotImplementedError

    async def search(self, *criteria: str | bytes) -> list[int]:
        raise NotImplementedError

    async def store(self, uid: int | str, operation: str, flags: str) -> None:
        raise NotImplementedError

    async def move(self, uid: int | str, destination: str) -> None:
        raise NotImplementedError

    async def expunge(self, uid: int | str | None = None) -> None:
        raise NotImplementedError


# Folder tree ------------------------------------------------------------------
def detect_special_use(flags: Iterable[str], path: str) -> str | None:
    """Return the special-use attribute for a folder.

    LIST attributes win; conventional names are the fallback.
    """
    for flag in flags:
        lowered = flag.lower()
        for needles, special_use in _ATTRIBUTE_SPECIAL_USE:
            if any(needle in lowered for needle in needles):
                return special_use
    lowered_path = path.lower()
    if lowered_path == "inbox":
        return "\\Inbox"
    for needles, special_use in _NAME_SPECIAL_USE:
        if any(needle in lowered_path for needle in needles):
            return special_use
    return None


def _ancestor_paths(entry: ListEntry) -> Iterator[str]:
    """Yield the entry's ancestor paths, nearest first."""
    if not entry.delimiter:
        return
    path = entry.path
    while entry.delimiter in path:
        path = path.rsplit(entry.delimiter, 1)[0]
        yield path


def build_folder_tree(entries: Sequence[ListEntry]) -> list[FolderNode]:
    """Arrange a flat LIST result into parent/child nodes.

    An entry hangs under its nearest listed ancestor, so ``A/B/C`` sits
    under ``A`` when ``A/B`` is missing. It is a root exactly when no
    ancestor path is listed, whatever order the server returned the
    entries in.
    """
    nodes: dict[str, FolderNode] = {}
    for entry in entries:
        name = entry.path.rsplit(entry.delimiter, 1)[-1] if entry.delimiter else entry.path
        nodes[entry.path] = FolderNode(
            name=name,
            path=entry.path,
            special_use=detect_special_use(entry.flags, entry.path),
            flags=entry.flags,
            delimiter=entry.delimiter,
            noselect=any(
                flag.lower() in ("\\noselect", "\\nonexistent") for flag in entry.flags
            ),
        )

    roots: list[FolderNode] = []
    for entry in entries:
        node = nodes[entry.path]
        parent = next(
            (path for path in _ancestor_paths(entry) if path in nodes and nodes[path] is not node),
            None,
        )
        if parent is not None:
            nodes[parent].children.append(node)
        else:
            roots.append(node)
    return roots


# Search helpers -----------------------------------------------------------------
def format_search_date(value: date | datetime) -> str:
    """Render a date the way SEARCH expects it (``01-Feb-2024``)."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def _search_string(value: str) -> str | bytes:
    escaped = '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    if escaped.isascii():
        return escaped
    return escaped.encode("utf-8")


def build_search_criteria(query: str | None, filters: SearchFilters | None) -> list[str | bytes]:
    """Build the ANDed SEARCH criteria; an empty list means "no search"."""
    filters = filters or SearchFilters()
    criteria: list[str | bytes] = []
    if query:
        criteria += ["TEXT", _search_string(query)]
    if filters.sender:
        criteria += ["FROM", _search_string(filters.sender)]
    if filters.subject:
        criteria += ["SUBJECT", _search_string(filters.subject)]
    if filters.since:
        criteria += ["SINCE", format_search_date(filters.since)]
    if filters.before:
        criteria += ["BEFORE", format_search_date(filters.before)]
    if any(isinstance(item, bytes) for item in criteria):
        criteria = ["CHARSET", "UTF-8", *criteria]
    return criteria


def _sort_timestamp(summary: EmailSummary) -> float:
    moment = summary.internal_date or summary.date
    if moment is None:
        return -math.inf
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def normalize_flags(flags: Iterable[str]) -> str:
    """Render flags for STORE, adding the backslash system flags need."""
    rendered = []
    for flag in flags:
        flag = flag.strip()
        if not flag:
            continue
        if not flag.startswith("\\") and flag.lower() in _SYSTEM_FLAGS:
            flag = "\\" + flag.capitalize()
        rendered.append(flag)
    return "(" + " ".join(rendered) + ")"


# Operations -------------------------------------------------------------------
class MailboxOperations:
    """Folder, fetch, search and mutation commands over one session."""

    def __init__(
        self,
        settings: SessionSettings | None = None,
        parser: MessageParser | None = None,
    ) -> None:
        settings = settings or SessionSettings()
        self._search_cap = settings.search_result_cap
        self._trash_folders = tuple(settings.trash_folders or DEFAULT_TRASH_FOLDERS)
        self._parser = parser or MessageParser()

    async def list_folders(self, session: MailboxSession) -> list[FolderNode]:
        async with session.exclusive():
            entries = await session.list_folders()
        LOGGER.debug("LIST returned %d folders", len(entries))
        return build_folder_tree(entries)

    async def mailbox_status(self, session: MailboxSession, folder: str) -> MailboxStatus:
        """Return EXISTS, UIDVALIDITY and UIDNEXT for delta synchronisation."""
        async with session.folder(folder) as status:
            return status

    async def fetch_range(
        self, session: MailboxSession, folder: str, start: int, end: int
    ) -> FetchRangeResult:
        """Fetch summaries for display indices ``[start, end)``, newest first.

        Display index 0 is the newest message, so the window is translated
        into the matching sequence number range before fetching.
        """
        async with session.folder(folder) as status:
            total = status.exists
            start = max(0, min(start, total - 1))
            end = min(end, total)
            if total == 0 or start >= end:
                return FetchRangeResult(emails=[], total=total, start_index=start, end_index=end)

            first_seq = max(1, total - end + 1)
            last_seq = total - start
            records = await session.fetch(f"{first_seq}:{last_seq}", SUMMARY_FETCH_ITEMS)

        emails = self._summaries(records)
        for summary in emails:
            if summary.seq is not None:
                summary.display_index = total - summary.seq
        emails.sort(key=lambda summary: summary.display_index if summary.display_index is not None else total)
        return FetchRangeResult(emails=emails, total=total, start_index=start, end_index=end)

    async def fetch_page(
        self, session: MailboxSession, folder: str, page: int = 1, limit: int = 50
    ) -> FetchPageResult:
        """Fetch one page of summaries; page 1 holds the newest messages."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        async with session.folder(folder) as status:
            total = status.exists
            skipped = (page - 1) * limit
            if total == 0 or skipped >= total:
                return FetchPageResult(emails=[], total=total, page=page, limit=limit, has_more=False)
            first_seq = max(1, total - page * limit + 1)
            last_seq = total - skipped
            records = await session.fetch(f"{first_seq}:{last_seq}", SUMMARY_FETCH_ITEMS)

        emails = self._summaries(records)
        emails.sort(key=lambda summary: summary.seq or 0, reverse=True)
        return FetchPageResult(
            emails=emails, total=total, page=page, limit=limit, has_more=first_seq > 1
        )

    async def fetch_one(self, session: MailboxSession, folder: str, uid: int) -> EmailDetail | None:
        """Fetch and parse the full message, or ``None`` if ``uid`` is gone."""
        async with session.folder(folder):
            records = await session.fetch(str(uid), SOURCE_FETCH_ITEMS, uid=True)
        record = next((item for item in records if item.uid == uid), None)
        if record is None:
            if not records:
                return None
            record = records[0]
        body = record.literal("BODY[]")
        if body is None:
            raise ImapError(f"No body in FETCH response for UID {uid}")
        return self._parser.parse(
            record.uid or uid,
            body,
            flags=record.flags,
            internal_date=record.internal_date,
        )

    async def search(
        self,
        session: MailboxSession,
        folder: str,
        query: str | None = None,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        """Search ``folder``; only the newest matches get their headers fetched."""
        criteria = build_search_criteria(query, filters)
        if not criteria:
            return SearchResult(emails=[], total=0)

        async with session.folder(folder):
            uids = await session.search(*criteria)
            if not uids:
                return SearchResult(emails=[], total=0)
            limited = uids[-self._search_cap :]
            records = await session.fetch(
                ",".join(str(uid) for uid in limited), SUMMARY_FETCH_ITEMS, uid=True
            )

        emails = self._summaries(records)
        emails.sort(key=_sort_timestamp, reverse=True)
        LOGGER.debug("Search matched %d messages, returning %d", len(uids), len(emails))
        return SearchResult(emails=emails, total=len(uids))

    async def search_all_uids(self, session: MailboxSession, folder: str) -> list[int]:
        async with session.folder(folder):
            return await session.search("ALL")

    async def fetch_headers_by_uids(
        self, session: MailboxSession, folder: str, uids: Sequence[int]
    ) -> tuple[list[EmailSummary], int]:
        """Fetch summaries for specific UIDs, newest UID first, plus EXISTS."""
        async with session.folder(folder) as status:
            if not uids:
                return [], status.exists
            records = await session.fetch(
                ",".join(str(uid) for uid in uids), SUMMARY_FETCH_ITEMS, uid=True
            )
        emails = self._summaries(records)
        emails.sort(key=lambda summary: summary.uid, reverse=True)
        return emails, status.exists

    async def set_flags(
        self,
        session: MailboxSession,
        folder: str,
        uid: int,
        flags: Iterable[str],
        action: FlagAction,
    ) -> None:
        if action not in ("add", "remove"):
            raise ValueError(f"Unknown flag action: {action!r}")
        operation = "+FLAGS" if action == "add" else "-FLAGS"
        async with session.folder(folder):
            await session.store(uid, operation, normalize_flags(flags))

    async def delete_message(
        self, session: MailboxSession, folder: str, uid: int, permanent: bool = False
    ) -> str | None:
        """Delete a message and return the trash folder it went to, if any.

        Without ``permanent`` the message is moved to the first trash
        candidate that accepts it; if none does it is only flagged
        ``\\Deleted``.
        """
        async with session.folder(folder):
            if permanent:
                await session.store(uid, "+FLAGS", r"(\Deleted)")
                await session.expunge(uid)
                return None

            for candidate in self._trash_folders:
                if candidate == folder:
                    continue
                try:
                    await session.move(uid, candidate)
                except ImapError as exc:
                    if exc.transient:
                        raise
                    LOGGER.debug("Move to %s rejected: %s", candidate, exc)
                    continue
                LOGGER.info("Moved UID %s from %s to %s", uid, folder, candidate)
                return candidate

            LOGGER.info("No trash folder accepted UID %s; flagging as deleted", uid)
            await session.store(uid, "+FLAGS", r"(\Deleted)")
            return None

    @staticmethod
    def _summaries(records: Iterable[FetchRecord]) -> list[EmailSummary]:
        summaries = []
        for record in records:
            summary = summary_from_record(record)
            if summary is None:
                LOGGER.warning("Skipping FETCH response without UID (seq %s)", record.seq)
                continue
            summaries.append(summary)
        return summaries


__all__ = [
    "MailboxOperations",
    "MailboxSession",
    "build_folder_tree",
    "build_search_criteria",
    "detect_special_use",
    "format_search_date",
    "normalize_flags",
]
