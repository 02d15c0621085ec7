"""Parsers for the untagged responses returned by ``imaplib``."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.parser import BytesHeaderParser
from email.utils import getaddresses, parsedate_to_datetime

from imapclient import imap_utf7

from ..core.models import UNKNOWN_SENDER, Address, EmailSummary

LOGGER = logging.getLogger(__name__)

_LIST_RE = re.compile(
    r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$',
    re.IGNORECASE,
)
_FETCH_START_RE = re.compile(rb"^(?P<seq>\d+) \(")
_LITERAL_SECTION_RE = re.compile(
    r"(?P<section>BODY(?:\.PEEK)?\[[^\]]*\](?:<\d+>)?|RFC822(?:\.HEADER|\.TEXT)?)"
    r"\s*\{\d+\}\s*$",
    re.IGNORECASE,
)
_UID_RE = re.compile(r"\bUID (\d+)", re.IGNORECASE)
_FLAGS_RE = re.compile(r"\bFLAGS \(([^)]*)\)", re.IGNORECASE)
_SIZE_RE = re.compile(r"\bRFC822\.SIZE (\d+)", re.IGNORECASE)
_INTERNALDATE_RE = re.compile(r'\bINTERNALDATE "([^"]+)"', re.IGNORECASE)
_BODYSTRUCTURE_RE = re.compile(r"\bBODYSTRUCTURE (\(.*\))", re.IGNORECASE | re.DOTALL)
_ATTACHMENT_DISPOSITION_RE = re.compile(r'\(\s*"attachment"', re.IGNORECASE)
_NAMED_BINARY_PART_RE = re.compile(
    r'\("(?:application|image|audio|video)"\s+"[^"]*"\s+\([^)]*"(?:file)?name"',
    re.IGNORECASE,
)

SUMMARY_FETCH_ITEMS = (
    "(UID FLAGS INTERNALDATE RFC822.SIZE BODYSTRUCTURE "
    "BODY.PEEK[HEADER.FIELDS (SUBJECT FROM TO CC BCC DATE MESSAGE-ID)])"
)
SOURCE_FETCH_ITEMS = "(UID FLAGS INTERNALDATE BODY.PEEK[])"


@dataclass(slots=True)
class ListEntry:
    """One line of a LIST response."""

    path: str
    delimiter: str | None
    flags: tuple[str, ...]


@dataclass(slots=True)
class FetchRecord:
    """Attributes and literals of a single FETCH response."""

    seq: int
    text: str = ""
    literals: dict[str, bytes] = field(default_factory=dict)

    @property
    def uid(self) -> int | None:
        match = _UID_RE.search(self.text)
        return int(match.group(1)) if match else None

    @property
    def flags(self) -> tuple[str, ...]:
        match = _FLAGS_RE.search(self.text)
        if not match:
            return ()
        return tuple(match.group(1).split())

    @property
    def size(self) -> int | None:
        match = _SIZE_RE.search(self.text)
        return int(match.group(1)) if match else None

    @property
    def internal_date(self) -> datetime | None:
        match = _INTERNALDATE_RE.search(self.text)
        if not match:
            return None
        try:
            return datetime.strptime(match.group(1).strip(), "%d-%b-%Y %H:%M:%S %z")
        except ValueError:
            return None

    @property
    def has_attachments(self) -> bool:
        match = _BODYSTRUCTURE_RE.search(self.text)
        if not match:
            return False
        structure = match.group(1)
        return bool(
            _ATTACHMENT_DISPOSITION_RE.search(structure)
            or _NAMED_BINARY_PART_RE.search(structure)
        )

    def literal(self, prefix: str) -> bytes | None:
        """Return the first literal whose section name starts with ``prefix``."""
        wanted = prefix.upper()
        for section, payload in self.literals.items():
            if section.upper().replace(".PEEK", "").startswith(wanted):
                return payload
        return None


def decode_folder_name(raw: str) -> str:
    """Decode an RFC 3501 modified UTF-7 folder name.

    A name that does not decode is returned as the server sent it, so one
    bad entry never hides the rest of the listing.
    """
    if "&" not in raw:
        return raw
    try:
        return imap_utf7.decode(raw.encode("ascii"))
    except ValueError:
        LOGGER.debug("Keeping undecodable folder name %r", raw)
        return raw


def encode_folder_name(name: str) -> str:
    """Encode a folder name to modified UTF-7 for use in commands."""
    return imap_utf7.encode(name).decode("ascii")


def quote_mailbox(name: str) -> str:
    """Quote a folder name for an IMAP command argument."""
    encoded = encode_folder_name(name)
    escaped = encoded.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def parse_list_response(data: Iterable[bytes | tuple[bytes, bytes] | None]) -> list[ListEntry]:
    """Parse the untagged lines returned by ``IMAP4.list``."""
    entries: list[ListEntry] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            # Folder name sent as a literal.
            head = item[0].decode("utf-8", errors="replace")
            name = item[1].decode("utf-8", errors="replace")
            head = re.sub(r"\s*\{\d+\}\s*$", "", head)
            line = f"{head} \"{name}\""
        else:
            line = item.decode("utf-8", errors="replace")
        match = _LIST_RE.match(line.strip())
        if not match:
            continue
        raw_delimiter = match.group("delimiter")
        delimiter = None if raw_delimiter.upper() == "NIL" else _unquote(raw_delimiter)
        entries.append(
            ListEntry(
                path=decode_folder_name(_unquote(match.group("name"))),
                delimiter=delimiter or None,
                flags=tuple(match.group("flags").split()),
            )
        )
    return entries


def parse_fetch_response(data: Iterable[bytes | tuple[bytes, bytes] | None]) -> list[FetchRecord]:
    """Group ``imaplib`` FETCH chunks into one record per message.

    ``imaplib`` hands back a flat list in which a message is spread over a
    tuple per literal plus trailing byte strings carrying whatever attributes
    the server sent after the last literal.
    """
    records: list[FetchRecord] = []
    current: FetchRecord | None = None
    for item in data:
        if item is None:
            continue
        head = item[0] if isinstance(item, tuple) else item
        start = _FETCH_START_RE.match(head)
        if start:
            current = FetchRecord(seq=int(start.group("seq")))
            records.append(current)
            head = head[start.end() :]
        if current is None:
            continue
        text = head.decode("utf-8", errors="replace")
        if isinstance(item, tuple):
            section = _LITERAL_SECTION_RE.search(text)
            if section:
                current.literals[section.group("section")] = item[1]
                text = text[: section.start()]
        current.text += " " + text
    return records


def parse_search_response(data: Iterable[bytes | None]) -> list[int]:
    """Return message numbers from a SEARCH response in ascending order."""
    numbers: list[int] = []
    for item in data:
        if not item:
            continue
        numbers.extend(int(token) for token in item.split() if token.isdigit())
    return sorted(numbers)


def _addresses(values: list[str]) -> tuple[Address, ...]:
    return tuple(
        Address(name=name or None, address=address)
        for name, address in getaddresses(values)
        if address
    )


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def summary_from_record(record: FetchRecord) -> EmailSummary | None:
    """Build an :class:`EmailSummary` from a header FETCH record."""
    uid = record.uid
    if uid is None:
        return None
    header_bytes = record.literal("BODY[HEADER") or b""
    headers = BytesHeaderParser(policy=policy.default).parsebytes(header_bytes)
    senders = _addresses([str(value) for value in headers.get_all("From", [])])
    return EmailSummary(
        uid=uid,
        seq=record.seq,
        message_id=headers.get("Message-ID"),
        subject=str(headers.get("Subject") or "") or "(No Subject)",
        sender=senders[0] if senders else UNKNOWN_SENDER,
        to=_addresses([str(value) for value in headers.get_all("To", [])]),
        cc=_addresses([str(value) for value in headers.get_all("Cc", [])]),
        bcc=_addresses([str(value) for value in headers.get_all("Bcc", [])]),
        date=_parse_date(headers.get("Date")),
        internal_date=record.internal_date,
        flags=record.flags,
        size=record.size,
        has_attachments=record.has_attachments,
    )


__all__ = [
    "FetchRecord",
    "ListEntry",
    "SOURCE_FETCH_ITEMS",
    "SUMMARY_FETCH_ITEMS",
    "decode_folder_name",
    "encode_folder_name",
    "parse_fetch_response",
    "parse_list_response",
    "parse_search_response",
    "quote_mailbox",
    "summary_from_record",
]
