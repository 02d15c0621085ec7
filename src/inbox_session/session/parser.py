"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

import base64
from collections.abc import Iterable, Iterator
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.models import UNKNOWN_SENDER, Address, AttachmentPayload, EmailDetail


class MessageParser:
    """Convert raw message source into :class:`EmailDetail` records."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(
        self,
        uid: int,
        payload: bytes,
        *,
        flags: tuple[str, ...] = (),
        internal_date: datetime | None = None,
    ) -> EmailDetail:
        """Parse raw RFC822 bytes into an :class:`EmailDetail`."""
        message = self._parser.parsebytes(payload)
        senders = _addresses(message.get_all("From", []))
        text, html = _extract_bodies(message)
        return EmailDetail(
            uid=uid,
            message_id=_header(message, "Message-ID"),
            subject=_header(message, "Subject") or "(No Subject)",
            sender=senders[0] if senders else UNKNOWN_SENDER,
            to=_addresses(message.get_all("To", [])),
            cc=_addresses(message.get_all("Cc", [])),
            bcc=_addresses(message.get_all("Bcc", [])),
            reply_to=_addresses(message.get_all("Reply-To", [])),
            date=_try_parse_datetime(_header(message, "Date")),
            internal_date=internal_date,
            flags=flags,
            headers={key: str(value) for key, value in message.items()},
            text=text,
            html=html,
            attachments=tuple(_collect_attachments(message)),
            raw_source=base64.b64encode(payload).decode("ascii"),
        )


def _header(message: EmailMessage, name: str) -> str | None:
    value = message.get(name)
    return str(value) if value is not None else None


def _addresses(headers: Iterable[object]) -> tuple[Address, ...]:
    return tuple(
        Address(name=name or None, address=address)
        for name, address in getaddresses([str(header) for header in headers])
        if address
    )


def _is_attachment(part: EmailMessage) -> bool:
    disposition = part.get_content_disposition()
    if disposition == "attachment":
        return True
    return disposition == "inline" and part.get_content_maintype() != "text"


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    text: str | None = None
    html: str | None = None
    for part in message.walk():
        if part.is_multipart() or _is_attachment(part):
            continue
        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue
        try:
            content = part.get_content()
        except LookupError:
            # Unknown charset
            content = (part.get_payload(decode=True) or b"").decode("utf-8", errors="replace")
        if content_type == "text/plain" and text is None:
            text = content
        elif content_type == "text/html" and html is None:
            html = content
    return text, html


def _collect_attachments(message: EmailMessage) -> Iterator[AttachmentPayload]:
    for part in message.walk():
        if part.is_multipart() or not _is_attachment(part):
            continue
        payload = part.get_payload(decode=True) or b""
        yield AttachmentPayload(
            filename=part.get_filename(),
            content_type=part.get_content_type(),
            content_disposition=part.get_content_disposition(),
            size=len(payload),
            content_id=_header(part, "Content-ID"),
            content=base64.b64encode(payload).decode("ascii"),
        )


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return parsedate_to_datetime(header_value)
    except (TypeError, ValueError):
        return None


__all__ = ["MessageParser"]
