"""Core domain models used across the session layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class AuthType(str, Enum):
    """Credential kinds an account can authenticate with."""

    PASSWORD = "password"
    OAUTH2 = "oauth2"


class PoolKind(str, Enum):
    """Connection pools kept per account."""

    BACKGROUND = "background"
    PRIORITY = "priority"


class Account(BaseModel):
    """Mailbox account as handed over by the application layer."""

    id: str | None = Field(default=None, description="Stable account identifier")
    email: str = Field(description="Login and sender address")
    name: str | None = Field(default=None, description="Display name for sending")
    imap_host: str = Field(description="Retrieval server host")
    imap_port: int = Field(default=993, description="Retrieval server port")
    imap_secure: bool = Field(default=True, description="Use implicit TLS for IMAP")
    smtp_host: str | None = Field(default=None, description="Sending server host")
    smtp_port: int = Field(default=587, description="Sending server port")
    smtp_secure: bool = Field(
        default=False, description="Implicit TLS for SMTP; STARTTLS when false"
    )
    auth_type: AuthType = Field(default=AuthType.PASSWORD)
    password: str | None = Field(default=None, repr=False)
    oauth2_access_token: str | None = Field(default=None, repr=False)
    oauth2_refresh_token: str | None = Field(default=None, repr=False)
    oauth2_expires_at: datetime | None = Field(default=None)
    oauth2_provider: str | None = Field(default=None)

    @property
    def pool_key(self) -> str:
        """Key addressing this account's session inside a pool."""
        return f"{self.email}-{self.imap_host}"

    @property
    def is_oauth2(self) -> bool:
        return self.auth_type is AuthType.OAUTH2


@dataclass(slots=True)
class Address:
    """Mailbox address with optional display name."""

    name: str | None
    address: str


UNKNOWN_SENDER = Address(name="Unknown", address="unknown@unknown.com")


@dataclass(slots=True)
class FolderNode:
    """Folder entry arranged in the parent/child tree."""

    name: str
    path: str
    special_use: str | None
    flags: tuple[str, ...]
    delimiter: str | None
    noselect: bool = False
    children: list[FolderNode] = field(default_factory=list)


@dataclass(slots=True)
class MailboxStatus:
    """Counters reported by SELECT for a folder."""

    exists: int
    uid_validity: int | None
    uid_next: int | None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class EmailSummary:
    """Envelope level view of a message used by list screens."""

    uid: int
    seq: int | None
    message_id: str | None
    subject: str
    sender: Address
    to: tuple[Address, ...]
    cc: tuple[Address, ...]
    bcc: tuple[Address, ...]
    date: datetime | None
    internal_date: datetime | None
    flags: tuple[str, ...]
    size: int | None
    has_attachments: bool
    display_index: int | None = None


@dataclass(slots=True)
class AttachmentPayload:
    """Attachment content encoded for transfer to the UI."""

    filename: str | None
    content_type: str
    content_disposition: str | None
    size: int
    content_id: str | None
    content: str


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class EmailDetail:
    """Fully fetched message."""

    uid: int
    message_id: str | None
    subject: str
    sender: Address
    to: tuple[Address, ...]
    cc: tuple[Address, ...]
    bcc: tuple[Address, ...]
    reply_to: tuple[Address, ...]
    date: datetime | None
    internal_date: datetime | None
    flags: tuple[str, ...]
    headers: dict[str, str]
    text: str | None
    html: str | None
    attachments: tuple[AttachmentPayload, ...]
    raw_source: str


@dataclass(slots=True)
class FetchRangeResult:
    """Page of messages addressed by display index."""

    emails: list[EmailSummary]
    total: int
    start_index: int
    end_index: int


@dataclass(slots=True)
class FetchPageResult:
    """Page of messages addressed by page number."""

    emails: list[EmailSummary]
    total: int
    page: int
    limit: int
    has_more: bool


@dataclass(slots=True)
class SearchFilters:
    """Optional criteria combined with the free text query."""

    sender: str | None = None
    since: datetime | None = None
    before: datetime | None = None
    subject: str | None = None


@dataclass(slots=True)
class SearchResult:
    """Search hits; ``total`` counts every match before capping."""

    emails: list[EmailSummary]
    total: int


@dataclass(frozen=True, slots=True)
class OutgoingAttachment:
    """File attached to an outgoing message."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    """Message submitted through the sending server."""

    to: tuple[str, ...]
    subject: str
    text: str | None = None
    html: str | None = None
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    in_reply_to: str | None = None
    references: str | None = None
    attachments: tuple[OutgoingAttachment, ...] = ()


@dataclass(slots=True)
class SendResult:
    """Identifier assigned to a sent message."""

    message_id: str


@dataclass(slots=True)
class OAuthTokens:
    """Token set returned by the provider's token endpoint."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime


@dataclass(slots=True)
class AuthorizationRequest:
    """Browser URL plus the state correlating its redirect."""

    auth_url: str
    state: str


@dataclass(frozen=True, slots=True)
class CleanupResult:
    """Outcome of a best-effort cleanup step.

    Cleanup never raises; callers log the result and move on.
    """

    ok: bool
    error: str | None = None


@dataclass(slots=True)
class ServiceResult(Generic[T]):
    """Tagged outcome returned to the application layer."""

    ok: bool
    data: T | None = None
    error: str | None = None

    @classmethod
    def success(cls, data: T | None = None) -> ServiceResult[T]:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> ServiceResult[T]:
        return cls(ok=False, error=error)


FlagAction = Literal["add", "remove"]


@dataclass(slots=True)
class CacheEvent:
    """Notification emitted by the background cache queue."""

    type: str
    uid: int | None = None
    email: Any = None
    remaining: int | None = None
    error: str | None = None


__all__ = [
    "Account",
    "Address",
    "AttachmentPayload",
    "AuthType",
    "AuthorizationRequest",
    "CacheEvent",
    "CleanupResult",
    "EmailDetail",
    "EmailSummary",
    "FetchPageResult",
    "FetchRangeResult",
    "FlagAction",
    "FolderNode",
    "MailboxStatus",
    "OAuthTokens",
    "OutgoingAttachment",
    "OutgoingMessage",
    "PoolKind",
    "SearchFilters",
    "SearchResult",
    "SendResult",
    "ServiceResult",
    "UNKNOWN_SENDER",
]
