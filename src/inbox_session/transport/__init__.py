"""Transport adapters for mail retrieval and submission servers."""

from .imap_client import ImapError, ImapSession, describe_error, is_transient
from .smtp_client import SmtpError, SmtpTransport

__all__ = [
    "ImapError",
    "ImapSession",
    "SmtpError",
    "SmtpTransport",
    "describe_error",
    "is_transient",
]
