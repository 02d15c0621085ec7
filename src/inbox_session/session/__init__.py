"""Pooled IMAP sessions and the operations run over them."""

from .operations import MailboxOperations
from .parser import MessageParser
from .pool import ConnectionPoolManager
from .service import MailService

__all__ = ["ConnectionPoolManager", "MailService", "MailboxOperations", "MessageParser"]
