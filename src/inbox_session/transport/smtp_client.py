"""SMTP transport for submitting one message per connection."""

from __future__ import annotations

import asyncio
import logging
import smtplib
import socket
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from ..core.config import SessionSettings
from ..core.models import Account, OutgoingMessage, SendResult
from .imap_client import connect_ipv4, encode_xoauth2_for_smtp

LOGGER = logging.getLogger(__name__)


class SmtpError(Exception):
    """Raised when SMTP connection, authentication, or sending fails."""

    def __init__(self, message: str, *, code: int | None = None, response: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.response = response


class _IPv4SMTP(smtplib.SMTP):
    """``SMTP`` resolving the server over IPv4 only."""

    def _get_socket(self, host: str, port: int, timeout: float) -> socket.socket:
        return connect_ipv4(host, port, timeout)


class _IPv4SMTPSSL(smtplib.SMTP_SSL, _IPv4SMTP):
    """``SMTP_SSL`` whose plain socket comes from :class:`_IPv4SMTP`."""


class SmtpTransport:
    """Stateless sender: connect, authenticate, send one message, disconnect.

    Example:
        >>> transport = SmtpTransport(account, settings)
        >>> result = await transport.send(OutgoingMessage(to=("a@x.com",), subject="Hi"))
    """

    def __init__(self, account: Account, settings: SessionSettings) -> None:
        """Bind the transport to an account's sending server and credential.

        Args:
            account: Account providing host, port, TLS mode and credential
            settings: Session settings providing timeouts and IPv4 policy
        """
        self._account = account
        self._settings = settings

    async def send(self, message: OutgoingMessage) -> SendResult:
        """Submit ``message`` and return the Message-ID it was sent with.

        Raises:
            SmtpError: If connecting, authenticating or sending fails
        """
        return await asyncio.to_thread(self._send_blocking, message)

    # Blocking implementation -------------------------------------------------
    def _send_blocking(self, message: OutgoingMessage) -> SendResult:
        mime_message = self.build_mime_message(message)
        recipients = [*message.to, *message.cc, *message.bcc]
        LOGGER.info(
            "Sending message to %d recipient(s) via %s",
            len(recipients),
            self._account.smtp_host,
        )
        connection = self._connect()
        try:
            refused = connection.send_message(
                mime_message, from_addr=self._account.email, to_addrs=recipients
            )
            if refused:
                LOGGER.warning("Some recipients were refused: %s", refused)
                raise SmtpError(f"Some recipients were refused: {refused}")
        except smtplib.SMTPRecipientsRefused as exc:
            raise SmtpError(f"All recipients refused: {exc}") from exc
        except smtplib.SMTPSenderRefused as exc:
            raise SmtpError(
                f"Sender refused: {exc}", code=exc.smtp_code, response=_text(exc.smtp_error)
            ) from exc
        except smtplib.SMTPDataError as exc:
            raise SmtpError(
                f"SMTP data error: {exc}", code=exc.smtp_code, response=_text(exc.smtp_error)
            ) from exc
        except smtplib.SMTPException as exc:
            raise SmtpError(f"Failed to send email: {exc}") from exc
        except OSError as exc:
            raise SmtpError(f"Network error while sending: {exc}") from exc
        finally:
            self._disconnect(connection)

        message_id = str(mime_message["Message-ID"])
        LOGGER.info("Message %s accepted by %s", message_id, self._account.smtp_host)
        return SendResult(message_id=message_id)

    def _connect(self) -> smtplib.SMTP:
        account = self._account
        if not account.smtp_host:
            raise SmtpError("SMTP host not configured")
        timeout = self._settings.connect_timeout_seconds
        ipv4 = self._settings.force_ipv4

        LOGGER.debug("Attempting SMTP connection to %s:%d", account.smtp_host, account.smtp_port)
        try:
            if account.smtp_secure:
                ssl_cls = _IPv4SMTPSSL if ipv4 else smtplib.SMTP_SSL
                connection: smtplib.SMTP = ssl_cls(
                    account.smtp_host, account.smtp_port, timeout=timeout
                )
            else:
                plain_cls = _IPv4SMTP if ipv4 else smtplib.SMTP
                connection = plain_cls(account.smtp_host, account.smtp_port, timeout=timeout)
                connection.ehlo()
                if connection.has_extn("starttls"):
                    LOGGER.debug("Using STARTTLS for SMTP connection")
                    connection.starttls()
                    connection.ehlo()
        except smtplib.SMTPConnectError as exc:
            raise SmtpError(
                f"Failed to connect to SMTP server: {exc}",
                code=exc.smtp_code,
                response=_text(exc.smtp_error),
            ) from exc
        except smtplib.SMTPException as exc:
            raise SmtpError(f"SMTP error: {exc}") from exc
        except OSError as exc:
            raise SmtpError(f"Network error connecting to SMTP server: {exc}") from exc

        try:
            self._authenticate(connection)
        except SmtpError:
            self._disconnect(connection)
            raise
        return connection

    def _authenticate(self, connection: smtplib.SMTP) -> None:
        account = self._account
        try:
            if account.is_oauth2:
                token = account.oauth2_access_token
                if not token:
                    raise SmtpError("OAuth2 access token is not available")
                connection.ehlo_or_helo_if_needed()
                code, response = connection.docmd(
                    "AUTH", "XOAUTH2 " + encode_xoauth2_for_smtp(account.email, token)
                )
                if code != 235:
                    raise SmtpError(
                        "SMTP XOAUTH2 authentication failed",
                        code=code,
                        response=_text(response),
                    )
            elif account.password:
                connection.login(account.email, account.password)
            LOGGER.debug("SMTP authentication successful for %s", account.email)
        except smtplib.SMTPAuthenticationError as exc:
            raise SmtpError(
                "SMTP authentication failed",
                code=exc.smtp_code,
                response=_text(exc.smtp_error),
            ) from exc
        except smtplib.SMTPException as exc:
            raise SmtpError(f"SMTP error during authentication: {exc}") from exc
        except OSError as exc:
            raise SmtpError(f"Network error during authentication: {exc}") from exc

    @staticmethod
    def _disconnect(connection: smtplib.SMTP) -> None:
        try:
            connection.quit()
            LOGGER.debug("SMTP connection closed")
        except (smtplib.SMTPException, OSError) as exc:
            LOGGER.debug("Error closing SMTP connection: %s", exc)
            connection.close()

    def build_mime_message(self, message: OutgoingMessage) -> EmailMessage:
        """Build the MIME message for ``message``."""
        account = self._account
        mime_message = EmailMessage()
        mime_message["From"] = formataddr((account.name or account.email, account.email))
        mime_message["To"] = ", ".join(message.to)
        if message.cc:
            mime_message["Cc"] = ", ".join(message.cc)
        if message.bcc:
            mime_message["Bcc"] = ", ".join(message.bcc)
        mime_message["Subject"] = message.subject
        domain = account.email.rpartition("@")[2] or None
        mime_message["Message-ID"] = make_msgid(domain=domain)

        # Thread headers for proper email threading
        if message.in_reply_to:
            mime_message["In-Reply-To"] = message.in_reply_to
        if message.references:
            mime_message["References"] = message.references

        if message.text is not None or message.html is None:
            mime_message.set_content(message.text or "")
            if message.html is not None:
                mime_message.add_alternative(message.html, subtype="html")
        else:
            mime_message.set_content(message.html, subtype="html")

        for attachment in message.attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            mime_message.add_attachment(
                attachment.content,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return mime_message


def _text(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["SmtpError", "SmtpTransport"]
