"""Request/response facade used by the application layer.

Every call returns a :class:`ServiceResult`; failures carry a readable
detail string instead of raising.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import TypeVar

from ..caching.queue import BackgroundCacheQueue, EventSink
from ..core.config import AppSettings
from ..core.models import (
    Account,
    AuthorizationRequest,
    EmailDetail,
    EmailSummary,
    FetchPageResult,
    FetchRangeResult,
    FlagAction,
    FolderNode,
    MailboxStatus,
    OAuthTokens,
    OutgoingMessage,
    PoolKind,
    SearchFilters,
    SearchResult,
    SendResult,
    ServiceResult,
)
from ..oauth.flow import OAuthFlowOrchestrator
from ..transport.imap_client import describe_error
from ..transport.smtp_client import SmtpTransport
from .operations import MailboxOperations
from .pool import ConnectionPoolManager

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

TransportFactory = Callable[[Account], SmtpTransport]


class MailService:
    """Route mailbox, sending and authorization requests to their components."""

    def __init__(
        self,
        settings: AppSettings,
        pool: ConnectionPoolManager,
        oauth: OAuthFlowOrchestrator,
        *,
        operations: MailboxOperations | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        # pylint: disable=too-many-arguments
        """Wire the service to its collaborators.

        Args:
            settings: Application settings
            pool: Connection pool manager owning the IMAP sessions
            oauth: Orchestrator for authorization and refresh
            operations: Mailbox command set; built from settings when omitted
            transport_factory: Builds the SMTP transport for an account
        """
        self._settings = settings
        self._pool = pool
        self._oauth = oauth
        self._operations = operations or MailboxOperations(settings.session)
        self._transport_factory = transport_factory or (
            lambda account: SmtpTransport(account, settings.session)
        )

    # Mailbox ------------------------------------------------------------------
    async def list_folders(self, account: Account) -> ServiceResult[list[FolderNode]]:
        return await self._guard(
            "List folders",
            self._pool.with_session(account, PoolKind.BACKGROUND, self._operations.list_folders),
        )

    async def fetch_range(
        self, account: Account, folder: str, start: int, end: int
    ) -> ServiceResult[FetchRangeResult]:
        return await self._guard(
            f"Fetch range {start}-{end} of {folder}",
            self._pool.with_session(
                account,
                PoolKind.BACKGROUND,
                lambda session: self._operations.fetch_range(session, folder, start, end),
            ),
        )

    async def fetch_page(
        self, account: Account, folder: str, page: int = 1, limit: int = 50
    ) -> ServiceResult[FetchPageResult]:
        return await self._guard(
            f"Fetch page {page} of {folder}",
            self._pool.with_session(
                account,
                PoolKind.BACKGROUND,
                lambda session: self._operations.fetch_page(session, folder, page, limit),
            ),
        )

    async def fetch_one(
        self, account: Account, folder: str, uid: int
    ) -> ServiceResult[EmailDetail | None]:
        """Fetch one full message through the priority pool."""
        return await self._guard(
            f"Fetch UID {uid} from {folder}",
            self._pool.with_session(
                account,
                PoolKind.PRIORITY,
                lambda session: self._operations.fetch_one(session, folder, uid),
            ),
        )

    async def mutate_flags(
        self,
        account: Account,
        folder: str,
        uid: int,
        flags: Iterable[str],
        action: FlagAction,
    ) -> ServiceResult[None]:
        flag_list = list(flags)
        return await self._guard(
            f"Update flags on UID {uid}",
            self._pool.with_session(
                account,
                PoolKind.PRIORITY,
                lambda session: self._operations.set_flags(
                    session, folder, uid, flag_list, action
                ),
            ),
        )

    async def delete_message(
        self, account: Account, folder: str, uid: int, permanent: bool = False
    ) -> ServiceResult[str | None]:
        return await self._guard(
            f"Delete UID {uid}",
            self._pool.with_session(
                account,
                PoolKind.PRIORITY,
                lambda session: self._operations.delete_message(session, folder, uid, permanent),
            ),
        )

    async def search(
        self,
        account: Account,
        folder: str,
        query: str | None = None,
        filters: SearchFilters | None = None,
    ) -> ServiceResult[SearchResult]:
        return await self._guard(
            f"Search {folder}",
            self._pool.with_session(
                account,
                PoolKind.BACKGROUND,
                lambda session: self._operations.search(session, folder, query, filters),
            ),
        )

    async def mailbox_status(self, account: Account, folder: str) -> ServiceResult[MailboxStatus]:
        return await self._guard(
            f"Status of {folder}",
            self._pool.with_session(
                account,
                PoolKind.BACKGROUND,
                lambda session: self._operations.mailbox_status(session, folder),
            ),
        )

    async def search_all_uids(self, account: Account, folder: str) -> ServiceResult[list[int]]:
        return await self._guard(
            f"List UIDs of {folder}",
            self._pool.with_session(
                account,
                PoolKind.BACKGROUND,
                lambda session: self._operations.search_all_uids(session, folder),
            ),
        )

    async def fetch_headers_by_uids(
        self, account: Account, folder: str, uids: Sequence[int]
    ) -> ServiceResult[tuple[list[EmailSummary], int]]:
        uid_list = list(uids)
        return await self._guard(
            f"Fetch {len(uid_list)} headers from {folder}",
            self._pool.with_session(
                account,
                PoolKind.BACKGROUND,
                lambda session: self._operations.fetch_headers_by_uids(session, folder, uid_list),
            ),
        )

    def cache_queue(
        self, account: Account, folder: str, on_event: EventSink
    ) -> BackgroundCacheQueue:
        """Build a cache warmer fetching ``folder`` through the priority pool."""

        async def fetch(uid: int) -> EmailDetail | None:
            return await self._pool.with_session(
                account,
                PoolKind.PRIORITY,
                lambda session: self._operations.fetch_one(session, folder, uid),
            )

        return BackgroundCacheQueue(fetch, on_event, self._settings.cache)

    # Connections ------------------------------------------------------------------
    async def test_connection(self, account: Account) -> ServiceResult[None]:
        """Open and close a dedicated session, outside both pools."""

        async def open_and_close() -> None:
            session = await self._pool.open_session(account)
            result = await session.logout()
            if not result.ok:
                LOGGER.debug("Logout after connection test failed: %s", result.error)

        return await self._guard(f"Connection test for {account.email}", open_and_close())

    async def disconnect(self, account: Account) -> ServiceResult[None]:
        return await self._guard(f"Disconnect {account.email}", self._pool.disconnect(account))

    def health(self) -> dict[str, int]:
        return {
            "background_connections": self._pool.connection_count(PoolKind.BACKGROUND),
            "priority_connections": self._pool.connection_count(PoolKind.PRIORITY),
            "pending_oauth_flows": self._oauth.pending_count,
        }

    # Sending ------------------------------------------------------------------------
    async def send_message(
        self, account: Account, message: OutgoingMessage
    ) -> ServiceResult[SendResult]:
        transport = self._transport_factory(account)
        return await self._guard(f"Send as {account.email}", transport.send(message))

    # OAuth2 -------------------------------------------------------------------------
    async def begin_authorization(
        self, login_hint: str | None = None
    ) -> ServiceResult[AuthorizationRequest]:
        return await self._guard(
            "OAuth authorization", self._oauth.begin_authorization(login_hint)
        )

    async def exchange_code(self, state: str) -> ServiceResult[OAuthTokens]:
        return await self._guard("OAuth code exchange", self._oauth.exchange_code(state))

    async def refresh_token(self, refresh_token: str) -> ServiceResult[OAuthTokens]:
        return await self._guard("OAuth token refresh", self._oauth.refresh_token(refresh_token))

    async def shutdown(self) -> None:
        """Log out every pooled session and cancel pending authorizations."""
        await self._pool.shutdown()
        await self._oauth.close()

    @staticmethod
    async def _guard(label: str, work: Awaitable[T]) -> ServiceResult[T]:
        try:
            data = await work
        except Exception as exc:  # pylint: disable=broad-except
            detail = describe_error(exc)
            LOGGER.error("%s failed: %s", label, detail)
            return ServiceResult.failure(detail)
        return ServiceResult.success(data)


__all__ = ["MailService", "TransportFactory"]
