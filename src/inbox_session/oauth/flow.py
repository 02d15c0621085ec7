"""OAuth2 authorization code + PKCE orchestration.

A flow moves through ``begin_authorization`` (URL built, listener up),
the browser redirect (code or error delivered to the pending future, or
the timeout firing) and ``exchange_code`` (code traded for tokens). Each
state value is usable exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx

from ..core.config import OAuthSettings
from ..core.models import AuthorizationRequest, OAuthTokens
from .callback import LoopbackCallbackListener
from .pkce import CHALLENGE_METHOD, code_challenge, generate_code_verifier, generate_state
from .providers import OAuthProvider, resolve_provider

LOGGER = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


class OAuthError(RuntimeError):
    """Raised when the provider denies access or a token call fails."""

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.description = description


class OAuthTimeoutError(OAuthError):
    """Raised when no redirect arrived before the pending flow expired."""


class CallbackListener(Protocol):
    """Lifecycle of the redirect listener as driven by the orchestrator."""

    async def start(self) -> None:
        raise NotImplementedError

    def request_stop(self) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError


@dataclass(slots=True)
class PendingFlow:
    """Authorization awaiting its redirect and code exchange."""

    state: str
    code_verifier: str
    future: asyncio.Future[str]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    timer: asyncio.TimerHandle | None = None


def _consume_exception(future: asyncio.Future[str]) -> None:
    # Flows abandoned before exchange_code would otherwise log
    # "exception was never retrieved".
    if not future.cancelled():
        future.exception()


class OAuthFlowOrchestrator:
    """Run browser based authorizations and token refreshes."""

    def __init__(
        self,
        settings: OAuthSettings | None = None,
        *,
        provider: OAuthProvider | None = None,
        listener: CallbackListener | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialise the orchestrator.

        Args:
            settings: Callback address, timeouts and provider overrides
            provider: Provider to use instead of the configured preset
            listener: Redirect listener; defaults to the loopback listener
            transport: Optional ``httpx`` transport for token requests
        """
        self._settings = settings or OAuthSettings()
        self._provider = provider or resolve_provider(self._settings)
        self._listener: CallbackListener = (
            listener if listener is not None else LoopbackCallbackListener(self, self._settings)
        )
        self._transport = transport
        # Flows waiting for their redirect, keyed by state.
        self._awaiting_callback: dict[str, PendingFlow] = {}
        # Flows whose code has not been exchanged yet, keyed by state.
        self._pending: dict[str, PendingFlow] = {}

    @property
    def provider(self) -> OAuthProvider:
        return self._provider

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # Authorization ----------------------------------------------------------------
    def build_authorization_url(
        self, state: str, verifier: str, login_hint: str | None = None
    ) -> str:
        params = {
            "client_id": self._provider.client_id,
            "response_type": "code",
            "redirect_uri": self._settings.redirect_uri,
            "scope": " ".join(self._provider.scopes),
            "response_mode": "query",
            "state": state,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": CHALLENGE_METHOD,
        }
        if login_hint:
            params["login_hint"] = login_hint
        return f"{self._provider.authorize_endpoint}?{urlencode(params)}"

    async def begin_authorization(self, login_hint: str | None = None) -> AuthorizationRequest:
        """Register a pending flow and return the URL to open in a browser.

        Raises:
            OAuthError: If the loopback listener cannot be started
        """
        loop = asyncio.get_running_loop()
        verifier = generate_code_verifier()
        state = generate_state()
        future: asyncio.Future[str] = loop.create_future()
        future.add_done_callback(_consume_exception)
        flow = PendingFlow(state=state, code_verifier=verifier, future=future)
        flow.timer = loop.call_later(self._settings.pending_timeout_seconds, self._expire, state)
        self._pending[state] = flow
        self._awaiting_callback[state] = flow

        try:
            await self._listener.start()
        except OSError as exc:
            self._discard(state)
            raise OAuthError(f"Failed to start OAuth callback listener: {exc}") from exc

        LOGGER.info("OAuth authorization started for provider %s", self._provider.name)
        return AuthorizationRequest(
            auth_url=self.build_authorization_url(state, verifier, login_hint),
            state=state,
        )

    def resolve_callback(self, state: str, code: str) -> bool:
        """Deliver the authorization code for ``state``."""
        flow = self._take_awaiting(state)
        if flow is None:
            return False
        if not flow.future.done():
            flow.future.set_result(code)
        LOGGER.info("OAuth authorization code received")
        return True

    def reject_callback(self, state: str, error: str, description: str) -> bool:
        """Deliver a provider error for ``state``."""
        flow = self._take_awaiting(state)
        if flow is None:
            return False
        if not flow.future.done():
            flow.future.set_exception(
                OAuthError(
                    f"Authorization failed: {description}",
                    error=error,
                    description=description,
                )
            )
        LOGGER.warning("OAuth authorization rejected by provider: %s", error)
        return True

    async def exchange_code(self, state: str) -> OAuthTokens:
        """Wait for the redirect of ``state`` and trade its code for tokens.

        Raises:
            OAuthError: For an unknown state, a provider error or a failed
                token request
            OAuthTimeoutError: If the redirect never arrived
        """
        flow = self._pending.pop(state, None)
        if flow is None:
            raise OAuthError("No pending OAuth flow for this state")
        try:
            code = await flow.future
        finally:
            if flow.timer is not None:
                flow.timer.cancel()

        form = {
            "client_id": self._provider.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._settings.redirect_uri,
            "code_verifier": flow.code_verifier,
        }
        if self._provider.client_secret:
            form["client_secret"] = self._provider.client_secret
        tokens = await self._request_tokens(form, previous_refresh_token=None)
        LOGGER.info("OAuth authorization code exchanged for tokens")
        return tokens

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Obtain a fresh access token; keeps the old refresh token if not rotated."""
        form = {
            "client_id": self._provider.client_id,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": " ".join(self._provider.scopes),
        }
        if self._provider.client_secret:
            form["client_secret"] = self._provider.client_secret
        tokens = await self._request_tokens(form, previous_refresh_token=refresh_token)
        LOGGER.info("OAuth access token refreshed")
        return tokens

    async def close(self) -> None:
        """Cancel every pending flow and stop the listener."""
        for state in list(self._pending) + list(self._awaiting_callback):
            flow = self._pending.get(state) or self._awaiting_callback.get(state)
            self._discard(state)
            if flow is not None and not flow.future.done():
                flow.future.set_exception(OAuthError("OAuth flow cancelled"))
        await self._listener.stop()

    # Internal helpers ---------------------------------------------------------
    def _take_awaiting(self, state: str) -> PendingFlow | None:
        flow = self._awaiting_callback.pop(state, None)
        if not self._awaiting_callback:
            self._listener.request_stop()
        return flow

    def _expire(self, state: str) -> None:
        flow = self._pending.get(state) or self._awaiting_callback.get(state)
        self._discard(state)
        if flow is not None and not flow.future.done():
            LOGGER.warning("OAuth flow timed out waiting for the redirect")
            flow.future.set_exception(OAuthTimeoutError("OAuth flow timed out"))

    def _discard(self, state: str) -> None:
        flow = self._pending.pop(state, None)
        awaiting = self._awaiting_callback.pop(state, None)
        for item in (flow, awaiting):
            if item is not None and item.timer is not None:
                item.timer.cancel()
        if not self._awaiting_callback:
            self._listener.request_stop()

    async def _request_tokens(
        self, form: dict[str, str], *, previous_refresh_token: str | None
    ) -> OAuthTokens:
        async with httpx.AsyncClient(
            timeout=self._settings.http_timeout_seconds, transport=self._transport
        ) as client:
            try:
                response = await client.post(
                    self._provider.token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                raise OAuthError(f"Token request failed: {exc}") from exc

        try:
            payload: dict[str, Any] = response.json()
        except ValueError as exc:
            raise OAuthError(
                f"Token endpoint returned HTTP {response.status_code} without JSON"
            ) from exc

        if "error" in payload or response.is_error:
            error = payload.get("error")
            description = payload.get("error_description") or error or f"HTTP {response.status_code}"
            LOGGER.error("Token endpoint rejected request: %s", error or response.status_code)
            raise OAuthError(
                f"Token request failed: {description}", error=error, description=description
            )

        access_token = payload.get("access_token")
        if not access_token:
            raise OAuthError("Token response did not include an access token")
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return OAuthTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )


__all__ = [
    "CallbackListener",
    "OAuthError",
    "OAuthFlowOrchestrator",
    "OAuthTimeoutError",
    "PendingFlow",
]
