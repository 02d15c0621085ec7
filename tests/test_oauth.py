"""Tests for the OAuth2 PKCE flow, provider presets and callback listener."""

from __future__ import annotations

import asyncio
import base64
import hashlib
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from inbox_session.core.config import OAuthSettings
from inbox_session.oauth.callback import create_callback_app
from inbox_session.oauth.flow import OAuthError, OAuthFlowOrchestrator, OAuthTimeoutError
from inbox_session.oauth.pkce import code_challenge, generate_code_verifier, generate_state
from inbox_session.oauth.providers import MICROSOFT, resolve_provider


class FakeListener:
    def __init__(self, error: OSError | None = None) -> None:
        self.error = error
        self.starts = 0
        self.stop_requests = 0
        self.stops = 0

    async def start(self) -> None:
        self.starts += 1
        if self.error is not None:
            raise self.error

    def request_stop(self) -> None:
        self.stop_requests += 1

    async def stop(self) -> None:
        self.stops += 1


class TokenEndpoint:
    """httpx mock transport handler recording submitted forms."""

    def __init__(self, status_code: int = 200, payload: dict | None = None) -> None:
        self.status_code = status_code
        self.payload = payload if payload is not None else {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "expires_in": 1800,
        }
        self.forms: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        self.forms.append(form)
        return httpx.Response(self.status_code, json=self.payload)


def _orchestrator(
    endpoint: TokenEndpoint | None = None,
    *,
    listener: FakeListener | None = None,
    settings: OAuthSettings | None = None,
) -> tuple[OAuthFlowOrchestrator, FakeListener]:
    listener = listener or FakeListener()
    transport = httpx.MockTransport(endpoint or TokenEndpoint())
    orchestrator = OAuthFlowOrchestrator(
        settings or OAuthSettings(), listener=listener, transport=transport
    )
    return orchestrator, listener


def test_code_verifier_and_challenge_follow_s256() -> None:
    verifier = generate_code_verifier()
    assert len(verifier) == 43
    assert "=" not in verifier

    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
    assert code_challenge(verifier) == expected.rstrip(b"=").decode()

    state = generate_state()
    assert len(state) == 32
    int(state, 16)


def test_authorization_url_carries_pkce_parameters() -> None:
    async def scenario() -> None:
        orchestrator, listener = _orchestrator()
        request = await orchestrator.begin_authorization(login_hint="user@example.com")

        url = urlsplit(request.auth_url)
        params = {key: values[0] for key, values in parse_qs(url.query).items()}
        assert f"{url.scheme}://{url.netloc}{url.path}" == MICROSOFT.authorize_endpoint
        assert params["client_id"] == MICROSOFT.client_id
        assert params["response_type"] == "code"
        assert params["redirect_uri"] == "http://localhost:19876/callback"
        assert params["scope"] == " ".join(MICROSOFT.scopes)
        assert params["state"] == request.state
        assert params["code_challenge_method"] == "S256"
        assert params["login_hint"] == "user@example.com"
        assert listener.starts == 1
        assert orchestrator.pending_count == 1
        await orchestrator.close()

    asyncio.run(scenario())


def test_exchange_posts_code_and_verifier() -> None:
    async def scenario() -> None:
        endpoint = TokenEndpoint()
        orchestrator, listener = _orchestrator(endpoint)
        request = await orchestrator.begin_authorization()
        challenge = parse_qs(urlsplit(request.auth_url).query)["code_challenge"][0]

        assert orchestrator.resolve_callback(request.state, "auth-code")
        assert listener.stop_requests >= 1
        tokens = await orchestrator.exchange_code(request.state)

        (form,) = endpoint.forms
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == "http://localhost:19876/callback"
        assert code_challenge(form["code_verifier"]) == challenge
        assert "client_secret" not in form
        assert tokens.access_token == "access-1"
        assert tokens.refresh_token == "refresh-1"
        assert orchestrator.pending_count == 0

    asyncio.run(scenario())


def test_state_is_single_use() -> None:
    async def scenario() -> None:
        orchestrator, _ = _orchestrator()
        request = await orchestrator.begin_authorization()
        orchestrator.resolve_callback(request.state, "auth-code")
        await orchestrator.exchange_code(request.state)

        assert not orchestrator.resolve_callback(request.state, "replayed")
        with pytest.raises(OAuthError, match="No pending OAuth flow"):
            await orchestrator.exchange_code(request.state)

    asyncio.run(scenario())


def test_unknown_state_is_rejected() -> None:
    async def scenario() -> None:
        orchestrator, _ = _orchestrator()
        assert not orchestrator.resolve_callback("nope", "code")
        assert not orchestrator.reject_callback("nope", "access_denied", "denied")
        with pytest.raises(OAuthError):
            await orchestrator.exchange_code("nope")

    asyncio.run(scenario())


def test_pending_flow_times_out() -> None:
    async def scenario() -> None:
        settings = OAuthSettings(pending_timeout_seconds=0.05)
        orchestrator, listener = _orchestrator(settings=settings)
        request = await orchestrator.begin_authorization()

        with pytest.raises(OAuthTimeoutError, match="timed out"):
            await orchestrator.exchange_code(request.state)
        assert not orchestrator.resolve_callback(request.state, "late")
        assert listener.stop_requests >= 1

    asyncio.run(scenario())


def test_provider_error_redirect_fails_exchange() -> None:
    async def scenario() -> None:
        endpoint = TokenEndpoint()
        orchestrator, _ = _orchestrator(endpoint)
        request = await orchestrator.begin_authorization()

        assert orchestrator.reject_callback(request.state, "access_denied", "User cancelled")
        with pytest.raises(OAuthError, match="Authorization failed: User cancelled") as info:
            await orchestrator.exchange_code(request.state)
        assert info.value.error == "access_denied"
        assert endpoint.forms == []

    asyncio.run(scenario())


def test_token_endpoint_error_surfaces_description() -> None:
    async def scenario() -> None:
        endpoint = TokenEndpoint(
            400, {"error": "invalid_grant", "error_description": "Code expired"}
        )
        orchestrator, _ = _orchestrator(endpoint)
        request = await orchestrator.begin_authorization()
        orchestrator.resolve_callback(request.state, "stale-code")

        with pytest.raises(OAuthError, match="Code expired") as info:
            await orchestrator.exchange_code(request.state)
        assert info.value.error == "invalid_grant"

    asyncio.run(scenario())


def test_refresh_keeps_refresh_token_when_not_rotated() -> None:
    async def scenario() -> None:
        endpoint = TokenEndpoint(payload={"access_token": "access-2"})
        orchestrator, _ = _orchestrator(endpoint)
        tokens = await orchestrator.refresh_token("refresh-old")

        (form,) = endpoint.forms
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-old"
        assert form["scope"] == " ".join(MICROSOFT.scopes)
        assert tokens.access_token == "access-2"
        assert tokens.refresh_token == "refresh-old"

    asyncio.run(scenario())


def test_refresh_without_access_token_fails() -> None:
    async def scenario() -> None:
        orchestrator, _ = _orchestrator(TokenEndpoint(payload={"token_type": "Bearer"}))
        with pytest.raises(OAuthError, match="access token"):
            await orchestrator.refresh_token("refresh-old")

    asyncio.run(scenario())


def test_client_secret_is_sent_when_configured() -> None:
    async def scenario() -> None:
        endpoint = TokenEndpoint()
        orchestrator, _ = _orchestrator(endpoint, settings=OAuthSettings(client_secret="s3cret"))
        await orchestrator.refresh_token("refresh-old")
        assert endpoint.forms[0]["client_secret"] == "s3cret"

    asyncio.run(scenario())


def test_listener_failure_discards_flow() -> None:
    async def scenario() -> None:
        listener = FakeListener(OSError("Address already in use"))
        orchestrator, _ = _orchestrator(listener=listener)

        with pytest.raises(OAuthError, match="Failed to start OAuth callback listener"):
            await orchestrator.begin_authorization()
        assert orchestrator.pending_count == 0

    asyncio.run(scenario())


def test_close_cancels_pending_flows() -> None:
    async def scenario() -> None:
        orchestrator, listener = _orchestrator()
        request = await orchestrator.begin_authorization()
        await orchestrator.close()

        assert listener.stops == 1
        assert orchestrator.pending_count == 0
        assert not orchestrator.resolve_callback(request.state, "late")

    asyncio.run(scenario())


def test_resolve_provider_applies_overrides() -> None:
    settings = OAuthSettings(
        client_id="my-client",
        scopes=["offline_access"],
        token_endpoint="https://login.example.com/token",
    )
    provider = resolve_provider(settings)

    assert provider.client_id == "my-client"
    assert provider.scopes == ("offline_access",)
    assert provider.token_endpoint == "https://login.example.com/token"
    assert provider.authorize_endpoint == MICROSOFT.authorize_endpoint

    with pytest.raises(ValueError):
        resolve_provider(OAuthSettings(provider="nowhere"))


def test_redirect_uri_uses_localhost_for_loopback() -> None:
    assert OAuthSettings(callback_port=8080).redirect_uri == "http://localhost:8080/callback"
    assert (
        OAuthSettings(callback_host="0.0.0.0").redirect_uri
        == "http://0.0.0.0:19876/callback"
    )


class RecordingHandler:
    def __init__(self, known: bool = True) -> None:
        self.known = known
        self.resolved: list[tuple[str, str]] = []
        self.rejected: list[tuple[str, str, str]] = []

    def resolve_callback(self, state: str, code: str) -> bool:
        self.resolved.append((state, code))
        return self.known

    def reject_callback(self, state: str, error: str, description: str) -> bool:
        self.rejected.append((state, error, description))
        return self.known


def test_callback_page_delivers_code() -> None:
    handler = RecordingHandler()
    client = TestClient(create_callback_app(handler))

    response = client.get("/callback", params={"code": "abc", "state": "s1"})

    assert response.status_code == 200
    assert "Sign-in Successful" in response.text
    assert handler.resolved == [("s1", "abc")]


def test_callback_page_reports_provider_error() -> None:
    handler = RecordingHandler()
    client = TestClient(create_callback_app(handler))

    response = client.get(
        "/callback",
        params={"error": "access_denied", "error_description": "User cancelled", "state": "s1"},
    )

    assert response.status_code == 200
    assert "Authentication Failed" in response.text
    assert "User cancelled" in response.text
    assert handler.rejected == [("s1", "access_denied", "User cancelled")]


def test_callback_page_without_code_or_error_is_invalid() -> None:
    handler = RecordingHandler()
    client = TestClient(create_callback_app(handler))

    response = client.get("/callback", params={"state": "s1"})

    assert "Invalid request" in response.text
    assert handler.resolved == [] and handler.rejected == []


def test_callback_for_unknown_state_still_renders_page() -> None:
    client = TestClient(create_callback_app(RecordingHandler(known=False)))
    response = client.get("/callback", params={"code": "abc", "state": "unknown"})
    assert response.status_code == 200


def test_other_paths_are_not_found() -> None:
    client = TestClient(create_callback_app(RecordingHandler(), path="/oauth/done"))
    assert client.get("/callback").status_code == 404
    assert client.get("/oauth/done", params={"code": "x", "state": "y"}).status_code == 200
