"""OAuth2 provider presets."""

from __future__ import annotations

from dataclasses import dataclass

from ..core.config import OAuthSettings


@dataclass(frozen=True, slots=True)
class OAuthProvider:
    """Endpoints, public client and scopes of an identity provider."""

    name: str
    authorize_endpoint: str
    token_endpoint: str
    client_id: str
    scopes: tuple[str, ...]
    client_secret: str | None = None


MICROSOFT = OAuthProvider(
    name="microsoft",
    authorize_endpoint="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
    token_endpoint="https://login.microsoftonline.com/common/oauth2/v2.0/token",
    # Public client id registered for desktop mail clients.
    client_id="9e5f94bc-e8a4-4e73-b8be-63364c29d753",
    scopes=(
        "offline_access",
        "https://outlook.office.com/IMAP.AccessAsUser.All",
        "https://outlook.office.com/SMTP.Send",
    ),
)

PROVIDERS: dict[str, OAuthProvider] = {MICROSOFT.name: MICROSOFT}


def resolve_provider(settings: OAuthSettings) -> OAuthProvider:
    """Return the configured preset with any settings overrides applied.

    Raises:
        ValueError: If the preset name is unknown
    """
    try:
        preset = PROVIDERS[settings.provider.lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown OAuth provider: {settings.provider}") from exc
    return OAuthProvider(
        name=preset.name,
        authorize_endpoint=settings.authorize_endpoint or preset.authorize_endpoint,
        token_endpoint=settings.token_endpoint or preset.token_endpoint,
        client_id=settings.client_id or preset.client_id,
        scopes=tuple(settings.scopes) if settings.scopes else preset.scopes,
        client_secret=settings.client_secret or preset.client_secret,
    )


__all__ = ["MICROSOFT", "OAuthProvider", "PROVIDERS", "resolve_provider"]
