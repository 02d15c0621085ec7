"""OAuth2 authorization code + PKCE flow."""

from .callback import LoopbackCallbackListener, create_callback_app
from .flow import OAuthError, OAuthFlowOrchestrator, OAuthTimeoutError, PendingFlow
from .providers import MICROSOFT, OAuthProvider, resolve_provider

__all__ = [
    "LoopbackCallbackListener",
    "MICROSOFT",
    "OAuthError",
    "OAuthFlowOrchestrator",
    "OAuthProvider",
    "OAuthTimeoutError",
    "PendingFlow",
    "create_callback_app",
    "resolve_provider",
]
