"""Service container wiring the session layer components."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from .config import AppSettings

T = TypeVar("T")

SETTINGS = "settings"
POOL = "pool"
OAUTH = "oauth"
MAIL_SERVICE = "mail_service"


class ServiceContainer:
    """Dependency container with lazy singleton semantics."""

    def __init__(self) -> None:
        """Initialise container storage."""
        self._factories: dict[str, Callable[[ServiceContainer], Any]] = {}
        self._instances: dict[str, Any] = {}

    def register(self, key: str, factory: Callable[[ServiceContainer], T]) -> None:
        """Register a factory under a given key, replacing any cached instance."""
        self._factories[key] = factory
        self._instances.pop(key, None)

    def register_instance(self, key: str, instance: Any) -> None:
        """Register an already built object, e.g. a test double."""
        self._factories[key] = lambda _: instance
        self._instances[key] = instance

    def resolve(self, key: str) -> Any:
        """Resolve a dependency by key, invoking its factory once."""
        if key in self._instances:
            return self._instances[key]
        if key not in self._factories:
            msg = f"Service '{key}' is not registered"
            raise KeyError(msg)
        instance = self._factories[key](self)
        self._instances[key] = instance
        return instance

    def try_resolve(self, key: str) -> Any | None:
        """Resolve a dependency if available; return None otherwise."""
        try:
            return self.resolve(key)
        except KeyError:
            return None

    def clear(self) -> None:
        """Clear cached singleton instances."""
        self._instances.clear()


def build_container(settings: AppSettings) -> ServiceContainer:
    """Register the pool manager, OAuth orchestrator and mail service."""
    from ..oauth.flow import OAuthFlowOrchestrator
    from ..session.pool import ConnectionPoolManager
    from ..session.service import MailService

    container = ServiceContainer()
    container.register_instance(SETTINGS, settings)
    container.register(POOL, lambda c: ConnectionPoolManager(c.resolve(SETTINGS).session))
    container.register(OAUTH, lambda c: OAuthFlowOrchestrator(c.resolve(SETTINGS).oauth))
    container.register(
        MAIL_SERVICE,
        lambda c: MailService(c.resolve(SETTINGS), c.resolve(POOL), c.resolve(OAUTH)),
    )
    return container


__all__ = [
    "MAIL_SERVICE",
    "OAUTH",
    "POOL",
    "SETTINGS",
    "ServiceContainer",
    "build_container",
]
