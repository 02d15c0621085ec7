"""Loopback HTTP listener receiving the OAuth2 authorization redirect."""

from __future__ import annotations

import asyncio
import logging
import socket
from pathlib import Path
from typing import Protocol

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from starlette.templating import Jinja2Templates

from ..core.config import OAuthSettings

LOGGER = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


class CallbackHandler(Protocol):
    """Receiver of authorization redirect outcomes."""

    def resolve_callback(self, state: str, code: str) -> bool:
        """Deliver an authorization code; ``False`` for an unknown state."""
        raise NotImplementedError

    def reject_callback(self, state: str, error: str, description: str) -> bool:
        """Deliver a provider error; ``False`` for an unknown state."""
        raise NotImplementedError


def create_callback_app(handler: CallbackHandler, path: str = "/callback") -> FastAPI:
    """Create the FastAPI application serving the redirect path."""
    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    app = FastAPI(title="OAuth callback", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(path, response_class=HTMLResponse)
    async def callback(
        request: Request,
        code: str | None = None,
        state: str = "",
        error: str | None = None,
        error_description: str | None = None,
    ) -> HTMLResponse:
        if error:
            description = error_description or error
            if not handler.reject_callback(state, error, description):
                LOGGER.warning("OAuth error callback for unknown state")
            outcome = "failed"
        elif code:
            if not handler.resolve_callback(state, code):
                LOGGER.warning("OAuth callback for unknown state")
            outcome = "success"
            description = None
        else:
            outcome = "invalid"
            description = None
        return templates.TemplateResponse(
            request,
            "callback.html",
            {"outcome": outcome, "description": description},
        )

    return app


class LoopbackCallbackListener:
    """Serve :func:`create_callback_app` on the loopback port on demand.

    The listener binds its socket itself so a port already in use surfaces
    as :class:`OSError` from :meth:`start`.
    """

    def __init__(self, handler: CallbackHandler, settings: OAuthSettings | None = None) -> None:
        self._settings = settings or OAuthSettings()
        self._app = create_callback_app(handler, self._settings.callback_path)
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and self._server is not None
            and not self._server.should_exit
        )

    async def start(self) -> None:
        """Start serving unless already running.

        Raises:
            OSError: If the callback port cannot be bound
        """
        async with self._lock:
            if self.running:
                return
            if self._task is not None and not self._task.done():
                # A previous stop is still draining.
                await self._task

            host, port = self._settings.callback_host, self._settings.callback_port
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((host, port))
            except OSError:
                sock.close()
                raise

            config = uvicorn.Config(
                self._app,
                log_config=None,
                access_log=False,
                lifespan="off",
            )
            server = uvicorn.Server(config)
            task = asyncio.create_task(server.serve(sockets=[sock]))
            self._server, self._task = server, task
            while not server.started:
                if task.done():
                    await task
                    raise OSError(f"OAuth callback listener on {host}:{port} exited during startup")
                await asyncio.sleep(0.01)
            LOGGER.info("OAuth callback listener started on %s:%d", host, port)

    def request_stop(self) -> None:
        """Ask the server to exit without waiting for it."""
        if self._server is not None and not self._server.should_exit:
            self._server.should_exit = True
            LOGGER.info("OAuth callback listener stopping")

    async def stop(self) -> None:
        """Stop serving and wait for the server task to finish."""
        self.request_stop()
        task, self._task = self._task, None
        if task is not None:
            await task
        self._server = None


__all__ = [
    "CallbackHandler",
    "LoopbackCallbackListener",
    "TEMPLATE_DIR",
    "create_callback_app",
]
