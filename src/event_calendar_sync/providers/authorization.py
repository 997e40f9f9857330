"""Interactive OAuth consent sessions.

The remote client does not know how consent is presented. It hands an
authorization URL to an ``AuthorizationSession`` and waits for the redirect
URL the provider sent the browser back to.
"""

import asyncio
import logging
import socket
import webbrowser
from typing import Callable, Optional, Protocol
from urllib.parse import parse_qs, urlparse

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse


logger = logging.getLogger(__name__)

SUCCESS_PAGE = (
    "<html><body><h2>Calendar access granted</h2>"
    "<p>You can close this window and return to the application.</p></body></html>"
)


class AuthorizationCancelled(Exception):
    """The user dismissed the consent session."""
    pass


class AuthorizationSession(Protocol):
    """Presents a consent page and resolves with the callback URL."""

    async def authorize(self, authorization_url: str, redirect_uri: str) -> str:
        ...


def create_callback_app(callback_path: str, on_callback: Callable[[str], None]) -> FastAPI:
    """Create the app that receives the provider's redirect.

    Args:
        callback_path: Path of the redirect URI
        on_callback: Called with the full URL of each callback request

    Returns:
        App answering ``callback_path`` only; every other path is a 404
    """
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(callback_path, response_class=HTMLResponse)
    async def oauth_callback(request: Request):
        on_callback(str(request.url))
        return HTMLResponse(SUCCESS_PAGE)

    return app


class LoopbackAuthorizationSession:
    """Consent in the system browser, redirect caught on a loopback server.

    The server binds the host and port of ``redirect_uri`` and resolves with
    the first request to its path.
    """

    def __init__(self, open_browser: bool = True):
        """Initialize the session.

        Args:
            open_browser: Launch the system browser; when False the URL is
                only logged, for headless use
        """
        self.open_browser = open_browser
        self.logger = logging.getLogger(__name__)

    async def authorize(self, authorization_url: str, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        host = parsed.hostname or "127.0.0.1"
        port = parsed.port if parsed.port is not None else 80

        callback: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_callback(url: str):
            if not callback.done():
                callback.set_result(url)

        app = create_callback_app(parsed.path or "/", on_callback)

        # Bound here so a busy port raises OSError instead of exiting in uvicorn
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            raise

        server = uvicorn.Server(uvicorn.Config(app, lifespan="off", log_level="warning", access_log=False))
        serving = asyncio.ensure_future(server.serve(sockets=[sock]))
        try:
            await self._wait_until_started(server, serving)
            self.logger.info(f"Waiting for authorization callback on {redirect_uri}")
            if not await self._present(authorization_url):
                raise AuthorizationCancelled("Could not open the authorization page")
            return await callback
        finally:
            server.should_exit = True
            await serving
            sock.close()

    async def _wait_until_started(self, server: uvicorn.Server, serving: asyncio.Future):
        while not server.started:
            if serving.done():
                serving.result()
                raise AuthorizationCancelled("Callback server stopped before it started")
            await asyncio.sleep(0.01)

    async def _present(self, authorization_url: str) -> bool:
        if not self.open_browser:
            self.logger.warning(f"Open this URL to authorize calendar access: {authorization_url}")
            return True
        opened = await asyncio.to_thread(webbrowser.open, authorization_url)
        if not opened:
            self.logger.warning("No browser available to present the authorization page")
        return opened


def extract_query_param(callback_url: str, name: str) -> Optional[str]:
    """Return the first value of query parameter ``name`` in ``callback_url``."""
    values = parse_qs(urlparse(callback_url).query).get(name)
    return values[0] if values else None
