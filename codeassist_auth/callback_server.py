"""
Local redirect listener for the OAuth authorization code flow.
Serves GET /oauth-callback on the loopback interface and hands exactly one
{code, state} result to the login attempt currently waiting for it.
"""
import asyncio
import contextlib
import errno
import html
import logging
import socket
from dataclasses import dataclass

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse

from codeassist_auth.config import CALLBACK_PATH, CALLBACK_PORT, CALLBACK_TIMEOUT_SECONDS, IS_WINDOWS
from codeassist_auth.errors import (
    CallbackTimeout,
    FlowSuperseded,
    ListenerStopped,
    MissingParameters,
    OAuthFlowError,
    ProviderDenied,
    StateMismatch,
)

logger = logging.getLogger(__name__)

# Loopback only; browsers resolve the registered "localhost" redirect to this address
BIND_ADDRESS = "127.0.0.1"

_PAGE_STYLE = """
    body {
      font-family: system-ui, sans-serif;
      display: flex;
      justify-content: center;
      align-items: center;
      height: 100vh;
      margin: 0;
      color: white;
    }
    .container { text-align: center; padding: 2rem; border-radius: 16px; background: rgba(255, 255, 255, 0.1); }
    code { background: rgba(0, 0, 0, 0.2); padding: 0.2rem 0.5rem; border-radius: 4px; }"""

SUCCESS_HTML = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Authentication Successful</title>
  <style>{_PAGE_STYLE}
    body {{ background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); }}
  </style>
</head>
<body>
  <div class="container">
    <h1>Authentication Successful</h1>
    <p>You can close this window and return to the application.</p>
  </div>
</body>
</html>"""


def error_html(message: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Authentication Failed</title>
  <style>{_PAGE_STYLE}
    body {{ background: linear-gradient(135deg, #ff6b6b 0%, #ee5a5a 100%); }}
  </style>
</head>
<body>
  <div class="container">
    <h1>Authentication Failed</h1>
    <p>Error: <code>{html.escape(message)}</code></p>
    <p>Please close this window and try again.</p>
  </div>
</body>
</html>"""


@dataclass(frozen=True)
class CallbackParams:
    code: str
    state: str


@dataclass
class PendingFlow:
    expected_state: str
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle | None = None


def _address_option() -> int:
    # Windows SO_REUSEADDR lets a socket bind over a live listener; exclusive use refuses it
    if IS_WINDOWS:
        return socket.SO_EXCLUSIVEADDRUSE
    return socket.SO_REUSEADDR


class _ListenerServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the embedding application."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CallbackListener:
    """
    Owns the loopback HTTP endpoint and the single pending authorization flow.

    Only one flow can be pending: wait_for_callback() fails any earlier waiter
    with FlowSuperseded before registering the new one.
    """

    def __init__(self, port: int = CALLBACK_PORT, path: str = CALLBACK_PATH, host: str = BIND_ADDRESS):
        self.host = host
        self.port = port
        self.path = path
        self.app = self._build_app()
        self._server: _ListenerServer | None = None
        self._serve_task: asyncio.Task | None = None
        self._pending: PendingFlow | None = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def has_pending_flow(self) -> bool:
        return self._pending is not None

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, _address_option(), 1)
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> bool:
        """
        Start listening. Idempotent. Returns False (never raises) if the port is
        taken or the socket cannot be bound.
        """
        if self._server is not None:
            return True

        try:
            sock = self._bind()
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                logger.warning("OAuth callback port %s is in use", self.port)
            else:
                logger.error("OAuth callback listener failed to bind %s:%s: %s", self.host, self.port, e)
            return False

        # Port 0 binds an ephemeral port; report the real one
        self.port = sock.getsockname()[1]
        config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=5,
        )
        server = _ListenerServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started:
            if task.done():
                sock.close()
                exc = task.exception()
                logger.error("OAuth callback listener exited during startup: %s", exc)
                return False
            await asyncio.sleep(0.01)

        self._server = server
        self._serve_task = task
        logger.info("OAuth callback listener on http://%s:%s%s", self.host, self.port, self.path)
        return True

    async def stop(self) -> None:
        """Idempotent teardown. Fails a pending flow with ListenerStopped."""
        server, task = self._server, self._serve_task
        self._server = None
        self._serve_task = None
        try:
            if server is not None:
                server.should_exit = True
                if task is not None:
                    await task
                logger.info("OAuth callback listener stopped")
        except Exception:
            logger.exception("OAuth callback listener failed while stopping")
        finally:
            self._fail_pending(ListenerStopped())

    async def wait_for_callback(
        self,
        expected_state: str,
        timeout: float = CALLBACK_TIMEOUT_SECONDS,
    ) -> CallbackParams:
        """
        Wait for the redirect carrying expected_state.
        Raises ProviderDenied, MissingParameters, StateMismatch, CallbackTimeout,
        FlowSuperseded or ListenerStopped.
        """
        loop = asyncio.get_running_loop()
        self._fail_pending(FlowSuperseded())

        flow = PendingFlow(expected_state=expected_state, future=loop.create_future())
        flow.timeout_handle = loop.call_later(timeout, self._settle, flow, None, CallbackTimeout())
        self._pending = flow
        try:
            return await flow.future
        finally:
            flow.timeout_handle.cancel()
            if self._pending is flow:
                self._pending = None

    def _settle(
        self,
        flow: PendingFlow,
        result: CallbackParams | None,
        error: OAuthFlowError | None,
    ) -> None:
        if self._pending is flow:
            self._pending = None
        if flow.timeout_handle is not None:
            flow.timeout_handle.cancel()
        if flow.future.done():
            return
        if error is not None:
            flow.future.set_exception(error)
        else:
            flow.future.set_result(result)

    def _fail_pending(self, error: OAuthFlowError) -> None:
        if self._pending is not None:
            self._settle(self._pending, None, error)

    def handle_callback(self, code: str | None, state: str | None, error: str | None) -> HTMLResponse:
        """
        Apply one redirect to the pending flow and build the browser response.
        State is compared before anything is resolved.
        """
        flow = self._pending

        if error:
            if flow is not None:
                self._settle(flow, None, ProviderDenied(error))
            return HTMLResponse(error_html(error), status_code=400)

        if not code or not state:
            if flow is not None:
                self._settle(flow, None, MissingParameters())
            return HTMLResponse(error_html("Missing code or state parameter"), status_code=400)

        if flow is None:
            logger.info("OAuth callback received with no login in progress")
            return HTMLResponse(error_html("No login is in progress"), status_code=400)

        if state != flow.expected_state:
            logger.warning("OAuth callback state mismatch; rejecting pending flow")
            self._settle(flow, None, StateMismatch())
            return HTMLResponse(error_html("State mismatch - possible CSRF attack"), status_code=400)

        self._settle(flow, CallbackParams(code=code, state=state), None)
        return HTMLResponse(SUCCESS_HTML)

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="OAuth Callback", docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(self.path, response_class=HTMLResponse)
        async def oauth_callback(request: Request):
            # must run on the event loop that owns the pending future
            params = request.query_params
            return self.handle_callback(params.get("code"), params.get("state"), params.get("error"))

        @app.exception_handler(404)
        async def not_found(request: Request, exc):
            return PlainTextResponse("Not Found", status_code=404)

        return app
