"""Browser-based login handshake.

Opens the identity provider in the user's browser and waits on a short-lived
local HTTP listener for the redirect carrying the token. The listener is
served one request at a time from the calling thread and is always closed
exactly once, whatever the outcome.
"""
import errno
import html
import time
import webbrowser
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from forgekit.core.config import ForgeConfig
from forgekit.core.errors import (
    LoginError,
    LoginRejectedError,
    LoginTimeoutError,
    NoAvailablePortError,
    TokenFormatError,
)
from forgekit.core.logger import get_logger
from forgekit.core.token_store import TokenStore

logger = get_logger(__name__)

# Upper bound for a single wait on the socket so the global deadline is honoured
POLL_INTERVAL = 0.5


class LoginState(str, Enum):
    IDLE = "idle"
    SERVER_STARTING = "server_starting"
    AWAITING_CALLBACK = "awaiting_callback"
    TOKEN_RECEIVED = "token_received"
    ERROR_RECEIVED = "error_received"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


TERMINAL_STATES = {
    LoginState.TOKEN_RECEIVED,
    LoginState.ERROR_RECEIVED,
    LoginState.TIMED_OUT,
}


_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>ForgeKit CLI</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
<h1>{title}</h1>
<p>{message}</p>
</body>
</html>
"""


def _html_response(handler: BaseHTTPRequestHandler, status: int, title: str, message: str) -> None:
    body = _PAGE.format(title=html.escape(title), message=html.escape(message)).encode()
    handler.send_response(status)
    handler.send_header("Content-Type", "text/html; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.send_header("Cache-Control", "no-store")
    handler.end_headers()
    handler.wfile.write(body)


def _make_handler_class(handshake: "LoginHandshake") -> type:
    """Create a request handler class bound to one handshake."""

    class _CallbackHandler(BaseHTTPRequestHandler):
        # Idle connections (browser preconnects) must not stall the listener past the deadline
        timeout = POLL_INTERVAL

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            logger.debug("callback: " + format % args)

        def do_GET(self) -> None:  # noqa: N802
            parsed = urlparse(self.path)
            if parsed.path not in ("", "/"):
                _html_response(self, 404, "Not found", "Unknown callback path.")
                return
            handshake.handle_callback(self, parse_qs(parsed.query))

    return _CallbackHandler


class LoginHandshake:
    """Single-shot login state machine.

    Usage:
        token = LoginHandshake(config, store).login()
    """

    def __init__(
        self,
        config: ForgeConfig,
        store: TokenStore,
        opener: Callable[[str], bool] = webbrowser.open,
        announce: Optional[Callable[[str], None]] = None,
    ):
        """Initialize handshake.

        Args:
            config: Runtime configuration (login URL, callback host/port, timeout)
            store: Credential store that persists the received token
            opener: Opens a URL in the browser; returns False on failure
            announce: Receives user-facing messages (defaults to the logger)
        """
        self.config = config
        self.store = store
        self.opener = opener
        self.announce = announce or logger.info
        self.state = LoginState.IDLE
        self.port: Optional[int] = None
        self.token: Optional[str] = None
        self.error: Optional[LoginError] = None
        self._server: Optional[HTTPServer] = None

    @property
    def callback_url(self) -> str:
        return f"http://{self.config.callback_host}:{self.port}"

    def build_login_url(self) -> str:
        """Identity provider URL embedding the callback and the CLI marker."""
        query = urlencode({"cli": "true", "callback": self.callback_url})
        separator = "&" if "?" in self.config.login_url else "?"
        return f"{self.config.login_url}{separator}{query}"

    def _transition(self, state: LoginState) -> None:
        logger.debug(f"login: {self.state.value} -> {state.value}")
        self.state = state

    def _bind(self) -> HTTPServer:
        """Bind the callback listener, walking up from the preferred port."""
        handler_class = _make_handler_class(self)
        first = self.config.callback_port
        for port in range(first, first + self.config.port_attempts):
            try:
                server = HTTPServer((self.config.callback_host, port), handler_class)
            except OSError as e:
                if e.errno == errno.EADDRINUSE:
                    logger.debug(f"Port {port} in use, trying {port + 1}")
                    continue
                raise
            self.port = server.server_address[1]
            return server

        raise NoAvailablePortError(
            f"No available port for the login callback "
            f"({first}-{first + self.config.port_attempts - 1} are all in use)",
            hints=["Set FORGEKIT_CALLBACK_PORT to a free port"],
        )

    def _close(self) -> None:
        if self._server is not None:
            server, self._server = self._server, None
            server.server_close()
            self._transition(LoginState.CLOSED)

    def _open_browser(self, url: str) -> None:
        try:
            opened = self.opener(url)
        except Exception as e:
            logger.debug(f"Browser launch raised: {e}")
            opened = False

        if opened is False:
            self.announce(f"Could not open a browser. Visit this URL to log in:\n{url}")
        else:
            self.announce("Opening browser for login...")
            logger.debug(f"Login URL: {url}")

    def handle_callback(self, handler: BaseHTTPRequestHandler, params: dict) -> None:
        """Process one callback request; called from the request handler."""
        if self.state is not LoginState.AWAITING_CALLBACK:
            _html_response(handler, 409, "Login already handled", "You can close this window.")
            return

        token = params.get("token", [None])[0]
        error = params.get("error", [None])[0]

        if token:
            try:
                self.store.save_token(token)
            except TokenFormatError as e:
                self.error = LoginRejectedError("invalid_token", str(e))
                self._transition(LoginState.ERROR_RECEIVED)
                _html_response(handler, 400, "Login failed", "The received token was invalid.")
                return
            self.token = token
            self._transition(LoginState.TOKEN_RECEIVED)
            _html_response(handler, 200, "Login successful", "You can close this window and return to the terminal.")
            return

        if error:
            description = params.get("error_description", [None])[0]
            self.error = LoginRejectedError(error, description)
            self._transition(LoginState.ERROR_RECEIVED)
            _html_response(handler, 200, "Login failed", description or error)
            return

        _html_response(handler, 400, "Missing token", "The callback did not include a token.")

    def login(self) -> str:
        """Run the handshake to completion.

        Returns:
            The received (and already persisted) token

        Raises:
            NoAvailablePortError: No callback port could be bound
            LoginRejectedError: Provider reported an error or sent a bad token
            LoginTimeoutError: No callback before the timeout
        """
        if self.state is not LoginState.IDLE:
            raise LoginError("Login handshake can only be run once")

        self._transition(LoginState.SERVER_STARTING)
        self._server = self._bind()
        try:
            self._server.timeout = POLL_INTERVAL
            self._transition(LoginState.AWAITING_CALLBACK)
            self._open_browser(self.build_login_url())

            deadline = time.monotonic() + self.config.login_timeout
            while self.state not in TERMINAL_STATES:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._transition(LoginState.TIMED_OUT)
                    break
                self._server.timeout = min(POLL_INTERVAL, remaining)
                self._server.handle_request()
        finally:
            terminal = self.state
            self._close()

        if terminal is LoginState.TOKEN_RECEIVED:
            logger.debug("Logged in successfully")
            return self.token
        if terminal is LoginState.ERROR_RECEIVED:
            raise self.error
        raise LoginTimeoutError(
            f"Login timed out after {self.config.login_timeout:.0f}s without a callback",
            hints=["Run `forge login` again", "Set FORGEKIT_LOGIN_TIMEOUT to wait longer"],
        )


def ensure_logged_in(store: TokenStore, handshake_factory: Callable[[], LoginHandshake]) -> str:
    """Return a stored token, running the browser login when there is none.

    Raises:
        LoginError: If the handshake fails
    """
    token = store.get_token()
    if token:
        return token
    return handshake_factory().login()
