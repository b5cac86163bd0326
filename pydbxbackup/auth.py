"""OAuth2 support for Dropbox.

Covers the two halves of the credential lifecycle:

* refreshing a short-lived access token with a long-lived refresh token
  (used by :class:`~pydbxbackup.api.DropboxClient` during a backup run)
* the interactive authorization-code flow behind ``pydbxbackup auth``,
  which opens the browser and receives the redirect on a local HTTP server
"""

from __future__ import annotations

import logging
import secrets
import threading
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from html import escape
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from .exceptions import DropboxAuthenticationError, DropboxNetworkError
from .output import OutputFormatter

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
DEFAULT_REDIRECT_URL = "http://localhost:8080/callback"
DEFAULT_SCOPES = ("files.metadata.read", "files.content.read")

# Tokens expiring within this window are treated as expired
EXPIRY_MARGIN = timedelta(minutes=5)


@dataclass
class OAuthToken:
    """An OAuth2 token pair."""

    access_token: str = ""
    refresh_token: str = ""
    token_type: str = "bearer"
    expiry: Optional[datetime] = None
    """Expiry in UTC, None when unknown"""

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Whether the access token is present and not about to expire."""
        if not self.access_token:
            return False
        if self.expiry is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now + EXPIRY_MARGIN < self.expiry

    @classmethod
    def from_token_response(
        cls, data: dict[str, Any], refresh_token: str = ""
    ) -> "OAuthToken":
        """Build a token from the JSON body of the token endpoint.

        Args:
            data: Response body
            refresh_token: Refresh token to keep when the response has none
                (Dropbox does not rotate refresh tokens)
        """
        access_token = data.get("access_token")
        if not access_token:
            raise DropboxAuthenticationError("Token response has no access_token")

        expiry = None
        expires_in = data.get("expires_in")
        if expires_in:
            expiry = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))

        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or refresh_token,
            token_type=data.get("token_type", "bearer"),
            expiry=expiry,
        )


@dataclass
class AuthConfig:
    """OAuth2 application settings."""

    client_id: str
    client_secret: str
    redirect_url: str = DEFAULT_REDIRECT_URL
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    def authorization_url(self, state: str) -> str:
        """Build the URL the user opens to grant access.

        ``token_access_type=offline`` asks Dropbox for a refresh token.
        """
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_url,
            "scope": " ".join(self.scopes),
            "state": state,
            "token_access_type": "offline",
            "force_reapprove": "false",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"


def _post_token_request(
    auth_config: AuthConfig,
    data: dict[str, str],
    http_client: Optional[httpx.Client] = None,
    timeout: float = 30.0,
) -> dict[str, Any]:
    """POST to the token endpoint with the client credentials in the header."""
    client = http_client or httpx.Client(timeout=httpx.Timeout(timeout))
    try:
        response = client.post(
            TOKEN_URL,
            data=data,
            auth=(auth_config.client_id, auth_config.client_secret),
        )
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        detail = e.response.text.strip()
        raise DropboxAuthenticationError(
            f"Token request failed with status {e.response.status_code}: {detail}"
        ) from e
    except httpx.RequestError as e:
        raise DropboxNetworkError(f"Network error during token request: {e}") from e
    except ValueError as e:
        raise DropboxAuthenticationError("Invalid JSON in token response") from e
    finally:
        if http_client is None:
            client.close()


def refresh_access_token(
    auth_config: AuthConfig,
    refresh_token: str,
    http_client: Optional[httpx.Client] = None,
) -> OAuthToken:
    """Exchange a refresh token for a new access token.

    Raises:
        DropboxAuthenticationError: If no refresh token is available or
            Dropbox rejects it
    """
    if not refresh_token:
        raise DropboxAuthenticationError("No refresh token available for refresh")

    data = _post_token_request(
        auth_config,
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        http_client=http_client,
    )
    token = OAuthToken.from_token_response(data, refresh_token=refresh_token)
    logger.info(f"Token refreshed successfully (expires {token.expiry})")
    return token


def exchange_code(
    auth_config: AuthConfig,
    code: str,
    http_client: Optional[httpx.Client] = None,
) -> OAuthToken:
    """Exchange an authorization code for a token pair."""
    logger.debug(f"Exchanging authorization code at {TOKEN_URL}")
    data = _post_token_request(
        auth_config,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": auth_config.redirect_url,
        },
        http_client=http_client,
    )
    token = OAuthToken.from_token_response(data)
    logger.info(
        "Successfully exchanged authorization code "
        f"(refresh token: {'yes' if token.refresh_token else 'no'})"
    )
    return token


# =============================================================================
# Interactive flow
# =============================================================================

_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title></head>
<body>
  <h1>{title}</h1>
  <p>{message}</p>
  <p>You can close this window and return to the terminal.</p>
</body>
</html>"""


@dataclass
class CallbackResult:
    """Outcome of the OAuth redirect."""

    code: str = ""
    error: str = ""


def parse_callback(query: str, expected_state: str) -> CallbackResult:
    """Validate the query string of the OAuth redirect.

    Args:
        query: Raw query string of the callback request
        expected_state: State value sent with the authorization URL

    Returns:
        CallbackResult with either ``code`` or ``error`` set
    """
    params = parse_qs(query)

    def first(name: str) -> str:
        return params.get(name, [""])[0]

    if first("error"):
        return CallbackResult(
            error=f"OAuth error: {first('error')} - {first('error_description')}"
        )
    if first("state") != expected_state:
        return CallbackResult(error="Invalid state parameter")
    if not first("code"):
        return CallbackResult(error="No authorization code received")
    return CallbackResult(code=first("code"))


class InteractiveAuth:
    """Run the authorization-code flow through the user's browser."""

    def __init__(
        self,
        auth_config: AuthConfig,
        open_browser: bool = True,
        timeout: float = 300.0,
        output: Optional[OutputFormatter] = None,
    ):
        """Initialize the flow.

        Args:
            auth_config: Application settings; the redirect URL must point
                to localhost
            open_browser: Try to open the authorization URL automatically
            timeout: Seconds to wait for the redirect
            output: Where to show the authorization URL
        """
        self.auth_config = auth_config
        self.open_browser = open_browser
        self.timeout = timeout
        self.output = output or OutputFormatter()
        self.state = secrets.token_urlsafe(16)
        self._result: Optional[CallbackResult] = None
        self._done = threading.Event()

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        flow = self
        callback_path = urlparse(self.auth_config.redirect_url).path or "/"

        class CallbackHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                url = urlparse(self.path)
                if url.path != callback_path:
                    self._reply(200, "Dropbox Backup", "Waiting for OAuth2 callback...")
                    return

                result = parse_callback(url.query, flow.state)
                if result.error:
                    self._reply(400, "Authentication Failed", escape(result.error))
                else:
                    self._reply(
                        200,
                        "Authentication Successful",
                        "You have successfully authenticated with Dropbox.",
                    )
                flow._result = result
                flow._done.set()

            def _reply(self, status: int, title: str, message: str) -> None:
                body = _PAGE.format(title=title, message=message).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("callback server: " + format, *args)

        return CallbackHandler

    def authenticate(self, http_client: Optional[httpx.Client] = None) -> OAuthToken:
        """Run the flow and return the resulting token.

        Raises:
            DropboxAuthenticationError: On OAuth errors, state mismatch or
                timeout
        """
        redirect = urlparse(self.auth_config.redirect_url)
        host = redirect.hostname or "localhost"
        port = redirect.port or 80

        try:
            server = HTTPServer((host, port), self._make_handler())
        except OSError as e:
            raise DropboxAuthenticationError(
                f"Failed to start callback server on {host}:{port}: {e}"
            ) from e

        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            auth_url = self.auth_config.authorization_url(self.state)
            logger.debug(f"OAuth2 flow started: {auth_url}")
            self.output.info("Opening browser for Dropbox authorization...")
            self.output.info(
                f"If the browser doesn't open automatically, visit: {auth_url}"
            )
            if self.open_browser and not webbrowser.open(auth_url):
                logger.warning("Failed to open browser automatically")

            if not self._done.wait(self.timeout):
                raise DropboxAuthenticationError(
                    f"Authentication timeout after {self.timeout:.0f} seconds"
                )
        finally:
            server.shutdown()
            server.server_close()
            thread.join()

        result = self._result or CallbackResult(error="No callback received")
        if result.error:
            raise DropboxAuthenticationError(result.error)
        return exchange_code(self.auth_config, result.code, http_client=http_client)
