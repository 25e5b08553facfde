# =============================================================================
# Google OAuth Collaborators
# =============================================================================
# The network side of the credential lifecycle:
#
#   - GoogleTokenEndpoint: refresh-token and authorization-code grants
#     against Google's token endpoint, over httpx.
#   - OAuthHandshake: the interactive consent flow. The session only calls
#     `acquire()`, so the browser flow can be swapped out (tests use a fake).
#   - LoopbackHandshake: the installed-app flow. Opens the consent page in a
#     browser and captures the redirect on a localhost listener (PKCE).
#   - build_xoauth2_string(): SASL XOAUTH2 payload for IMAP and SMTP.
#
# Error mapping (the CredentialStore relies on it):
#   - HTTP 400/401 with error=invalid_grant  ->  AuthError REVOKED
#   - Other 4xx                              ->  AuthError EXPIRED
#   - Transport errors, timeouts, 5xx        ->  AuthError NETWORK_UNAVAILABLE
# =============================================================================

import asyncio
import base64
import hashlib
import logging
import secrets
import webbrowser
from datetime import datetime, timedelta, timezone
from typing import Protocol
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from kestrel_tui.auth.credentials import Credential
from kestrel_tui.errors import AuthError, AuthErrorKind

logger = logging.getLogger(__name__)


GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Full IMAP/SMTP access needs the mail.google.com scope
GMAIL_SCOPE = "https://mail.google.com/"


def build_xoauth2_string(user: str, access_token: str) -> str:
    """
    Build the SASL XOAUTH2 initial client response.

    Args:
        user: Account email address.
        access_token: A currently valid OAuth access token.

    Returns:
        The unencoded XOAUTH2 string; callers base64-encode it as their
        protocol requires.
    """
    return f"user={user}\x01auth=Bearer {access_token}\x01\x01"


class OAuthHandshake(Protocol):
    """Anything that can run the interactive consent flow."""

    async def acquire(self) -> Credential:
        ...


class GoogleTokenEndpoint:
    """
    Client for the Google OAuth token endpoint.

    Usage:
        endpoint = GoogleTokenEndpoint(client_id, client_secret)
        credential = await endpoint.refresh(refresh_token)
    """

    TIMEOUT = 20.0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        token_url: str = GOOGLE_TOKEN_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            client_id: OAuth client id.
            client_secret: OAuth client secret.
            token_url: Token endpoint URL.
            transport: Optional httpx transport (tests pass a MockTransport).
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self._transport = transport

    async def refresh(self, refresh_token: str) -> Credential:
        """
        Exchange a refresh token for a new access token.

        Google normally omits the refresh token from this response, in which
        case the existing one is carried over.

        Raises:
            AuthError: See the module header for the kind mapping.
        """
        logger.info("Refreshing access token")
        payload = await self._post({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })
        return self._credential_from(payload, fallback_refresh_token=refresh_token)

    async def exchange_code(self, code: str, redirect_uri: str, code_verifier: str) -> Credential:
        """
        Exchange an authorization code (from the consent redirect) for tokens.

        Raises:
            AuthError: See the module header for the kind mapping.
        """
        payload = await self._post({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        })
        logger.info("Exchanged authorization code for tokens")
        return self._credential_from(payload, fallback_refresh_token="")

    async def _post(self, data: dict[str, str]) -> dict:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.TIMEOUT) as client:
                response = await client.post(self.token_url, data=data)
        except httpx.TransportError as e:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, f"Token endpoint unreachable: {e}") from e

        if response.status_code >= 500:
            raise AuthError(
                AuthErrorKind.NETWORK_UNAVAILABLE,
                f"Token endpoint returned {response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            error = payload.get("error", "")
            logger.error(f"Token request failed: {response.status_code} {error}")
            if error == "invalid_grant":
                raise AuthError(AuthErrorKind.REVOKED, payload.get("error_description", "Grant revoked"))
            raise AuthError(AuthErrorKind.EXPIRED, f"Token request rejected: {error or response.status_code}")

        return payload

    @staticmethod
    def _credential_from(payload: dict, *, fallback_refresh_token: str) -> Credential:
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthError(AuthErrorKind.EXPIRED, "Token response had no access_token")

        expires_in = int(payload.get("expires_in", 3600))
        scopes = frozenset(payload.get("scope", GMAIL_SCOPE).split())
        return Credential(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or fallback_refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            scopes=scopes,
        )


class LoopbackHandshake:
    """
    Installed-application consent flow with a localhost redirect.

    Opens Google's consent page in the browser, waits for the redirect on
    http://127.0.0.1:<port>/ and exchanges the code with PKCE.
    """

    SUCCESS_PAGE = (
        b"HTTP/1.1 200 OK\r\nContent-Type: text/html\r\nConnection: close\r\n\r\n"
        b"<html><body><h1>Authentication successful!</h1>"
        b"<p>You can close this window.</p></body></html>"
    )
    FAILURE_PAGE = (
        b"HTTP/1.1 400 Bad Request\r\nContent-Type: text/html\r\nConnection: close\r\n\r\n"
        b"<html><body><h1>Authentication failed</h1></body></html>"
    )

    def __init__(self, endpoint: GoogleTokenEndpoint, *, port: int = 8080, timeout: float = 300.0) -> None:
        self.endpoint = endpoint
        self.port = port
        self.timeout = timeout

    @property
    def redirect_uri(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def authorization_url(self, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self.endpoint.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GMAIL_SCOPE,
            "access_type": "offline",  # Get refresh token
            "prompt": "consent",  # Force consent to get refresh token
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def acquire(self) -> Credential:
        """
        Run the consent flow.

        Raises:
            AuthError: EXPIRED if the user denied consent or never finished.
        """
        verifier = secrets.token_urlsafe(64)
        challenge = base64.urlsafe_b64encode(
            hashlib.sha256(verifier.encode()).digest()
        ).rstrip(b"=").decode()
        state = secrets.token_urlsafe(16)

        loop = asyncio.get_running_loop()
        code_future: asyncio.Future[str] = loop.create_future()

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            request_line = (await reader.readline()).decode(errors="replace")
            parts = request_line.split()
            query = parse_qs(urlsplit(parts[1]).query) if len(parts) > 1 else {}
            code = query.get("code", [""])[0]
            ok = bool(code) and query.get("state", [""])[0] == state
            writer.write(self.SUCCESS_PAGE if ok else self.FAILURE_PAGE)
            await writer.drain()
            writer.close()
            if not code_future.done():
                if ok:
                    code_future.set_result(code)
                else:
                    code_future.set_exception(AuthError(
                        AuthErrorKind.EXPIRED,
                        query.get("error", ["Consent was not granted"])[0],
                    ))

        server = await asyncio.start_server(handle, "127.0.0.1", self.port)
        url = self.authorization_url(state, challenge)
        logger.info(f"Waiting for OAuth callback on {self.redirect_uri}")
        webbrowser.open(url)

        try:
            async with server:
                code = await asyncio.wait_for(code_future, self.timeout)
        except asyncio.TimeoutError as e:
            raise AuthError(AuthErrorKind.EXPIRED, "Timed out waiting for consent") from e

        return await self.endpoint.exchange_code(code, self.redirect_uri, verifier)
