# =============================================================================
# Credential Store
# =============================================================================
# Owns the OAuth credential for the session's account.
#
# Lifecycle:
#   1. On startup the credential is read from the system keyring.
#   2. get_valid_token() hands out the access token, refreshing it first if
#      it expires within the refresh margin. An expired token is never
#      returned.
#   3. Concurrent refresh requests share one in-flight task, so two callers
#      racing past the margin cause exactly one call to the token endpoint.
#   4. A revoked grant clears the stored credential; only a new consent
#      handshake can recover from that.
#
# Tokens are stored in the keyring under service "kestrel-tui:<email>" and
# never touch the config file or the log.
# =============================================================================

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from kestrel_tui.core import Account
from kestrel_tui.errors import AuthError, AuthErrorKind
from kestrel_tui.sync.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    from kestrel_tui.auth.oauth import GoogleTokenEndpoint, OAuthHandshake

logger = logging.getLogger(__name__)

# Keyring "username" under the account's service name
TOKEN_KEY = "oauth_token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """
    An OAuth token set.

    Attributes:
        access_token: Bearer token for IMAP/SMTP XOAUTH2.
        refresh_token: Long-lived grant used to mint new access tokens.
        expires_at: When access_token stops working (aware, UTC).
        scopes: Granted scopes.
    """
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: frozenset[str] = field(default_factory=frozenset)

    def expires_within(self, margin: float, now: datetime) -> bool:
        """True if the access token expires within `margin` seconds of `now`."""
        return self.expires_at - now <= timedelta(seconds=margin)

    def to_json(self) -> str:
        return json.dumps({
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "scopes": sorted(self.scopes),
        })

    @classmethod
    def from_json(cls, text: str) -> "Credential":
        data = json.loads(text)
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            expires_at=expires_at,
            scopes=frozenset(data.get("scopes", [])),
        )

    def __repr__(self) -> str:
        # Never leak tokens into logs or tracebacks
        return f"Credential(expires_at={self.expires_at.isoformat()}, scopes={sorted(self.scopes)})"


class CredentialStore:
    """
    Keyring-backed credential owner with coalesced refresh.

    Usage:
        store = CredentialStore(account, endpoint, handshake=handshake)
        credential = await store.get_valid_token()
    """

    def __init__(
        self,
        account: Account,
        endpoint: "GoogleTokenEndpoint",
        *,
        handshake: "OAuthHandshake | None" = None,
        policy: RetryPolicy | None = None,
        refresh_margin: float = 120.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Args:
            account: The account whose tokens are managed.
            endpoint: Token endpoint used for refresh grants.
            handshake: Consent flow used when no credential is stored.
            policy: Backoff for NETWORK_UNAVAILABLE refresh failures.
            refresh_margin: Seconds before expiry at which to refresh.
            clock: Returns the current aware UTC time.
        """
        self.account = account
        self.endpoint = endpoint
        self.handshake = handshake
        self.policy = policy or RetryPolicy()
        self.refresh_margin = refresh_margin
        self.clock = clock

        self._credential: Credential | None = None
        self._loaded = False
        self._refresh_task: asyncio.Task[Credential] | None = None
        self._handshake_task: asyncio.Task[Credential] | None = None
        self.refresh_count = 0

    # -------------------------------------------------------------------------
    # Keyring persistence
    # -------------------------------------------------------------------------

    @property
    def credential(self) -> Credential | None:
        if not self._loaded:
            self._credential = self._load()
            self._loaded = True
        return self._credential

    @property
    def is_authenticated(self) -> bool:
        return self.credential is not None

    def _load(self) -> Credential | None:
        try:
            stored = keyring.get_password(self.account.keyring_service, TOKEN_KEY)
        except KeyringError as e:
            logger.error(f"Keyring unavailable: {e}")
            return None
        if not stored:
            return None
        try:
            return Credential.from_json(stored)
        except (ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable stored credential: {e}")
            return None

    def store(self, credential: Credential) -> None:
        """Replace the credential and persist it to the keyring."""
        self._credential = credential
        self._loaded = True
        try:
            keyring.set_password(self.account.keyring_service, TOKEN_KEY, credential.to_json())
        except KeyringError as e:
            # The session can still run with the in-memory credential
            logger.error(f"Could not save credential to keyring: {e}")

    def clear(self) -> None:
        """Forget the credential, in memory and in the keyring."""
        self._credential = None
        self._loaded = True
        try:
            keyring.delete_password(self.account.keyring_service, TOKEN_KEY)
        except PasswordDeleteError:
            pass
        except KeyringError as e:
            logger.error(f"Could not remove credential from keyring: {e}")

    # -------------------------------------------------------------------------
    # Token access
    # -------------------------------------------------------------------------

    async def get_valid_token(self) -> Credential:
        """
        Return a credential whose access token is valid beyond the margin.

        Raises:
            AuthError: EXPIRED if there is no credential and no handshake,
                       REVOKED if the grant was revoked, NETWORK_UNAVAILABLE
                       if the token endpoint stayed unreachable.
        """
        credential = self.credential
        if credential is None:
            return await self.authenticate()
        if credential.expires_within(self.refresh_margin, self.clock()):
            return await self.refresh()
        return credential

    async def refresh(self) -> Credential:
        """
        Refresh the access token, sharing one in-flight refresh among callers.

        Raises:
            AuthError: As for get_valid_token().
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._do_refresh())
        # Shielded so one cancelled caller does not cancel everyone's refresh
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> Credential:
        current = self.credential
        if current is None or not current.refresh_token:
            raise AuthError(AuthErrorKind.EXPIRED, "No refresh token, sign in required")

        self.refresh_count += 1
        try:
            fresh = await retry_async(
                lambda: self.endpoint.refresh(current.refresh_token),
                self.policy,
                is_retryable=lambda e: isinstance(e, AuthError) and e.retryable,
                timeout_error=lambda: AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, "Token refresh timed out"),
                description="Token refresh",
            )
        except AuthError as e:
            if e.kind == AuthErrorKind.REVOKED:
                logger.error("Refresh grant revoked, clearing stored credential")
                self.clear()
            raise

        self.store(fresh)
        logger.info(f"Access token refreshed, valid until {fresh.expires_at.isoformat()}")
        return fresh

    async def authenticate(self) -> Credential:
        """
        Run the consent handshake and store the result.

        Raises:
            AuthError: EXPIRED if no handshake is configured or it failed.
        """
        if self.handshake is None:
            raise AuthError(AuthErrorKind.EXPIRED, f"Not signed in as {self.account.email}")
        if self._handshake_task is None or self._handshake_task.done():
            self._handshake_task = asyncio.create_task(self.handshake.acquire())
        credential = await asyncio.shield(self._handshake_task)
        self.store(credential)
        return credential
