# =============================================================================
# Authentication
# =============================================================================
# OAuth credential lifecycle: keyring-backed CredentialStore, the Google
# token endpoint and the browser consent handshake.
# =============================================================================

from kestrel_tui.auth.credentials import Credential, CredentialStore
from kestrel_tui.auth.oauth import (
    GoogleTokenEndpoint,
    LoopbackHandshake,
    OAuthHandshake,
    build_xoauth2_string,
)

__all__ = [
    "Credential",
    "CredentialStore",
    "GoogleTokenEndpoint",
    "LoopbackHandshake",
    "OAuthHandshake",
    "build_xoauth2_string",
]
