# =============================================================================
# Account Model
# =============================================================================
# Represents the single Gmail account a session is bound to.
#
# IMPORTANT: Tokens are NOT stored here. The OAuth client credentials come
# from the config file; the access and refresh tokens live in the system
# keyring and are managed by the CredentialStore.
# =============================================================================

from dataclasses import dataclass


@dataclass
class Account:
    """
    The account the session reads and sends mail as.

    Attributes:
        email: The Gmail address. Also the OAuth/XOAUTH2 user name.
        display_name: Name shown in the "From" header. Defaults to the email.
        client_id: OAuth client id of the installed application.
        client_secret: OAuth client secret of the installed application.

        imap_host / imap_port: IMAP endpoint (implicit TLS).
        smtp_host / smtp_port: SMTP endpoint (implicit TLS, port 465).

    Example:
        >>> account = Account(
        ...     email="user@gmail.com",
        ...     client_id="123.apps.googleusercontent.com",
        ...     client_secret="secret",
        ... )
    """

    email: str
    display_name: str = ""
    client_id: str = ""
    client_secret: str = ""

    imap_host: str = "imap.gmail.com"
    imap_port: int = 993

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.email

    @property
    def keyring_service(self) -> str:
        """
        Service name for keyring token storage.

        Tokens can be inspected with the keyring CLI:
            keyring get kestrel-tui:user@gmail.com oauth_token
        """
        return f"kestrel-tui:{self.email}"

    @property
    def domain(self) -> str:
        return self.email.split("@", 1)[-1]

    def __str__(self) -> str:
        return f"{self.display_name} <{self.email}>"
