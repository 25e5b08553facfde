# =============================================================================
# SMTP Sender
# =============================================================================
# Sends composed drafts through Gmail's SMTP submission server.
#
# Key responsibilities:
#   - Building the MIME message for a draft (shared with draft APPEND)
#   - Implicit-TLS connection to smtp.gmail.com:465
#   - SASL XOAUTH2 authentication with the session's access token
#   - Mapping SMTP failures to RemoteError kinds
#
# Uses aiosmtplib for async operations. A connection is opened per send;
# sends are rare enough that keeping one alive is not worth the idle timeouts.
# =============================================================================

import base64
import logging
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid

import aiosmtplib

from kestrel_tui.auth.credentials import CredentialStore
from kestrel_tui.auth.oauth import build_xoauth2_string
from kestrel_tui.core import Account, ComposeDraft
from kestrel_tui.errors import AuthError, AuthErrorKind
from kestrel_tui.remote.base import RemoteError, RemoteErrorKind

logger = logging.getLogger(__name__)

# SMTP reply code for a successful AUTH
AUTH_OK = 235


def build_mime_message(account: Account, draft: ComposeDraft) -> MIMEText:
    """
    Build the RFC 5322 message for a draft.

    Args:
        account: Sender account (From header, Message-ID domain).
        draft: The draft to render.

    Returns:
        A plain-text MIME message with threading headers.
    """
    msg = MIMEText(draft.body_text, "plain", "utf-8")

    msg["From"] = formataddr((account.display_name, account.email))
    msg["To"] = ", ".join(draft.to_list)
    if draft.cc_list:
        msg["Cc"] = ", ".join(draft.cc_list)
    msg["Subject"] = draft.subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid(domain=account.domain)

    # Threading headers
    if draft.in_reply_to:
        msg["In-Reply-To"] = draft.in_reply_to
    if draft.references:
        msg["References"] = " ".join(draft.references)

    msg["X-Mailer"] = "Kestrel-TUI"
    return msg


class GmailSmtpSender:
    """
    Async SMTP sender authenticated with XOAUTH2.

    Usage:
        >>> sender = GmailSmtpSender(account, credentials)
        >>> message_id = await sender.send(draft)
    """

    # Timeout for SMTP operations (seconds)
    TIMEOUT = 30

    def __init__(self, account: Account, credentials: CredentialStore) -> None:
        self.account = account
        self.credentials = credentials

    async def send(self, draft: ComposeDraft) -> str:
        """
        Send a draft.

        Args:
            draft: A draft that already passed validate().

        Returns:
            Message-ID of the sent message.

        Raises:
            RemoteError: TRANSIENT for connection problems and 4xx replies,
                         PERMANENT for 5xx replies and refused recipients.
            AuthError: If no usable token could be obtained.
        """
        message = build_mime_message(self.account, draft)
        client = aiosmtplib.SMTP(
            hostname=self.account.smtp_host,
            port=self.account.smtp_port,
            use_tls=True,
            start_tls=False,
            timeout=self.TIMEOUT,
        )

        logger.info(f"Connecting to SMTP {self.account.smtp_host}:{self.account.smtp_port}")
        try:
            await client.connect()
            await client.ehlo()
            await self._authenticate(client)

            logger.info(f"Sending email to {', '.join(draft.to_list)}")
            await client.send_message(message)
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise RemoteError(RemoteErrorKind.PERMANENT, f"Recipients refused: {e}") from e
        except aiosmtplib.SMTPResponseException as e:
            kind = RemoteErrorKind.PERMANENT if e.code >= 500 else RemoteErrorKind.TRANSIENT
            raise RemoteError(kind, f"SMTP {e.code}: {e.message}") from e
        except (aiosmtplib.SMTPException, OSError) as e:
            raise RemoteError(RemoteErrorKind.TRANSIENT, f"SMTP connection failed: {e}") from e
        finally:
            if client.is_connected:
                try:
                    await client.quit()
                except (aiosmtplib.SMTPException, OSError) as e:
                    logger.warning(f"Error during SMTP disconnect: {e}")

        message_id = message["Message-ID"]
        logger.info(f"Email sent successfully: {message_id}")
        return message_id

    async def _authenticate(self, client: aiosmtplib.SMTP) -> None:
        """
        AUTH XOAUTH2, refreshing the token once if the server rejects it.

        Raises:
            AuthError: EXPIRED if the refreshed token is rejected as well.
        """
        credential = await self.credentials.get_valid_token()
        for attempt in range(2):
            payload = build_xoauth2_string(self.account.email, credential.access_token)
            response = await client.execute_command(
                b"AUTH", b"XOAUTH2", base64.b64encode(payload.encode()),
            )
            if response.code == AUTH_OK:
                logger.debug("SMTP authentication successful")
                return
            if response.code == 334:
                # Gmail sends a base64 JSON error challenge; an empty reply ends it
                await client.execute_command(b"")
            if attempt == 0:
                logger.info("SMTP rejected access token, refreshing")
                credential = await self.credentials.refresh()
        raise AuthError(AuthErrorKind.EXPIRED, f"SMTP authentication failed for {self.account.email}")
