# =============================================================================
# Gmail IMAP Client
# =============================================================================
# RemoteMailClient implementation for Gmail over IMAP, built on aioimaplib.
#
# Two layers:
#   - ImapConnection: one authenticated aioimaplib session (XOAUTH2), with
#     the raw operations (select, fetch, store, move, append, IDLE).
#   - GmailImapClient: the delta/mutation semantics on top of it.
#
# Gmail specifics:
#   - Message id = X-GM-MSGID (stable across mailboxes)
#   - Thread id  = X-GM-THRID
#   - Archive    = move to [Gmail]/All Mail
#   - Delete     = move to [Gmail]/Trash
#
# Sync cursor format: "<uidvalidity>:<uid-set>", where uid-set is the
# compressed set of UIDs the client has already reported ("1-40,42,45-50").
# A UIDVALIDITY change, an unreadable cursor, or a cursor this process never
# produced results in a reset delta (full listing of the sync window).
#
# Error mapping:
#   - Socket errors, timeouts, dropped connections  ->  TRANSIENT
#   - NO/BAD to SELECT (missing mailbox) and other
#     rejected commands                             ->  PERMANENT
#   - Mutation target no longer on the server       ->  CONFLICT
# =============================================================================

import asyncio
import email
import email.errors
import email.header
import email.utils
import logging
import re
from dataclasses import dataclass, field
from datetime import timezone
from email.message import Message as EmailMessage
from typing import Any

from aioimaplib import aioimaplib
from inscriptis import get_text

from kestrel_tui.auth.credentials import CredentialStore
from kestrel_tui.core import Account, Folder, FolderType, GMAIL_MAILBOXES, Message, MessageFlags
from kestrel_tui.errors import AuthError, AuthErrorKind
from kestrel_tui.remote.base import (
    Mutation,
    MutationKind,
    RemoteError,
    RemoteErrorKind,
    RemoteMailClient,
    SyncDelta,
)
from kestrel_tui.remote.smtp import GmailSmtpSender, build_mime_message

logger = logging.getLogger(__name__)

# Errors that mean the connection is gone, not that a command was refused
_CONNECTION_ERRORS = (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout)


def _quote_folder_name(name: str) -> str:
    """
    Quote an IMAP folder name if it contains special characters.

    Args:
        name: The folder name to quote.

    Returns:
        Properly quoted folder name for IMAP commands.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _decode(item: Any) -> str:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item).decode("utf-8", errors="replace")
    return str(item)


# =============================================================================
# UID sets
# =============================================================================

def compress_uids(uids: set[int]) -> str:
    """Render a UID set as comma-separated ranges: {1,2,3,7} -> "1-3,7"."""
    parts: list[str] = []
    ordered = sorted(uids)
    i = 0
    while i < len(ordered):
        start = end = ordered[i]
        while i + 1 < len(ordered) and ordered[i + 1] == end + 1:
            i += 1
            end = ordered[i]
        parts.append(str(start) if start == end else f"{start}-{end}")
        i += 1
    return ",".join(parts)


def expand_uids(text: str) -> set[int]:
    """
    Inverse of compress_uids().

    Raises:
        ValueError: If the text is not a valid UID set.
    """
    uids: set[int] = set()
    for part in filter(None, text.split(",")):
        if "-" in part:
            start, end = part.split("-", 1)
            uids.update(range(int(start), int(end) + 1))
        else:
            uids.add(int(part))
    return uids


def parse_cursor(cursor: str | None) -> tuple[int, set[int]] | None:
    """Split a cursor into (uidvalidity, uids); None if absent or unreadable."""
    if not cursor or ":" not in cursor:
        return None
    validity, _, uid_set = cursor.partition(":")
    try:
        return int(validity), expand_uids(uid_set)
    except ValueError:
        return None


def format_cursor(uidvalidity: int, uids: set[int]) -> str:
    return f"{uidvalidity}:{compress_uids(uids)}"


# =============================================================================
# Response parsing
# =============================================================================

def inline_literals(lines: list[Any]) -> list[str]:
    """
    Join aioimaplib response items into one text line per FETCH response.

    Literals ({N} followed by a raw bytes item) are inlined as quoted
    strings, so envelope fields sent as literals parse like any other.
    """
    joined: list[str] = []
    current = ""
    pending_literal = False

    for item in lines:
        text = _decode(item)
        if pending_literal:
            escaped = text.replace("\\", "\\\\").replace('"', '\\"')
            current = re.sub(r"\{\d+\}\s*$", lambda _: f'"{escaped}"', current)
            pending_literal = False
            continue
        if re.match(r"^\d+\s+FETCH\s*\(", text, re.IGNORECASE):
            if current:
                joined.append(current)
            current = text
        elif current and _open_parens(current) > 0:
            current += " " + text.strip()
        else:
            # Status lines ("Success", "FETCH completed") between responses
            continue
        pending_literal = bool(re.search(r"\{\d+\}\s*$", current))

    if current:
        joined.append(current)
    return joined


def _open_parens(s: str) -> int:
    """Parenthesis depth at the end of `s`, ignoring quoted strings."""
    depth = 0
    in_quote = False
    escaped = False
    for char in s:
        if in_quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_quote = False
        elif char == '"':
            in_quote = True
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
    return depth


def tokenize(s: str) -> list[str]:
    """
    Split an IMAP parenthesized list into top-level tokens, keeping nested
    lists and quoted strings intact.
    """
    tokens = []
    current = ""
    depth = 0
    in_quote = False
    escaped = False

    for char in s:
        if in_quote:
            current += char
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_quote = False
            continue
        if char == '"':
            in_quote = True
            current += char
        elif char == "(":
            depth += 1
            current += char
        elif char == ")":
            depth -= 1
            current += char
        elif char == " " and depth == 0:
            if current:
                tokens.append(current)
                current = ""
        else:
            current += char

    if current:
        tokens.append(current)
    return tokens


def _unquote(s: str) -> str:
    if not s or s.upper() == "NIL":
        return ""
    if len(s) >= 2 and s[0] == '"' and s[-1] == '"':
        return s[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return s


def decode_header(value: str) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    try:
        decoded_parts = email.header.decode_header(value)
    except email.errors.HeaderParseError:
        return value
    result = ""
    for part, charset in decoded_parts:
        if isinstance(part, bytes):
            try:
                result += part.decode(charset or "utf-8", errors="replace")
            except LookupError:
                result += part.decode("utf-8", errors="replace")
        else:
            result += part
    return result


def parse_flags(flags_str: str) -> MessageFlags:
    """Convert an IMAP FLAGS list to MessageFlags."""
    result = MessageFlags.NONE
    flags_upper = flags_str.upper()
    if "\\SEEN" in flags_upper:
        result |= MessageFlags.SEEN
    if "\\ANSWERED" in flags_upper:
        result |= MessageFlags.ANSWERED
    if "\\FLAGGED" in flags_upper:
        result |= MessageFlags.FLAGGED
    if "\\DELETED" in flags_upper:
        result |= MessageFlags.DELETED
    if "\\DRAFT" in flags_upper:
        result |= MessageFlags.DRAFT
    return result


def _parse_address_list(addr_str: str) -> list[tuple[str, str]]:
    """Parse an envelope address list into (name, email) pairs."""
    if not addr_str or addr_str.upper() == "NIL":
        return []
    addresses = []
    inner = addr_str[1:-1] if addr_str.startswith("(") else addr_str
    for entry in tokenize(inner):
        parts = tokenize(entry[1:-1]) if entry.startswith("(") else []
        if len(parts) < 4:
            continue
        name, _, user, host = (_unquote(p) for p in parts[:4])
        if user and host:
            addresses.append((decode_header(name), f"{user}@{host}"))
    return addresses


def parse_envelope(envelope_str: str) -> dict[str, Any]:
    """
    Parse an IMAP ENVELOPE body.

    Format: (date subject from sender reply-to to cc bcc in-reply-to message-id)
    """
    parts = tokenize(envelope_str)
    envelope: dict[str, Any] = {}
    if len(parts) >= 2:
        envelope["date"] = _unquote(parts[0])
        envelope["subject"] = decode_header(_unquote(parts[1]))
    if len(parts) >= 3:
        envelope["from"] = _parse_address_list(parts[2])
    if len(parts) >= 6:
        envelope["to"] = _parse_address_list(parts[5])
    if len(parts) >= 7:
        envelope["cc"] = _parse_address_list(parts[6])
    if len(parts) >= 9:
        envelope["in_reply_to"] = _unquote(parts[8])
    if len(parts) >= 10:
        envelope["message_id"] = _unquote(parts[9])
    return envelope


def parse_fetch_item(line: str) -> dict[str, Any]:
    """Extract UID, Gmail ids, FLAGS and ENVELOPE from one FETCH response."""
    data: dict[str, Any] = {}
    start = line.find("(")
    if start < 0:
        return data
    tokens = tokenize(line[start + 1:line.rfind(")")])
    for key, value in zip(tokens[::2], tokens[1::2]):
        key = key.upper()
        if key == "UID":
            data["uid"] = int(value)
        elif key == "X-GM-MSGID":
            data["gm_msgid"] = value
        elif key == "X-GM-THRID":
            data["gm_thrid"] = value
        elif key == "FLAGS":
            data["flags"] = parse_flags(value)
        elif key == "ENVELOPE":
            data["envelope"] = parse_envelope(value[1:-1])
    return data


def build_message(data: dict[str, Any], folder_id: str) -> Message:
    """Build a cache Message from parsed FETCH data."""
    envelope = data.get("envelope", {})

    date_sent = None
    if envelope.get("date"):
        try:
            parsed = email.utils.parsedate_to_datetime(envelope["date"])
            date_sent = parsed.astimezone(timezone.utc) if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            pass

    from_list = envelope.get("from", [])
    sender_name, sender = from_list[0] if from_list else ("", "")

    return Message(
        id=data["gm_msgid"],
        thread_id=data.get("gm_thrid", ""),
        folder_id=folder_id,
        uid=data.get("uid", 0),
        message_id=envelope.get("message_id", ""),
        in_reply_to=envelope.get("in_reply_to", ""),
        references=[envelope["in_reply_to"]] if envelope.get("in_reply_to") else [],
        subject=envelope.get("subject", "") or "(No Subject)",
        sender=sender,
        sender_name=sender_name,
        recipients=[addr for _, addr in envelope.get("to", [])],
        cc=[addr for _, addr in envelope.get("cc", [])],
        date_sent=date_sent,
        flags=data.get("flags", MessageFlags.NONE),
    )


def html_to_text(html: str) -> str:
    """Render HTML to text, dropping reference-style link lines ("[1]: http...")."""
    text = get_text(html)
    lines = [
        line for line in text.splitlines()
        if not (line.strip().startswith("[") and "]: http" in line)
    ]
    return "\n".join(lines).strip("\n")


def _decode_part(part: EmailMessage) -> str:
    payload = part.get_payload(decode=True)
    if isinstance(payload, bytes):
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")
    return str(payload) if payload else ""


def extract_body(raw: bytes) -> str:
    """
    Plain-text body of a raw RFC 822 message.

    HTML is preferred when present (it is usually the complete version) and
    converted with inscriptis; otherwise the text/plain part is used.
    """
    msg = email.message_from_bytes(raw)
    text_body = ""
    html_body = ""
    for part in msg.walk():
        if part.is_multipart():
            continue
        if "attachment" in str(part.get("Content-Disposition", "")):
            continue
        content_type = part.get_content_type()
        if content_type == "text/html" and not html_body:
            html_body = _decode_part(part)
        elif content_type == "text/plain" and not text_body:
            text_body = _decode_part(part)
    if html_body:
        return html_to_text(html_body)
    return text_body


# =============================================================================
# Connection
# =============================================================================

@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP connection.

    Attributes:
        connected: Whether we have an authenticated session.
        selected_folder: Currently selected folder, if any.
        uidvalidity: UIDVALIDITY of the selected folder.
        exists: Message count of the selected folder.
        capabilities: Server capabilities.
    """
    connected: bool = False
    selected_folder: str | None = None
    uidvalidity: int | None = None
    exists: int = 0
    capabilities: list[str] = field(default_factory=list)


class ImapConnection:
    """
    One XOAUTH2-authenticated aioimaplib session.

    Raises RemoteError for every failure; the connection drops itself on
    TRANSIENT errors so the next call reconnects.
    """

    # Timeout for IMAP operations (seconds)
    TIMEOUT = 30

    def __init__(self, account: Account, credentials: CredentialStore) -> None:
        self.account = account
        self.credentials = credentials
        self.state = ConnectionState()
        self._client: aioimaplib.IMAP4_SSL | None = None

    @property
    def is_connected(self) -> bool:
        return self.state.connected and self._client is not None

    async def connect(self) -> None:
        """
        Connect and authenticate.

        Raises:
            RemoteError: TRANSIENT if the server is unreachable.
            AuthError: If the token is rejected even after a refresh.
        """
        logger.info(f"Connecting to {self.account.imap_host}:{self.account.imap_port}")
        try:
            self._client = aioimaplib.IMAP4_SSL(
                host=self.account.imap_host,
                port=self.account.imap_port,
                timeout=self.TIMEOUT,
            )
            await self._client.wait_hello_from_server()
            self.state.capabilities = list(self._client.protocol.capabilities)
            await self._authenticate()
        except _CONNECTION_ERRORS as e:
            self._drop()
            raise RemoteError(
                RemoteErrorKind.TRANSIENT,
                f"Failed to connect to {self.account.imap_host}:{self.account.imap_port}: {e}",
            ) from e
        except AuthError:
            self._drop()
            raise

        self.state.connected = True
        logger.info(f"Successfully connected to {self.account.imap_host}")

    async def _authenticate(self) -> None:
        credential = await self.credentials.get_valid_token()
        response = await self._client.xoauth2(self.account.email, credential.access_token)
        if response.result == "OK":
            logger.debug("Authentication successful")
            return

        # The token may have been revoked or expired early; refresh once
        logger.info("IMAP rejected access token, refreshing")
        credential = await self.credentials.refresh()
        response = await self._client.xoauth2(self.account.email, credential.access_token)
        if response.result != "OK":
            raise AuthError(
                AuthErrorKind.EXPIRED,
                f"Authentication failed for {self.account.email}: {response.lines}",
            )

    async def ensure_connected(self) -> None:
        if not self.is_connected:
            await self.connect()

    async def disconnect(self) -> None:
        """Gracefully log out."""
        if self._client and self.state.connected:
            try:
                logger.debug("Sending LOGOUT")
                await self._client.logout()
            except _CONNECTION_ERRORS as e:
                logger.warning(f"Error during logout: {e}")
        self._drop()

    def _drop(self) -> None:
        self._client = None
        self.state = ConnectionState()

    async def _call(self, description: str, coro_factory) -> Any:
        """
        Run one aioimaplib command, mapping failures to RemoteError.

        Args:
            description: Used in error messages.
            coro_factory: Callable taking the aioimaplib client.
        """
        await self.ensure_connected()
        try:
            response = await coro_factory(self._client)
        except _CONNECTION_ERRORS as e:
            self._drop()
            raise RemoteError(RemoteErrorKind.TRANSIENT, f"{description}: {e}") from e
        if response.result != "OK":
            raise RemoteError(RemoteErrorKind.PERMANENT, f"{description} failed: {response.lines}")
        return response

    # -------------------------------------------------------------------------
    # Folder operations
    # -------------------------------------------------------------------------

    async def list_mailboxes(self) -> list[tuple[str, list[str]]]:
        """Return (mailbox name, LIST attributes) for every selectable mailbox."""
        response = await self._call("LIST", lambda c: c.list('""', "*"))
        mailboxes = []
        for line in response.lines:
            text = _decode(line)
            match = re.match(r'\(([^)]*)\)\s+"([^"]*)"\s+(.+)', text)
            if not match:
                continue
            flags = match.group(1).split()
            if any(f.lower() == "\\noselect" for f in flags):
                continue
            mailboxes.append((_unquote(match.group(3).strip()), flags))
        return mailboxes

    async def select(self, folder_name: str) -> ConnectionState:
        """
        Select a folder and record its UIDVALIDITY and size.

        Raises:
            RemoteError: PERMANENT if the mailbox does not exist.
        """
        response = await self._call(
            f"SELECT {folder_name}",
            lambda c: c.select(_quote_folder_name(folder_name)),
        )
        self.state.selected_folder = folder_name
        self.state.exists = 0
        for line in response.lines:
            text = _decode(line)
            match = re.search(r"(\d+)\s+EXISTS", text, re.IGNORECASE)
            if match:
                self.state.exists = int(match.group(1))
            match = re.search(r"UIDVALIDITY\s+(\d+)", text, re.IGNORECASE)
            if match:
                self.state.uidvalidity = int(match.group(1))
        logger.debug(f"Selected {folder_name}: {self.state.exists} messages, uidvalidity {self.state.uidvalidity}")
        return self.state

    # -------------------------------------------------------------------------
    # Message operations (on the selected folder)
    # -------------------------------------------------------------------------

    async def fetch(self, message_set: str, items: str, *, by_uid: bool) -> list[dict[str, Any]]:
        """FETCH or UID FETCH, parsed into dictionaries."""
        if by_uid:
            response = await self._call("UID FETCH", lambda c: c.uid("FETCH", message_set, items))
        else:
            response = await self._call("FETCH", lambda c: c.fetch(message_set, items))
        return [parse_fetch_item(line) for line in inline_literals(response.lines)]

    async def fetch_raw(self, uid: int) -> bytes | None:
        """Full RFC 822 source of one message."""
        response = await self._call("UID FETCH BODY", lambda c: c.uid("FETCH", str(uid), "(BODY.PEEK[])"))
        # The literal is the largest bytes item of the response
        literals = [bytes(item) for item in response.lines if isinstance(item, (bytes, bytearray))]
        candidates = [item for item in literals if not re.match(rb"^\d+\s+FETCH", item)]
        return max(candidates, key=len) if candidates else None

    async def search_gm_msgid(self, gm_msgid: str) -> list[int]:
        response = await self._call(
            "UID SEARCH",
            lambda c: c.uid_search(f"X-GM-MSGID {gm_msgid}", charset=None),
        )
        uids: list[int] = []
        for line in response.lines:
            text = _decode(line)
            if text.upper().startswith("SEARCH"):
                continue
            uids.extend(int(tok) for tok in text.split() if tok.isdigit())
        return uids

    async def store_flags(self, uid: int, flag: str, add: bool) -> None:
        command = f"{'+' if add else '-'}FLAGS ({flag})"
        await self._call("UID STORE", lambda c: c.uid("STORE", str(uid), command))

    async def move(self, uid: int, dest_folder: str) -> None:
        """Move one message; falls back to COPY + \\Deleted + EXPUNGE."""
        quoted_dest = _quote_folder_name(dest_folder)
        if self._client is not None and self._client.has_capability("MOVE"):
            await self._call("UID MOVE", lambda c: c.uid("MOVE", str(uid), quoted_dest))
            return
        await self._call("UID COPY", lambda c: c.uid("COPY", str(uid), quoted_dest))
        await self.store_flags(uid, "\\Deleted", True)
        await self._call("EXPUNGE", lambda c: c.expunge())

    async def append(self, raw: bytes, folder_name: str, flags: str) -> None:
        await self._call(
            f"APPEND {folder_name}",
            lambda c: c.append(raw, mailbox=_quote_folder_name(folder_name), flags=flags),
        )

    # -------------------------------------------------------------------------
    # IDLE support
    # -------------------------------------------------------------------------

    def supports_idle(self) -> bool:
        return self._client is not None and self._client.has_capability("IDLE")

    async def idle_start(self) -> None:
        await self._client.idle_start()

    async def idle_wait(self, timeout: float) -> list[str]:
        """
        Wait for IDLE notifications, or an empty list on timeout.

        Raises:
            RemoteError: TRANSIENT if the connection dropped.
        """
        try:
            msg = await asyncio.wait_for(self._client.wait_server_push(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("IDLE timeout - refreshing connection")
            return []
        except _CONNECTION_ERRORS as e:
            self._drop()
            raise RemoteError(RemoteErrorKind.TRANSIENT, f"IDLE connection lost: {e}") from e
        return [_decode(line) for line in msg] if isinstance(msg, list) else [_decode(msg)]

    async def idle_done(self) -> None:
        if self._client:
            self._client.idle_done()
            # Let the IDLE command complete before the next command
            await asyncio.sleep(0.1)


# =============================================================================
# Gmail client
# =============================================================================

class GmailImapClient(RemoteMailClient):
    """
    Gmail RemoteMailClient over one IMAP connection plus SMTP for sending.

    Commands are serialized on the connection (SELECT state is per
    connection), so concurrent folder syncs queue up here.

    Usage:
        >>> client = GmailImapClient(account, credentials)
        >>> folders = await client.list_folders()
        >>> delta = await client.sync_delta(folders[0], None)
    """

    # Messages fetched per folder on a full listing (newest first)
    SYNC_WINDOW = 500

    def __init__(
        self,
        account: Account,
        credentials: CredentialStore,
        *,
        sender: GmailSmtpSender | None = None,
        sync_window: int = SYNC_WINDOW,
    ) -> None:
        self.account = account
        self.connection = ImapConnection(account, credentials)
        self.sender = sender or GmailSmtpSender(account, credentials)
        self.sync_window = sync_window
        self._lock = asyncio.Lock()
        # folder_id -> uid -> gm_msgid, for the UIDs the last cursor covers
        self._uid_maps: dict[str, dict[int, str]] = {}
        # gm_msgid -> (folder_id, uid), last seen location
        self._locations: dict[str, tuple[str, int]] = {}

    def _mailbox(self, folder_type: FolderType) -> str:
        return GMAIL_MAILBOXES[folder_type]

    async def list_folders(self) -> list[Folder]:
        async with self._lock:
            mailboxes = await self.connection.list_mailboxes()
        return [
            Folder(id=name, folder_type=Folder.detect_type(name, flags))
            for name, flags in mailboxes
        ]

    async def sync_delta(self, folder: Folder, cursor: str | None) -> SyncDelta:
        async with self._lock:
            state = await self.connection.select(folder.id)
            uidvalidity = state.uidvalidity or 0

            # Window of (uid, msgid, flags) currently on the server
            listing: dict[int, dict[str, Any]] = {}
            if state.exists:
                start = max(1, state.exists - self.sync_window + 1)
                for item in await self.connection.fetch(f"{start}:*", "(UID FLAGS X-GM-MSGID)", by_uid=False):
                    if "uid" in item and "gm_msgid" in item:
                        listing[item["uid"]] = item
            server_uids = set(listing)

            previous = parse_cursor(cursor)
            known_map = self._uid_maps.get(folder.id)
            reset = (
                previous is None
                or previous[0] != uidvalidity
                or known_map is None
                or set(known_map) != previous[1]
            )
            known_uids = set() if reset else previous[1]

            new_uids = sorted(server_uids - known_uids)
            changed: list[Message] = []
            if new_uids:
                items = await self.connection.fetch(
                    compress_uids(set(new_uids)).replace("-", ":"),
                    "(UID FLAGS X-GM-MSGID X-GM-THRID ENVELOPE)",
                    by_uid=True,
                )
                changed = [build_message(item, folder.id) for item in items if "gm_msgid" in item]

        removed_ids = set()
        flag_updates: dict[str, MessageFlags] = {}
        if not reset:
            removed_ids = {known_map[uid] for uid in known_uids - server_uids}
            flag_updates = {
                listing[uid]["gm_msgid"]: listing[uid].get("flags", MessageFlags.NONE)
                for uid in known_uids & server_uids
            }

        uid_map = {uid: item["gm_msgid"] for uid, item in listing.items()}
        self._uid_maps[folder.id] = uid_map
        for uid, gm_msgid in uid_map.items():
            self._locations[gm_msgid] = (folder.id, uid)

        if reset:
            logger.info(f"Full listing of {folder.id} (uidvalidity {uidvalidity})")
        return SyncDelta(
            changed=changed,
            removed_ids=removed_ids,
            flag_updates=flag_updates,
            new_cursor=format_cursor(uidvalidity, server_uids),
            reset=reset,
        )

    async def fetch_body(self, message_id: str) -> str:
        async with self._lock:
            folder_id, uid = await self._locate(message_id, self._locations.get(message_id, ("", 0))[0])
            raw = await self.connection.fetch_raw(uid)
        if raw is None:
            raise RemoteError(RemoteErrorKind.CONFLICT, f"Message {message_id} has no body on the server")
        return extract_body(raw)

    async def mutate(self, op: Mutation) -> None:
        if op.kind == MutationKind.SEND:
            await self.sender.send(op.draft)
            return
        if op.kind == MutationKind.SAVE_DRAFT:
            raw = build_mime_message(self.account, op.draft).as_bytes()
            async with self._lock:
                await self.connection.append(raw, self._mailbox(FolderType.DRAFTS), "(\\Draft)")
            return

        async with self._lock:
            if op.kind in (MutationKind.ARCHIVE, MutationKind.DELETE):
                dest = self._mailbox(FolderType.ARCHIVE if op.kind == MutationKind.ARCHIVE else FolderType.TRASH)
                await self._move(op, dest)
            else:
                flag = "\\Flagged" if op.kind == MutationKind.STAR else "\\Seen"
                _, uid = await self._locate(op.message_id, op.folder_id)
                await self.connection.store_flags(uid, flag, op.value)
        logger.debug(f"Applied {op.kind.name} to {op.message_id}")

    async def _move(self, op: Mutation, dest: str) -> None:
        source = op.folder_id or self._locations.get(op.message_id, ("", 0))[0]
        if source == dest:
            return
        await self.connection.select(source)
        uids = await self.connection.search_gm_msgid(op.message_id)
        if uids:
            await self.connection.move(uids[0], dest)
            return
        # Already gone from the source: done if it arrived at the destination
        await self.connection.select(dest)
        if await self.connection.search_gm_msgid(op.message_id):
            logger.debug(f"{op.kind.name} of {op.message_id} already applied")
            return
        raise RemoteError(RemoteErrorKind.CONFLICT, f"Message {op.message_id} is no longer in {source}")

    async def _locate(self, message_id: str, folder_id: str) -> tuple[str, int]:
        """
        Select the folder holding a message and return (folder, uid).

        Looks in `folder_id` first, then All Mail.

        Raises:
            RemoteError: CONFLICT if the message is gone.
        """
        candidates = [f for f in (folder_id, self._mailbox(FolderType.ARCHIVE)) if f]
        for candidate in dict.fromkeys(candidates):
            await self.connection.select(candidate)
            uids = await self.connection.search_gm_msgid(message_id)
            if uids:
                self._locations[message_id] = (candidate, uids[0])
                return candidate, uids[0]
        raise RemoteError(RemoteErrorKind.CONFLICT, f"Message {message_id} no longer exists")

    async def close(self) -> None:
        async with self._lock:
            await self.connection.disconnect()
