# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# Converts between the domain models and database rows for the warm-start
# cache.
#
# Writers mirror what the SyncEngine folds into the MailCache:
#   - save_folders():  folder list after LIST
#   - apply_delta():   one folder's delta and its new cursor, in one
#                      transaction
#   - save_body():     a fetched body
#
# load() returns everything for MailCache.load() at startup.
#
# All methods are async for non-blocking database access.
# =============================================================================

import json
from datetime import datetime
from typing import TYPE_CHECKING

from kestrel_tui.core import Folder, FolderType, Message, MessageFlags
from kestrel_tui.remote.base import SyncDelta

if TYPE_CHECKING:
    from kestrel_tui.storage.database import Database


_MESSAGE_COLUMNS = (
    'folder_id, id, thread_id, uid, message_id, in_reply_to, "references", '
    "subject, sender, sender_name, recipients, cc, date_sent, flags, body"
)


class Repository:
    """
    Data access layer for the mail cache.

    Usage:
        >>> repo = Repository(database)
        >>> folders, messages = await repo.load()
        >>> await repo.apply_delta(folder, delta)

    Attributes:
        db: Database instance for executing queries.
    """

    def __init__(self, db: "Database") -> None:
        """
        Initialize the repository.

        Args:
            db: Connected Database instance.
        """
        self.db = db

    # =========================================================================
    # Folder Operations
    # =========================================================================

    async def get_folders(self) -> list[Folder]:
        """
        Get all stored folders.

        Returns:
            List of Folder objects, cursors included.
        """
        async with self.db.conn.execute(
            "SELECT id, name, folder_type, cursor, stale, total_messages, "
            "unread_count, last_sync FROM folders ORDER BY name"
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_folder(row) for row in rows]

    async def save_folders(self, folders: list[Folder]) -> None:
        """
        Insert or update folders, and forget folders that no longer exist.

        Args:
            folders: The complete folder list.
        """
        await self.db.conn.executemany(
            """INSERT INTO folders
               (id, name, folder_type, cursor, stale, total_messages, unread_count, last_sync)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   name=excluded.name,
                   folder_type=excluded.folder_type,
                   stale=excluded.stale,
                   total_messages=excluded.total_messages,
                   unread_count=excluded.unread_count""",
            [self._folder_values(f) for f in folders]
        )
        if folders:
            placeholders = ",".join("?" * len(folders))
            ids = [f.id for f in folders]
            await self.db.conn.execute(
                f"DELETE FROM messages WHERE folder_id NOT IN ({placeholders})", ids
            )
            await self.db.conn.execute(
                f"DELETE FROM folders WHERE id NOT IN ({placeholders})", ids
            )
        await self.db.conn.commit()

    @staticmethod
    def _folder_values(folder: Folder) -> tuple:
        return (
            folder.id, folder.name, folder.folder_type.name.lower(), folder.cursor,
            1 if folder.stale else 0, folder.total_messages, folder.unread_count,
            folder.last_sync.isoformat() if folder.last_sync else None,
        )

    def _row_to_folder(self, row) -> Folder:
        """Convert a database row to a Folder object."""
        return Folder(
            id=row[0],
            name=row[1],
            folder_type=FolderType[row[2].upper()],
            cursor=row[3],
            stale=bool(row[4]),
            total_messages=row[5] or 0,
            unread_count=row[6] or 0,
            last_sync=datetime.fromisoformat(row[7]) if row[7] else None,
        )

    # =========================================================================
    # Sync Operations
    # =========================================================================

    async def apply_delta(self, folder: Folder, delta: SyncDelta) -> None:
        """
        Persist a delta that was just applied to the cache.

        Runs as one transaction, so the stored cursor never gets ahead of
        the stored messages.

        Args:
            folder: The folder after the delta (carries the new cursor).
            delta: The delta that was applied.
        """
        conn = self.db.conn
        if delta.reset:
            listed = [m.id for m in delta.changed]
            if listed:
                placeholders = ",".join("?" * len(listed))
                await conn.execute(
                    f"DELETE FROM messages WHERE folder_id = ? AND id NOT IN ({placeholders})",
                    [folder.id, *listed]
                )
            else:
                await conn.execute("DELETE FROM messages WHERE folder_id = ?", (folder.id,))

        if delta.changed:
            # A stored body survives envelope updates; the server sends none
            await conn.executemany(
                f"""INSERT INTO messages ({_MESSAGE_COLUMNS})
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(folder_id, id) DO UPDATE SET
                       thread_id=excluded.thread_id, uid=excluded.uid,
                       message_id=excluded.message_id, in_reply_to=excluded.in_reply_to,
                       "references"=excluded."references", subject=excluded.subject,
                       sender=excluded.sender, sender_name=excluded.sender_name,
                       recipients=excluded.recipients, cc=excluded.cc,
                       date_sent=excluded.date_sent, flags=excluded.flags,
                       body=COALESCE(excluded.body, messages.body)""",
                [self._message_values(folder.id, m) for m in delta.changed]
            )

        if delta.flag_updates:
            await conn.executemany(
                "UPDATE messages SET flags = ? WHERE folder_id = ? AND id = ?",
                [(int(flags), folder.id, mid) for mid, flags in delta.flag_updates.items()]
            )

        if delta.removed_ids:
            await conn.executemany(
                "DELETE FROM messages WHERE folder_id = ? AND id = ?",
                [(folder.id, mid) for mid in delta.removed_ids]
            )

        await conn.execute(
            """INSERT INTO folders
               (id, name, folder_type, cursor, stale, total_messages, unread_count, last_sync)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   cursor=excluded.cursor, stale=excluded.stale,
                   total_messages=excluded.total_messages,
                   unread_count=excluded.unread_count,
                   last_sync=excluded.last_sync""",
            self._folder_values(folder)
        )
        await conn.commit()

    async def save_body(self, message_id: str, body: str) -> None:
        """
        Store a fetched body on every copy of the message.

        Args:
            message_id: Message whose body was fetched.
            body: Plain-text body.
        """
        await self.db.conn.execute(
            "UPDATE messages SET body = ? WHERE id = ?",
            (body, message_id)
        )
        await self.db.conn.commit()

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def get_messages(self, folder_id: str | None = None) -> list[Message]:
        """
        Get stored messages.

        Args:
            folder_id: Restrict to one folder; all folders if None.

        Returns:
            List of Message objects, newest first.
        """
        query = f"SELECT {_MESSAGE_COLUMNS} FROM messages"
        params: list = []
        if folder_id is not None:
            query += " WHERE folder_id = ?"
            params.append(folder_id)
        # datetime() normalizes ISO strings for proper sorting
        query += " ORDER BY datetime(date_sent) DESC"

        async with self.db.conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_message(row) for row in rows]

    async def get_message_count(self, folder_id: str) -> int:
        """
        Get the total number of messages in a folder.

        Args:
            folder_id: Folder ID.

        Returns:
            Total message count.
        """
        async with self.db.conn.execute(
            "SELECT COUNT(*) FROM messages WHERE folder_id = ?",
            (folder_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def load(self) -> tuple[list[Folder], list[Message]]:
        """Everything needed to warm-start the MailCache."""
        return await self.get_folders(), await self.get_messages()

    @staticmethod
    def _message_values(folder_id: str, message: Message) -> tuple:
        return (
            folder_id, message.id, message.thread_id, message.uid,
            message.message_id, message.in_reply_to, json.dumps(message.references),
            message.subject, message.sender, message.sender_name,
            json.dumps(message.recipients), json.dumps(message.cc),
            message.date_sent.isoformat() if message.date_sent else None,
            int(message.flags), message.body,
        )

    def _row_to_message(self, row) -> Message:
        """Convert a database row to a Message object."""
        return Message(
            folder_id=row[0],
            id=row[1],
            thread_id=row[2],
            uid=row[3] or 0,
            message_id=row[4] or "",
            in_reply_to=row[5] or "",
            references=json.loads(row[6]) if row[6] else [],
            subject=row[7] or "",
            sender=row[8] or "",
            sender_name=row[9] or "",
            recipients=json.loads(row[10]) if row[10] else [],
            cc=json.loads(row[11]) if row[11] else [],
            date_sent=datetime.fromisoformat(row[12]) if row[12] else None,
            flags=MessageFlags(row[13]),
            body=row[14],
        )
