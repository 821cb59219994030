"""Durable per-user mailbox holding notifications for offline users."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Iterator, List, Tuple, Union

from ..errors import MailboxStoreError
from .messages import AnyNotification
from .storage import SQLiteStore


LOGGER = logging.getLogger(__name__)


class MailboxStore(SQLiteStore):
    """FIFO queue of serialised notifications keyed by user id.

    Messages are stored exactly as they will be sent over the wire. Every
    operation runs in its own transaction; :meth:`drain_all` takes the write
    lock up front so a concurrent :meth:`enqueue` for the same user either
    lands before the snapshot (and is returned) or after it (and stays queued).
    """

    @contextlib.contextmanager
    def _transaction(self, action: str, user_id: str) -> Iterator[sqlite3.Connection]:
        try:
            connection = self._connect()
        except sqlite3.Error as error:
            raise MailboxStoreError(f"Mailbox unavailable for {action}: {error}") from error
        connection.isolation_level = None
        try:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")
        except sqlite3.Error as error:
            LOGGER.error("Mailbox %s failed for user %s: %s", action, user_id, error)
            raise MailboxStoreError(f"Mailbox {action} failed for user '{user_id}': {error}") from error
        finally:
            connection.close()

    def enqueue(self, user_id: str, message: Union[AnyNotification, str]) -> int:
        """Append *message* to the tail of *user_id*'s mailbox.

        Returns the mailbox length after the append.
        """

        payload = message if isinstance(message, str) else message.to_json()
        with self._track_db_event("mailbox.enqueue", table="mailbox_messages", user_id=user_id) as event:
            with self._transaction("enqueue", user_id) as connection:
                self._execute(
                    connection,
                    "INSERT INTO mailbox_messages(user_id, payload, enqueued_at) VALUES (?, ?, ?)",
                    (user_id, payload, datetime.now(timezone.utc).isoformat()),
                )
                length = self._execute(
                    connection,
                    "SELECT COUNT(*) FROM mailbox_messages WHERE user_id = ?",
                    (user_id,),
                ).fetchone()[0]
            event["pending"] = int(length)
        LOGGER.debug("Queued message for user %s (pending=%s)", user_id, length)
        return int(length)

    def drain_all(self, user_id: str) -> List[str]:
        """Remove and return every pending message for *user_id*, oldest first."""

        with self._track_db_event("mailbox.drain", table="mailbox_messages", user_id=user_id) as event:
            with self._transaction("drain", user_id) as connection:
                rows = self._execute(
                    connection,
                    "SELECT id, payload FROM mailbox_messages WHERE user_id = ? ORDER BY id",
                    (user_id,),
                ).fetchall()
                if rows:
                    self._execute(
                        connection,
                        "DELETE FROM mailbox_messages WHERE user_id = ? AND id <= ?",
                        (user_id, rows[-1]["id"]),
                    )
            event["drained"] = len(rows)
        if rows:
            LOGGER.info("Drained %s pending message(s) for user %s", len(rows), user_id)
        return [row["payload"] for row in rows]

    def peek(self, user_id: str) -> List[str]:
        """Return pending messages for *user_id* without removing them."""

        with self._transaction("peek", user_id) as connection:
            rows = self._execute(
                connection,
                "SELECT payload FROM mailbox_messages WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        return [row["payload"] for row in rows]

    def pending_count(self, user_id: str) -> int:
        with self._transaction("count", user_id) as connection:
            row = self._execute(
                connection,
                "SELECT COUNT(*) FROM mailbox_messages WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return int(row[0])

    def pending_users(self) -> List[Tuple[str, int]]:
        """Return ``(user_id, pending)`` pairs for every non-empty mailbox."""

        with self._transaction("summary", "*") as connection:
            rows = self._execute(
                connection,
                "SELECT user_id, COUNT(*) AS pending FROM mailbox_messages "
                "GROUP BY user_id ORDER BY user_id",
            ).fetchall()
        return [(row["user_id"], int(row["pending"])) for row in rows]


__all__ = ["MailboxStore"]
