from __future__ import annotations

import sqlite3
from typing import List

from .errors import StoreError, UniqueViolation, UnqualifiedDelete
from .hub import ChangeHub
from .models import ChangeEvent, ChangeKind, DeleteCriteria, Message, MessageKind, now_ms
from .sqlite_backend import SQLiteBackend


_MESSAGE_COLUMNS = "id, owner_id, display_name, body, kind, scope, created_at_ms"


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row[0],
        owner_id=row[1],
        display_name=row[2],
        body=row[3],
        kind=MessageKind(row[4]),
        scope=row[5],
        created_at_ms=row[6],
    )


class SQLiteMessageStore:
    """Durable message rows backed by SQLite.

    Notifications are broadcast on ``hub`` only after the write commits.
    """

    def __init__(self, backend: SQLiteBackend, hub: ChangeHub | None = None) -> None:
        self._backend = backend
        self.hub = hub or ChangeHub()

    async def insert(self, message: Message) -> Message:
        with self._backend.lock:
            try:
                self._backend.connection.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        message.id,
                        message.owner_id,
                        message.display_name,
                        message.body,
                        message.kind.value,
                        message.scope,
                        message.created_at_ms,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc):
                    raise UniqueViolation(str(exc), constraint="id") from exc
                raise StoreError(str(exc)) from exc
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        self.hub.broadcast(ChangeEvent(kind=ChangeKind.INSERT, scope=message.scope, message=message))
        return message

    async def select_all(self, scope: str) -> List[Message]:
        with self._backend.lock:
            try:
                rows = self._backend.connection.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE scope=? ORDER BY created_at_ms ASC, id ASC",
                    (scope,),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        return [_row_to_message(row) for row in rows]

    async def delete_where(self, criteria: DeleteCriteria) -> int:
        if not criteria.qualified:
            raise UnqualifiedDelete("delete requires a row filter")

        query = "DELETE FROM messages WHERE scope=?"
        params: list[object] = [criteria.scope]
        if criteria.owner_id is not None:
            query += " AND owner_id=?"
            params.append(criteria.owner_id)
        if criteria.id_neq is not None:
            query += " AND id<>?"
            params.append(criteria.id_neq)

        with self._backend.lock:
            try:
                cursor = self._backend.connection.execute(query, params)
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
            deleted = cursor.rowcount
            cursor.close()
        if deleted:
            self.hub.broadcast(ChangeEvent(kind=ChangeKind.DELETE, scope=criteria.scope))
        return deleted


class SQLiteProfileStore:
    """Durable identity to display-name bindings."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    async def get(self, identity: str) -> str | None:
        with self._backend.lock:
            try:
                row = self._backend.connection.execute(
                    "SELECT username FROM profiles WHERE user_id=?",
                    (identity,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        if row is None:
            return None
        return row[0]

    async def claim(self, identity: str, name: str) -> str:
        """Bind ``name`` to ``identity`` in one check-and-insert transaction.

        The ``UNIQUE`` constraint on ``username`` backs up the explicit check,
        so two connections racing for a name still produce exactly one winner.
        """

        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                existing = cursor.execute("SELECT username FROM profiles WHERE user_id=?", (identity,)).fetchone()
                if existing is not None:
                    conn.rollback()
                    raise UniqueViolation(f"profile already exists for user: {identity}", constraint="user_id")
                taken = cursor.execute("SELECT user_id FROM profiles WHERE username=?", (name,)).fetchone()
                if taken is not None:
                    conn.rollback()
                    raise UniqueViolation(f"username already exists: {name}", constraint="username")
                cursor.execute(
                    "INSERT INTO profiles (user_id, username, created_at_ms) VALUES (?, ?, ?)",
                    (identity, name, now_ms()),
                )
                conn.commit()
            except UniqueViolation:
                raise
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                constraint = "username" if "username" in str(exc) else "user_id"
                raise UniqueViolation(str(exc), constraint=constraint) from exc
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(str(exc)) from exc
            finally:
                cursor.close()
        return name
