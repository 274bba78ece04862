import os
import tempfile
import unittest

from chatsync.errors import UniqueViolation, UnqualifiedDelete
from chatsync.hub import ChangeHub
from chatsync.models import IMPOSSIBLE_ID, ChangeKind, DeleteCriteria
from chatsync.sqlite_backend import SQLiteBackend
from chatsync.sqlite_store import SQLiteMessageStore, SQLiteProfileStore

from .store_util import make_message


class SQLiteStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "chatsync.db")
        self.backend = SQLiteBackend(self.db_path)
        self.hub = ChangeHub()
        self.messages = SQLiteMessageStore(self.backend, self.hub)
        self.profiles = SQLiteProfileStore(self.backend)

    def tearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    async def test_rows_are_ordered_by_created_at_then_id(self):
        await self.messages.insert(make_message("u1", "b", created_at_ms=20, message_id="b"))
        await self.messages.insert(make_message("u1", "a2", created_at_ms=20, message_id="a"))
        await self.messages.insert(make_message("u2", "first", created_at_ms=10))
        await self.messages.insert(make_message("u2", "elsewhere", scope="general"))

        rows = await self.messages.select_all("console")

        self.assertEqual([m.body for m in rows], ["first", "a2", "b"])

    async def test_clear_mine_and_clear_everyone_filters(self):
        await self.messages.insert(make_message("u1", "a"))
        await self.messages.insert(make_message("u2", "b"))
        await self.messages.insert(make_message("u1", "c"))

        mine = await self.messages.delete_where(DeleteCriteria(scope="console", owner_id="u1"))
        remaining = await self.messages.select_all("console")
        everyone = await self.messages.delete_where(DeleteCriteria(scope="console", id_neq=IMPOSSIBLE_ID))
        again = await self.messages.delete_where(DeleteCriteria(scope="console", id_neq=IMPOSSIBLE_ID))

        self.assertEqual(mine, 2)
        self.assertEqual([m.owner_id for m in remaining], ["u2"])
        self.assertEqual((everyone, again), (1, 0))
        self.assertEqual(await self.messages.select_all("console"), [])

    async def test_unqualified_delete_is_rejected(self):
        with self.assertRaises(UnqualifiedDelete):
            await self.messages.delete_where(DeleteCriteria(scope="console"))

    async def test_notifications_follow_commits(self):
        events = []
        self.hub.subscribe("console", events.append)

        message = make_message("u1", "a")
        await self.messages.insert(message)
        with self.assertRaises(UniqueViolation):
            await self.messages.insert(message)
        await self.messages.delete_where(DeleteCriteria(scope="console", owner_id="nobody"))
        await self.messages.delete_where(DeleteCriteria(scope="console", owner_id="u1"))

        self.assertEqual([e.kind for e in events], [ChangeKind.INSERT, ChangeKind.DELETE])
        self.assertEqual(events[0].message, message)

    async def test_profile_claim_enforces_unique_names(self):
        self.assertEqual(await self.profiles.claim("u1", "alice"), "alice")

        with self.assertRaises(UniqueViolation) as taken:
            await self.profiles.claim("u2", "alice")
        with self.assertRaises(UniqueViolation) as second:
            await self.profiles.claim("u1", "bob")

        self.assertEqual(taken.exception.constraint, "username")
        self.assertEqual(second.exception.constraint, "user_id")
        self.assertEqual(await self.profiles.get("u1"), "alice")
        self.assertIsNone(await self.profiles.get("u2"))

    async def test_reclaiming_own_name_reports_identity_constraint(self):
        await self.profiles.claim("u1", "alice")

        with self.assertRaises(UniqueViolation) as again:
            await self.profiles.claim("u1", "alice")

        self.assertEqual(again.exception.constraint, "user_id")

    async def test_rows_survive_restart(self):
        await self.messages.insert(make_message("u1", "persisted"))
        await self.profiles.claim("u1", "alice")
        self.backend.close()

        self.backend = SQLiteBackend(self.db_path)
        reopened = SQLiteMessageStore(self.backend)
        profiles = SQLiteProfileStore(self.backend)

        self.assertEqual([m.body for m in await reopened.select_all("console")], ["persisted"])
        self.assertEqual(await profiles.get("u1"), "alice")

    async def test_second_connection_loses_name_race(self):
        other_backend = SQLiteBackend(self.db_path)
        try:
            other = SQLiteProfileStore(other_backend)
            await self.profiles.claim("u1", "alice")
            with self.assertRaises(UniqueViolation):
                await other.claim("u2", "alice")
        finally:
            other_backend.close()


class SQLiteBackendTests(unittest.TestCase):
    def test_schema_version_is_recorded(self):
        backend = SQLiteBackend(":memory:")
        try:
            version = backend.connection.execute("PRAGMA user_version").fetchone()[0]
            tables = {
                row[0]
                for row in backend.connection.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        finally:
            backend.close()

        self.assertEqual(version, 1)
        self.assertTrue({"messages", "profiles"} <= tables)

    def test_unknown_schema_version_is_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "nested", "chatsync.db")
            backend = SQLiteBackend(db_path)
            backend.connection.execute("PRAGMA user_version = 7")
            backend.close()

            with self.assertRaises(ValueError):
                SQLiteBackend(db_path)


if __name__ == "__main__":
    unittest.main()
