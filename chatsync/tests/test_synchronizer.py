import asyncio
import unittest

from chatsync.config import SyncConfig
from chatsync.models import ChangeEvent, ChangeKind, DeleteCriteria
from chatsync.store import InMemoryMessageStore
from chatsync.synchronizer import ScopeSynchronizer, SyncManager, SyncState

from .store_util import ControlledStore, eventually, make_message


FAST = SyncConfig(reload_backoff_initial_ms=0, reload_backoff_max_ms=0, degraded_after_failures=2)


class ScopeSynchronizerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = ControlledStore(InMemoryMessageStore())
        self.hub = self.store.hub
        self.syncs = []

    async def asyncTearDown(self):
        for sync in self.syncs:
            await sync.close()

    async def _open(self, scope: str = "console") -> ScopeSynchronizer:
        sync = ScopeSynchronizer(scope, self.store, self.hub, config=FAST)
        self.syncs.append(sync)
        await sync.open()
        return sync

    async def _rows(self, scope: str = "console"):
        return tuple(await self.store.inner.select_all(scope))

    async def test_open_loads_existing_rows(self):
        await self.store.insert(make_message("u1", "one", created_at_ms=1))
        await self.store.insert(make_message("u2", "two", created_at_ms=2))

        sync = await self._open()

        self.assertEqual(sync.state, SyncState.LIVE)
        self.assertEqual(sync.snapshot(), await self._rows())
        self.assertEqual(self.hub.subscriber_count("console"), 1)

    async def test_inserts_merge_in_created_at_order(self):
        sync = await self._open()

        await self.store.insert(make_message("u1", "third", created_at_ms=30))
        await self.store.insert(make_message("u2", "first", created_at_ms=10))
        await self.store.insert(make_message("u1", "second", created_at_ms=20))
        await sync.wait_idle()

        self.assertEqual([m.body for m in sync.snapshot()], ["first", "second", "third"])
        self.assertEqual(sync.snapshot(), await self._rows())
        self.assertEqual(self.store.reads, 1)

    async def test_redelivered_insert_is_not_duplicated(self):
        sync = await self._open()
        message = make_message("u1", "hello")
        await self.store.insert(message)
        self.hub.broadcast(ChangeEvent(kind=ChangeKind.INSERT, scope="console", message=message))
        await sync.wait_idle()

        self.assertEqual(len(sync.snapshot()), 1)

    async def test_other_scopes_are_ignored(self):
        sync = await self._open("console")
        await self.store.insert(make_message("u1", "elsewhere", scope="general"))
        await sync.wait_idle()

        self.assertEqual(sync.snapshot(), ())

    async def test_any_delete_triggers_full_reload(self):
        await self.store.insert(make_message("u1", "a"))
        await self.store.insert(make_message("u2", "b"))
        sync = await self._open()

        await self.store.delete_where(DeleteCriteria(scope="console", owner_id="u1"))
        await sync.wait_idle()

        self.assertEqual(self.store.reads, 2)
        self.assertEqual([m.body for m in sync.snapshot()], ["b"])
        self.assertEqual(sync.state, SyncState.LIVE)

    async def test_deletes_during_reload_coalesce_into_one_follow_up(self):
        for owner in ("u1", "u2", "u3", "u4"):
            await self.store.insert(make_message(owner, f"from {owner}"))
        sync = await self._open()

        gate = asyncio.Event()
        self.store.read_gate = gate
        await self.store.delete_where(DeleteCriteria(scope="console", owner_id="u1"))
        await eventually(lambda: self.store.reads == 2)
        self.assertEqual(sync.state, SyncState.RELOADING)

        await self.store.delete_where(DeleteCriteria(scope="console", owner_id="u2"))
        await self.store.delete_where(DeleteCriteria(scope="console", owner_id="u3"))
        self.store.read_gate = None
        gate.set()
        await sync.wait_idle()

        self.assertEqual(self.store.reads, 3)
        self.assertEqual([m.owner_id for m in sync.snapshot()], ["u4"])

    async def test_insert_racing_reload_is_not_lost_or_doubled(self):
        sync = await self._open()
        gate = asyncio.Event()
        self.store.read_gate = gate
        await self.store.insert(make_message("u1", "before"))
        self.hub.broadcast(ChangeEvent(kind=ChangeKind.DELETE, scope="console"))
        await eventually(lambda: self.store.reads == 2)

        late = make_message("u2", "during")
        await self.store.insert(late)
        self.store.read_gate = None
        gate.set()
        await sync.wait_idle()

        self.assertEqual([m.body for m in sync.snapshot()], ["before", "during"])
        self.assertEqual(sync.snapshot(), await self._rows())

    async def test_reconnect_resyncs_missed_events(self):
        await self.store.insert(make_message("u1", "seen"))
        sync = await self._open()

        self.hub.drop_connections("console")
        await self.store.insert(make_message("u2", "missed"))
        await self.store.delete_where(DeleteCriteria(scope="console", owner_id="u1"))
        await sync.wait_idle()
        self.assertEqual([m.body for m in sync.snapshot()], ["seen"])

        self.hub.restore_connections("console")
        await sync.wait_idle()

        self.assertEqual([m.body for m in sync.snapshot()], ["missed"])
        self.assertEqual(sync.state, SyncState.LIVE)

    async def test_reload_failures_retry_and_mark_degraded(self):
        await self.store.insert(make_message("u1", "a"))
        self.store.fail_reads = 3
        release = asyncio.Event()
        self.store.read_gate = release

        sync = await self._open()

        self.assertTrue(sync.degraded)
        self.assertEqual(sync.state, SyncState.LOADING)
        self.assertIsNotNone(sync.last_error)
        self.assertEqual(sync.snapshot(), ())

        self.store.read_gate = None
        release.set()
        await sync.wait_idle()

        self.assertFalse(sync.degraded)
        self.assertIsNone(sync.last_error)
        self.assertEqual(sync.state, SyncState.LIVE)
        self.assertEqual(self.store.reads, 4)
        self.assertEqual([m.body for m in sync.snapshot()], ["a"])

    async def test_close_discards_late_reload(self):
        await self.store.insert(make_message("u1", "a"))
        sync = await self._open()
        gate = asyncio.Event()
        self.store.read_gate = gate
        self.hub.broadcast(ChangeEvent(kind=ChangeKind.DELETE, scope="console"))
        await eventually(lambda: self.store.reads == 2)

        await sync.close()
        gate.set()
        await asyncio.sleep(0)

        self.assertEqual(sync.state, SyncState.CLOSED)
        self.assertEqual(sync.snapshot(), ())
        self.assertEqual(self.hub.subscriber_count("console"), 0)
        await sync.close()

    async def test_closed_synchronizer_ignores_notifications(self):
        sync = await self._open()
        await sync.close()

        await self.store.insert(make_message("u1", "after close"))
        await sync.wait_idle()

        self.assertEqual(sync.snapshot(), ())
        with self.assertRaises(RuntimeError):
            await sync.open()

    async def test_apply_local_filters_already_queued_inserts(self):
        sync = await self._open()
        seen = []
        sync.cache.add_listener(lambda snapshot: seen.append([m.owner_id for m in snapshot]))

        await self.store.insert(make_message("u1", "queued"))
        removed = sync.apply_local(lambda m: m.owner_id == "u1")
        await self.store.insert(make_message("u1", "posted later"))
        await sync.wait_idle()

        self.assertEqual(removed, 0)
        self.assertEqual([m.body for m in sync.snapshot()], ["posted later"])
        self.assertTrue(all(owners in ([], ["u1"]) for owners in seen))


class SyncManagerTests(unittest.IsolatedAsyncioTestCase):
    async def test_reopening_a_scope_replaces_the_subscription(self):
        store = InMemoryMessageStore()
        manager = SyncManager(store, store.hub, config=FAST)

        first = await manager.open("console")
        second = await manager.open("console")

        self.assertIsNot(first, second)
        self.assertEqual(first.state, SyncState.CLOSED)
        self.assertIs(manager.get("console"), second)
        self.assertEqual(store.hub.subscriber_count("console"), 1)

        await manager.close("console")
        await manager.close("console")
        self.assertIsNone(manager.get("console"))
        self.assertEqual(store.hub.subscriber_count("console"), 0)

    async def test_scopes_are_independent(self):
        store = InMemoryMessageStore()
        manager = SyncManager(store, store.hub, config=FAST)
        console = await manager.open("console")
        general = await manager.open("general")

        await store.insert(make_message("u1", "console only", scope="console"))
        await console.wait_idle()
        await general.wait_idle()
        await manager.close("console")

        self.assertEqual(general.snapshot(), ())
        self.assertEqual(general.state, SyncState.LIVE)
        self.assertEqual(manager.scopes(), ["general"])
        await manager.close_all()
        self.assertEqual(manager.scopes(), [])


if __name__ == "__main__":
    unittest.main()
