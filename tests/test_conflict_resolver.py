import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from agenda.config_manager import ConfigManager
from agenda.conflict_resolver import ConflictResolver, normalize_choice
from agenda.errors import ConflictNotFound, InvalidChoice, SyncInProgress
from agenda.event_store import EventStore
from agenda.models import SyncState
from agenda.state_store import StateStore
from agenda.sync_engine import SyncEngine, UserLocks
from tests.fakes import FakeCalendarService, FakeClock


USER = "user-1"


class ConflictResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        root = Path(self.temp_dir.name)
        self.clock = FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
        self.config_manager = ConfigManager(root / "config.yaml")
        self.state_store = StateStore(str(root / "agenda.db"), clock=self.clock)
        self.event_store = EventStore(str(root / "agenda.db"), clock=self.clock)
        self.state_store.upsert_credential(
            user_id=USER,
            access_token="access",
            refresh_token="refresh",
            token_expiry=self.clock() + timedelta(days=30),
        )
        self.remote = FakeCalendarService(self.clock)
        patcher = mock.patch("agenda.remote_session.GoogleCalendarService", return_value=self.remote)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.locks = UserLocks()
        self.engine = SyncEngine(
            self.config_manager, self.state_store, self.event_store, locks=self.locks, clock=self.clock
        )
        self.resolver = ConflictResolver(
            self.config_manager, self.state_store, self.event_store, self.locks, clock=self.clock
        )

    def make_conflict(self):
        start = self.clock() + timedelta(days=1)
        remote_id = self.remote.add_remote("Review", start, start + timedelta(hours=1))
        self.engine.run_once(USER)
        event = self.event_store.find_by_remote_id(USER, remote_id)
        self.clock.advance(hours=1)
        self.event_store.update_event(event.id, title="Review (local)")
        self.clock.advance(hours=1)
        self.remote.edit_remote(remote_id, summary="Review (remote)")
        self.clock.advance(minutes=1)
        summary = self.engine.run_once(USER).summary
        self.assertEqual(len(summary.conflicts), 1)
        return event.id, remote_id

    def assert_settled(self, event_id: str) -> None:
        self.clock.advance(minutes=5)
        summary = self.engine.run_once(USER).summary
        self.assertEqual((summary.imported, summary.updated, summary.deleted), (0, 0, 0))
        self.assertEqual(summary.conflicts, [])
        self.assertIsNone(self.state_store.get_remote_snapshot(event_id))

    def test_choose_local_pushes_local_fields(self) -> None:
        event_id, remote_id = self.make_conflict()

        result = self.resolver.resolve(event_id, "local")

        self.assertTrue(result.ok, result.error)
        self.assertEqual(result.event.sync_state, SyncState.SYNCED)
        self.assertEqual(result.event.last_synced_at, result.event.updated_at)
        self.assertEqual(self.remote.items[remote_id]["summary"], "Review (local)")
        self.assert_settled(event_id)

    def test_choose_local_recreates_missing_remote(self) -> None:
        event_id, remote_id = self.make_conflict()
        del self.remote.items[remote_id]

        result = self.resolver.resolve(event_id, "local")

        self.assertTrue(result.ok, result.error)
        self.assertNotEqual(result.event.remote_id, remote_id)
        self.assertIn(result.event.remote_id, self.remote.items)

    def test_choose_remote_applies_snapshot(self) -> None:
        event_id, remote_id = self.make_conflict()

        result = self.resolver.resolve(event_id, "google")

        self.assertTrue(result.ok, result.error)
        self.assertEqual(result.choice, "remote")
        self.assertEqual(result.event.title, "Review (remote)")
        self.assertEqual(result.event.sync_state, SyncState.SYNCED)
        self.assertNotIn(("get", remote_id), self.remote.calls)
        self.assert_settled(event_id)

    def test_choose_remote_without_snapshot_fetches_it(self) -> None:
        event_id, remote_id = self.make_conflict()
        self.state_store.delete_remote_snapshot(event_id)

        result = self.resolver.resolve(event_id, "remote")

        self.assertTrue(result.ok, result.error)
        self.assertIn(("get", remote_id), self.remote.calls)
        self.assertEqual(result.event.title, "Review (remote)")

    def test_choose_remote_when_remote_was_cancelled_deletes_local(self) -> None:
        event_id, remote_id = self.make_conflict()
        self.remote.cancel_remote(remote_id)
        self.state_store.delete_remote_snapshot(event_id)

        result = self.resolver.resolve(event_id, "remote")

        self.assertTrue(result.ok, result.error)
        self.assertTrue(result.deleted)
        self.assertIsNone(self.event_store.get_event(event_id))

    def test_event_not_in_conflict(self) -> None:
        event = self.event_store.create_event(
            user_id=USER, title="Plain", start_at=self.clock(), end_at=self.clock() + timedelta(hours=1)
        )
        result = self.resolver.resolve(event.id, "local")
        self.assertIsInstance(result.error, ConflictNotFound)
        self.assertIsInstance(self.resolver.resolve("missing", "local").error, ConflictNotFound)

    def test_resolving_twice_fails_the_second_time(self) -> None:
        event_id, _ = self.make_conflict()
        self.assertTrue(self.resolver.resolve(event_id, "local").ok)
        self.assertIsInstance(self.resolver.resolve(event_id, "local").error, ConflictNotFound)

    def test_invalid_choice(self) -> None:
        event_id, _ = self.make_conflict()
        self.assertIsInstance(self.resolver.resolve(event_id, "merge").error, InvalidChoice)
        self.assertEqual(self.event_store.get_event(event_id).sync_state, SyncState.CONFLICT)
        with self.assertRaises(InvalidChoice):
            normalize_choice("")

    def test_resolve_is_rejected_while_sync_runs(self) -> None:
        event_id, _ = self.make_conflict()
        with self.locks.hold(USER):
            result = self.resolver.resolve(event_id, "local")
        self.assertIsInstance(result.error, SyncInProgress)


if __name__ == "__main__":
    unittest.main()
