from __future__ import annotations

from concurrent.futures import Future
import threading
import unittest

from autotrack.models import ModelError, ObjectiveState
from autotrack.tracking.store import CommandChannel, ObjectiveStore, StoreCommand, UnknownObjective


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class ObjectiveStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = ObjectiveStore(clock=FakeClock())
        self.store.bind(["package", "hook", "crystal"])
        self.events: list[tuple[str, ObjectiveState | None, ObjectiveState]] = []
        self.store.subscribe(lambda oid, old, new: self.events.append((oid, old, new)))

    def test_defined_but_unobserved_reads_locked(self) -> None:
        self.assertIs(self.store.get("hook"), ObjectiveState.LOCKED)
        self.assertIsNone(self.store.record("hook"))
        self.assertEqual(self.store.get_all(), {})

    def test_unknown_objective_is_rejected(self) -> None:
        with self.assertRaises(UnknownObjective):
            self.store.get("magma-key")
        with self.assertRaises(UnknownObjective):
            self.store.apply("magma-key", ObjectiveState.COMPLETE)

    def test_identical_write_refreshes_timestamp_without_notifying(self) -> None:
        self.assertTrue(self.store.apply("package", ObjectiveState.UNLOCKED))
        first = self.store.record("package")
        self.assertFalse(self.store.apply("package", ObjectiveState.UNLOCKED))
        second = self.store.record("package")

        self.assertEqual(self.events, [("package", None, ObjectiveState.UNLOCKED)])
        self.assertGreater(second.updated_at, first.updated_at)
        self.assertEqual(self.store.changes_total, 1)
        self.assertEqual(self.store.suppressed_total, 1)

    def test_regression_is_written_when_memory_says_so(self) -> None:
        self.store.apply("hook", ObjectiveState.COMPLETE)
        self.store.apply("hook", ObjectiveState.UNLOCKED)
        self.assertIs(self.store.get("hook"), ObjectiveState.UNLOCKED)
        self.assertEqual(
            self.events[-1],
            ("hook", ObjectiveState.COMPLETE, ObjectiveState.UNLOCKED),
        )

    def test_apply_many_validates_every_id_before_writing(self) -> None:
        updates = [("package", ObjectiveState.COMPLETE), ("bogus", ObjectiveState.COMPLETE)]
        with self.assertRaises(UnknownObjective):
            self.store.apply_many(updates)
        self.assertEqual(self.store.get_all(), {})
        self.assertEqual(self.events, [])

    def test_apply_many_returns_only_changes_in_order(self) -> None:
        self.store.apply("crystal", ObjectiveState.LOCKED)
        self.events.clear()
        changes = self.store.apply_many(
            [
                ("package", ObjectiveState.UNLOCKED),
                ("crystal", ObjectiveState.LOCKED),
                ("hook", ObjectiveState.COMPLETE),
            ]
        )
        self.assertEqual(
            changes,
            [
                ("package", None, ObjectiveState.UNLOCKED),
                ("hook", None, ObjectiveState.COMPLETE),
            ],
        )
        self.assertEqual(self.events, changes)

    def test_rebind_drops_previous_records_and_ids(self) -> None:
        self.store.apply("package", ObjectiveState.COMPLETE)
        self.store.bind(["spoon"])
        self.assertEqual(self.store.get_all(), {})
        self.assertIs(self.store.get("spoon"), ObjectiveState.LOCKED)
        with self.assertRaises(UnknownObjective):
            self.store.get("package")

    def test_failing_subscriber_does_not_block_others(self) -> None:
        seen: list[str] = []

        def _boom(objective_id, previous, state):
            raise RuntimeError("subscriber failure")

        self.store.subscribe(_boom)
        self.store.subscribe(lambda oid, old, new: seen.append(oid))
        with self.assertLogs("autotrack.tracking.store", level="ERROR"):
            self.assertTrue(self.store.apply("hook", ObjectiveState.UNLOCKED))
        self.assertEqual(seen, ["hook"])
        self.assertIs(self.store.get("hook"), ObjectiveState.UNLOCKED)

    def test_unsubscribe_stops_notifications(self) -> None:
        seen: list[str] = []
        unsubscribe = self.store.subscribe(lambda oid, old, new: seen.append(oid))
        self.store.apply("hook", ObjectiveState.UNLOCKED)
        unsubscribe()
        self.store.apply("hook", ObjectiveState.COMPLETE)
        self.assertEqual(seen, ["hook"])

    def test_concurrent_writers_keep_store_consistent(self) -> None:
        states = [ObjectiveState.LOCKED, ObjectiveState.UNLOCKED, ObjectiveState.COMPLETE]

        def _writer(offset: int) -> None:
            for index in range(300):
                self.store.apply("package", states[(index + offset) % 3])

        threads = [threading.Thread(target=_writer, args=(offset,)) for offset in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(self.store.changes_total + self.store.suppressed_total, 1200)
        self.assertEqual(len(self.events), self.store.changes_total)
        for _, previous, state in self.events:
            self.assertIsNot(previous, state)


class ObjectiveStateTests(unittest.TestCase):
    def test_states_are_ordered(self) -> None:
        self.assertTrue(ObjectiveState.COMPLETE.at_least(ObjectiveState.UNLOCKED))
        self.assertTrue(ObjectiveState.UNLOCKED.at_least(ObjectiveState.UNLOCKED))
        self.assertFalse(ObjectiveState.LOCKED.at_least(ObjectiveState.UNLOCKED))

    def test_parse_accepts_prefixed_names(self) -> None:
        self.assertIs(ObjectiveState.parse("OBJECTIVE_COMPLETE"), ObjectiveState.COMPLETE)
        self.assertIs(ObjectiveState.parse(" unlocked "), ObjectiveState.UNLOCKED)
        with self.assertRaises(ModelError):
            ObjectiveState.parse("done")


class CommandChannelTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = ObjectiveStore()
        self.store.bind(["package"])
        self.channel = CommandChannel(self.store)

    def test_commands_wait_for_drain(self) -> None:
        future = self.channel.submit("set", "package", ObjectiveState.COMPLETE)
        self.assertFalse(future.done())
        self.assertEqual(self.channel.pending(), 1)
        self.assertEqual(self.channel.drain(), 1)
        self.assertIs(future.result(timeout=1), ObjectiveState.COMPLETE)
        self.assertIs(self.store.get("package"), ObjectiveState.COMPLETE)

    def test_toggle_cycles_through_states(self) -> None:
        seen = []
        for _ in range(4):
            future = self.channel.submit("toggle", "package")
            self.channel.drain()
            seen.append(future.result(timeout=1))
        self.assertEqual(
            seen,
            [
                ObjectiveState.UNLOCKED,
                ObjectiveState.COMPLETE,
                ObjectiveState.LOCKED,
                ObjectiveState.UNLOCKED,
            ],
        )

    def test_unknown_objective_surfaces_through_future(self) -> None:
        future = self.channel.submit("toggle", "nope")
        self.channel.drain()
        with self.assertRaises(UnknownObjective):
            future.result(timeout=1)

    def test_set_requires_state(self) -> None:
        with self.assertRaises(ValueError):
            self.channel.submit("set", "package")

    def test_stateless_set_fails_through_future_without_writing(self) -> None:
        future: "Future[ObjectiveState]" = Future()
        self.channel._queue.put(StoreCommand(kind="set", objective_id="package", state=None, future=future))
        self.assertEqual(self.channel.drain(), 1)
        with self.assertRaises(ValueError):
            future.result(timeout=1)
        self.assertIsNone(self.store.record("package"))


if __name__ == "__main__":
    unittest.main()
