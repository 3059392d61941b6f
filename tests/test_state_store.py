import json
import pathlib
import sys
import tempfile
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from lanefleet.config import CoordinationConfig
from lanefleet.errors import LockError, StateError, ValidationError
from lanefleet.lane_lock import LaneLockManager
from lanefleet.process import StaticLivenessChecker
from lanefleet.records import EventKind, UnitStatus, WUEvent
from lanefleet.state_store import (
    Projection,
    StateStore,
    merge_event_streams,
    parse_event_lines,
    repair_event_log,
)


def _store(root, **overrides):
    cfg = CoordinationConfig.for_root(root, **overrides)
    locks = LaneLockManager(cfg, liveness=StaticLivenessChecker({1}), hostname="host-a", pid=1)
    return StateStore(cfg, lane_locks=locks), locks


def _create(store, unit_id, lane="ops", paths=("src/**",)):
    return store.record(unit_id, EventKind.CREATE, lane=lane, title=f"work {unit_id}", codePaths=list(paths))


class ProjectionTests(unittest.TestCase):
    def test_replay_folds_lifecycle_and_indices(self):
        events = [
            WUEvent.create("WU-1", EventKind.CREATE, {"lane": "Ops", "codePaths": ["a/**"], "title": "one"}),
            WUEvent.create("WU-1", EventKind.CLAIM, {"lane": "Ops", "codePaths": ["a/**"], "baselineRevision": "abc"}),
            WUEvent.create("WU-1", EventKind.CHECKPOINT, {"note": "tests green"}),
            WUEvent.create("WU-2", EventKind.CREATE, {"lane": "docs", "codePaths": [], "parentUnitId": "WU-1"}),
            WUEvent.create("WU-1", EventKind.BLOCK, {"reason": "waiting on review"}),
        ]
        projection = Projection.replay(events)
        unit = projection.units["WU-1"]
        self.assertEqual(unit.status, UnitStatus.BLOCKED)
        self.assertEqual(unit.block_reason, "waiting on review")
        self.assertEqual(unit.baseline_revision, "abc")
        self.assertEqual(unit.last_checkpoint_note, "tests green")
        self.assertEqual(projection.ids_with_status(UnitStatus.BLOCKED), {"WU-1"})
        self.assertEqual(projection.ids_with_status(UnitStatus.IN_PROGRESS), set())
        self.assertEqual(projection.ids_in_lane("ops"), {"WU-1"})
        self.assertEqual(projection.children_of("WU-1"), {"WU-2"})


class StateStoreTests(unittest.TestCase):
    def test_invalid_transition_is_rejected_and_log_unchanged(self):
        with tempfile.TemporaryDirectory() as td:
            store, _ = _store(pathlib.Path(td))
            _create(store, "WU-1")
            before = store.config.events_file.read_text(encoding="utf-8")
            with self.assertRaises(StateError) as ctx:
                store.record("WU-1", EventKind.COMPLETE)
            self.assertIn("ready -> complete", ctx.exception.message)
            self.assertEqual(store.config.events_file.read_text(encoding="utf-8"), before)
            with self.assertRaises(StateError):
                _create(store, "WU-1")

    def test_checkpoint_requires_existing_unit(self):
        with tempfile.TemporaryDirectory() as td:
            store, _ = _store(pathlib.Path(td))
            with self.assertRaises(StateError):
                store.record("WU-9", EventKind.CHECKPOINT, note="nothing here")

    def test_lane_wip_scenario_ops(self):
        with tempfile.TemporaryDirectory() as td:
            store, locks = _store(pathlib.Path(td))
            _create(store, "U-10")
            _create(store, "U-11")
            locks.acquire("ops", "U-10")
            store.record("U-10", EventKind.CLAIM, lane="ops", codePaths=["src/**"])

            with self.assertRaises(LockError):
                store.record("U-11", EventKind.CLAIM, lane="ops", codePaths=["src/**"])

            store.record("U-10", EventKind.BLOCK, reason="review")
            locks.on_block("ops", "U-10")
            self.assertIsNone(locks.read("ops"))

            locks.acquire("ops", "U-11")
            claimed = store.record("U-11", EventKind.CLAIM, lane="ops", codePaths=["src/**"])
            self.assertEqual(claimed.status, UnitStatus.IN_PROGRESS)
            self.assertEqual([unit.unit_id for unit in store.by_status(UnitStatus.IN_PROGRESS)], ["U-11"])
            kinds = [event.kind for event in store.events]
            self.assertEqual(kinds.count(EventKind.CLAIM), 2)

    def test_policy_none_checks_the_projection(self):
        with tempfile.TemporaryDirectory() as td:
            store, _ = _store(pathlib.Path(td), lane_policies={"ops": "none"})
            _create(store, "U-1")
            _create(store, "U-2")
            store.record("U-1", EventKind.CLAIM, lane="ops", codePaths=[])
            with self.assertRaises(LockError):
                store.record("U-2", EventKind.CLAIM, lane="ops", codePaths=[])
            store.record("U-2", EventKind.CLAIM, lane="ops", codePaths=[], forced=True)

    def test_hook_failures_are_recorded_not_raised(self):
        with tempfile.TemporaryDirectory() as td:
            store, _ = _store(pathlib.Path(td))
            seen = []

            def broken(event, _store):
                raise RuntimeError("view write failed")

            store.add_hook(lambda event, _store: seen.append(event.kind))
            store.add_hook(broken)
            _create(store, "WU-1")
            self.assertEqual(seen, [EventKind.CREATE])
            self.assertEqual(len(store.hook_errors), 1)
            self.assertEqual(store.get("WU-1").status, UnitStatus.READY)

    def test_second_store_sees_first_store_writes(self):
        with tempfile.TemporaryDirectory() as td:
            first, _ = _store(pathlib.Path(td))
            second, _ = _store(pathlib.Path(td))
            _create(first, "WU-1")
            second.load()
            self.assertIsNotNone(second.get("WU-1"))
            # the validator replays the file, not the in-memory view
            with self.assertRaises(StateError):
                second.record("WU-1", EventKind.CREATE, lane="ops", codePaths=[])


class EventLogFileTests(unittest.TestCase):
    def test_strict_parse_names_the_line(self):
        good = WUEvent.create("WU-1", EventKind.CREATE, {"lane": "ops", "codePaths": []}).to_line()
        with self.assertRaises(ValidationError) as ctx:
            parse_event_lines(good + "\n{broken\n")
        self.assertEqual(ctx.exception.context["line"], 2)

    def test_repair_backs_up_and_keeps_valid_lines(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "wu-events.jsonl"
            good = WUEvent.create("WU-1", EventKind.CREATE, {"lane": "ops", "codePaths": []}).to_line()
            bad_kind = json.dumps({"schemaVersion": 1, "unitId": "WU-2", "kind": "nope", "timestamp": "x"})
            path.write_text(f"{good}\n{{oops\n\n{bad_kind}\n", encoding="utf-8")
            result = repair_event_log(path)
            self.assertTrue(result["ok"])
            self.assertEqual(result["lines_kept"], 1)
            self.assertEqual(result["lines_removed"], 2)
            self.assertTrue(pathlib.Path(result["backup_path"]).exists())
            self.assertEqual(path.read_text(encoding="utf-8"), good + "\n")
            self.assertEqual(len(parse_event_lines(path.read_text(encoding="utf-8"))), 1)

    def test_repair_of_missing_file_is_a_noop(self):
        with tempfile.TemporaryDirectory() as td:
            result = repair_event_log(pathlib.Path(td) / "absent.jsonl")
            self.assertTrue(result["ok"])
            self.assertIsNone(result["backup_path"])

    def test_merge_dedupes_and_orders_by_time(self):
        a = WUEvent("WU-1", EventKind.CREATE, "2026-01-01T00:00:00+00:00", {"lane": "ops", "codePaths": []})
        b = WUEvent("WU-2", EventKind.CREATE, "2026-01-01T00:00:05+00:00", {"lane": "ops", "codePaths": []})
        c = WUEvent("WU-1", EventKind.CLAIM, "2026-01-01T00:00:03+00:00", {"lane": "ops", "codePaths": []})
        merged = merge_event_streams([a, b], [a, c])
        self.assertEqual([event.key() for event in merged], [a.key(), c.key(), b.key()])


if __name__ == "__main__":
    unittest.main()
