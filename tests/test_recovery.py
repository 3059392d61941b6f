import datetime as dt
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
from lanefleet.lane_lock import LaneLockManager
from lanefleet.process import StaticLivenessChecker
from lanefleet.records import EventKind, RecoveryAuditEntry, SpawnRecord, SpawnStatus
from lanefleet.recovery import (
    ACTION_ESCALATED_STUCK,
    ACTION_NONE,
    ACTION_RELEASED_STALE,
    ACTION_RELEASED_ZOMBIE,
    RecoveryEngine,
    detect_stuck_spawns,
    generate_suggestions,
    monitor,
    write_audit_entry,
)
from lanefleet.spawn_registry import SpawnRegistry
from lanefleet.state_store import StateStore


LIVE_PID = 4242
DEAD_PID = 999999999


class Harness:
    def __init__(self, root):
        self.cfg = CoordinationConfig.for_root(root)
        self.liveness = StaticLivenessChecker({LIVE_PID})
        self.locks = LaneLockManager(self.cfg, liveness=self.liveness, hostname="host-a", pid=LIVE_PID)
        self.registry = SpawnRegistry(self.cfg)
        self.store = StateStore(self.cfg)
        self.engine = RecoveryEngine(self.cfg, registry=self.registry, lane_locks=self.locks, store=self.store)

    def lock_as(self, lane, unit_id, pid):
        LaneLockManager(self.cfg, liveness=self.liveness, hostname="host-a", pid=pid).acquire(lane, unit_id)

    def age_lock(self, lane, hours):
        path = self.locks.lock_path(lane)
        payload = json.loads(path.read_text(encoding="utf-8"))
        payload["timestamp"] = (dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=hours)).isoformat()
        path.write_text(json.dumps(payload), encoding="utf-8")


class RecoverStuckSpawnTests(unittest.TestCase):
    def test_dead_worker_lock_is_released_and_audited(self):
        with tempfile.TemporaryDirectory() as td:
            h = Harness(pathlib.Path(td))
            h.registry.record("WU-1", "WU-2", "ops", spawn_id="S-1")
            h.lock_as("ops", "WU-2", DEAD_PID)

            result = h.engine.recover_stuck_spawn("S-1")
            self.assertTrue(result.recovered)
            self.assertEqual(result.action, ACTION_RELEASED_ZOMBIE)
            self.assertIsNone(h.locks.read("ops"))
            self.assertEqual(h.registry.get("S-1").status, SpawnStatus.CRASHED)
            self.assertIsNotNone(h.registry.get("S-1").completed_at)
            audits = sorted(h.cfg.recovery_dir.glob("S-1-*.json"))
            self.assertEqual(len(audits), 1)
            audit = RecoveryAuditEntry.from_dict(json.loads(audits[0].read_text(encoding="utf-8")))
            self.assertEqual(audit.action, ACTION_RELEASED_ZOMBIE)
            self.assertEqual(audit.context["target_unit_id"], "WU-2")

    def test_zombie_wins_over_stale(self):
        with tempfile.TemporaryDirectory() as td:
            h = Harness(pathlib.Path(td))
            h.registry.record("WU-1", "WU-2", "ops", spawn_id="S-1")
            h.lock_as("ops", "WU-2", DEAD_PID)
            h.age_lock("ops", 5)
            self.assertEqual(h.engine.recover_stuck_spawn("S-1").action, ACTION_RELEASED_ZOMBIE)

    def test_stale_live_lock_times_out(self):
        with tempfile.TemporaryDirectory() as td:
            h = Harness(pathlib.Path(td))
            h.registry.record("WU-1", "WU-2", "ops", spawn_id="S-1")
            h.lock_as("ops", "WU-2", LIVE_PID)
            h.age_lock("ops", 3)
            result = h.engine.recover_stuck_spawn("S-1")
            self.assertEqual(result.action, ACTION_RELEASED_STALE)
            self.assertEqual(h.registry.get("S-1").status, SpawnStatus.TIMEOUT)
            self.assertIsNone(h.locks.read("ops"))

    def test_silent_live_worker_is_escalated_not_released(self):
        with tempfile.TemporaryDirectory() as td:
            h = Harness(pathlib.Path(td))
            h.registry.record("WU-1", "WU-2", "ops", spawn_id="S-1")
            h.lock_as("ops", "WU-2", LIVE_PID)
            result = h.engine.recover_stuck_spawn("S-1")
            self.assertFalse(result.recovered)
            self.assertEqual(result.action, ACTION_ESCALATED_STUCK)
            self.assertIsNotNone(h.locks.read("ops"))
            self.assertEqual(h.registry.get("S-1").status, SpawnStatus.PENDING)
            self.assertTrue(pathlib.Path(result.audit_path).exists())

    def test_recent_checkpoint_means_healthy(self):
        with tempfile.TemporaryDirectory() as td:
            h = Harness(pathlib.Path(td))
            h.store.record("WU-2", EventKind.CREATE, lane="ops", codePaths=[])
            h.store.record("WU-2", EventKind.CHECKPOINT, note="halfway")
            h.registry.record("WU-1", "WU-2", "ops", spawn_id="S-1")
            h.lock_as("ops", "WU-2", LIVE_PID)
            result = h.engine.recover_stuck_spawn("S-1")
            self.assertEqual(result.action, ACTION_NONE)
            self.assertIn("healthy", result.reason)

    def test_nothing_to_do_cases(self):
        with tempfile.TemporaryDirectory() as td:
            h = Harness(pathlib.Path(td))
            self.assertIn("not found", h.engine.recover_stuck_spawn("S-404").reason)

            h.registry.record("WU-1", "WU-2", "ops", spawn_id="S-1")
            self.assertIn("no lock", h.engine.recover_stuck_spawn("S-1").reason)

            h.lock_as("ops", "WU-3", DEAD_PID)
            result = h.engine.recover_stuck_spawn("S-1")
            self.assertEqual(result.action, ACTION_NONE)
            self.assertIsNotNone(h.locks.read("ops"))

            h.registry.update_status("S-1", SpawnStatus.COMPLETED)
            self.assertIn("already completed", h.engine.recover_stuck_spawn("S-1").reason)
            self.assertEqual(list(h.cfg.recovery_dir.glob("*.json")) if h.cfg.recovery_dir.exists() else [], [])


class AuditFileTests(unittest.TestCase):
    def test_audit_files_are_never_overwritten(self):
        with tempfile.TemporaryDirectory() as td:
            directory = pathlib.Path(td) / "recovery"
            entry = RecoveryAuditEntry("2026-01-01T00:00:00+00:00", "S-1", "released_zombie", "pid gone")
            first = write_audit_entry(directory, entry)
            second = write_audit_entry(directory, entry)
            self.assertNotEqual(first, second)
            self.assertEqual(len(list(directory.glob("S-1-*.json"))), 2)


class MonitorTests(unittest.TestCase):
    def _spawn(self, spawn_id, minutes_ago, status=SpawnStatus.PENDING):
        spawned = (dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=minutes_ago)).isoformat()
        return SpawnRecord(spawn_id, "WU-1", "WU-2", "Framework Core", spawned, status)

    def test_stuck_detection_oldest_first(self):
        spawns = [
            self._spawn("S-1", 45),
            self._spawn("S-2", 5),
            self._spawn("S-3", 120, SpawnStatus.RUNNING),
            self._spawn("S-4", 500, SpawnStatus.COMPLETED),
        ]
        stuck = detect_stuck_spawns(spawns, threshold_minutes=30)
        self.assertEqual([item["spawn"].spawn_id for item in stuck], ["S-3", "S-1"])

    def test_suggestions_are_runnable_commands(self):
        stuck = [{"spawn": self._spawn("S-1", 45), "age_minutes": 45}]
        zombies = [{"unit_id": "WU-9", "lane": "Framework Core", "pid": 77, "timestamp": "t"}]
        commands = [item["command"] for item in generate_suggestions(stuck, zombies)]
        self.assertEqual(commands[0], "lanefleet recover --spawn-id S-1")
        self.assertTrue(commands[1].startswith("lanefleet unlock --lane framework-core --reason"))

    def test_monitor_reports_and_optionally_recovers(self):
        with tempfile.TemporaryDirectory() as td:
            h = Harness(pathlib.Path(td))
            h.registry.record("WU-1", "WU-2", "ops", spawn_id="S-1")
            h.lock_as("ops", "WU-2", DEAD_PID)

            report = monitor(h.engine, threshold_minutes=0)
            self.assertEqual(report["analysis"]["pending"], 1)
            self.assertEqual(report["analysis"]["total"], 1)
            self.assertEqual(report["zombie_locks"][0]["unit_id"], "WU-2")
            self.assertNotIn("recovery", report)
            self.assertIsNotNone(h.locks.read("ops"))

            recovered = monitor(h.engine, threshold_minutes=0, recover=True)
            self.assertEqual(recovered["recovery"][0]["action"], ACTION_RELEASED_ZOMBIE)
            self.assertIsNone(h.locks.read("ops"))


if __name__ == "__main__":
    unittest.main()
