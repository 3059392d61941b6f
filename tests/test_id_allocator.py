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
from lanefleet.errors import GitError, IdGenerationError
from lanefleet.id_allocator import (
    allocate_unit_id,
    highest_unit_number,
    parse_unit_number,
    retry_create_on_push_collision,
    stamp_path,
)
from lanefleet.records import EventKind, WUEvent
from lanefleet.resilience import zero_delay_policy


class FakeGit:
    """Remote view served from memory."""

    def __init__(self, stamps=(), events_text="", fail_fetch=False):
        self.stamps = list(stamps)
        self.events_text = events_text
        self.fail_fetch = fail_fetch
        self.fetches = 0

    def fetch(self, remote, branch=None):
        self.fetches += 1
        if self.fail_fetch:
            raise GitError("git fetch --quiet origin main failed: could not resolve host")

    def list_tree(self, ref, path):
        if not self.stamps:
            raise GitError(f"git ls-tree {ref} {path} failed")
        return list(self.stamps)

    def show_file(self, ref, path):
        if not self.events_text:
            raise GitError(f"git show {ref}:{path} failed")
        return self.events_text


def _write_local_events(cfg, *unit_ids):
    cfg.events_file.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        WUEvent.create(unit_id, EventKind.CREATE, {"lane": "ops", "codePaths": []}).to_line() for unit_id in unit_ids
    ]
    cfg.events_file.write_text("\n".join(lines) + "\n", encoding="utf-8")


class ParseTests(unittest.TestCase):
    def test_parse_unit_number(self):
        self.assertEqual(parse_unit_number("WU-12"), 12)
        self.assertEqual(parse_unit_number("WU-12.yaml"), 12)
        self.assertEqual(parse_unit_number("WU-7.done"), 7)
        self.assertIsNone(parse_unit_number("README.md"))
        self.assertIsNone(parse_unit_number(None))


class AllocatorTests(unittest.TestCase):
    def test_remote_ids_win_over_local(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = CoordinationConfig.for_root(pathlib.Path(td))
            _write_local_events(cfg, "WU-3", "WU-5")
            remote_events = json.dumps({"unitId": "WU-9"}) + "\n"
            git = FakeGit(stamps=["WU-11.done", "notes.txt"], events_text=remote_events)
            scan = highest_unit_number(cfg, git)
            self.assertEqual(scan["local"], 5)
            self.assertEqual(scan["remote"], 11)
            self.assertEqual(allocate_unit_id(cfg, git, policy=zero_delay_policy()), "WU-12")

    def test_local_stamps_count(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = CoordinationConfig.for_root(pathlib.Path(td), offline=True)
            stamp = stamp_path(cfg, "WU-40")
            stamp.parent.mkdir(parents=True)
            stamp.write_text("WU-40\n", encoding="utf-8")
            with self.assertLogs("lanefleet.id_allocator", level="WARNING"):
                self.assertEqual(allocate_unit_id(cfg, None, policy=zero_delay_policy()), "WU-41")

    def test_remote_failure_degrades_with_warning(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = CoordinationConfig.for_root(pathlib.Path(td))
            _write_local_events(cfg, "WU-2")
            with self.assertLogs("lanefleet.id_allocator", level="WARNING") as logs:
                scan = highest_unit_number(cfg, FakeGit(fail_fetch=True))
            self.assertEqual(scan["highest"], 2)
            self.assertIsNone(scan["remote"])
            self.assertTrue(any("remote" in line for line in logs.output))

    def test_offline_mode_never_touches_git(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = CoordinationConfig.for_root(pathlib.Path(td), offline=True)
            git = FakeGit()
            with self.assertLogs("lanefleet.id_allocator", level="WARNING") as logs:
                highest_unit_number(cfg, git)
            self.assertEqual(git.fetches, 0)
            self.assertTrue(any("offline" in line and "remote" in line for line in logs.output))

    def test_existing_candidates_are_skipped(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = CoordinationConfig.for_root(pathlib.Path(td), offline=True)
            taken = {"WU-1", "WU-2"}
            unit_id = allocate_unit_id(cfg, None, exists=taken.__contains__, policy=zero_delay_policy(5))
            self.assertEqual(unit_id, "WU-3")

    def test_exhausted_attempts_raise(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = CoordinationConfig.for_root(pathlib.Path(td), offline=True)
            with self.assertRaises(IdGenerationError) as ctx:
                allocate_unit_id(cfg, None, exists=lambda _candidate: True, policy=zero_delay_policy(3))
            self.assertEqual(ctx.exception.code, "ID_GENERATION_FAILED")
            self.assertIn("after 3 attempts", ctx.exception.message)
            self.assertEqual(ctx.exception.context["last_candidate"], "WU-3")

    def test_push_collision_reallocates(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = CoordinationConfig.for_root(pathlib.Path(td), offline=True)
            created = []

            def create(unit_id):
                created.append(unit_id)
                if len(created) == 1:
                    # someone else landed this id first
                    _write_local_events(cfg, unit_id)
                    raise GitError("push rejected", context={"non_fast_forward": True})
                return {"unit_id": unit_id}

            unit_id, result = retry_create_on_push_collision(cfg, None, create, policy=zero_delay_policy())
            self.assertEqual(created, ["WU-1", "WU-2"])
            self.assertEqual(unit_id, "WU-2")
            self.assertEqual(result, {"unit_id": "WU-2"})

    def test_other_git_errors_are_not_retried(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = CoordinationConfig.for_root(pathlib.Path(td), offline=True)

            def create(unit_id):
                raise GitError("remote hung up")

            with self.assertRaises(GitError):
                retry_create_on_push_collision(cfg, None, create, policy=zero_delay_policy())


if __name__ == "__main__":
    unittest.main()
