"""Operator CLI for lane coordination: recovery, diagnostics and repair."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any

from .checkpoint import CheckpointCache
from .config import CoordinationConfig
from .errors import CoordinationError
from .git import GitAdapter
from .id_allocator import format_unit_id, highest_unit_number
from .lane_lock import LaneLockManager
from .records import UnitStatus
from .recovery import DEFAULT_STUCK_THRESHOLD_MINUTES, RecoveryEngine, monitor
from .spawn_registry import SpawnRegistry
from .state_store import StateStore, repair_event_log


def _config_from_args(args: argparse.Namespace) -> CoordinationConfig:
    root = Path(args.root).resolve()
    env_file = Path(args.env_file).resolve() if args.env_file else None
    return CoordinationConfig.from_root(root, env_file_override=env_file)


def _configure_logging() -> None:
    level = os.environ.get("LANEFLEET_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format="%(levelname)s %(name)s: %(message)s")


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _recovery_engine(cfg: CoordinationConfig) -> RecoveryEngine:
    store = StateStore(cfg)
    store.load()
    return RecoveryEngine(
        cfg,
        registry=SpawnRegistry(cfg),
        lane_locks=LaneLockManager(cfg),
        store=store,
        checkpoints=CheckpointCache(cfg),
    )


def lanes_snapshot(cfg: CoordinationConfig) -> dict[str, Any]:
    lane_locks = LaneLockManager(cfg)
    store = StateStore(cfg)
    store.load()
    lanes: dict[str, dict[str, Any]] = {}
    for unit in store.by_status(UnitStatus.IN_PROGRESS):
        entry = lanes.setdefault(unit.lane, {"lane": unit.lane, "in_progress": [], "lock": None})
        entry["in_progress"].append(unit.unit_id)
    for lane, lock in lane_locks.all_locks().items():
        entry = lanes.setdefault(lane, {"lane": lane, "in_progress": [], "lock": None})
        entry["lock"] = {
            **lock.to_dict(),
            "zombie": lane_locks.is_zombie(lock),
            "stale": lane_locks.is_stale(lock),
        }
    for entry in lanes.values():
        entry["policy"] = cfg.lock_policy_for(entry["lane"])
        entry["in_progress"].sort()
    return {"ok": True, "lanes": [lanes[key] for key in sorted(lanes)]}


def next_id_snapshot(cfg: CoordinationConfig, *, offline: bool = False) -> dict[str, Any]:
    if offline:
        cfg = dataclasses.replace(cfg, offline=True)
    git = None if cfg.offline else GitAdapter(cfg.root_dir, timeout_sec=cfg.git_timeout_sec)
    scan = highest_unit_number(cfg, git)
    return {"ok": True, "next_id": format_unit_id(scan["highest"] + 1), **scan}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Lane coordination operator tools")
    parser.add_argument("--root", default=".", help="repository root directory")
    parser.add_argument("--env-file", default="", help="optional path to .env.lanefleet")

    sub = parser.add_subparsers(dest="command", required=True)
    recover = sub.add_parser("recover")
    recover.add_argument("--spawn-id", required=True)
    monitor_cmd = sub.add_parser("monitor")
    monitor_cmd.add_argument("--threshold-minutes", type=int, default=DEFAULT_STUCK_THRESHOLD_MINUTES)
    monitor_cmd.add_argument("--recover", action="store_true", help="run recovery on every stuck spawn")
    sub.add_parser("lanes")
    unlock = sub.add_parser("unlock")
    unlock.add_argument("--lane", required=True)
    unlock.add_argument("--reason", required=True)
    unlock.add_argument("--force", action="store_true")
    sub.add_parser("repair-events")
    next_id = sub.add_parser("next-id")
    next_id.add_argument("--offline", action="store_true", help="skip the remote id scan")

    args = parser.parse_args(argv)
    _configure_logging()
    cfg = _config_from_args(args)

    try:
        if args.command == "recover":
            result = _recovery_engine(cfg).recover_stuck_spawn(args.spawn_id)
            _print({"ok": True, "spawn_id": args.spawn_id, **result.to_dict()})
            return 0
        if args.command == "monitor":
            payload = monitor(_recovery_engine(cfg), threshold_minutes=args.threshold_minutes, recover=args.recover)
            _print({"ok": True, **payload})
            return 0
        if args.command == "lanes":
            _print(lanes_snapshot(cfg))
            return 0
        if args.command == "unlock":
            payload = LaneLockManager(cfg).audited_unlock(args.lane, args.reason, force=args.force)
            _print({"ok": True, **payload})
            return 0
        if args.command == "repair-events":
            payload = repair_event_log(cfg.events_file)
            _print(payload)
            return 0 if payload.get("ok", False) else 1
        if args.command == "next-id":
            _print(next_id_snapshot(cfg, offline=args.offline))
            return 0
    except CoordinationError as err:
        _print({"ok": False, "command": args.command, "root": str(cfg.root_dir), **err.to_dict()})
        return 1
    except (FileNotFoundError, ValueError) as err:
        _print({"ok": False, "command": args.command, "root": str(cfg.root_dir), "error": str(err)})
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
