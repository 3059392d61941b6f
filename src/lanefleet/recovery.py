"""Out-of-band recovery for crashed or stalled spawns, plus a read-only monitor.

Heuristics run in a fixed order: a dead owner process is recognised before
lock age is even considered, and a live but silent worker is only escalated,
never released.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from .checkpoint import CheckpointCache
from .config import CoordinationConfig, lane_to_kebab
from .lane_lock import LaneLockManager
from .records import (
    RecoveryAuditEntry,
    SpawnRecord,
    SpawnStatus,
    age_seconds,
    now_iso,
    parse_iso,
)
from .spawn_registry import SpawnRegistry
from .state_store import StateStore


_LOGGER = logging.getLogger("lanefleet.recovery")

ACTION_NONE = "none"
ACTION_RELEASED_ZOMBIE = "released_zombie"
ACTION_RELEASED_STALE = "released_stale"
ACTION_ESCALATED_STUCK = "escalated_stuck"
ACTION_ORPHANED_BY_FORCE = "orphaned_by_force"

DEFAULT_STUCK_THRESHOLD_MINUTES = 30
ACTIVE_SPAWN_STATUSES = {SpawnStatus.PENDING, SpawnStatus.RUNNING}


@dataclass
class RecoveryResult:
    recovered: bool
    action: str
    reason: str
    audit_path: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recovered": self.recovered,
            "action": self.action,
            "reason": self.reason,
            "audit_path": self.audit_path,
        }


def write_audit_entry(recovery_dir: Path, entry: RecoveryAuditEntry) -> Path:
    """Write ``entry`` to its own file. Existing files are never replaced."""
    recovery_dir.mkdir(parents=True, exist_ok=True)
    stem = entry.file_stem()
    payload = json.dumps(entry.to_dict(), indent=2, sort_keys=True) + "\n"
    suffix = 0
    while True:
        name = f"{stem}.json" if suffix == 0 else f"{stem}-{suffix}.json"
        path = recovery_dir / name
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            suffix += 1
            continue
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        return path


class RecoveryEngine:
    def __init__(
        self,
        config: CoordinationConfig,
        *,
        registry: SpawnRegistry,
        lane_locks: LaneLockManager,
        store: StateStore | None = None,
        checkpoints: CheckpointCache | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.lane_locks = lane_locks
        self.store = store
        self.checkpoints = checkpoints

    def audit(self, spawn_id: str, action: str, reason: str, context: dict[str, Any] | None = None) -> Path:
        entry = RecoveryAuditEntry(
            timestamp=now_iso(),
            spawn_id=spawn_id,
            action=action,
            reason=reason,
            context=dict(context or {}),
        )
        path = write_audit_entry(self.config.recovery_dir, entry)
        _LOGGER.info("recovery audit %s written for %s", path.name, spawn_id)
        return path

    def last_progress(self, unit_id: str) -> str | None:
        """Newest progress timestamp: a checkpoint event or a gate checkpoint file."""
        stamps: list[str] = []
        if self.store is not None:
            unit = self.store.get(unit_id)
            if unit is not None and unit.last_checkpoint:
                stamps.append(unit.last_checkpoint)
        if self.checkpoints is not None:
            checkpoint = self.checkpoints.get(unit_id)
            if checkpoint is not None:
                stamps.append(checkpoint.gates_passed_at or checkpoint.created_at)
        parsed = [(parse_iso(value), value) for value in stamps]
        parsed = [item for item in parsed if item[0] is not None]
        if not parsed:
            return None
        return max(parsed, key=lambda item: item[0])[1]

    def recover_stuck_spawn(self, spawn_id: str) -> RecoveryResult:
        spawn = self.registry.get(spawn_id)
        if spawn is None:
            return RecoveryResult(False, ACTION_NONE, f"spawn {spawn_id} not found in registry")
        if spawn.is_terminal:
            return RecoveryResult(False, ACTION_NONE, f"spawn {spawn_id} already {spawn.status.value}")

        lock = self.lane_locks.read(spawn.lane)
        if lock is None:
            return RecoveryResult(False, ACTION_NONE, f"no lock found for spawn {spawn_id} (lane {spawn.lane!r})")
        if lock.unit_id != spawn.target_unit_id:
            return RecoveryResult(
                False,
                ACTION_NONE,
                f"lock on lane {spawn.lane!r} belongs to {lock.unit_id}, not spawn target {spawn.target_unit_id}",
            )

        last_progress = self.last_progress(spawn.target_unit_id)
        context = {
            "target_unit_id": spawn.target_unit_id,
            "parent_unit_id": spawn.parent_unit_id,
            "lane": spawn.lane,
            "spawned_at": spawn.spawned_at,
            "lock": lock.to_dict(),
            "last_progress": last_progress,
        }

        if self.lane_locks.is_zombie(lock):
            reason = f"zombie lock: pid {lock.owner_process_id} is not running"
            _LOGGER.warning("spawn %s: %s, releasing lane %r", spawn_id, reason, spawn.lane)
            self.lane_locks.release(spawn.lane, force=True)
            self.registry.update_status(spawn_id, SpawnStatus.CRASHED)
            path = self.audit(spawn_id, ACTION_RELEASED_ZOMBIE, reason, context)
            return RecoveryResult(True, ACTION_RELEASED_ZOMBIE, reason, str(path), context)

        if self.lane_locks.is_stale(lock):
            reason = f"stale lock: acquired {lock.timestamp}, older than {self.config.stale_lock_sec / 3600:g}h"
            _LOGGER.warning("spawn %s: %s, releasing lane %r", spawn_id, reason, spawn.lane)
            self.lane_locks.release(spawn.lane, force=True)
            self.registry.update_status(spawn_id, SpawnStatus.TIMEOUT)
            path = self.audit(spawn_id, ACTION_RELEASED_STALE, reason, context)
            return RecoveryResult(True, ACTION_RELEASED_STALE, reason, str(path), context)

        progress_age = age_seconds(last_progress) if last_progress else None
        if progress_age is None or progress_age > self.config.no_progress_sec:
            reason = (
                f"no progress recorded since {last_progress}"
                if last_progress
                else "no progress recorded for this spawn"
            )
            _LOGGER.warning("escalating stuck spawn %s: %s", spawn_id, reason)
            path = self.audit(spawn_id, ACTION_ESCALATED_STUCK, reason, context)
            return RecoveryResult(False, ACTION_ESCALATED_STUCK, f"stuck spawn: {reason}", str(path), context)

        return RecoveryResult(False, ACTION_NONE, f"spawn {spawn_id} healthy (progress at {last_progress})")

    def record_forced_takeover(self, lane: str, displaced_unit_id: str, by_unit_id: str) -> Path:
        """Audit a force claim that left ``displaced_unit_id`` running without its lock."""
        return self.audit(
            displaced_unit_id,
            ACTION_ORPHANED_BY_FORCE,
            f"lane {lane!r} force-claimed by {by_unit_id} while {displaced_unit_id} held it",
            {"lane": lane, "displaced_unit_id": displaced_unit_id, "claimed_by": by_unit_id},
        )


def analyze_spawns(spawns: Iterable[SpawnRecord]) -> dict[str, int]:
    counts = {status.value: 0 for status in SpawnStatus}
    total = 0
    for spawn in spawns:
        counts[spawn.status.value] += 1
        total += 1
    counts["total"] = total
    return counts


def detect_stuck_spawns(
    spawns: Iterable[SpawnRecord],
    threshold_minutes: int = DEFAULT_STUCK_THRESHOLD_MINUTES,
) -> list[dict[str, Any]]:
    """Active spawns older than the threshold, oldest first."""
    stuck: list[dict[str, Any]] = []
    for spawn in spawns:
        if spawn.status not in ACTIVE_SPAWN_STATUSES:
            continue
        age = age_seconds(spawn.spawned_at)
        if age is None or age <= threshold_minutes * 60:
            continue
        stuck.append({"spawn": spawn, "age_minutes": int(age // 60)})
    stuck.sort(key=lambda item: item["age_minutes"], reverse=True)
    return stuck


def check_zombie_locks(lane_locks: LaneLockManager) -> list[dict[str, Any]]:
    zombies: list[dict[str, Any]] = []
    for lane, lock in lane_locks.all_locks().items():
        if lane_locks.is_zombie(lock):
            zombies.append(
                {
                    "unit_id": lock.unit_id,
                    "lane": lane,
                    "pid": lock.owner_process_id,
                    "timestamp": lock.timestamp,
                }
            )
    return zombies


def generate_suggestions(stuck: list[dict[str, Any]], zombies: list[dict[str, Any]]) -> list[dict[str, str]]:
    suggestions: list[dict[str, str]] = []
    for item in stuck:
        spawn: SpawnRecord = item["spawn"]
        suggestions.append(
            {
                "command": f"lanefleet recover --spawn-id {spawn.spawn_id}",
                "reason": f"spawn for {spawn.target_unit_id} has been {spawn.status.value} "
                f"for {item['age_minutes']} minutes",
            }
        )
    for lock in zombies:
        suggestions.append(
            {
                "command": f'lanefleet unlock --lane {lane_to_kebab(lock["lane"])} '
                f'--reason "zombie lock (pid {lock["pid"]} not running)"',
                "reason": f"zombie lock on lane {lock['lane']!r} (pid {lock['pid']} is not running)",
            }
        )
    return suggestions


def run_recovery(engine: RecoveryEngine, stuck: list[dict[str, Any]]) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for item in stuck:
        spawn: SpawnRecord = item["spawn"]
        result = engine.recover_stuck_spawn(spawn.spawn_id)
        results.append({"spawn_id": spawn.spawn_id, "target_unit_id": spawn.target_unit_id, **result.to_dict()})
    return results


def monitor(
    engine: RecoveryEngine,
    *,
    threshold_minutes: int = DEFAULT_STUCK_THRESHOLD_MINUTES,
    recover: bool = False,
) -> dict[str, Any]:
    spawns = engine.registry.all()
    stuck = detect_stuck_spawns(spawns, threshold_minutes)
    zombies = check_zombie_locks(engine.lane_locks)
    payload: dict[str, Any] = {
        "analysis": analyze_spawns(spawns),
        "stuck": [
            {
                "spawn_id": item["spawn"].spawn_id,
                "target_unit_id": item["spawn"].target_unit_id,
                "age_minutes": item["age_minutes"],
            }
            for item in stuck
        ],
        "zombie_locks": zombies,
        "suggestions": generate_suggestions(stuck, zombies),
    }
    if recover:
        payload["recovery"] = run_recovery(engine, stuck)
    return payload
