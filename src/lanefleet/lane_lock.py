"""Per-lane WIP locks backed by create-exclusive files in the lock directory."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import CoordinationConfig, lane_to_kebab
from .errors import LockError, ValidationError
from .process import OsProcessLivenessChecker, ProcessLivenessChecker, current_hostname
from .records import LaneLock, age_seconds, now_iso, read_json_object


_LOGGER = logging.getLogger("lanefleet.lane_lock")

UNLOCK_ZOMBIE = "zombie"
UNLOCK_STALE = "stale"
UNLOCK_FORCED = "forced"


@dataclass
class LockResult:
    acquired: bool
    lane: str
    unit_id: str
    policy: str
    lock: LaneLock | None = None
    reused: bool = False
    cleared: str | None = None
    forced_from: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "acquired": self.acquired,
            "lane": self.lane,
            "unit_id": self.unit_id,
            "policy": self.policy,
            "lock": self.lock.to_dict() if self.lock else None,
            "reused": self.reused,
            "cleared": self.cleared,
            "forced_from": self.forced_from,
            "warnings": list(self.warnings),
        }


@dataclass
class ReleaseResult:
    released: bool
    lane: str
    reason: str
    previous: LaneLock | None = None


class LaneLockManager:
    def __init__(
        self,
        config: CoordinationConfig,
        *,
        liveness: ProcessLivenessChecker | None = None,
        hostname: str | None = None,
        pid: int | None = None,
    ) -> None:
        self.config = config
        self.liveness = liveness or OsProcessLivenessChecker()
        self.hostname = hostname or current_hostname()
        self.pid = pid if pid is not None else os.getpid()

    def lock_path(self, lane: str) -> Path:
        return self.config.lock_dir / f"{lane_to_kebab(lane)}.lock"

    def read(self, lane: str) -> LaneLock | None:
        path = self.lock_path(lane)
        if not path.exists():
            return None
        try:
            return LaneLock.from_dict(read_json_object(path))
        except FileNotFoundError:
            return None
        except ValidationError as err:
            raise ValidationError(
                f"lock file for lane {lane!r} is unreadable: {err.message}",
                context={"lane": lane, "path": str(path), **err.context},
                remediation=f"Inspect {path}. If no worker owns it, run "
                f"`lanefleet unlock --lane {lane_to_kebab(lane)} --reason <why> --force`.",
            ) from err

    def is_zombie(self, lock: LaneLock) -> bool:
        """Owner process is gone. Locks written on another host are never judged."""
        if lock.hostname and lock.hostname != self.hostname:
            return False
        return not self.liveness.is_alive(lock.owner_process_id)

    def is_stale(self, lock: LaneLock) -> bool:
        age = age_seconds(lock.timestamp)
        return age is None or age > self.config.stale_lock_sec

    def is_free(self, lane: str, excluding_unit_id: str | None = None) -> bool:
        lock = self.read(lane)
        if lock is None:
            return True
        if excluding_unit_id and lock.unit_id == excluding_unit_id:
            return True
        return self.is_zombie(lock) or self.is_stale(lock)

    def all_locks(self) -> dict[str, LaneLock]:
        locks: dict[str, LaneLock] = {}
        if not self.config.lock_dir.exists():
            return locks
        for path in sorted(self.config.lock_dir.glob("*.lock")):
            try:
                lock = LaneLock.from_dict(read_json_object(path))
            except (FileNotFoundError, ValidationError) as err:
                _LOGGER.warning("skipping unreadable lock file %s: %s", path, err)
                continue
            locks[lock.lane] = lock
        return locks

    def _create_exclusive(self, path: Path, lock: LaneLock) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(lock.to_dict(), indent=2, sort_keys=True) + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def acquire(
        self,
        lane: str,
        unit_id: str,
        *,
        force: bool = False,
        session: str | None = None,
    ) -> LockResult:
        """
        Take the lane for ``unit_id``.

        Re-acquiring a lane the unit already holds succeeds. A zombie or stale
        lock is cleared and the create is retried once. A live lock held by
        another unit raises ``LockError`` unless ``force`` is set.
        """
        policy = self.config.lock_policy_for(lane)
        if policy == "none":
            _LOGGER.info("lane %r uses lock_policy=none, no lock file written for %s", lane, unit_id)
            return LockResult(acquired=True, lane=lane, unit_id=unit_id, policy=policy)

        path = self.lock_path(lane)
        result = LockResult(acquired=False, lane=lane, unit_id=unit_id, policy=policy)
        for _attempt in range(2):
            lock = LaneLock(
                unit_id=unit_id,
                lane=lane,
                timestamp=now_iso(),
                owner_process_id=self.pid,
                owner_session=session or self.config.session_id or None,
                hostname=self.hostname,
            )
            try:
                self._create_exclusive(path, lock)
            except FileExistsError:
                existing = self.read(lane)
                if existing is None:
                    continue
                if existing.unit_id == unit_id:
                    _LOGGER.info("lane %r already held by %s", lane, unit_id)
                    result.acquired = True
                    result.reused = True
                    result.lock = existing
                    return result
                if self.is_zombie(existing):
                    message = (
                        f"clearing zombie lock on lane {lane!r}: owner {existing.unit_id} "
                        f"(pid {existing.owner_process_id}) is not running"
                    )
                    result.cleared = UNLOCK_ZOMBIE
                elif self.is_stale(existing):
                    message = (
                        f"clearing stale lock on lane {lane!r}: owner {existing.unit_id} "
                        f"locked at {existing.timestamp}"
                    )
                    result.cleared = UNLOCK_STALE
                elif force:
                    message = (
                        f"policy override: {unit_id} force-claims lane {lane!r} from live owner "
                        f"{existing.unit_id} (pid {existing.owner_process_id})"
                    )
                    result.forced_from = existing.unit_id
                else:
                    raise LockError(
                        f"lane {lane!r} is occupied by {existing.unit_id}",
                        context={
                            "lane": lane,
                            "occupant": existing.unit_id,
                            "owner_process_id": existing.owner_process_id,
                            "locked_at": existing.timestamp,
                            "unit_id": unit_id,
                        },
                        remediation=f"Wait for {existing.unit_id} to block or complete, pick another lane, "
                        f"or if {existing.unit_id} is abandoned run "
                        f"`lanefleet unlock --lane {lane_to_kebab(lane)} --reason <why>`.",
                    )
                _LOGGER.warning(message)
                result.warnings.append(message)
                self._remove(path)
                continue
            _LOGGER.info("acquired lane %r for %s", lane, unit_id)
            result.acquired = True
            result.lock = lock
            return result
        raise LockError(
            f"lane {lane!r} was re-locked by another worker while clearing the previous lock",
            context={"lane": lane, "unit_id": unit_id},
            remediation="Another worker claimed the lane at the same moment. Retry the claim.",
        )

    def release(self, lane: str, unit_id: str | None = None, *, force: bool = False) -> ReleaseResult:
        path = self.lock_path(lane)
        existing = self.read(lane)
        if existing is None:
            return ReleaseResult(released=False, lane=lane, reason="no lock")
        if unit_id and existing.unit_id != unit_id and not force:
            raise LockError(
                f"lane {lane!r} is held by {existing.unit_id}, not {unit_id}",
                context={"lane": lane, "occupant": existing.unit_id, "unit_id": unit_id},
                remediation=f"Only {existing.unit_id} may release this lock. Use force only after "
                "confirming the owner is gone.",
            )
        removed = self._remove(path)
        if removed:
            _LOGGER.info("released lane %r (was %s)", lane, existing.unit_id)
        return ReleaseResult(
            released=removed,
            lane=lane,
            reason="released" if removed else "already removed",
            previous=existing,
        )

    def audited_unlock(self, lane: str, reason: str, *, force: bool = False) -> dict[str, Any]:
        """Operator unlock with a mandatory reason. Live, fresh locks need ``force``."""
        if not str(reason or "").strip():
            raise ValidationError(
                "a reason is required to unlock a lane",
                context={"lane": lane},
                remediation='Pass --reason "<why the lock is being removed>".',
            )
        path = self.lock_path(lane)
        try:
            existing = self.read(lane)
        except ValidationError:
            if not force:
                raise
            self._remove(path)
            _LOGGER.warning("forced removal of unreadable lock on lane %r: %s", lane, reason)
            return {"released": True, "lane": lane, "unlock_type": UNLOCK_FORCED, "reason": reason, "previous": None}
        if existing is None:
            return {"released": True, "not_found": True, "lane": lane, "reason": reason, "previous": None}

        zombie = self.is_zombie(existing)
        stale = self.is_stale(existing)
        if not (zombie or stale) and not force:
            raise LockError(
                f"lock on lane {lane!r} is active: {existing.unit_id} locked at {existing.timestamp} "
                f"and pid {existing.owner_process_id} is running",
                context={"lane": lane, "occupant": existing.unit_id},
                remediation="Re-run with --force only if you are certain the owner is gone.",
            )
        unlock_type = UNLOCK_FORCED if force and not (zombie or stale) else UNLOCK_ZOMBIE if zombie else UNLOCK_STALE
        log = _LOGGER.warning if unlock_type == UNLOCK_FORCED else _LOGGER.info
        log(
            "audited unlock (%s) of lane %r, previous owner %s (pid %s): %s",
            unlock_type,
            lane,
            existing.unit_id,
            existing.owner_process_id,
            reason,
        )
        self._remove(path)
        return {
            "released": True,
            "not_found": False,
            "lane": lane,
            "unlock_type": unlock_type,
            "reason": reason,
            "previous": existing.to_dict(),
        }

    def on_block(self, lane: str, unit_id: str) -> ReleaseResult | None:
        policy = self.config.lock_policy_for(lane)
        if policy != "active":
            return None
        existing = self.read(lane)
        if existing is None or existing.unit_id != unit_id:
            return None
        return self.release(lane, unit_id)

    def on_unblock(self, lane: str, unit_id: str, *, session: str | None = None) -> LockResult:
        """Re-take the lane after unblock. Failure is a warning; the unit proceeds unlocked."""
        policy = self.config.lock_policy_for(lane)
        if policy == "none":
            return LockResult(acquired=True, lane=lane, unit_id=unit_id, policy=policy)
        try:
            return self.acquire(lane, unit_id, session=session)
        except LockError as err:
            message = f"{unit_id} resumes without a lane lock: {err.message}"
            _LOGGER.warning(message)
            return LockResult(acquired=False, lane=lane, unit_id=unit_id, policy=policy, warnings=[message])
