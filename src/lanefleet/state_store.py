"""Append-only work-unit event log and its in-memory projection."""

from __future__ import annotations

import contextlib
import datetime as dt
import fcntl
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Protocol

from .config import CoordinationConfig, normalize_lane
from .errors import CoordinationError, LockError, StateError, ValidationError
from .git import GitAdapter
from .lane_lock import LaneLockManager
from .mutation import MutationPlan, RepositoryMutator
from .records import EventKind, UnitStatus, WUEvent, now_iso, parse_iso


_LOGGER = logging.getLogger("lanefleet.state_store")

STORE_LOCK_TIMEOUT_SEC = 30.0
STORE_LOCK_POLL_SEC = 0.05

TRANSITIONS: dict[tuple[UnitStatus | None, EventKind], UnitStatus] = {
    (None, EventKind.CREATE): UnitStatus.READY,
    (UnitStatus.READY, EventKind.CLAIM): UnitStatus.IN_PROGRESS,
    (UnitStatus.IN_PROGRESS, EventKind.BLOCK): UnitStatus.BLOCKED,
    (UnitStatus.BLOCKED, EventKind.UNBLOCK): UnitStatus.IN_PROGRESS,
    (UnitStatus.IN_PROGRESS, EventKind.COMPLETE): UnitStatus.DONE,
    (UnitStatus.IN_PROGRESS, EventKind.CANCEL): UnitStatus.CANCELLED,
}
STATUSLESS_KINDS = {EventKind.CHECKPOINT, EventKind.SPAWN}


@dataclass
class WorkUnit:
    unit_id: str
    status: UnitStatus
    lane: str
    title: str = ""
    claim_mode: str | None = None
    baseline_revision: str | None = None
    code_paths: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    created_at: str | None = None
    claimed_at: str | None = None
    completed_at: str | None = None
    last_checkpoint: str | None = None
    last_checkpoint_note: str | None = None
    parent_unit_id: str | None = None
    block_reason: str | None = None
    lock_warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "status": self.status.value,
            "lane": self.lane,
            "title": self.title,
            "claim_mode": self.claim_mode,
            "baseline_revision": self.baseline_revision,
            "code_paths": list(self.code_paths),
            "notes": list(self.notes),
            "created_at": self.created_at,
            "claimed_at": self.claimed_at,
            "completed_at": self.completed_at,
            "last_checkpoint": self.last_checkpoint,
            "last_checkpoint_note": self.last_checkpoint_note,
            "parent_unit_id": self.parent_unit_id,
            "block_reason": self.block_reason,
            "lock_warning": self.lock_warning,
        }


class Projection:
    """Left fold of events into work units plus lookup indices."""

    def __init__(self) -> None:
        self.units: dict[str, WorkUnit] = {}
        self.by_status: dict[UnitStatus, set[str]] = {}
        self.by_lane: dict[str, set[str]] = {}
        self.by_parent: dict[str, set[str]] = {}

    @classmethod
    def replay(cls, events: Iterable[WUEvent]) -> "Projection":
        projection = cls()
        for event in events:
            projection.apply(event)
        return projection

    def _index(self, unit: WorkUnit, *, remove: bool = False) -> None:
        status_ids = self.by_status.setdefault(unit.status, set())
        lane_ids = self.by_lane.setdefault(normalize_lane(unit.lane), set())
        if remove:
            status_ids.discard(unit.unit_id)
            lane_ids.discard(unit.unit_id)
        else:
            status_ids.add(unit.unit_id)
            lane_ids.add(unit.unit_id)

    def _set_status(self, unit: WorkUnit, status: UnitStatus) -> None:
        self._index(unit, remove=True)
        unit.status = status
        self._index(unit)

    def apply(self, event: WUEvent) -> None:
        payload = event.payload
        unit = self.units.get(event.unit_id)
        kind = event.kind

        if kind == EventKind.CREATE:
            if unit is not None:
                self._index(unit, remove=True)
            unit = WorkUnit(
                unit_id=event.unit_id,
                status=UnitStatus.READY,
                lane=str(payload["lane"]),
                title=str(payload.get("title", "")),
                claim_mode=payload.get("claimMode"),
                code_paths=list(payload.get("codePaths", [])),
                created_at=event.timestamp,
                parent_unit_id=payload.get("parentUnitId"),
            )
            self.units[event.unit_id] = unit
            self._index(unit)
            if unit.parent_unit_id:
                self.by_parent.setdefault(unit.parent_unit_id, set()).add(unit.unit_id)
            return

        if kind == EventKind.SPAWN:
            parent = str(payload["parentUnitId"])
            self.by_parent.setdefault(parent, set()).add(event.unit_id)
            if unit is not None:
                unit.parent_unit_id = parent
            return

        if unit is None:
            return

        if kind == EventKind.CLAIM:
            self._index(unit, remove=True)
            unit.lane = str(payload["lane"])
            unit.code_paths = list(payload.get("codePaths", unit.code_paths))
            unit.claim_mode = payload.get("claimMode", unit.claim_mode)
            unit.baseline_revision = payload.get("baselineRevision")
            unit.claimed_at = event.timestamp
            unit.lock_warning = payload.get("lockWarning")
            unit.status = UnitStatus.IN_PROGRESS
            self._index(unit)
        elif kind == EventKind.BLOCK:
            unit.block_reason = payload.get("reason") or None
            self._set_status(unit, UnitStatus.BLOCKED)
        elif kind == EventKind.UNBLOCK:
            unit.block_reason = None
            unit.lock_warning = payload.get("lockWarning")
            self._set_status(unit, UnitStatus.IN_PROGRESS)
        elif kind == EventKind.COMPLETE:
            unit.completed_at = event.timestamp
            self._set_status(unit, UnitStatus.DONE)
        elif kind == EventKind.CANCEL:
            unit.completed_at = event.timestamp
            self._set_status(unit, UnitStatus.CANCELLED)
        elif kind == EventKind.CHECKPOINT:
            unit.last_checkpoint = event.timestamp
            unit.last_checkpoint_note = str(payload["note"])
            unit.notes.append(str(payload["note"]))

    def ids_with_status(self, status: UnitStatus) -> set[str]:
        return set(self.by_status.get(status, set()))

    def ids_in_lane(self, lane: str) -> set[str]:
        return set(self.by_lane.get(normalize_lane(lane), set()))

    def children_of(self, parent_unit_id: str) -> set[str]:
        return set(self.by_parent.get(parent_unit_id, set()))


def parse_event_lines(text: str, *, source: str = "event log") -> list[WUEvent]:
    """Strictly parse a JSONL log. The first bad line raises ``ValidationError``."""
    events: list[WUEvent] = []
    for index, line in enumerate(str(text or "").splitlines(), start=1):
        raw = line.strip()
        if not raw:
            continue
        try:
            payload = json.loads(raw)
        except ValueError as err:
            raise ValidationError(
                f"malformed JSON on line {index} of {source}: {err}",
                context={"source": source, "line": index},
                remediation="Run `lanefleet repair-events` to back up the log and drop bad lines.",
            ) from err
        try:
            events.append(WUEvent.from_dict(payload))
        except ValidationError as err:
            raise ValidationError(
                f"invalid event on line {index} of {source}: {err.message}",
                context={"source": source, "line": index, **err.context},
                remediation="Run `lanefleet repair-events` to back up the log and drop bad lines.",
            ) from err
    return events


def _event_sort_key(event: WUEvent) -> dt.datetime:
    return parse_iso(event.timestamp) or dt.datetime.min.replace(tzinfo=dt.timezone.utc)


def merge_event_streams(primary: Iterable[WUEvent], other: Iterable[WUEvent]) -> list[WUEvent]:
    """Union of two logs, ``primary`` wins on duplicates, ordered by timestamp (stable)."""
    merged: list[WUEvent] = []
    seen: set[str] = set()
    for event in list(primary) + list(other):
        key = event.key()
        if key in seen:
            continue
        seen.add(key)
        merged.append(event)
    merged.sort(key=_event_sort_key)
    return merged


def repair_event_log(path: Path) -> dict[str, Any]:
    """Back up ``path``, keep only valid event lines, rewrite it atomically."""
    path = Path(path)
    if not path.exists():
        return {
            "ok": True,
            "lines_kept": 0,
            "lines_removed": 0,
            "backup_path": None,
            "warnings": ["file does not exist, nothing to repair"],
        }
    original = path.read_text(encoding="utf-8")
    stamp = now_iso().replace(":", "-").replace(".", "-").replace("+", "-")
    backup_path = path.with_name(f"{path.name}.backup.{stamp}")
    backup_path.write_text(original, encoding="utf-8")

    kept: list[str] = []
    warnings: list[str] = []
    removed = 0
    for index, line in enumerate(original.splitlines(), start=1):
        raw = line.strip()
        if not raw:
            continue
        try:
            payload = json.loads(raw)
        except ValueError:
            removed += 1
            warnings.append(f"line {index}: malformed JSON removed")
            continue
        try:
            WUEvent.from_dict(payload)
        except ValidationError as err:
            removed += 1
            warnings.append(f"line {index}: invalid event removed ({err.message})")
            continue
        kept.append(raw)

    _write_text_atomic(path, "".join(f"{line}\n" for line in kept))
    if removed and not kept:
        warnings.append("all lines were invalid, the log is now empty")
    _LOGGER.info("repaired %s: kept %s, removed %s, backup %s", path, len(kept), removed, backup_path)
    return {
        "ok": True,
        "lines_kept": len(kept),
        "lines_removed": removed,
        "backup_path": str(backup_path),
        "warnings": warnings,
    }


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp.{os.getpid()}")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            temp_path.unlink()


Validator = Callable[[list[WUEvent]], None]


class EventWriter(Protocol):
    def append(self, event: WUEvent, validate: Validator) -> list[WUEvent]:
        """Validate against the freshest log, persist, return the full log."""
        ...


class LocalJsonlWriter:
    """Appends to the local JSONL file under an exclusive store lock."""

    def __init__(self, path: Path, *, lock_timeout_sec: float = STORE_LOCK_TIMEOUT_SEC) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(f"{self.path.name}.lock")
        self.lock_timeout_sec = lock_timeout_sec

    @contextlib.contextmanager
    def locked(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open("a+", encoding="utf-8")
        deadline = time.monotonic() + self.lock_timeout_sec
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as err:
                    if time.monotonic() >= deadline:
                        raise LockError(
                            f"timed out waiting {self.lock_timeout_sec:.0f}s for the event log lock",
                            context={"lock_path": str(self.lock_path)},
                            remediation="Another worker is writing the log. Retry; if it persists, "
                            "look for a hung lanefleet process.",
                        ) from err
                    time.sleep(STORE_LOCK_POLL_SEC)
            handle.seek(0)
            handle.truncate()
            handle.write(json.dumps({"pid": os.getpid(), "acquired_at": now_iso()}) + "\n")
            handle.flush()
            yield
        finally:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            finally:
                handle.close()

    def read(self) -> list[WUEvent]:
        if not self.path.exists():
            return []
        return parse_event_lines(self.path.read_text(encoding="utf-8"), source=str(self.path))

    def append(self, event: WUEvent, validate: Validator) -> list[WUEvent]:
        with self.locked():
            events = self.read()
            validate(events)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(event.to_line() + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        return events + [event]


ViewHook = Callable[[WUEvent, "StateStore"], None]


class StateStore:
    def __init__(
        self,
        config: CoordinationConfig,
        *,
        writer: EventWriter | None = None,
        lane_locks: LaneLockManager | None = None,
        hooks: Iterable[ViewHook] = (),
    ) -> None:
        self.config = config
        self.writer = writer or LocalJsonlWriter(config.events_file)
        self.lane_locks = lane_locks
        self.hooks: list[ViewHook] = list(hooks)
        self.events: list[WUEvent] = []
        self.projection = Projection()
        self.hook_errors: list[str] = []

    # -- reading -----------------------------------------------------------

    def _set_events(self, events: list[WUEvent]) -> dict[str, WorkUnit]:
        self.events = list(events)
        self.projection = Projection.replay(self.events)
        return self.projection.units

    def read_local(self) -> list[WUEvent]:
        path = self.config.events_file
        if not path.exists():
            return []
        return parse_event_lines(path.read_text(encoding="utf-8"), source=str(path))

    def load(self) -> dict[str, WorkUnit]:
        return self._set_events(self.read_local())

    def load_with_remote(self, git: GitAdapter) -> dict[str, Any]:
        """Fold the remote primary branch's log into the local view."""
        local = self.read_local()
        warnings: list[str] = []
        remote: list[WUEvent] = []
        if self.config.offline:
            warnings.append("offline mode: remote event log not consulted")
        else:
            try:
                git.fetch(self.config.remote, self.config.main_branch)
                rel = self.config.relative_to_root(self.config.events_file)
                text = git.show_file(self.config.remote_main_ref, rel)
            except (CoordinationError, ValueError) as err:
                message = f"remote event log unavailable, using local log only: {err}"
                _LOGGER.warning(message)
                warnings.append(message)
            else:
                remote = parse_event_lines(text, source=f"{self.config.remote_main_ref}:{rel}")
        self._set_events(merge_event_streams(local, remote))
        return {"local_events": len(local), "remote_events": len(remote), "warnings": warnings}

    @property
    def units(self) -> dict[str, WorkUnit]:
        return self.projection.units

    def get(self, unit_id: str) -> WorkUnit | None:
        return self.projection.units.get(unit_id)

    def require(self, unit_id: str) -> WorkUnit:
        unit = self.get(unit_id)
        if unit is None:
            raise StateError(
                f"unit {unit_id} does not exist",
                context={"unit_id": unit_id},
                remediation="Check the id, or fetch the remote event log if the unit was created elsewhere.",
            )
        return unit

    def by_status(self, status: UnitStatus | str) -> list[WorkUnit]:
        ids = self.projection.ids_with_status(UnitStatus(status))
        return [self.projection.units[unit_id] for unit_id in sorted(ids)]

    def by_lane(self, lane: str) -> list[WorkUnit]:
        return [self.projection.units[unit_id] for unit_id in sorted(self.projection.ids_in_lane(lane))]

    def children_of(self, parent_unit_id: str) -> list[str]:
        return sorted(self.projection.children_of(parent_unit_id))

    # -- writing -----------------------------------------------------------

    def add_hook(self, hook: ViewHook) -> None:
        self.hooks.append(hook)

    def check_transition(self, projection: Projection, event: WUEvent) -> None:
        unit = projection.units.get(event.unit_id)
        if event.kind in STATUSLESS_KINDS:
            if event.kind == EventKind.CHECKPOINT and unit is None:
                raise StateError(
                    f"cannot checkpoint unknown unit {event.unit_id}",
                    context={"unit_id": event.unit_id, "kind": event.kind.value},
                    remediation="Create the unit before recording progress on it.",
                )
            return
        current = unit.status if unit else None
        if (current, event.kind) not in TRANSITIONS:
            state = current.value if current else "absent"
            raise StateError(
                f"invalid transition for {event.unit_id}: {state} -> {event.kind.value}",
                context={"unit_id": event.unit_id, "from": state, "event": event.kind.value},
                remediation=f"Reload the log; {event.unit_id} is {state}. "
                + _transition_hint(current),
            )
        if event.kind == EventKind.CLAIM:
            self._check_lane(projection, event)

    def _check_lane(self, projection: Projection, event: WUEvent) -> None:
        lane = str(event.payload["lane"])
        if event.payload.get("forced"):
            return
        if self.config.lock_policy_for(lane) == "none":
            for other_id in sorted(projection.ids_in_lane(lane)):
                other = projection.units[other_id]
                if other_id != event.unit_id and other.status == UnitStatus.IN_PROGRESS:
                    raise LockError(
                        f"lane {lane!r} is occupied by {other_id}",
                        context={"lane": lane, "occupant": other_id, "unit_id": event.unit_id},
                        remediation=f"Wait for {other_id} to block or complete, or choose another lane.",
                    )
            return
        if self.lane_locks is None:
            return
        lock = self.lane_locks.read(lane)
        if lock is None or lock.unit_id == event.unit_id:
            return
        if self.lane_locks.is_zombie(lock) or self.lane_locks.is_stale(lock):
            return
        raise LockError(
            f"lane {lane!r} is occupied by {lock.unit_id}",
            context={"lane": lane, "occupant": lock.unit_id, "unit_id": event.unit_id},
            remediation=f"Wait for {lock.unit_id} to block or complete, or choose another lane.",
        )

    def append(self, event: WUEvent) -> WorkUnit | None:
        def _validate(current: list[WUEvent]) -> None:
            self.check_transition(Projection.replay(current), event)

        events = self.writer.append(event, _validate)
        self._set_events(events)
        _LOGGER.info("appended %s event for %s", event.kind.value, event.unit_id)
        self._run_hooks(event)
        return self.get(event.unit_id)

    def _run_hooks(self, event: WUEvent) -> None:
        for hook in self.hooks:
            try:
                hook(event, self)
            except Exception as err:  # noqa: BLE001
                message = f"view hook {getattr(hook, '__name__', hook)!r} failed after {event.kind.value}: {err}"
                _LOGGER.error(message)
                self.hook_errors.append(message)

    def record(self, unit_id: str, kind: EventKind | str, **payload: Any) -> WorkUnit | None:
        clean = {key: value for key, value in payload.items() if value is not None}
        return self.append(WUEvent.create(unit_id, kind, clean))


def _transition_hint(current: UnitStatus | None) -> str:
    allowed = sorted(kind.value for (status, kind) in TRANSITIONS if status == current)
    if not allowed:
        return "No further transitions are possible."
    return f"Allowed next events: {', '.join(allowed)}."


class RemoteEventWriter:
    """Appends through an isolated commit pushed to the remote primary branch."""

    def __init__(self, config: CoordinationConfig, mutator: RepositoryMutator) -> None:
        self.config = config
        self.mutator = mutator
        self.rel_path = config.relative_to_root(config.events_file)

    def append(self, event: WUEvent, validate: Validator) -> list[WUEvent]:
        self.mutator.ensure_union_merge([self.rel_path])
        written: list[WUEvent] = []

        def _execute(workspace: Path) -> MutationPlan:
            path = workspace / self.rel_path
            current = (
                parse_event_lines(path.read_text(encoding="utf-8"), source=self.rel_path) if path.exists() else []
            )
            validate(current)
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(event.to_line() + "\n")
            written[:] = current + [event]
            return MutationPlan(
                commit_message=f"unit({event.unit_id}): {event.kind.value} event",
                files=[self.rel_path],
            )

        self.mutator.isolated_commit(event.kind.value, event.unit_id, _execute)
        return written
