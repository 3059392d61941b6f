"""Versioned persisted records: events, lane locks, checkpoints, spawns, recovery audits.

Every record carries ``schemaVersion`` and is validated strictly on read. Invalid
payloads raise ``ValidationError`` instead of being coerced.
"""

from __future__ import annotations

import datetime as dt
import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import ValidationError


EVENT_SCHEMA_VERSION = 1
LOCK_SCHEMA_VERSION = 1
CHECKPOINT_SCHEMA_VERSION = 1
SPAWN_SCHEMA_VERSION = 1
AUDIT_SCHEMA_VERSION = 1

UNIT_ID_PREFIX = "WU-"
UNIT_ID_RE = re.compile(r"^([A-Za-z][A-Za-z0-9]*)-(\d+)$")


class UnitStatus(str, Enum):
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELLED = "cancelled"


class ClaimMode(str, Enum):
    WORKTREE = "worktree"
    BRANCH_ONLY = "branch-only"
    BRANCH_PR = "branch-pr"


class EventKind(str, Enum):
    CREATE = "create"
    CLAIM = "claim"
    BLOCK = "block"
    UNBLOCK = "unblock"
    COMPLETE = "complete"
    CANCEL = "cancel"
    CHECKPOINT = "checkpoint"
    SPAWN = "spawn"


class SpawnStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CRASHED = "crashed"
    TIMEOUT = "timeout"


TERMINAL_SPAWN_STATUSES = {SpawnStatus.COMPLETED, SpawnStatus.CRASHED, SpawnStatus.TIMEOUT}


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def now_iso() -> str:
    return now_utc().isoformat()


def parse_iso(value: Any) -> dt.datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def age_seconds(value: Any, *, now: dt.datetime | None = None) -> float | None:
    parsed = parse_iso(value)
    if parsed is None:
        return None
    return ((now or now_utc()) - parsed).total_seconds()


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.unlink(temp_path)


def read_json_object(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as err:
        raise ValidationError(
            f"{path.name} is not valid JSON",
            context={"path": str(path), "error": str(err)},
            remediation=f"Inspect {path} and delete it if it is a leftover from a crashed worker.",
        ) from err
    if not isinstance(raw, dict):
        raise ValidationError(
            f"{path.name} must contain a JSON object",
            context={"path": str(path)},
            remediation=f"Inspect {path} and delete it if it is a leftover from a crashed worker.",
        )
    return raw


def is_unit_id(value: Any) -> bool:
    return isinstance(value, str) and bool(UNIT_ID_RE.match(value))


class _Fields:
    """Strict field access for one raw payload."""

    def __init__(self, record: str, data: Any) -> None:
        if not isinstance(data, dict):
            raise ValidationError(f"{record} record must be an object", context={"record": record})
        self.record = record
        self.data = data

    def _fail(self, key: str, problem: str) -> ValidationError:
        return ValidationError(
            f"{self.record}.{key}: {problem}",
            context={"record": self.record, "field": key, "value": self.data.get(key)},
        )

    def schema(self, expected: int) -> int:
        value = self.data.get("schemaVersion")
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._fail("schemaVersion", "required integer")
        if value != expected:
            raise self._fail("schemaVersion", f"unsupported version {value} (expected {expected})")
        return value

    def text(self, key: str, *, required: bool = True) -> str:
        value = self.data.get(key)
        if value is None and not required:
            return ""
        if not isinstance(value, str) or (required and not value.strip()):
            raise self._fail(key, "required non-empty string")
        return value

    def optional_text(self, key: str) -> str | None:
        value = self.data.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            raise self._fail(key, "must be a string or null")
        return value

    def timestamp(self, key: str, *, required: bool = True) -> str | None:
        value = self.data.get(key)
        if value is None and not required:
            return None
        if parse_iso(value) is None:
            raise self._fail(key, "must be an ISO-8601 timestamp")
        return str(value)

    def integer(self, key: str) -> int:
        value = self.data.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._fail(key, "required integer")
        return value

    def boolean(self, key: str) -> bool:
        value = self.data.get(key)
        if not isinstance(value, bool):
            raise self._fail(key, "required boolean")
        return value

    def mapping(self, key: str) -> dict[str, Any]:
        value = self.data.get(key, {})
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise self._fail(key, "must be an object")
        return value

    def choice(self, key: str, enum: type[Enum]) -> Any:
        value = self.data.get(key)
        try:
            return enum(value)
        except ValueError:
            allowed = ", ".join(str(item.value) for item in enum)
            raise self._fail(key, f"must be one of: {allowed}") from None

    def unit_id(self, key: str) -> str:
        value = self.text(key)
        if not is_unit_id(value):
            raise self._fail(key, "must look like <PREFIX>-<number>, e.g. WU-12")
        return value


@dataclass(frozen=True)
class WUEvent:
    unit_id: str
    kind: EventKind
    timestamp: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": EVENT_SCHEMA_VERSION,
            "unitId": self.unit_id,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }

    def to_line(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def key(self) -> str:
        return f"{self.unit_id}:{self.kind.value}:{self.timestamp}"

    @classmethod
    def create(cls, unit_id: str, kind: EventKind | str, payload: dict[str, Any] | None = None) -> "WUEvent":
        event = cls(unit_id=unit_id, kind=EventKind(kind), timestamp=now_iso(), payload=dict(payload or {}))
        return cls.from_dict(event.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "WUEvent":
        fields = _Fields("event", data)
        fields.schema(EVENT_SCHEMA_VERSION)
        unit_id = fields.unit_id("unitId")
        kind = fields.choice("kind", EventKind)
        timestamp = fields.timestamp("timestamp")
        payload = fields.mapping("payload")
        _validate_event_payload(kind, payload, unit_id)
        return cls(unit_id=unit_id, kind=kind, timestamp=str(timestamp), payload=dict(payload))


def _validate_event_payload(kind: EventKind, payload: dict[str, Any], unit_id: str) -> None:
    fields = _Fields(f"event[{kind.value}].payload", payload)
    if kind in (EventKind.CREATE, EventKind.CLAIM):
        fields.text("lane")
        code_paths = payload.get("codePaths", [])
        if not isinstance(code_paths, list) or not all(isinstance(item, str) for item in code_paths):
            raise fields._fail("codePaths", "must be a list of glob strings")
        if "claimMode" in payload:
            fields.choice("claimMode", ClaimMode)
    if kind == EventKind.BLOCK:
        fields.text("reason", required=False)
    if kind == EventKind.CHECKPOINT:
        fields.text("note")
    if kind == EventKind.SPAWN:
        fields.unit_id("parentUnitId")
        fields.text("spawnId")
        if payload.get("parentUnitId") == unit_id:
            raise fields._fail("parentUnitId", "a unit cannot spawn itself")


@dataclass
class LaneLock:
    unit_id: str
    lane: str
    timestamp: str
    owner_process_id: int
    owner_session: str | None = None
    hostname: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": LOCK_SCHEMA_VERSION,
            "unitId": self.unit_id,
            "lane": self.lane,
            "timestamp": self.timestamp,
            "ownerProcessId": self.owner_process_id,
            "ownerSession": self.owner_session,
            "hostname": self.hostname,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "LaneLock":
        fields = _Fields("lock", data)
        fields.schema(LOCK_SCHEMA_VERSION)
        return cls(
            unit_id=fields.unit_id("unitId"),
            lane=fields.text("lane"),
            timestamp=str(fields.timestamp("timestamp")),
            owner_process_id=fields.integer("ownerProcessId"),
            owner_session=fields.optional_text("ownerSession"),
            hostname=fields.text("hostname", required=False),
        )


@dataclass
class Checkpoint:
    checkpoint_id: str
    unit_id: str
    workspace_path: str
    branch_name: str
    created_at: str
    head_revision: str
    gates_passed: bool = False
    gates_passed_at: str | None = None
    schema_version: int = CHECKPOINT_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "checkpointId": self.checkpoint_id,
            "unitId": self.unit_id,
            "workspacePath": self.workspace_path,
            "branchName": self.branch_name,
            "createdAt": self.created_at,
            "gatesPassed": self.gates_passed,
            "gatesPassedAt": self.gates_passed_at,
            "headRevision": self.head_revision,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Checkpoint":
        fields = _Fields("checkpoint", data)
        schema = fields.schema(CHECKPOINT_SCHEMA_VERSION)
        return cls(
            checkpoint_id=fields.text("checkpointId"),
            unit_id=fields.unit_id("unitId"),
            workspace_path=fields.text("workspacePath", required=False),
            branch_name=fields.text("branchName", required=False),
            created_at=str(fields.timestamp("createdAt")),
            head_revision=fields.text("headRevision"),
            gates_passed=fields.boolean("gatesPassed"),
            gates_passed_at=fields.timestamp("gatesPassedAt", required=False),
            schema_version=schema,
        )


@dataclass
class SpawnRecord:
    spawn_id: str
    parent_unit_id: str
    target_unit_id: str
    lane: str
    spawned_at: str
    status: SpawnStatus = SpawnStatus.PENDING
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SPAWN_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": SPAWN_SCHEMA_VERSION,
            "spawnId": self.spawn_id,
            "parentUnitId": self.parent_unit_id,
            "targetUnitId": self.target_unit_id,
            "lane": self.lane,
            "spawnedAt": self.spawned_at,
            "status": self.status.value,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SpawnRecord":
        fields = _Fields("spawn", data)
        fields.schema(SPAWN_SCHEMA_VERSION)
        return cls(
            spawn_id=fields.text("spawnId"),
            parent_unit_id=fields.unit_id("parentUnitId"),
            target_unit_id=fields.unit_id("targetUnitId"),
            lane=fields.text("lane"),
            spawned_at=str(fields.timestamp("spawnedAt")),
            status=fields.choice("status", SpawnStatus),
            completed_at=fields.timestamp("completedAt", required=False),
        )


@dataclass(frozen=True)
class RecoveryAuditEntry:
    timestamp: str
    spawn_id: str
    action: str
    reason: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": AUDIT_SCHEMA_VERSION,
            "timestamp": self.timestamp,
            "spawnId": self.spawn_id,
            "action": self.action,
            "reason": self.reason,
            "context": dict(self.context),
        }

    def file_stem(self) -> str:
        return f"{self.spawn_id}-{re.sub(r'[:.+]', '-', self.timestamp)}"

    @classmethod
    def from_dict(cls, data: Any) -> "RecoveryAuditEntry":
        fields = _Fields("audit", data)
        fields.schema(AUDIT_SCHEMA_VERSION)
        return cls(
            timestamp=str(fields.timestamp("timestamp")),
            spawn_id=fields.text("spawnId"),
            action=fields.text("action"),
            reason=fields.text("reason"),
            context=fields.mapping("context"),
        )
