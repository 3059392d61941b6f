"""Spawn registry: one JSONL line per spawn state, the last line per id wins."""

from __future__ import annotations

import fcntl
import json
import logging
import threading
import uuid
from pathlib import Path

from .config import CoordinationConfig
from .errors import StateError, ValidationError
from .records import SpawnRecord, SpawnStatus, now_iso


_LOGGER = logging.getLogger("lanefleet.spawn_registry")


class SpawnRegistry:
    def __init__(self, config: CoordinationConfig) -> None:
        self.config = config
        self.path: Path = config.spawn_registry_file
        self._lock = threading.Lock()

    def _append(self, record: SpawnRecord) -> None:
        line = json.dumps(record.to_dict(), sort_keys=True) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                handle.write(line)
                handle.flush()
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def load(self) -> dict[str, SpawnRecord]:
        records: dict[str, SpawnRecord] = {}
        if not self.path.exists():
            return records
        for index, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            raw = line.strip()
            if not raw:
                continue
            try:
                record = SpawnRecord.from_dict(json.loads(raw))
            except (ValueError, ValidationError) as err:
                message = err.message if isinstance(err, ValidationError) else str(err)
                raise ValidationError(
                    f"invalid spawn record on line {index} of {self.path.name}: {message}",
                    context={"path": str(self.path), "line": index},
                    remediation=f"Fix or remove line {index} of {self.path}.",
                ) from err
            records[record.spawn_id] = record
        return records

    def all(self) -> list[SpawnRecord]:
        return sorted(self.load().values(), key=lambda item: item.spawned_at)

    def get(self, spawn_id: str) -> SpawnRecord | None:
        return self.load().get(spawn_id)

    def for_target(self, unit_id: str) -> list[SpawnRecord]:
        return [record for record in self.all() if record.target_unit_id == unit_id]

    def for_parent(self, unit_id: str) -> list[SpawnRecord]:
        return [record for record in self.all() if record.parent_unit_id == unit_id]

    def record(
        self,
        parent_unit_id: str,
        target_unit_id: str,
        lane: str,
        *,
        spawn_id: str | None = None,
    ) -> SpawnRecord:
        spawn = SpawnRecord(
            spawn_id=spawn_id or f"spawn-{uuid.uuid4().hex[:8]}",
            parent_unit_id=parent_unit_id,
            target_unit_id=target_unit_id,
            lane=lane,
            spawned_at=now_iso(),
        )
        # Round-trip through the validator so bad ids never reach the file.
        spawn = SpawnRecord.from_dict(spawn.to_dict())
        self._append(spawn)
        _LOGGER.info("recorded spawn %s: %s -> %s (%s)", spawn.spawn_id, parent_unit_id, target_unit_id, lane)
        return spawn

    def update_status(self, spawn_id: str, status: SpawnStatus | str) -> SpawnRecord:
        spawn = self.get(spawn_id)
        if spawn is None:
            raise StateError(
                f"spawn {spawn_id} not found",
                context={"spawn_id": spawn_id, "registry": str(self.path)},
                remediation="List spawns with `lanefleet monitor` and check the id.",
            )
        spawn.status = SpawnStatus(status)
        spawn.completed_at = now_iso() if spawn.is_terminal else None
        self._append(spawn)
        _LOGGER.info("spawn %s is now %s", spawn_id, spawn.status.value)
        return spawn
