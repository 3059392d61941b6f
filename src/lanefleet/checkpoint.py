"""Gate-skip cache: remember the revision at which gates last passed."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import CoordinationConfig
from .errors import ValidationError
from .records import CHECKPOINT_SCHEMA_VERSION, Checkpoint, age_seconds, now_iso, read_json_object, write_json_atomic


_LOGGER = logging.getLogger("lanefleet.checkpoint")

REASON_VALID = "valid"
REASON_NO_CHECKPOINT = "no-checkpoint"
REASON_SCHEMA_MISMATCH = "schema-mismatch"
REASON_GATES_NOT_PASSED = "gates-not-passed"
REASON_STALE = "stale"
REASON_SHA_MISMATCH = "sha-mismatch"


@dataclass
class SkipDecision:
    can_skip: bool
    reason: str
    checkpoint: Checkpoint | None = None
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "can_skip": self.can_skip,
            "reason": self.reason,
            "detail": self.detail,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
        }


class CheckpointCache:
    def __init__(self, config: CoordinationConfig) -> None:
        self.config = config

    def path(self, unit_id: str) -> Path:
        return self.config.checkpoint_dir / f"{unit_id}.checkpoint.json"

    def get(self, unit_id: str) -> Checkpoint | None:
        path = self.path(unit_id)
        if not path.exists():
            return None
        return Checkpoint.from_dict(read_json_object(path))

    def create_checkpoint(
        self,
        unit_id: str,
        *,
        head_revision: str,
        workspace_path: str = "",
        branch_name: str = "",
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            checkpoint_id=f"ckpt-{uuid.uuid4().hex[:8]}",
            unit_id=unit_id,
            workspace_path=str(workspace_path),
            branch_name=branch_name,
            created_at=now_iso(),
            head_revision=head_revision,
        )
        write_json_atomic(self.path(unit_id), checkpoint.to_dict())
        _LOGGER.info("checkpoint %s created for %s at %s", checkpoint.checkpoint_id, unit_id, head_revision[:12])
        return checkpoint

    def mark_passed(self, unit_id: str) -> Checkpoint | None:
        checkpoint = self.get(unit_id)
        if checkpoint is None:
            _LOGGER.warning("no checkpoint for %s, gate result not recorded", unit_id)
            return None
        checkpoint.gates_passed = True
        checkpoint.gates_passed_at = now_iso()
        write_json_atomic(self.path(unit_id), checkpoint.to_dict())
        return checkpoint

    def clear(self, unit_id: str) -> bool:
        try:
            self.path(unit_id).unlink()
        except FileNotFoundError:
            return False
        return True

    def can_skip_gates(self, unit_id: str, current_head: str | None = None) -> SkipDecision:
        path = self.path(unit_id)
        if not path.exists():
            return SkipDecision(False, REASON_NO_CHECKPOINT, detail="no checkpoint exists")
        try:
            raw = read_json_object(path)
            schema = raw.get("schemaVersion")
            if schema != CHECKPOINT_SCHEMA_VERSION:
                return SkipDecision(
                    False,
                    REASON_SCHEMA_MISMATCH,
                    detail=f"got schema {schema}, expected {CHECKPOINT_SCHEMA_VERSION}",
                )
            checkpoint = Checkpoint.from_dict(raw)
        except ValidationError as err:
            _LOGGER.warning("unreadable checkpoint for %s, gates will run: %s", unit_id, err.message)
            return SkipDecision(False, REASON_NO_CHECKPOINT, detail=err.message)
        if not checkpoint.gates_passed:
            return SkipDecision(False, REASON_GATES_NOT_PASSED, checkpoint, "gates did not pass at checkpoint")
        age = age_seconds(checkpoint.created_at)
        if age is None or age > self.config.checkpoint_max_age_sec:
            return SkipDecision(False, REASON_STALE, checkpoint, "checkpoint is older than the maximum age")
        if current_head is not None and current_head != checkpoint.head_revision:
            return SkipDecision(False, REASON_SHA_MISMATCH, checkpoint, "workspace changed since checkpoint")
        return SkipDecision(True, REASON_VALID, checkpoint)
