"""Typed coordination errors with remediation text."""

from __future__ import annotations

from typing import Any


VALIDATION_ERROR = "VALIDATION_ERROR"
STATE_ERROR = "STATE_ERROR"
LOCK_ERROR = "LOCK_ERROR"
GIT_ERROR = "GIT_ERROR"
RECOVERY_ERROR = "RECOVERY_ERROR"
ID_GENERATION_FAILED = "ID_GENERATION_FAILED"


class CoordinationError(RuntimeError):
    """Raised when a coordination step cannot proceed safely."""

    code = "COORDINATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        remediation: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.remediation = remediation.strip()

    def __str__(self) -> str:
        text = f"[{self.code}] {self.message}"
        if self.remediation:
            text += f"\n\nFix:\n{self.remediation}"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "remediation": self.remediation,
        }


class ValidationError(CoordinationError):
    code = VALIDATION_ERROR


class StateError(CoordinationError):
    code = STATE_ERROR


class LockError(CoordinationError):
    code = LOCK_ERROR


class GitError(CoordinationError):
    code = GIT_ERROR


class RecoveryError(CoordinationError):
    code = RECOVERY_ERROR


class IdGenerationError(CoordinationError):
    code = ID_GENERATION_FAILED
