"""Coordination context: paths, thresholds and lane policies for one repository."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ValidationError


LOCK_POLICIES = ("active", "all", "none")
DEFAULT_LOCK_POLICY = "active"
DEFAULT_STALE_LOCK_HOURS = 2.0
DEFAULT_CHECKPOINT_MAX_AGE_SEC = 24 * 60 * 60
DEFAULT_NO_PROGRESS_SEC = 60 * 60
DEFAULT_GIT_TIMEOUT_SEC = 60
CONFIG_FILE_NAMES = ("lanefleet.yaml", "lanefleet.yml", "lanefleet.json")


def _load_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    data: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        key, value = raw.split("=", 1)
        data[key.strip()] = value.strip().strip('"').strip("'")
    return data


def _load_structured_payload(raw_text: str) -> Any:
    try:
        return json.loads(raw_text)
    except ValueError:
        return yaml.safe_load(raw_text)


def load_settings_file(path: Path) -> dict[str, Any]:
    raw = path.read_text(encoding="utf-8")
    try:
        payload = _load_structured_payload(raw)
    except yaml.YAMLError as err:
        raise ValidationError(
            f"config file {path} is neither valid JSON nor YAML",
            context={"path": str(path), "error": str(err)},
            remediation=f"Fix the syntax in {path} or remove the file to use defaults.",
        ) from err
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError(
            f"config root in {path} must be an object",
            context={"path": str(path)},
            remediation=f"Rewrite {path} as a mapping, e.g. `lanes: {{ops: {{lock_policy: active}}}}`.",
        )
    return payload


def _find_settings_file(root: Path) -> Path | None:
    for name in CONFIG_FILE_NAMES:
        candidate = root / name
        if candidate.exists():
            return candidate
    return None


def _lane_policies(payload: dict[str, Any]) -> dict[str, str]:
    lanes = payload.get("lanes", {})
    if lanes in (None, ""):
        return {}
    if not isinstance(lanes, dict):
        raise ValidationError(
            "config `lanes` must be a mapping of lane name to settings",
            context={"lanes": lanes},
            remediation="Use `lanes: {<lane>: {lock_policy: active|all|none}}`.",
        )
    policies: dict[str, str] = {}
    for lane, settings in lanes.items():
        policy = DEFAULT_LOCK_POLICY
        if isinstance(settings, dict):
            policy = str(settings.get("lock_policy", DEFAULT_LOCK_POLICY)).strip().lower()
        elif isinstance(settings, str):
            policy = settings.strip().lower()
        if policy not in LOCK_POLICIES:
            raise ValidationError(
                f"lane {lane!r} has unknown lock_policy {policy!r}",
                context={"lane": lane, "lock_policy": policy},
                remediation=f"Set lock_policy to one of: {', '.join(LOCK_POLICIES)}.",
            )
        policies[normalize_lane(str(lane))] = policy
    return policies


def normalize_lane(lane: str) -> str:
    return " ".join(str(lane).strip().split()).lower()


def lane_to_kebab(lane: str) -> str:
    raw = "".join(ch if ch.isalnum() else "-" for ch in str(lane).strip().lower())
    return "-".join(part for part in raw.split("-") if part) or "lane"


@dataclass(frozen=True)
class CoordinationConfig:
    root_dir: Path
    state_dir: Path
    events_file: Path
    spawn_registry_file: Path
    lock_dir: Path
    checkpoint_dir: Path
    recovery_dir: Path
    stamps_dir: Path
    remote: str = "origin"
    main_branch: str = "main"
    stale_lock_sec: float = DEFAULT_STALE_LOCK_HOURS * 3600
    checkpoint_max_age_sec: int = DEFAULT_CHECKPOINT_MAX_AGE_SEC
    no_progress_sec: int = DEFAULT_NO_PROGRESS_SEC
    git_timeout_sec: int = DEFAULT_GIT_TIMEOUT_SEC
    offline: bool = False
    session_id: str = ""
    lane_policies: dict[str, str] = field(default_factory=dict)

    @property
    def remote_main_ref(self) -> str:
        return f"{self.remote}/{self.main_branch}"

    def lock_policy_for(self, lane: str) -> str:
        return self.lane_policies.get(normalize_lane(lane), DEFAULT_LOCK_POLICY)

    def relative_to_root(self, path: Path) -> str:
        return path.resolve().relative_to(self.root_dir).as_posix()

    @classmethod
    def for_root(cls, root: Path, **overrides: Any) -> "CoordinationConfig":
        """Defaults only, without reading the environment."""
        root = Path(root).resolve()
        base = root / ".lanefleet"
        state_dir = Path(overrides.pop("state_dir", base / "state")).resolve()
        values: dict[str, Any] = {
            "root_dir": root,
            "state_dir": state_dir,
            "events_file": state_dir / "wu-events.jsonl",
            "spawn_registry_file": state_dir / "spawn-registry.jsonl",
            "lock_dir": base / "locks",
            "checkpoint_dir": base / "checkpoints",
            "recovery_dir": base / "recovery",
            "stamps_dir": base / "stamps",
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_root(cls, root: Path, env_file_override: Path | None = None) -> "CoordinationConfig":
        root = Path(root).resolve()
        env_file = env_file_override.resolve() if env_file_override else Path(
            os.environ.get("LANEFLEET_ENV_FILE", str(root / ".env.lanefleet"))
        ).resolve()
        merged = {**_load_env_file(env_file), **os.environ}

        def _path(key: str, default: Path) -> Path:
            raw = merged.get(key)
            if not raw:
                return default.resolve()
            candidate = Path(raw).expanduser()
            return (candidate if candidate.is_absolute() else root / candidate).resolve()

        def _float(key: str, default: float) -> float:
            raw = merged.get(key)
            if raw is None:
                return default
            try:
                value = float(raw)
            except ValueError:
                return default
            return value if value > 0 else default

        def _bool(key: str, default: bool) -> bool:
            raw = merged.get(key)
            if raw is None:
                return default
            return str(raw).strip().lower() in {"1", "true", "yes", "on"}

        settings_path = merged.get("LANEFLEET_CONFIG_FILE")
        settings_file = _path("LANEFLEET_CONFIG_FILE", root) if settings_path else _find_settings_file(root)
        settings = load_settings_file(settings_file) if settings_file else {}
        git_settings = settings.get("git", {}) if isinstance(settings.get("git", {}), dict) else {}

        base = _path("LANEFLEET_HOME", root / ".lanefleet")
        state_dir = _path("LANEFLEET_STATE_DIR", base / "state")
        return cls(
            root_dir=root,
            state_dir=state_dir,
            events_file=_path("LANEFLEET_EVENTS_FILE", state_dir / "wu-events.jsonl"),
            spawn_registry_file=_path("LANEFLEET_SPAWN_REGISTRY_FILE", state_dir / "spawn-registry.jsonl"),
            lock_dir=_path("LANEFLEET_LOCK_DIR", base / "locks"),
            checkpoint_dir=_path("LANEFLEET_CHECKPOINT_DIR", base / "checkpoints"),
            recovery_dir=_path("LANEFLEET_RECOVERY_DIR", base / "recovery"),
            stamps_dir=_path("LANEFLEET_STAMPS_DIR", base / "stamps"),
            remote=str(merged.get("LANEFLEET_REMOTE", git_settings.get("remote", "origin"))).strip() or "origin",
            main_branch=str(merged.get("LANEFLEET_MAIN_BRANCH", git_settings.get("main_branch", "main"))).strip()
            or "main",
            stale_lock_sec=_float("LANEFLEET_STALE_LOCK_THRESHOLD_HOURS", DEFAULT_STALE_LOCK_HOURS) * 3600,
            checkpoint_max_age_sec=int(_float("LANEFLEET_CHECKPOINT_MAX_AGE_SEC", DEFAULT_CHECKPOINT_MAX_AGE_SEC)),
            no_progress_sec=int(_float("LANEFLEET_NO_PROGRESS_SEC", DEFAULT_NO_PROGRESS_SEC)),
            git_timeout_sec=int(_float("LANEFLEET_GIT_TIMEOUT_SEC", DEFAULT_GIT_TIMEOUT_SEC)),
            offline=_bool("LANEFLEET_OFFLINE", False),
            session_id=str(merged.get("LANEFLEET_SESSION_ID", "")).strip(),
            lane_policies=_lane_policies(settings),
        )
