"""Sequential unit id allocation that looks past the local checkout.

Two workers on different machines cannot see each other's process tables,
so the highest id is taken across the local event log and stamps plus the
same files on the remote primary branch.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Iterable

from .config import CoordinationConfig
from .errors import CoordinationError, GitError, IdGenerationError
from .git import GitAdapter
from .records import UNIT_ID_PREFIX
from .resilience import ID_RETRY_POLICY, RetryPolicy, run_with_retry


_LOGGER = logging.getLogger("lanefleet.id_allocator")

_ID_NUMBER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*-(\d+)(?:\.[A-Za-z0-9]+)?$")
STAMP_SUFFIX = ".done"


def parse_unit_number(value: Any) -> int | None:
    """Numeric part of ``WU-12``, ``WU-12.yaml`` or ``WU-12.done``."""
    match = _ID_NUMBER_RE.match(str(value or "").strip())
    if not match:
        return None
    return int(match.group(1))


def format_unit_id(number: int, prefix: str = UNIT_ID_PREFIX) -> str:
    return f"{prefix}{int(number)}"


def highest_from_entries(entries: Iterable[str]) -> int:
    highest = 0
    for entry in entries:
        number = parse_unit_number(Path(str(entry)).name)
        if number is not None and number > highest:
            highest = number
    return highest


def highest_from_events_text(text: str) -> int:
    """Highest id mentioned in a JSONL log. Unparseable lines are skipped."""
    highest = 0
    for line in str(text or "").splitlines():
        raw = line.strip()
        if not raw:
            continue
        try:
            payload = json.loads(raw)
        except ValueError:
            continue
        if not isinstance(payload, dict):
            continue
        number = parse_unit_number(payload.get("unitId"))
        if number is not None and number > highest:
            highest = number
    return highest


def stamp_path(config: CoordinationConfig, unit_id: str) -> Path:
    return config.stamps_dir / f"{unit_id}{STAMP_SUFFIX}"


def highest_local(config: CoordinationConfig) -> int:
    highest = 0
    if config.events_file.exists():
        highest = highest_from_events_text(config.events_file.read_text(encoding="utf-8"))
    if config.stamps_dir.exists():
        highest = max(highest, highest_from_entries(item.name for item in config.stamps_dir.iterdir()))
    return highest


def _relative(config: CoordinationConfig, path: Path) -> str | None:
    try:
        return config.relative_to_root(path)
    except ValueError:
        return None


def highest_remote(config: CoordinationConfig, git: GitAdapter) -> int:
    """Highest id on the remote primary branch. Raises ``GitError`` when the remote is unusable."""
    git.fetch(config.remote, config.main_branch)
    ref = config.remote_main_ref
    highest = 0
    stamps_rel = _relative(config, config.stamps_dir)
    if stamps_rel:
        try:
            highest = highest_from_entries(git.list_tree(ref, stamps_rel))
        except GitError:
            # Nobody has completed a unit on the remote yet.
            _LOGGER.debug("no stamps directory at %s:%s", ref, stamps_rel)
    events_rel = _relative(config, config.events_file)
    if events_rel:
        try:
            highest = max(highest, highest_from_events_text(git.show_file(ref, events_rel)))
        except GitError:
            _LOGGER.debug("no event log at %s:%s", ref, events_rel)
    return highest


def highest_unit_number(config: CoordinationConfig, git: GitAdapter | None = None) -> dict[str, Any]:
    local = highest_local(config)
    result: dict[str, Any] = {"local": local, "remote": None, "highest": local, "warnings": []}
    if config.offline or git is None:
        message = "offline mode: skipping remote id scan, ids may collide with unpushed work on other machines"
        _LOGGER.warning(message)
        result["warnings"].append(message)
        return result
    try:
        remote = highest_remote(config, git)
    except CoordinationError as err:
        message = f"remote id scan against {config.remote_main_ref} failed, using local ids only: {err.message}"
        _LOGGER.warning(message)
        result["warnings"].append(message)
        return result
    result["remote"] = remote
    result["highest"] = max(local, remote)
    return result


def _logged_unit_ids(text: str) -> set[str]:
    ids: set[str] = set()
    for line in str(text or "").splitlines():
        try:
            payload = json.loads(line)
        except ValueError:
            continue
        if isinstance(payload, dict) and isinstance(payload.get("unitId"), str):
            ids.add(payload["unitId"])
    return ids


def _default_exists(config: CoordinationConfig) -> Callable[[str], bool]:
    def _exists(unit_id: str) -> bool:
        if stamp_path(config, unit_id).exists():
            return True
        if not config.events_file.exists():
            return False
        return unit_id in _logged_unit_ids(config.events_file.read_text(encoding="utf-8"))

    return _exists


class _CandidateTaken(Exception):
    def __init__(self, candidate: str) -> None:
        super().__init__(f"id {candidate} already exists")
        self.candidate = candidate


def allocate_unit_id(
    config: CoordinationConfig,
    git: GitAdapter | None = None,
    *,
    exists: Callable[[str], bool] | None = None,
    policy: RetryPolicy = ID_RETRY_POLICY,
    prefix: str = UNIT_ID_PREFIX,
) -> str:
    """
    Allocate the next id: highest known number plus one.

    Args:
        config: Coordination context
        git: Adapter for the remote scan; ``None`` behaves like offline mode
        exists: Predicate telling whether a candidate id is already taken
        policy: Attempt budget and pacing between attempts
        prefix: Id prefix, ``WU-`` by default

    Raises:
        IdGenerationError: every attempt produced an id that already exists
    """
    taken = exists or _default_exists(config)
    attempts = max(1, int(policy.max_attempts))
    last_number = 0

    def _attempt(attempt: int) -> str:
        nonlocal last_number
        scan = highest_unit_number(config, git)
        number = max(int(scan["highest"]) + 1, last_number + 1)
        last_number = number
        candidate = format_unit_id(number, prefix)
        if taken(candidate):
            raise _CandidateTaken(candidate)
        _LOGGER.info("allocated %s (attempt %s)", candidate, attempt)
        return candidate

    def _taken(attempt: int, err: BaseException) -> None:
        _LOGGER.warning("%s, retrying (%s/%s)", err, attempt, attempts)

    try:
        return run_with_retry(
            _attempt, policy, retry_on=(_CandidateTaken,), operation="unit id allocation", on_retry=_taken
        )
    except _CandidateTaken as err:
        raise IdGenerationError(
            f"Failed to generate unique unit ID after {attempts} attempts",
            context={"attempts": attempts, "last_candidate": err.candidate},
            remediation="Another worker is allocating ids concurrently. Fetch the remote "
            f"(`git fetch {config.remote}`) and retry, or pass an explicit id.",
        ) from err


def _push_rejected(err: BaseException) -> bool:
    return isinstance(err, GitError) and bool(err.context.get("non_fast_forward"))


def retry_create_on_push_collision(
    config: CoordinationConfig,
    git: GitAdapter | None,
    create: Callable[[str], Any],
    *,
    policy: RetryPolicy = ID_RETRY_POLICY,
    exists: Callable[[str], bool] | None = None,
    prefix: str = UNIT_ID_PREFIX,
) -> tuple[str, Any]:
    """
    Allocate an id and run ``create(unit_id)``; on a rejected push allocate again.

    A push rejection means another worker landed a unit first, possibly with the
    same number. Returns ``(unit_id, create_result)``.
    """

    def _attempt(attempt: int) -> tuple[str, Any]:
        unit_id = allocate_unit_id(config, git, exists=exists, policy=policy, prefix=prefix)
        return unit_id, create(unit_id)

    def _rejected(attempt: int, err: BaseException) -> None:
        _LOGGER.warning("push rejected, re-allocating id (%s/%s)", attempt, policy.max_attempts)

    return run_with_retry(
        _attempt,
        policy,
        retry_on=(GitError,),
        should_retry=_push_rejected,
        operation="unit creation",
        on_retry=_rejected,
    )
