"""Completion commits that converge: any number of retries leaves exactly one."""

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from .config import CoordinationConfig
from .errors import GitError, RecoveryError, ValidationError
from .git import GitAdapter
from .state_store import WorkUnit


_LOGGER = logging.getLogger("lanefleet.completion")

COMPLETION_COMMIT_RE = re.compile(r"unit\(([^)]+)\):\s*done\s*-", re.IGNORECASE)
LOG_SCAN_DEPTH = 50


def completion_message(unit_id: str, title: str) -> str:
    return f"unit({unit_id}): done - {title.strip() or unit_id}"


def count_previous_completion_attempts(unit_id: str, git: GitAdapter, *, max_count: int = LOG_SCAN_DEPTH) -> int:
    """Trailing completion commits for ``unit_id`` at the branch tip."""
    try:
        subjects = git.log_subjects("HEAD", max_count=max_count)
    except GitError as err:
        _LOGGER.warning("could not count previous completion attempts for %s: %s", unit_id, err.message)
        return 0
    wanted = unit_id.lower()
    count = 0
    for subject in subjects:
        match = COMPLETION_COMMIT_RE.search(subject)
        if not match or match.group(1).strip().lower() != wanted:
            break
        count += 1
    return count


def squash_previous_completion_attempts(
    unit_id: str,
    count: int,
    git: GitAdapter,
    *,
    preserve_index: bool = True,
) -> dict[str, Any]:
    """
    Drop the last ``count`` completion commits.

    ``preserve_index=True`` is the normal retry: a soft reset keeps their changes
    staged for the new commit. ``False`` is crash recovery: a hard reset that
    refuses to run over uncommitted work.
    """
    if count <= 0:
        return {"squashed": False, "count": 0}
    if not preserve_index:
        status = git.status_porcelain().strip()
        if status:
            raise RecoveryError(
                f"cannot discard previous completion attempts of {unit_id}: workspace has uncommitted changes",
                context={"unit_id": unit_id, "count": count, "status": status},
                remediation=f"In {git.repo} run:\n  git status\n  git restore -SW .\nthen retry the completion.",
            )
    mode = "--soft" if preserve_index else "--hard"
    _LOGGER.warning("squashing %s previous completion attempt(s) of %s (%s reset)", count, unit_id, mode)
    git.reset(mode, f"HEAD~{count}")
    return {"squashed": True, "count": count}


def prepare_recovery_with_squash(unit_id: str, git: GitAdapter) -> dict[str, Any]:
    count = count_previous_completion_attempts(unit_id, git)
    if not count:
        return {"squashed_count": 0}
    result = squash_previous_completion_attempts(unit_id, count, git, preserve_index=False)
    return {"squashed_count": result["count"]}


def prepare_completion_commit(
    unit_id: str,
    title: str,
    git: GitAdapter,
    *,
    files: Sequence[str] = (),
) -> dict[str, Any]:
    """Fold earlier attempts into this one and write the single completion commit."""
    previous = count_previous_completion_attempts(unit_id, git)
    squash = squash_previous_completion_attempts(unit_id, previous, git, preserve_index=True)
    git.add(list(files))
    commit = git.commit(completion_message(unit_id, title), allow_empty=True)
    _LOGGER.info("completion commit %s for %s (squashed %s)", commit[:12], unit_id, squash["count"])
    return {"commit": commit, "squashed": squash["count"]}


def handle_parallel_completions(
    unit: WorkUnit,
    git: GitAdapter,
    config: CoordinationConfig,
    *,
    auto_rebase: bool = True,
) -> dict[str, Any]:
    """Rebase onto the primary tip when other units completed since this one was claimed."""
    git.fetch(config.remote, config.main_branch)
    current = git.rev_parse(config.remote_main_ref)
    baseline = unit.baseline_revision
    if not baseline or baseline == current:
        return {"parallel_detected": False, "rebased": False}

    new_commits = git.log_oneline(f"{baseline}..{config.remote_main_ref}", max_count=200)
    others = [line for line in new_commits if COMPLETION_COMMIT_RE.search(line)]
    if not others:
        return {"parallel_detected": False, "rebased": False}

    _LOGGER.warning("%s: %s parallel completion(s) landed since claim", unit.unit_id, len(others))
    if not auto_rebase:
        raise ValidationError(
            f"parallel completions landed on {config.main_branch} since {unit.unit_id} was claimed",
            context={"unit_id": unit.unit_id, "baseline": baseline, "current": current, "commits": others},
            remediation=f"In {git.repo} run `git fetch {config.remote} && git rebase {config.remote_main_ref}`, "
            "then retry the completion.",
        )
    try:
        git.rebase(config.remote_main_ref)
    except GitError as err:
        git.rebase_abort()
        raise GitError(
            f"auto-rebase of {unit.unit_id} onto {config.remote_main_ref} failed: {err.message}",
            context={"unit_id": unit.unit_id, "baseline": baseline, "commits": others},
            remediation="Manual resolution required:\n"
            f"1. cd {git.repo}\n"
            f"2. git fetch {config.remote} && git rebase {config.remote_main_ref}\n"
            "3. Resolve conflicts if any\n"
            "4. Retry the completion",
        ) from err
    return {"parallel_detected": True, "rebased": True, "commits": others}
