"""Shared-branch mutations made outside the caller's checkout.

Each mutation runs in a disposable worktree on a temporary branch cut from
the remote primary tip, then pushes that branch onto the primary branch.
The push is the only serialization point between workers.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .config import CoordinationConfig
from .errors import GitError, ValidationError
from .git import GitAdapter
from .resilience import PUSH_RETRY_POLICY, RetryPolicy, run_with_retry


_LOGGER = logging.getLogger("lanefleet.mutation")

TEMP_BRANCH_ROOT = "tmp"


@dataclass
class MutationPlan:
    commit_message: str
    files: list[str] = field(default_factory=list)


def temp_branch_name(operation: str, unit_id: str) -> str:
    op = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in operation.strip().lower()) or "op"
    return f"{TEMP_BRANCH_ROOT}/{op}/{unit_id.strip().lower()}"


def _worktrees_on_branch(porcelain: str, branch: str) -> list[Path]:
    target = f"branch refs/heads/{branch}"
    found: list[Path] = []
    current: str | None = None
    for line in porcelain.splitlines():
        if line.startswith("worktree "):
            current = line[len("worktree ") :].strip()
        elif line.strip() == target and current:
            found.append(Path(current))
        elif not line.strip():
            current = None
    return found


class RepositoryMutator:
    def __init__(
        self,
        config: CoordinationConfig,
        git: GitAdapter,
        *,
        policy: RetryPolicy = PUSH_RETRY_POLICY,
    ) -> None:
        self.config = config
        self.git = git
        self.policy = policy

    def _require_remote(self, operation: str) -> None:
        if self.config.offline:
            raise GitError(
                f"{operation} needs the remote but offline mode is enabled",
                context={"operation": operation},
                remediation="Unset LANEFLEET_OFFLINE and make sure the remote is reachable.",
            )

    def ensure_union_merge(self, rel_paths: list[str]) -> None:
        """Declare append-only files ``merge=union`` in the repository-local attributes."""
        attributes = self.git.common_dir() / "info" / "attributes"
        existing = attributes.read_text(encoding="utf-8").splitlines() if attributes.exists() else []
        missing = [f"{rel} merge=union" for rel in rel_paths if f"{rel} merge=union" not in existing]
        if not missing:
            return
        attributes.parent.mkdir(parents=True, exist_ok=True)
        with attributes.open("a", encoding="utf-8") as handle:
            for line in missing:
                handle.write(line + "\n")

    def cleanup_orphans(self, branch: str) -> dict[str, Any]:
        """Remove the worktree and branch left behind by an interrupted run."""
        removed_worktrees: list[str] = []
        for path in _worktrees_on_branch(self.git.worktree_list(), branch):
            _LOGGER.warning("removing orphaned worktree %s on %s", path, branch)
            try:
                self.git.worktree_remove(path, force=True)
            except GitError as err:
                _LOGGER.warning("could not remove worktree %s: %s", path, err.message)
                shutil.rmtree(path, ignore_errors=True)
            removed_worktrees.append(str(path))
        self.git.worktree_prune()
        removed_branch = False
        if self.git.branch_exists(branch):
            _LOGGER.warning("deleting orphaned temp branch %s", branch)
            self.git.delete_branch(branch, force=True)
            removed_branch = True
        return {"worktrees": removed_worktrees, "branch_deleted": removed_branch}

    def _discard(self, workspace: Path, branch: str) -> None:
        try:
            self.git.worktree_remove(workspace, force=True)
        except GitError as err:
            _LOGGER.warning("worktree cleanup failed for %s: %s", workspace, err.message)
        shutil.rmtree(workspace, ignore_errors=True)
        self.git.worktree_prune()
        if self.git.branch_exists(branch):
            try:
                self.git.delete_branch(branch, force=True)
            except GitError as err:
                _LOGGER.warning("temp branch cleanup failed for %s: %s", branch, err.message)

    def _open_workspace(self, operation: str, unit_id: str) -> tuple[str, Path]:
        branch = temp_branch_name(operation, unit_id)
        self.cleanup_orphans(branch)
        self.git.fetch(self.config.remote, self.config.main_branch)
        self.git.create_branch(branch, self.config.remote_main_ref)
        workspace = Path(tempfile.mkdtemp(prefix=f"lanefleet-{operation}-"))
        try:
            self.git.worktree_add(workspace, branch)
        except GitError:
            self._discard(workspace, branch)
            raise
        _LOGGER.info("opened isolated workspace %s on %s", workspace, branch)
        return branch, workspace

    def _conflict_summary(self, worktree: GitAdapter, branch: str) -> list[str]:
        try:
            return worktree.log_oneline(f"{branch}..{self.config.remote_main_ref}", max_count=10)
        except GitError:
            return []

    def _push(self, worktree: GitAdapter, branch: str, operation: str) -> int:
        """Push ``branch`` onto the primary branch; one fetch + rebase retry on rejection."""
        refspec = f"{branch}:{self.config.main_branch}"

        def _attempt(attempt: int) -> int:
            worktree.push(self.config.remote, refspec, reason=f"isolated {operation} (automated)")
            _LOGGER.info("pushed %s to %s (attempt %s)", branch, self.config.remote_main_ref, attempt)
            return attempt

        def _rebase(attempt: int, err: BaseException) -> None:
            self.git.fetch(self.config.remote, self.config.main_branch)
            conflicting = self._conflict_summary(worktree, branch)
            _LOGGER.warning("push of %s rejected, rebasing onto %s before retry", branch, self.config.remote_main_ref)
            try:
                worktree.rebase(self.config.remote_main_ref)
            except GitError as rebase_err:
                files = worktree.conflicted_files()
                worktree.rebase_abort()
                raise GitError(
                    f"rebase of {operation} onto {self.config.remote_main_ref} hit conflicts",
                    context={
                        "operation": operation,
                        "branch": branch,
                        "conflicting_commits": conflicting,
                        "conflicted_files": files,
                    },
                    remediation="These commits conflict with this change:\n"
                    + "\n".join(f"  {line}" for line in conflicting)
                    + "\nRe-run the operation so it is rebuilt from the new tip.",
                ) from rebase_err

        try:
            return run_with_retry(
                _attempt,
                self.policy,
                retry_on=(GitError,),
                should_retry=lambda err: bool(err.context.get("non_fast_forward")),
                operation=f"push of {operation}",
                on_retry=_rebase,
            )
        except GitError as err:
            if not err.context.get("non_fast_forward"):
                raise
            self.git.fetch(self.config.remote, self.config.main_branch)
            conflicting = self._conflict_summary(worktree, branch)
            attempts = max(1, int(self.policy.max_attempts))
            raise GitError(
                f"push of {operation} rejected {attempts} times; {self.config.remote_main_ref} keeps moving",
                context={
                    "operation": operation,
                    "branch": branch,
                    "conflicting_commits": conflicting,
                    "non_fast_forward": True,
                },
                remediation="Concurrent commits landed on the primary branch:\n"
                + "\n".join(f"  {line}" for line in conflicting)
                + "\nRe-run the operation; it starts from the new tip.",
            ) from err

    def isolated_commit(
        self,
        operation: str,
        unit_id: str,
        execute: Callable[[Path], MutationPlan],
    ) -> dict[str, Any]:
        """
        Run ``execute(workspace)`` in a disposable worktree and push one commit.

        ``execute`` edits files under the workspace and returns the commit message
        plus the workspace-relative paths it touched (deletions included). The
        workspace and temp branch are removed whatever happens.
        """
        self._require_remote(operation)
        branch, workspace = self._open_workspace(operation, unit_id)
        try:
            worktree = self.git.for_path(workspace)
            plan = execute(workspace)
            if not isinstance(plan, MutationPlan) or not plan.commit_message.strip():
                raise ValidationError(
                    f"{operation} must return a MutationPlan with a commit message",
                    context={"operation": operation, "unit_id": unit_id},
                )
            worktree.add(plan.files)
            if not worktree.has_staged_changes():
                _LOGGER.info("%s for %s produced no changes, nothing pushed", operation, unit_id)
                return {"ok": True, "committed": False, "pushed": False, "branch": branch, "attempts": 0}
            commit = worktree.commit(plan.commit_message)
            attempts = self._push(worktree, branch, operation)
            pushed_head = worktree.rev_parse("HEAD")
            self.git.fetch(self.config.remote, self.config.main_branch)
            return {
                "ok": True,
                "committed": True,
                "pushed": True,
                "branch": branch,
                "commit": pushed_head or commit,
                "attempts": attempts,
                "files": list(plan.files),
            }
        finally:
            self._discard(workspace, branch)

    def atomic_merge(self, unit_id: str, feature_branch: str, message: str = "") -> dict[str, Any]:
        """Merge ``feature_branch`` on a temporary integration branch and push the result."""
        operation = "merge"
        self._require_remote(operation)
        branch, workspace = self._open_workspace(operation, unit_id)
        try:
            worktree = self.git.for_path(workspace)
            try:
                worktree.merge(feature_branch, message=message or f"merge {feature_branch} for {unit_id}")
            except GitError as err:
                files = worktree.conflicted_files()
                worktree.merge_abort()
                raise GitError(
                    f"{feature_branch} does not merge cleanly onto {self.config.remote_main_ref}",
                    context={"unit_id": unit_id, "feature_branch": feature_branch, "conflicted_files": files},
                    remediation=f"Rebase {feature_branch} onto {self.config.remote_main_ref}, resolve:\n"
                    + "\n".join(f"  {path}" for path in files)
                    + "\nthen retry the completion.",
                ) from err
            attempts = self._push(worktree, branch, operation)
            head = worktree.rev_parse("HEAD")
            self.git.fetch(self.config.remote, self.config.main_branch)
            return {"ok": True, "pushed": True, "branch": branch, "commit": head, "attempts": attempts}
        finally:
            self._discard(workspace, branch)
