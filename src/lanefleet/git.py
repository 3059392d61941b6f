"""Blocking git adapter. Every failure surfaces as ``GitError``."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Sequence

from .errors import GitError


_LOGGER = logging.getLogger("lanefleet.git")

NON_FAST_FORWARD_MARKERS = (
    "non-fast-forward",
    "[rejected]",
    "fetch first",
    "failed to push some refs",
    "updates were rejected",
)


def is_non_fast_forward(output: str) -> bool:
    lowered = str(output or "").lower()
    return any(marker in lowered for marker in NON_FAST_FORWARD_MARKERS)


def _first_nonempty_line(text: str) -> str:
    for line in str(text or "").splitlines():
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


class GitAdapter:
    def __init__(self, repo: Path, *, timeout_sec: int = 60, env: dict[str, str] | None = None) -> None:
        self.repo = Path(repo)
        self.timeout_sec = timeout_sec
        self.env = dict(env or {})

    def for_path(self, path: Path) -> "GitAdapter":
        return GitAdapter(path, timeout_sec=self.timeout_sec, env=self.env)

    def _run(self, args: Sequence[str], *, extra_env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
        argv = ["git", "-C", str(self.repo), *args]
        env = {**os.environ, **self.env, **(extra_env or {})}
        _LOGGER.debug("git %s (cwd=%s)", " ".join(args), self.repo)
        try:
            return subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout_sec,
                env=env,
            )
        except subprocess.TimeoutExpired as err:
            raise GitError(
                f"git {' '.join(args)} timed out after {self.timeout_sec}s",
                context={"repo": str(self.repo), "args": list(args)},
                remediation="Check network access to the remote, then retry. "
                "Raise LANEFLEET_GIT_TIMEOUT_SEC if the repository is very large.",
            ) from err
        except OSError as err:
            raise GitError(
                f"unable to execute git: {err}",
                context={"repo": str(self.repo), "args": list(args)},
                remediation="Install git and make sure it is on PATH.",
            ) from err

    def run(self, args: Sequence[str], *, extra_env: dict[str, str] | None = None) -> str:
        cp = self._run(args, extra_env=extra_env)
        if cp.returncode != 0:
            output = (cp.stdout + "\n" + cp.stderr).strip()
            raise GitError(
                f"git {' '.join(args)} failed: {_first_nonempty_line(cp.stderr) or _first_nonempty_line(output)}",
                context={
                    "repo": str(self.repo),
                    "args": list(args),
                    "returncode": cp.returncode,
                    "output": output,
                    "non_fast_forward": is_non_fast_forward(output),
                },
                remediation=f"Run `git -C {self.repo} {' '.join(args)}` manually to inspect the failure.",
            )
        return cp.stdout

    def ok(self, args: Sequence[str]) -> bool:
        return self._run(args).returncode == 0

    # -- queries ---------------------------------------------------------

    def current_branch(self) -> str:
        return self.run(["rev-parse", "--abbrev-ref", "HEAD"]).strip()

    def rev_parse(self, ref: str = "HEAD") -> str:
        return self.run(["rev-parse", "--verify", ref]).strip()

    def status_porcelain(self) -> str:
        return self.run(["status", "--porcelain"])

    def is_clean(self) -> bool:
        return not self.status_porcelain().strip()

    def branch_exists(self, branch: str) -> bool:
        return self.ok(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"])

    def remote_exists(self, remote: str) -> bool:
        return self.ok(["remote", "get-url", remote])

    def log_subjects(self, rev: str = "HEAD", *, max_count: int = 50) -> list[str]:
        out = self.run(["log", f"--max-count={max_count}", "--format=%s", rev, "--"])
        return [line for line in out.splitlines() if line.strip()]

    def log_oneline(self, rev_range: str, *, max_count: int = 50) -> list[str]:
        out = self.run(["log", "--oneline", f"--max-count={max_count}", rev_range, "--"])
        return [line.strip() for line in out.splitlines() if line.strip()]

    def list_tree(self, ref: str, path: str) -> list[str]:
        out = self.run(["ls-tree", "--name-only", f"{ref}:{path}"])
        return [line.strip() for line in out.splitlines() if line.strip()]

    def show_file(self, ref: str, path: str) -> str:
        return self.run(["show", f"{ref}:{path}"])

    def has_staged_changes(self) -> bool:
        return not self.ok(["diff", "--cached", "--quiet"])

    def conflicted_files(self) -> list[str]:
        out = self._run(["diff", "--name-only", "--diff-filter=U"]).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    def common_dir(self) -> Path:
        raw = self.run(["rev-parse", "--git-common-dir"]).strip()
        path = Path(raw)
        return path if path.is_absolute() else (self.repo / path).resolve()

    def worktree_list(self) -> str:
        return self.run(["worktree", "list", "--porcelain"])

    # -- mutations -------------------------------------------------------

    def fetch(self, remote: str, branch: str | None = None) -> None:
        args = ["fetch", "--quiet", remote]
        if branch:
            args.append(branch)
        self.run(args)

    def add(self, paths: Sequence[str]) -> None:
        if paths:
            self.run(["add", "--all", "--", *paths])

    def commit(self, message: str, *, allow_empty: bool = False) -> str:
        args = ["commit", "--quiet", "-m", message]
        if allow_empty:
            args.insert(1, "--allow-empty")
        self.run(args)
        return self.rev_parse("HEAD")

    def push(self, remote: str, refspec: str, *, reason: str = "") -> None:
        extra_env = {"LANEFLEET_FORCE": "1", "LANEFLEET_FORCE_REASON": reason} if reason else None
        self.run(["push", "--porcelain", remote, refspec], extra_env=extra_env)

    def rebase(self, onto: str) -> None:
        self.run(["rebase", onto])

    def rebase_abort(self) -> None:
        self._run(["rebase", "--abort"])

    def merge(self, ref: str, *, ff_only: bool = False, no_ff: bool = False, message: str = "") -> None:
        args = ["merge"]
        if ff_only:
            args.append("--ff-only")
        if no_ff:
            args.append("--no-ff")
        if message:
            args.extend(["-m", message])
        else:
            args.append("--no-edit")
        args.append(ref)
        self.run(args)

    def merge_abort(self) -> None:
        self._run(["merge", "--abort"])

    def reset(self, mode: str, ref: str) -> None:
        if mode not in {"--soft", "--mixed", "--hard"}:
            raise ValueError(f"unsupported reset mode: {mode}")
        self.run(["reset", "--quiet", mode, ref])

    def create_branch(self, branch: str, start_point: str) -> None:
        self.run(["branch", branch, start_point])

    def delete_branch(self, branch: str, *, force: bool = False) -> None:
        self.run(["branch", "-D" if force else "-d", branch])

    def worktree_add(self, path: Path, branch: str) -> None:
        self.run(["worktree", "add", "--quiet", str(path), branch])

    def worktree_remove(self, path: Path, *, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        self.run(args)

    def worktree_prune(self) -> None:
        self._run(["worktree", "prune"])
