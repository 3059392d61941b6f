"""Throwaway git repositories: a bare remote plus working clones."""

import pathlib
import subprocess


def git(repo, *args):
    proc = subprocess.run(
        ["git", "-C", str(repo), *args],
        capture_output=True,
        text=True,
        check=True,
    )
    return proc.stdout.strip()


def configure_identity(repo):
    git(repo, "config", "user.name", "Lane Tester")
    git(repo, "config", "user.email", "lanes@example.invalid")
    git(repo, "config", "commit.gpgsign", "false")


def make_remote_and_clone(base: pathlib.Path, name: str = "work"):
    """Create ``remote.git`` with one commit on ``main`` and return ``(remote, clone)``."""
    remote = base / "remote.git"
    subprocess.run(["git", "init", "--quiet", "--bare", str(remote)], check=True)
    git(remote, "symbolic-ref", "HEAD", "refs/heads/main")
    clone = clone_remote(base, remote, name, bootstrap=True)
    return remote, clone


def clone_remote(base: pathlib.Path, remote: pathlib.Path, name: str, *, bootstrap: bool = False):
    clone = base / name
    if bootstrap:
        subprocess.run(["git", "init", "--quiet", str(clone)], check=True)
        configure_identity(clone)
        git(clone, "symbolic-ref", "HEAD", "refs/heads/main")
        (clone / "README.md").write_text("lanes\n", encoding="utf-8")
        git(clone, "add", "README.md")
        git(clone, "commit", "--quiet", "-m", "initial commit")
        git(clone, "remote", "add", "origin", str(remote))
        git(clone, "push", "--quiet", "origin", "main")
        git(clone, "branch", "--quiet", "--set-upstream-to=origin/main", "main")
        return clone
    subprocess.run(["git", "clone", "--quiet", str(remote), str(clone)], check=True)
    configure_identity(clone)
    return clone


def commit_file(repo, rel_path: str, content: str, message: str) -> str:
    path = pathlib.Path(repo) / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    git(repo, "add", rel_path)
    git(repo, "commit", "--quiet", "-m", message)
    return git(repo, "rev-parse", "HEAD")
