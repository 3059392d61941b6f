"""Process liveness checks for lock owners.

Only meaningful on the host that wrote the lock. A recycled PID that now
belongs to an unrelated process reads as alive; nothing here detects that.
"""

from __future__ import annotations

import os
import socket
import subprocess
from typing import Protocol


class ProcessLivenessChecker(Protocol):
    def is_alive(self, pid: int) -> bool: ...


class OsProcessLivenessChecker:
    """Signal-0 check against the local process table."""

    def is_alive(self, pid: int) -> bool:
        if pid is None or pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user.
            return True
        except OSError:
            return False
        if os.name != "nt":
            try:
                proc = subprocess.run(
                    ["ps", "-p", str(pid), "-o", "stat="],
                    capture_output=True,
                    text=True,
                    timeout=1,
                )
            except (OSError, subprocess.SubprocessError):
                return True
            stat = (proc.stdout or "").strip()
            # Exited-but-not-reaped processes show up with 'Z' in STAT.
            if proc.returncode == 0 and "Z" in stat:
                return False
        return True


class StaticLivenessChecker:
    """Liveness answered from a fixed set of pids."""

    def __init__(self, alive: set[int] | None = None) -> None:
        self.alive = set(alive or ())

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


def current_hostname() -> str:
    return socket.gethostname().strip() or "localhost"
