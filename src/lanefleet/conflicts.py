"""Code-path overlap detection between claimed glob scopes.

Two phases per pattern pair. A static containment check synthesizes a path
from one pattern and matches the other against it; it only hints at overlap.
The concrete check expands both patterns against files on disk; only a
non-empty intersection there blocks a claim.
"""

from __future__ import annotations

import functools
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from .errors import ValidationError
from .records import UnitStatus

if TYPE_CHECKING:
    from .state_store import StateStore


_LOGGER = logging.getLogger("lanefleet.conflicts")

KIND_NONE = "none"
KIND_CONCRETE = "concrete"
KIND_AMBIGUOUS = "ambiguous"

IGNORED_DIRS = {
    ".git",
    ".hg",
    ".lanefleet",
    "node_modules",
    ".venv",
    "venv",
    "env",
    "__pycache__",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".tox",
    "dist",
    "build",
}


@dataclass
class ConflictResult:
    overlaps: bool
    kind: str = KIND_NONE
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"overlaps": self.overlaps, "kind": self.kind, "files": list(self.files)}


def _normalize_pattern(pattern: str) -> str:
    raw = str(pattern or "").strip().replace("\\", "/")
    while raw.startswith("./"):
        raw = raw[2:]
    if raw.endswith("/"):
        raw += "**"
    if not raw:
        raise ValidationError(
            "empty code path pattern",
            remediation="Remove the empty entry from the unit's code paths.",
        )
    return raw


def synthesize_path(pattern: str) -> str:
    """A concrete relative path the pattern would match, wildcards replaced by literals."""
    parts: list[str] = []
    for segment in _normalize_pattern(pattern).split("/"):
        if segment == "**":
            parts.append("synthetic/segment")
            continue
        out = []
        skip_class = False
        for ch in segment:
            if skip_class:
                if ch == "]":
                    skip_class = False
                continue
            if ch == "[":
                skip_class = True
                out.append("x")
            elif ch in "*?":
                out.append("x")
            else:
                out.append(ch)
        parts.append("".join(out) or "x")
    return "/".join(parts)


def _segment_regex(segment: str) -> str:
    out: list[str] = []
    index = 0
    while index < len(segment):
        ch = segment[index]
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[" and "]" in segment[index + 2 :]:
            end = segment.index("]", index + 2)
            body = segment[index + 1 : end].replace("\\", "\\\\")
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            index = end
        else:
            out.append(re.escape(ch))
        index += 1
    return "".join(out)


@functools.lru_cache(maxsize=1024)
def glob_regex(pattern: str) -> re.Pattern[str]:
    """
    Compile a path glob. ``*``, ``?`` and classes stay inside one segment;
    only a whole ``**`` segment spans directories. ``a/**`` also matches ``a``.
    """
    regex = ""
    need_sep = False
    segments = pattern.split("/")
    for index, segment in enumerate(segments):
        if segment == "**":
            if index == len(segments) - 1:
                regex += "(?:/.*)?" if need_sep else ".*"
            else:
                regex += "/(?:[^/]+/)*" if need_sep else "(?:[^/]+/)*"
                need_sep = False
            continue
        if need_sep:
            regex += "/"
        regex += _segment_regex(segment)
        need_sep = True
    return re.compile(regex)


def _matches(pattern: str, rel_path: str) -> bool:
    return glob_regex(_normalize_pattern(pattern)).fullmatch(rel_path) is not None


def static_overlap(a: str, b: str) -> bool:
    return _matches(a, synthesize_path(b)) or _matches(b, synthesize_path(a))


def iter_repo_files(root: Path) -> Iterable[str]:
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in IGNORED_DIRS)
        base = Path(dirpath)
        for name in sorted(filenames):
            yield (base / name).relative_to(root).as_posix()


def expand_pattern(pattern: str, files: Iterable[str]) -> set[str]:
    return {rel for rel in files if _matches(pattern, rel)}


def check_overlap(claiming: Iterable[str], existing: Iterable[str], root: Path) -> ConflictResult:
    """Compare two glob scopes. The result is symmetric in ``overlaps`` and ``kind``."""
    claiming = [_normalize_pattern(item) for item in claiming]
    existing = [_normalize_pattern(item) for item in existing]
    if not claiming or not existing:
        return ConflictResult(overlaps=False)

    static_hit = any(static_overlap(a, b) for a in claiming for b in existing)
    files = list(iter_repo_files(root))
    left: set[str] = set()
    for pattern in claiming:
        left |= expand_pattern(pattern, files)
    right: set[str] = set()
    for pattern in existing:
        right |= expand_pattern(pattern, files)
    shared = sorted(left & right)
    if shared:
        return ConflictResult(overlaps=True, kind=KIND_CONCRETE, files=shared)
    if static_hit:
        return ConflictResult(overlaps=False, kind=KIND_AMBIGUOUS)
    return ConflictResult(overlaps=False, kind=KIND_NONE)


def detect_conflicts(
    store: "StateStore",
    claiming: Iterable[str],
    unit_id: str,
    root: Path,
) -> dict[str, Any]:
    """
    Check ``claiming`` against every in-progress unit other than ``unit_id``.

    Returns ``{"blocked", "conflicts", "warnings"}``. Only concrete overlaps
    block; ambiguous ones come back as warnings.
    """
    claiming = list(claiming)
    conflicts: list[dict[str, Any]] = []
    warnings: list[dict[str, Any]] = []
    for unit in store.by_status(UnitStatus.IN_PROGRESS):
        if unit.unit_id == unit_id or not unit.code_paths:
            continue
        result = check_overlap(claiming, unit.code_paths, root)
        entry = {"unit_id": unit.unit_id, "lane": unit.lane, **result.to_dict()}
        if result.kind == KIND_CONCRETE:
            conflicts.append(entry)
        elif result.kind == KIND_AMBIGUOUS:
            _LOGGER.warning(
                "code paths of %s may overlap %s (no shared files on disk yet)", unit_id, unit.unit_id
            )
            warnings.append(entry)
    return {"blocked": bool(conflicts), "conflicts": conflicts, "warnings": warnings}
