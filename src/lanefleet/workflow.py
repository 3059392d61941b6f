"""Unit lifecycle: create, claim, block, unblock, cancel and complete.

Claims run the conflict detector, then take the lane lock, then append the
``claim`` event. Completion folds retries into one commit, merges atomically
and appends the terminal event.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

from .checkpoint import CheckpointCache
from .completion import handle_parallel_completions, prepare_completion_commit
from .config import CoordinationConfig
from .conflicts import detect_conflicts
from .errors import GitError, LockError, ValidationError
from .git import GitAdapter
from .id_allocator import allocate_unit_id, retry_create_on_push_collision, stamp_path
from .lane_lock import LaneLockManager
from .mutation import RepositoryMutator
from .process import ProcessLivenessChecker
from .records import ClaimMode, EventKind, SpawnRecord, SpawnStatus, UnitStatus, WUEvent, now_iso
from .recovery import RecoveryEngine
from .resilience import ID_RETRY_POLICY, RetryPolicy
from .spawn_registry import SpawnRegistry
from .state_store import LocalJsonlWriter, RemoteEventWriter, StateStore, ViewHook, WorkUnit


_LOGGER = logging.getLogger("lanefleet.workflow")


class Coordinator:
    def __init__(
        self,
        config: CoordinationConfig,
        *,
        git: GitAdapter | None = None,
        liveness: ProcessLivenessChecker | None = None,
        remote_log: bool = False,
        id_policy: RetryPolicy = ID_RETRY_POLICY,
        hooks: Sequence[ViewHook] = (),
    ) -> None:
        self.config = config
        self.git = git or GitAdapter(config.root_dir, timeout_sec=config.git_timeout_sec)
        self.lane_locks = LaneLockManager(config, liveness=liveness)
        self.mutator = RepositoryMutator(config, self.git)
        self.remote_log = remote_log
        writer = RemoteEventWriter(config, self.mutator) if remote_log else LocalJsonlWriter(config.events_file)
        self.store = StateStore(config, writer=writer, lane_locks=self.lane_locks, hooks=hooks)
        self.checkpoints = CheckpointCache(config)
        self.registry = SpawnRegistry(config)
        self.recovery = RecoveryEngine(
            config,
            registry=self.registry,
            lane_locks=self.lane_locks,
            store=self.store,
            checkpoints=self.checkpoints,
        )
        self.id_policy = id_policy

    @classmethod
    def from_root(cls, root: Path, **kwargs: Any) -> "Coordinator":
        return cls(CoordinationConfig.from_root(root), **kwargs)

    def refresh(self) -> None:
        if self.remote_log:
            self.store.load_with_remote(self.git)
        else:
            self.store.load()

    def _unit_exists(self, unit_id: str) -> bool:
        return self.store.get(unit_id) is not None or stamp_path(self.config, unit_id).exists()

    def _remote_git(self) -> GitAdapter | None:
        return None if self.config.offline else self.git

    # -- creation ----------------------------------------------------------

    def create_unit(
        self,
        lane: str,
        title: str,
        *,
        code_paths: Sequence[str] = (),
        unit_id: str | None = None,
        claim_mode: ClaimMode | str | None = None,
        parent_unit_id: str | None = None,
    ) -> WorkUnit:
        self.refresh()

        def _create(candidate: str) -> WorkUnit:
            unit = self.store.record(
                candidate,
                EventKind.CREATE,
                lane=lane,
                title=title,
                codePaths=list(code_paths),
                claimMode=ClaimMode(claim_mode).value if claim_mode else None,
                parentUnitId=parent_unit_id,
            )
            assert unit is not None
            return unit

        if unit_id:
            return _create(unit_id)
        if self.remote_log:
            _, unit = retry_create_on_push_collision(
                self.config,
                self._remote_git(),
                _create,
                policy=self.id_policy,
                exists=self._unit_exists,
            )
            return unit
        candidate = allocate_unit_id(self.config, self._remote_git(), exists=self._unit_exists, policy=self.id_policy)
        return _create(candidate)

    def spawn(
        self,
        parent_unit_id: str,
        lane: str,
        title: str,
        *,
        code_paths: Sequence[str] = (),
    ) -> tuple[WorkUnit, SpawnRecord]:
        """Create a child unit for ``parent_unit_id`` and register the spawn."""
        self.refresh()
        self.store.require(parent_unit_id)
        child = self.create_unit(lane, title, code_paths=code_paths, parent_unit_id=parent_unit_id)
        spawn = self.registry.record(parent_unit_id, child.unit_id, lane)
        self.store.record(child.unit_id, EventKind.SPAWN, parentUnitId=parent_unit_id, spawnId=spawn.spawn_id)
        return child, spawn

    # -- claim / block -------------------------------------------------------

    def _remote_tip(self) -> str | None:
        if self.config.offline:
            return None
        try:
            return self.git.rev_parse(self.config.remote_main_ref)
        except GitError as err:
            _LOGGER.warning("no baseline revision for claim: %s", err.message)
            return None

    def claim(
        self,
        unit_id: str,
        *,
        claim_mode: ClaimMode | str = ClaimMode.WORKTREE,
        code_paths: Sequence[str] | None = None,
        force: bool = False,
        session: str | None = None,
        baseline_revision: str | None = None,
    ) -> dict[str, Any]:
        self.refresh()
        unit = self.store.require(unit_id)
        paths = list(code_paths) if code_paths is not None else list(unit.code_paths)

        conflicts = detect_conflicts(self.store, paths, unit_id, self.config.root_dir)
        if conflicts["blocked"]:
            first = conflicts["conflicts"][0]
            raise ValidationError(
                f"code paths of {unit_id} overlap files owned by {first['unit_id']}",
                context={"unit_id": unit_id, "conflicts": conflicts["conflicts"]},
                remediation="Narrow the code paths, or wait for these units to finish:\n"
                + "\n".join(f"  {item['unit_id']}: {', '.join(item['files'][:5])}" for item in conflicts["conflicts"]),
            )

        lock = self.lane_locks.acquire(unit.lane, unit_id, force=force, session=session)
        if lock.forced_from:
            self.recovery.record_forced_takeover(unit.lane, lock.forced_from, unit_id)
        try:
            claimed = self.store.record(
                unit_id,
                EventKind.CLAIM,
                lane=unit.lane,
                codePaths=paths,
                claimMode=ClaimMode(claim_mode).value,
                baselineRevision=baseline_revision or self._remote_tip(),
                forced=True if force else None,
            )
        except Exception:
            if lock.lock is not None and not lock.reused:
                self.lane_locks.release(unit.lane, unit_id)
            raise
        assert claimed is not None
        return {
            "unit": claimed.to_dict(),
            "lock": lock.to_dict(),
            "conflict_warnings": conflicts["warnings"],
        }

    def block(self, unit_id: str, reason: str = "") -> dict[str, Any]:
        self.refresh()
        unit = self.store.record(unit_id, EventKind.BLOCK, reason=reason or None)
        assert unit is not None
        released = self.lane_locks.on_block(unit.lane, unit_id)
        return {"unit": unit.to_dict(), "lock_released": bool(released and released.released)}

    def unblock(self, unit_id: str, *, session: str | None = None) -> dict[str, Any]:
        self.refresh()
        unit = self.store.require(unit_id)
        lock = self.lane_locks.on_unblock(unit.lane, unit_id, session=session)
        warning = lock.warnings[0] if lock.warnings and not lock.acquired else None
        try:
            resumed = self.store.record(unit_id, EventKind.UNBLOCK, lockWarning=warning)
        except Exception:
            if lock.lock is not None and not lock.reused:
                self.lane_locks.release(unit.lane, unit_id)
            raise
        assert resumed is not None
        return {"unit": resumed.to_dict(), "lock": lock.to_dict()}

    def checkpoint(self, unit_id: str, note: str) -> WorkUnit | None:
        self.refresh()
        return self.store.record(unit_id, EventKind.CHECKPOINT, note=note)

    def _release_own_lock(self, unit: WorkUnit) -> bool:
        lock = self.lane_locks.read(unit.lane)
        if lock is None or lock.unit_id != unit.unit_id:
            return False
        return self.lane_locks.release(unit.lane, unit.unit_id).released

    def cancel(self, unit_id: str, reason: str = "") -> dict[str, Any]:
        self.refresh()
        unit = self.store.record(unit_id, EventKind.CANCEL, reason=reason or None)
        assert unit is not None
        self.checkpoints.clear(unit_id)
        released = self._release_own_lock(unit)
        self._finish_spawns(unit_id, SpawnStatus.COMPLETED)
        return {"unit": unit.to_dict(), "lock_released": released}

    # -- completion ----------------------------------------------------------

    def _finish_spawns(self, unit_id: str, status: SpawnStatus) -> list[str]:
        finished: list[str] = []
        for spawn in self.registry.for_target(unit_id):
            if not spawn.is_terminal:
                self.registry.update_status(spawn.spawn_id, status)
                finished.append(spawn.spawn_id)
        return finished

    def _check_not_orphaned(self, unit: WorkUnit) -> None:
        if self.config.lock_policy_for(unit.lane) == "none":
            return
        lock = self.lane_locks.read(unit.lane)
        if lock is not None and lock.unit_id != unit.unit_id:
            raise LockError(
                f"{unit.unit_id} lost lane {unit.lane!r} to {lock.unit_id}",
                context={"unit_id": unit.unit_id, "lane": unit.lane, "occupant": lock.unit_id},
                remediation=f"{lock.unit_id} force-claimed the lane. Block {unit.unit_id} and unblock it once "
                f"{lock.unit_id} finishes, or cancel {unit.unit_id}. See the recovery audit directory.",
            )

    def complete(
        self,
        unit_id: str,
        *,
        workspace: GitAdapter | None = None,
        files: Sequence[str] = (),
        feature_branch: str | None = None,
        auto_rebase: bool = True,
    ) -> dict[str, Any]:
        """
        Finish an in-progress unit.

        The status is checked before any git side effect. A unit that is already
        done skips the merge and the event and only repeats the cleanup.

        Args:
            unit_id: Unit to complete
            workspace: Adapter for the worker's checkout; when given, one completion
                commit is prepared there after folding in parallel completions
            files: Paths to stage with the completion commit
            feature_branch: Branch merged onto the primary branch atomically
            auto_rebase: Rebase automatically when other units completed meanwhile
        """
        self.refresh()
        unit = self.store.require(unit_id)
        if unit.status == UnitStatus.DONE:
            _LOGGER.info("%s is already done; finishing cleanup only", unit_id)
            return self._finalize(unit, {"unit_id": unit_id, "already_done": True})
        self.store.check_transition(self.store.projection, WUEvent.create(unit_id, EventKind.COMPLETE))
        self._check_not_orphaned(unit)
        result: dict[str, Any] = {"unit_id": unit_id, "already_done": False}

        if workspace is not None:
            result["parallel"] = handle_parallel_completions(unit, workspace, self.config, auto_rebase=auto_rebase)
            result["commit"] = prepare_completion_commit(unit_id, unit.title, workspace, files=files)
        if feature_branch:
            result["merge"] = self.mutator.atomic_merge(unit_id, feature_branch)

        done = self.store.record(unit_id, EventKind.COMPLETE)
        assert done is not None
        _LOGGER.info("%s completed", unit_id)
        return self._finalize(done, result)

    def _finalize(self, unit: WorkUnit, result: dict[str, Any]) -> dict[str, Any]:
        # Each step is safe to repeat after a crash between the event and the cleanup.
        stamp = stamp_path(self.config, unit.unit_id)
        if not stamp.exists():
            stamp.parent.mkdir(parents=True, exist_ok=True)
            stamp.write_text(f"{unit.unit_id}\n{now_iso()}\n", encoding="utf-8")
        self.checkpoints.clear(unit.unit_id)
        result["lock_released"] = self._release_own_lock(unit)
        result["spawns_completed"] = self._finish_spawns(unit.unit_id, SpawnStatus.COMPLETED)
        result["unit"] = unit.to_dict()
        return result
