"""Gate sequencing around an external runner, short-circuited by the checkpoint cache."""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

from .checkpoint import CheckpointCache
from .state_store import WorkUnit


_LOGGER = logging.getLogger("lanefleet.gates")

DEFAULT_GATE_ORDER = ("format", "lint", "typecheck", "test")


class GateRunner(Protocol):
    def run(self, unit: WorkUnit, gate_name: str) -> bool: ...


def run_gates(
    unit: WorkUnit,
    runner: GateRunner,
    cache: CheckpointCache,
    *,
    head_revision: str,
    workspace_path: str = "",
    branch_name: str = "",
    order: Sequence[str] = DEFAULT_GATE_ORDER,
) -> dict[str, Any]:
    decision = cache.can_skip_gates(unit.unit_id, head_revision)
    if decision.can_skip:
        _LOGGER.info("gates for %s skipped: passed at %s", unit.unit_id, head_revision[:12])
        return {"ok": True, "skipped": True, "reason": decision.reason, "results": {}}

    cache.create_checkpoint(
        unit.unit_id,
        head_revision=head_revision,
        workspace_path=workspace_path,
        branch_name=branch_name,
    )
    results: dict[str, bool] = {}
    failed = ""
    for gate in order:
        passed = bool(runner.run(unit, gate))
        results[gate] = passed
        if not passed:
            failed = gate
            _LOGGER.warning("gate %s failed for %s", gate, unit.unit_id)
            break
    if failed:
        return {"ok": False, "skipped": False, "reason": decision.reason, "failed_gate": failed, "results": results}
    cache.mark_passed(unit.unit_id)
    return {"ok": True, "skipped": False, "reason": decision.reason, "results": results}
