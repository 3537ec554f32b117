"""
Diagnostics for finished models and data sets
Text and dictionary dumps for build-time inspection
"""

from typing import Any, Dict, List

from envsim.constants import EQUATION, INITIAL_VALUE
from envsim.scheduler import SolverBlock
from envsim.types import ScheduleEntryDict


def dependency_order_dump(model) -> List[ScheduleEntryDict]:
    """
    Evaluation order as (symbol name, batch index) records

    Example:
        >>> [(e["name"], e["batch"]) for e in dependency_order_dump(model)]
        [('Runoff', 0), ('Flow', 1)]
    """
    return [entry.model_dump() for entry in model.dependency_order()]


def format_dependency_order(model) -> str:
    lines = [f"{'batch':>5}  {'equation':<30} unit"]
    for entry in model.dependency_order():
        unit = "" if entry.unit == entry.name else entry.unit
        lines.append(f"{entry.batch:>5}  {entry.name:<30} {unit}".rstrip())
    return "\n".join(lines)


def format_result_structure(model) -> str:
    """
    Equations grouped by index set signature, in evaluation order

    Initial-value equations are listed last.
    """
    groups: Dict[tuple, List[str]] = {}
    names = [entry.name for entry in model.dependency_order()] + list(model.schedule.initial_order)
    for name in names:
        signature = model.signature_of(EQUATION, name)
        groups.setdefault(signature, []).append(name)

    lines: List[str] = []
    for signature, members in groups.items():
        header = ", ".join(signature) if signature else "(no index sets)"
        lines.append(f"[{header}]")
        for name in members:
            spec = model.equation_spec(name)
            tag = f" ({spec.kind})" if spec.kind != "algebraic" else ""
            solver = f" solver={spec.solver}" if spec.solver else ""
            unit = f" [{spec.unit}]" if spec.unit else ""
            lines.append(f"  {name}{unit}{tag}{solver}")
    return "\n".join(lines)


def format_storage_structure(dataset) -> str:
    """Slot counts per symbol of an allocated data set"""
    index_space = dataset.index_space
    lines = ["Parameters:"]
    for name, layout in dataset.parameter_layout.items():
        lines.append(f"  {name}: {layout.count} slot(s) {layout.signature or ''}".rstrip())
    lines.append("Inputs:")
    for name, layout in dataset.input_layout.items():
        provided = int(dataset.input_provided[name].sum())
        lines.append(
            f"  {name}: {layout.count} series x {dataset.n_input_steps} step(s), "
            f"{provided} provided"
        )
    lines.append("Results:")
    for name, layout in dataset.equation_layout.items():
        members = " x ".join(str(index_space.get(s).count()) for s in layout.signature)
        lines.append(
            f"  {name}: slots {layout.base}..{layout.base + layout.count - 1}"
            + (f" ({members})" if members else "")
        )
    stats = dataset.stats()
    lines.append(
        f"Total: {stats['parameter_slots']} parameter, {stats['input_slots']} input, "
        f"{stats['result_slots']} result slot(s); state '{stats['state']}'"
    )
    return "\n".join(lines)


def schedule_summary(model) -> Dict[str, Any]:
    """Counts describing the cached schedule"""
    schedule = model.schedule
    blocks = [u for u in schedule.units if isinstance(u, SolverBlock)]
    return {
        "units": len(schedule.units),
        "batches": schedule.batch_count(),
        "solver_blocks": [
            {
                "solver": block.solver.name,
                "method": block.solver.method,
                "odes": [s.name for s in block.odes],
                "algebraics": [s.name for s in block.algebraics],
            }
            for block in blocks
        ],
        "initial_value_equations": list(schedule.initial_order),
        "edges": len(model.analysis.edges()),
        "equations": sum(1 for s in model.equations() if s.kind != INITIAL_VALUE),
    }
