"""
Scheduler for the envsim engine
Groups equations into evaluation units and orders them with a
deterministic topological sort
"""

from typing import Dict, List, Optional, Set, Tuple, Union
import heapq
import logging

from envsim.constants import ALGEBRAIC, ODE, INITIAL_VALUE, EQUATION
from envsim.exceptions import CyclicDependencyError, ModelBuildError
from envsim.models import EquationSpec, ScheduleEntry, SolverSpec

logger = logging.getLogger(__name__)


class EquationUnit:
    """A single algebraic equation evaluated once per instance"""

    def __init__(self, spec: EquationSpec):
        self.spec = spec
        self.name = spec.name
        self.members = [spec.name]
        self.order = spec.order

    @property
    def label(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"EquationUnit({self.name!r})"


class SolverBlock:
    """
    Equations integrated together by one solver

    Attributes:
        solver: Solver the block is assigned to
        odes: ODE members in registration order (they form the state vector)
        algebraics: Algebraic members in evaluation order; they are evaluated
            at every stage before the ODE bodies
    """

    def __init__(self, solver: SolverSpec, odes: List[EquationSpec], algebraics: List[EquationSpec]):
        self.solver = solver
        self.odes = odes
        self.algebraics = algebraics
        self.members = [s.name for s in algebraics] + [s.name for s in odes]
        self.order = min(s.order for s in odes + algebraics)

    @property
    def label(self) -> str:
        names = sorted(self.odes + self.algebraics, key=lambda s: s.order)
        return f"solver block '{self.solver.name}' ({', '.join(s.name for s in names)})"

    def __repr__(self) -> str:
        return f"SolverBlock({self.solver.name!r}, {self.members!r})"


Unit = Union[EquationUnit, SolverBlock]


class Schedule:
    """
    Cached evaluation order of a finished model

    Attributes:
        units: Evaluation units in run order
        batches: Batch index of each unit (parallel to units)
        initial_order: Initial-value equations in evaluation order
        unit_of: Equation name -> position of its unit in `units`
    """

    def __init__(self, units: List[Unit], batches: List[int], initial_order: List[str]):
        self.units = units
        self.batches = batches
        self.initial_order = initial_order
        self.unit_of: Dict[str, int] = {}
        for position, unit in enumerate(units):
            for name in unit.members:
                self.unit_of[name] = position

    def dependency_order(self) -> List[ScheduleEntry]:
        """One entry per scheduled equation, in evaluation order"""
        entries: List[ScheduleEntry] = []
        for position, (unit, batch) in enumerate(zip(self.units, self.batches)):
            if isinstance(unit, EquationUnit):
                specs = [unit.spec]
            else:
                specs = unit.algebraics + unit.odes
            for spec in specs:
                entries.append(
                    ScheduleEntry(
                        name=spec.name,
                        kind=spec.kind,
                        batch=batch,
                        position=position,
                        unit=unit.label,
                    )
                )
        return entries

    def batch_count(self) -> int:
        return max(self.batches) + 1 if self.batches else 0


# ============================================================================
# Topological Sort
# ============================================================================


def topological_sort(
    dependencies: Dict[str, List[str]],
    priority: Dict[str, int],
) -> Tuple[List[str], Dict[str, int]]:
    """
    Perform topological sort on a dependency graph using Kahn's algorithm

    Ties between ready nodes are broken by `priority` (smallest first), so
    the order is reproducible for a given graph.

    Args:
        dependencies: Dictionary mapping node to the nodes it depends on
        priority: Tie-break key of every node

    Returns:
        Tuple of (nodes in evaluation order, batch index per node)

    Raises:
        CyclicDependencyError: If circular dependency is detected
    """
    # Build in-degree map (count of dependencies for each node)
    in_degree: Dict[str, int] = {node: len(deps) for node, deps in dependencies.items()}

    # Build reverse graph (who depends on each node)
    dependents: Dict[str, List[str]] = {node: [] for node in dependencies}
    for node, deps in dependencies.items():
        for dep in deps:
            dependents[dep].append(node)

    # Start with nodes that have no dependencies
    queue: List[Tuple[int, str]] = [
        (priority[node], node) for node, degree in in_degree.items() if degree == 0
    ]
    heapq.heapify(queue)
    result: List[str] = []
    batches: Dict[str, int] = {}

    while queue:
        _, node = heapq.heappop(queue)
        result.append(node)
        batches[node] = 1 + max((batches[dep] for dep in dependencies[node]), default=-1)

        # Update in-degrees for dependent nodes
        for dependent in dependents[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(queue, (priority[dependent], dependent))

    # Check for cycles
    if len(result) != len(dependencies):
        remaining = set(dependencies) - set(result)
        cycle = _find_cycle(dependencies, remaining, priority)
        if cycle:
            raise CyclicDependencyError(
                f"Cyclic dependency detected. Cycle: {' -> '.join(cycle)}",
                cycle=cycle,
            )
        raise CyclicDependencyError(
            f"Cyclic dependency detected involving: {', '.join(sorted(remaining))}",
            cycle=sorted(remaining),
        )

    return result, batches


def _find_cycle(
    dependencies: Dict[str, List[str]], candidates: Set[str], priority: Dict[str, int]
) -> Optional[List[str]]:
    """Find a cycle in the dependency graph among candidate nodes"""
    visited: Set[str] = set()
    rec_stack: Set[str] = set()
    path: List[str] = []

    def dfs(node: str) -> Optional[List[str]]:
        visited.add(node)
        rec_stack.add(node)
        path.append(node)

        for neighbor in dependencies.get(node, []):
            if neighbor not in candidates:
                continue

            if neighbor not in visited:
                cycle = dfs(neighbor)
                if cycle:
                    return cycle
            elif neighbor in rec_stack:
                # Found cycle; report it in reading order (source first)
                cycle_start = path.index(neighbor)
                return list(reversed(path[cycle_start:] + [neighbor]))

        path.pop()
        rec_stack.remove(node)
        return None

    for node in sorted(candidates, key=lambda n: priority[n]):
        if node not in visited:
            cycle = dfs(node)
            if cycle:
                return cycle

    return None


# ============================================================================
# Unit construction
# ============================================================================


def _connected_components(names: List[str], links: Dict[str, Set[str]]) -> List[List[str]]:
    """Undirected connected components, each listed in the order of `names`"""
    position = {name: i for i, name in enumerate(names)}
    seen: Set[str] = set()
    components: List[List[str]] = []
    for start in names:
        if start in seen:
            continue
        component = []
        stack = [start]
        seen.add(start)
        while stack:
            node = stack.pop()
            component.append(node)
            for other in links.get(node, ()):
                if other not in seen:
                    seen.add(other)
                    stack.append(other)
        components.append(sorted(component, key=position.__getitem__))
    return components


def _order_block_algebraics(algebraics: List[EquationSpec], analysis) -> List[EquationSpec]:
    """Order a block's algebraic members; reads of the block's own ODE states are free"""
    by_name = {s.name: s for s in algebraics}
    dependencies = {
        s.name: sorted(
            (d for d in analysis.same_step[s.name] if d in by_name),
            key=lambda d: by_name[d].order,
        )
        for s in algebraics
    }
    ordered, _ = topological_sort(dependencies, {s.name: s.order for s in algebraics})
    return [by_name[name] for name in ordered]


def _build_units(model, analysis) -> List[Unit]:
    specs = [s for s in model.equations() if s.kind != INITIAL_VALUE]
    units: List[Unit] = [EquationUnit(s) for s in specs if s.solver is None]

    for solver in model.solvers():
        assigned = [s for s in specs if s.solver == solver.name]
        if not assigned:
            continue
        names = [s.name for s in assigned]
        member_set = set(names)
        links: Dict[str, Set[str]] = {name: set() for name in names}
        for name in names:
            for source in analysis.same_step[name]:
                if source in member_set and source != name:
                    links[name].add(source)
                    links[source].add(name)

        by_name = {s.name: s for s in assigned}
        for component in _connected_components(names, links):
            odes = [by_name[n] for n in component if by_name[n].kind == ODE]
            algebraics = [by_name[n] for n in component if by_name[n].kind == ALGEBRAIC]
            if not odes:
                raise ModelBuildError(
                    code="solver_block_without_ode",
                    message=(
                        f"Equations {component} are assigned to solver '{solver.name}' "
                        f"but do not feed any ODE equation of that solver"
                    ),
                    details={"solver": solver.name, "equations": component},
                )
            units.append(SolverBlock(solver, odes, _order_block_algebraics(algebraics, analysis)))

    return units


def _initial_order(model, analysis) -> List[str]:
    """
    Order initial-value equations among themselves

    An initial-value equation reading another initial-value equation, or an
    equation seeded by one, is evaluated after it.
    """
    specs = [s for s in model.equations() if s.kind == INITIAL_VALUE]
    names = {s.name for s in specs}
    dependencies: Dict[str, List[str]] = {}
    for spec in specs:
        deps: Set[str] = set()
        for ref in analysis.references[spec.name]:
            if ref.category != EQUATION:
                continue
            if ref.name in names:
                deps.add(ref.name)
                continue
            source = model.equation_spec(ref.name).initial_value
            if source is not None and source.category == EQUATION:
                deps.add(source.name)
        dependencies[spec.name] = sorted(deps)
    order, _ = topological_sort(dependencies, {s.name: s.order for s in specs})
    return order


def build_schedule(model, analysis) -> Schedule:
    """
    Compute the evaluation schedule of a finished model

    Args:
        model: Model whose definition is complete
        analysis: DependencyAnalysis of that model

    Returns:
        Schedule with units in run order and their batch indices

    Raises:
        ModelBuildError: If a solver block has no ODE
        CyclicDependencyError: If same-step reads form a cycle between units,
            among a block's algebraic members, or among initial-value equations
    """
    units = _build_units(model, analysis)
    labels = [unit.label for unit in units]
    unit_of: Dict[str, str] = {}
    for unit in units:
        for name in unit.members:
            unit_of[name] = unit.label

    dependencies: Dict[str, List[str]] = {label: [] for label in labels}
    for unit in units:
        for name in unit.members:
            for source in sorted(analysis.same_step[name]):
                if source not in unit_of:
                    # Initial-value equations are constant during the run
                    continue
                source_label = unit_of[source]
                if source_label == unit.label:
                    if isinstance(unit, EquationUnit):
                        raise CyclicDependencyError(
                            f"Cyclic dependency detected. Cycle: {unit.label} -> {unit.label}",
                            cycle=[unit.label, unit.label],
                        )
                    continue
                if source_label not in dependencies[unit.label]:
                    dependencies[unit.label].append(source_label)

    priority = {unit.label: unit.order for unit in units}
    ordered, batch_of = topological_sort(dependencies, priority)
    by_label = {unit.label: unit for unit in units}
    schedule = Schedule(
        [by_label[label] for label in ordered],
        [batch_of[label] for label in ordered],
        _initial_order(model, analysis),
    )

    logger.debug(
        f"Schedule: {len(schedule.units)} unit(s) in {schedule.batch_count()} batch(es), "
        f"{len(schedule.initial_order)} initial-value equation(s)"
    )
    return schedule
