"""
Tests for evaluation units and the topological schedule
"""

import pytest
from envsim.exceptions import CyclicDependencyError, ModelBuildError
from envsim.registry import Model
from envsim.scheduler import SolverBlock, topological_sort
from envsim.utils.diagnostics import (
    dependency_order_dump,
    format_dependency_order,
    format_result_structure,
    schedule_summary,
)


def test_topological_sort_orders_dependencies_first():
    """Test Kahn's algorithm with batch indices"""
    dependencies = {"c": ["a", "b"], "b": ["a"], "a": []}
    priority = {"c": 0, "b": 1, "a": 2}

    order, batches = topological_sort(dependencies, priority)

    assert order == ["a", "b", "c"]
    assert batches == {"a": 0, "b": 1, "c": 2}


def test_topological_sort_breaks_ties_by_priority():
    """Test that independent nodes come out in priority order"""
    dependencies = {"x": [], "y": [], "z": []}

    order, batches = topological_sort(dependencies, {"x": 2, "y": 0, "z": 1})

    assert order == ["y", "z", "x"]
    assert set(batches.values()) == {0}


def test_topological_sort_reports_cycle():
    """Test that a cycle is reported as a closed path"""
    dependencies = {"a": ["c"], "b": ["a"], "c": ["b"], "d": []}

    with pytest.raises(CyclicDependencyError) as exc_info:
        topological_sort(dependencies, {"a": 0, "b": 1, "c": 2, "d": 3})

    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "Cyclic dependency detected" in exc_info.value.message


def test_schedule_respects_same_step_reads():
    """Test that every equation comes after the equations it reads"""
    model = Model("chain")
    k = model.register_parameter_double("k", default=1.0)
    model.register_equation("C", body=lambda v: v.result("A") + v.result("B"))
    model.register_equation("B", body=lambda v: 2.0 * v.result("A"))
    model.register_equation("A", body=lambda v: v.parameter(k))
    model.end_definition()

    order = [(e.name, e.batch) for e in model.dependency_order()]

    assert order == [("A", 0), ("B", 1), ("C", 2)]


def test_schedule_is_topologically_valid():
    """Test the ordering property on a wider graph"""
    model = Model("wide")
    model.register_equation("Out", body=lambda v: v.result("Mid1") + v.result("Mid2"))
    model.register_equation("Mid1", body=lambda v: v.result("In1"))
    model.register_equation("Mid2", body=lambda v: v.result("In1") * v.result("In2"))
    model.register_equation("In1", body=lambda v: 1.0)
    model.register_equation("In2", body=lambda v: v.last_result("Out"))
    model.end_definition()

    position = {e.name: i for i, e in enumerate(model.dependency_order())}
    for source, target in (("Mid1", "Out"), ("Mid2", "Out"), ("In1", "Mid1"), ("In1", "Mid2"), ("In2", "Mid2")):
        assert position[source] < position[target]


def test_schedule_is_deterministic():
    """Test that independent equations keep registration order"""
    def build():
        model = Model("independent")
        for name in ("Z", "Y", "X"):
            model.register_equation(name, body=lambda v: 1.0)
        return model.end_definition()

    first = [e.name for e in build().dependency_order()]
    second = [e.name for e in build().dependency_order()]

    assert first == second == ["Z", "Y", "X"]


def test_previous_step_cycle_is_allowed():
    """Test that a loop closed through last_result() builds"""
    model = Model("lagged")
    model.register_equation("Storage", body=lambda v: v.last_result("Outflow") + 1.0)
    model.register_equation("Outflow", body=lambda v: 0.5 * v.result("Storage"))
    model.end_definition()

    assert [e.name for e in model.dependency_order()] == ["Storage", "Outflow"]


def test_same_step_cycle_is_rejected():
    """Test that the same loop through result() fails the build"""
    model = Model("cyclic")
    model.register_equation("Storage", body=lambda v: v.result("Outflow") + 1.0)
    model.register_equation("Outflow", body=lambda v: 0.5 * v.result("Storage"))

    with pytest.raises(CyclicDependencyError) as exc_info:
        model.end_definition()

    assert set(exc_info.value.cycle) == {"Storage", "Outflow"}
    assert not model.finished


def test_self_reference_same_step_is_a_cycle():
    """Test that an equation reading its own current value is a cycle"""
    model = Model("self")
    model.register_equation("E", body=lambda v: v.result("E") + 1.0)

    with pytest.raises(CyclicDependencyError) as exc_info:
        model.end_definition()

    assert exc_info.value.cycle == ["E", "E"]


def test_self_reference_previous_step_is_allowed():
    """Test that an equation may read its own previous value"""
    model = Model("counter")
    model.register_equation("Count", body=lambda v: v.last_result("Count") + 1.0)
    model.end_definition()

    assert [e.name for e in model.dependency_order()] == ["Count"]


def test_solver_block_groups_odes_and_algebraics():
    """Test that equations sharing a solver and reading each other form one block"""
    model = Model("block")
    solver = model.register_solver("hydro", "rk4", 0.5)
    v0 = model.register_parameter_double("V0", default=10.0)
    model.register_equation("Rain", body=lambda v: 1.0)
    model.register_equation("Outflow", body=lambda v: 0.1 * v.result("Volume"), solver=solver)
    model.register_equation_ode(
        "Volume",
        body=lambda v: v.result("Rain") - v.result("Outflow"),
        solver=solver,
        initial_value=v0,
    )
    model.register_equation("Report", body=lambda v: v.result("Volume"))
    model.end_definition()

    order = model.dependency_order()
    names = [e.name for e in order]
    units = {e.name: e.unit for e in order}

    assert names == ["Rain", "Outflow", "Volume", "Report"]
    assert units["Outflow"] == units["Volume"] == "solver block 'hydro' (Outflow, Volume)"
    assert units["Rain"] == "Rain"

    blocks = [u for u in model.schedule.units if isinstance(u, SolverBlock)]
    assert len(blocks) == 1
    assert [s.name for s in blocks[0].odes] == ["Volume"]


def test_unconnected_equations_of_one_solver_form_separate_blocks():
    """Test that a solver drives each connected component as its own block"""
    model = Model("two_blocks")
    solver = model.register_solver("s", "euler", 1.0)
    x0 = model.register_parameter_double("x0", default=1.0)
    model.register_equation_ode("X", body=lambda v: -v.result("X"), solver=solver, initial_value=x0)
    model.register_equation_ode("Y", body=lambda v: -v.result("Y"), solver=solver, initial_value=x0)
    model.end_definition()

    summary = schedule_summary(model)

    assert len(summary["solver_blocks"]) == 2
    assert summary["solver_blocks"][0]["odes"] == ["X"]


def test_solver_block_without_ode():
    """Test that an algebraic equation alone on a solver is rejected"""
    model = Model("no_ode")
    solver = model.register_solver("s", "euler", 1.0)
    model.register_equation("Lonely", body=lambda v: 1.0, solver=solver)

    with pytest.raises(ModelBuildError) as exc_info:
        model.end_definition()

    assert exc_info.value.code == "solver_block_without_ode"


def test_algebraic_cycle_inside_block_is_rejected():
    """Test that algebraic members of a block cannot read each other in a loop"""
    model = Model("block_cycle")
    solver = model.register_solver("s", "euler", 1.0)
    x0 = model.register_parameter_double("x0", default=1.0)
    model.register_equation("P", body=lambda v: v.result("Q") + v.result("X"), solver=solver)
    model.register_equation("Q", body=lambda v: v.result("P"), solver=solver)
    model.register_equation_ode("X", body=lambda v: -v.result("P"), solver=solver, initial_value=x0)

    with pytest.raises(CyclicDependencyError):
        model.end_definition()


def test_initial_value_equations_are_not_scheduled():
    """Test that initial-value equations run once and are ordered among themselves"""
    model = Model("initial")
    solver = model.register_solver("s", "euler", 1.0)
    base = model.register_equation_initial_value("Base", body=lambda v: 5.0)
    double = model.register_equation_initial_value("Double", body=lambda v: 2.0 * v.result("Seeded"))
    model.register_equation_ode("Seeded", body=lambda v: 0.0, solver=solver, initial_value=base)
    model.register_equation_ode("Other", body=lambda v: 0.0, solver=solver, initial_value=double)
    model.end_definition()

    names = [e.name for e in model.dependency_order()]

    assert "Base" not in names and "Double" not in names
    assert model.schedule.initial_order == ["Base", "Double"]


def test_dependency_order_dump_and_structure():
    """Test the build-time diagnostics"""
    model = Model("dump")
    c = model.register_index_set("Compartment", ["A", "B"])
    p = model.register_parameter_double("P", default=1.0, index_sets=[c])
    model.register_equation("E", unit="kg", body=lambda v: 2.0 * v.parameter(p))
    model.register_equation("Total", body=lambda v: 1.0)
    model.end_definition()

    dump = dependency_order_dump(model)
    assert [(e["name"], e["batch"]) for e in dump] == [("E", 0), ("Total", 0)]

    text = format_dependency_order(model)
    assert "E" in text and "Total" in text

    structure = format_result_structure(model)
    assert "[Compartment]" in structure
    assert "E [kg]" in structure
    assert "(no index sets)" in structure
