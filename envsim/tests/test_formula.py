"""
Tests for formula bodies
"""

import math

import pytest
from envsim.exceptions import EvaluationError, FormulaError
from envsim.formula import FormulaBody, alias
from envsim.models import RunConfig
from envsim.registry import Model
from envsim.simulation import run_model
from envsim.storage import DataSet


class FakeView:
    """Minimal view serving fixed values by name"""

    def __init__(self, results=None, last=None, parameters=None, inputs=None, time=0.0):
        self.results = results or {}
        self.last = last or {}
        self.parameters = parameters or {}
        self.inputs = inputs or {}
        self.time = time
        self.step = 0
        self.timestep = 1.0

    def result(self, name):
        return self.results[name]

    def last_result(self, name):
        return self.last[name]

    def parameter(self, name):
        return self.parameters[name]

    def input(self, name):
        return self.inputs[name]


def bound_formula(expression, model=None):
    if model is None:
        model = Model("formulas")
        model.register_parameter_double("a", default=1.0)
        model.register_parameter_double("b", default=1.0)
    formula = FormulaBody(expression)
    formula.bind(model)
    return formula


def test_formula_arithmetic_operations():
    """Test basic arithmetic"""
    view = FakeView(parameters={"a": 10.0, "b": 4.0})

    assert bound_formula("a + b")(view) == 14.0
    assert bound_formula("a - b")(view) == 6.0
    assert bound_formula("a * b")(view) == 40.0
    assert bound_formula("a / b")(view) == 2.5
    assert bound_formula("a // b")(view) == 2.0
    assert bound_formula("a % b")(view) == 2.0
    assert bound_formula("b ** 2")(view) == 16.0
    assert bound_formula("-a")(view) == -10.0


def test_formula_comparison_and_boolean_operations():
    """Test that comparisons and boolean operators yield 1.0 / 0.0"""
    view = FakeView(parameters={"a": 10.0, "b": 4.0})

    assert bound_formula("a > b")(view) == 1.0
    assert bound_formula("a < b")(view) == 0.0
    assert bound_formula("b < a <= 10")(view) == 1.0
    assert bound_formula("a > 5 and b > 5")(view) == 0.0
    assert bound_formula("a > 5 or b > 5")(view) == 1.0
    assert bound_formula("not b")(view) == 0.0


def test_formula_mathematical_functions():
    """Test the allowed math functions"""
    view = FakeView(parameters={"a": 4.0, "b": 0.0})

    assert bound_formula("sqrt(a)")(view) == 2.0
    assert bound_formula("exp(b)")(view) == 1.0
    assert bound_formula("max(a, 1, b)")(view) == 4.0
    assert bound_formula("min(a, b)")(view) == 0.0
    assert math.isclose(bound_formula("log(a)")(view), math.log(4.0))


def test_formula_ternary_and_time():
    """Test conditional expressions and built-in variables"""
    view = FakeView(parameters={"a": 3.0, "b": 1.0}, time=5.0)

    assert bound_formula("a if t > 2 else b")(view) == 3.0
    assert bound_formula("time * timestep + step")(view) == 5.0

    view.day_of_year = 60
    view.days_this_year = 366
    assert bound_formula("day_of_year / days_this_year")(view) == 60 / 366


def test_formula_reference_functions():
    """Test explicit result(), last(), param() and input() reads"""
    model = Model("refs")
    model.register_parameter_double("rate", default=0.1)
    model.register_input("rain")
    model.register_equation("Storage", body=lambda v: 1.0)
    model.register_equation("Soil water", body=lambda v: 1.0)
    view = FakeView(
        results={"Storage": 10.0, "Soil water": 3.0},
        last={"Storage": 8.0},
        parameters={"rate": 0.5},
        inputs={"rain": 2.0},
    )

    formula = bound_formula("last(Storage) + rate * rain - Soil_water", model)

    assert formula(view) == 8.0 + 0.5 * 2.0 - 3.0
    assert bound_formula("result(Storage) + param(rate) + input(rain)", model)(view) == 12.5
    assert bound_formula("result('Soil water')", model)(view) == 3.0


def test_formula_bind_reports_reads():
    """Test that binding returns every read"""
    model = Model("reads")
    model.register_parameter_double("k", default=1.0)
    model.register_equation("S", body=lambda v: 1.0)
    formula = FormulaBody("k * S + last(S)")

    reads = formula.bind(model)

    assert formula.bound
    assert sorted(reads) == [("equation", "S", False), ("equation", "S", True), ("parameter", "k", False)]


def test_formula_ambiguous_reference():
    """Test that a name used in two categories needs a reference function"""
    model = Model("ambiguous")
    model.register_parameter_double("flow", default=1.0)
    model.register_equation("flow", body=lambda v: 1.0)

    with pytest.raises(FormulaError) as exc_info:
        bound_formula("flow * 2", model)
    assert exc_info.value.code == "ambiguous_reference"

    view = FakeView(results={"flow": 3.0}, parameters={"flow": 2.0})
    assert bound_formula("result(flow) * param(flow)", model)(view) == 6.0


def test_formula_undefined_variable():
    """Test binding against unknown names"""
    with pytest.raises(FormulaError) as exc_info:
        bound_formula("a + unknown")

    assert exc_info.value.code == "undefined_variable"
    assert exc_info.value.details["name"] == "unknown"


def test_formula_syntax_error():
    """Test that syntax errors are reported at construction"""
    with pytest.raises(FormulaError) as exc_info:
        FormulaBody("a + * b")
    assert exc_info.value.code == "syntax_error"

    with pytest.raises(FormulaError) as exc_info:
        FormulaBody("   ")
    assert exc_info.value.code == "empty_formula"


def test_formula_unsafe_constructs():
    """Test that calls and nodes outside the safe subset are rejected"""
    with pytest.raises(FormulaError) as exc_info:
        FormulaBody("__import__('os')")
    assert exc_info.value.code == "function_not_allowed"

    with pytest.raises(FormulaError) as exc_info:
        FormulaBody("a.real")
    assert exc_info.value.code == "unsupported_node_type"

    with pytest.raises(FormulaError) as exc_info:
        FormulaBody("max(a, key=b)")
    assert exc_info.value.code == "invalid_function_call"

    with pytest.raises(FormulaError) as exc_info:
        FormulaBody("last(a + b)")
    assert exc_info.value.code == "invalid_reference"

    with pytest.raises(FormulaError):
        FormulaBody("a in b")


def test_formula_runtime_errors():
    """Test errors raised while evaluating"""
    view = FakeView(parameters={"a": -1.0, "b": 0.0})

    with pytest.raises(EvaluationError) as exc_info:
        bound_formula("a / b")(view)
    assert exc_info.value.code == "division_by_zero"

    with pytest.raises(EvaluationError) as exc_info:
        bound_formula("sqrt(a)")(view)
    assert exc_info.value.code == "math_domain_error"

    with pytest.raises(EvaluationError) as exc_info:
        FormulaBody("1 + 2")(view)
    assert exc_info.value.code == "unbound_formula"


def test_alias():
    """Test identifier aliases of symbol names"""
    assert alias("Soil water") == "Soil_water"
    assert alias("N-load (kg)") == "N_load__kg_"
    assert alias("2nd layer") == "_2nd_layer"


def test_formula_model_run():
    """Test formula bodies inside a full run"""
    model = Model("formula_run")
    c = model.register_index_set("Compartment", ["A", "B"])
    model.register_parameter_double("P", default=1.5, index_sets=[c])
    model.register_equation("E", body="2 * P")
    model.register_equation("Sum", body="last(Sum) + E")
    model.end_definition()
    dataset = DataSet(model)

    outcome = run_model(dataset, RunConfig(n_steps=3))

    assert outcome.success
    assert dataset.read("E", "A") == 3.0
    assert dataset.read("Sum", "B") == 9.0


def test_formula_division_by_zero_fails_run():
    """Test that a formula error during a run is reported with its symbol"""
    model = Model("formula_fail")
    model.register_parameter_double("d", default=0.0)
    model.register_equation("Q", body="1 / d")
    model.end_definition()
    dataset = DataSet(model)

    outcome = run_model(dataset, RunConfig(n_steps=1))

    assert outcome.failure_kind == "division_by_zero"
    assert outcome.details["symbol"] == "Q"
    assert outcome.details["step"] == 0
