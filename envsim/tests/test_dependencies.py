"""
Tests for dependency discovery and signature resolution
"""

import pytest
from envsim.constants import EQUATION, INDEX_SET, PARAMETER, PREVIOUS_STEP, SAME_STEP
from envsim.dependencies import (
    Reference,
    discover_references,
    scan_references,
    trace_references,
)
from envsim.exceptions import (
    FormulaError,
    SignatureMismatchError,
    UnknownSymbolError,
)
from envsim.registry import Model


def compartment_model():
    model = Model("compartments")
    compartment = model.register_index_set("Compartment", ["A", "B"])
    layer = model.register_index_set("Layer", [1, 2])
    return model, compartment, layer


def test_signature_inferred_from_reads():
    """Test that an undeclared signature is the union of what the body reads"""
    model, compartment, layer = compartment_model()
    p = model.register_parameter_double("P", default=1.0, index_sets=[compartment])
    q = model.register_parameter_double("Q", default=1.0, index_sets=[layer])
    model.register_equation("E", body=lambda v: v.parameter(p) + v.parameter(q))
    model.end_definition()

    assert model.signature_of(EQUATION, "E") == ("Compartment", "Layer")


def test_signature_inferred_transitively():
    """Test that inferred signatures propagate through equation reads"""
    model, compartment, _ = compartment_model()
    p = model.register_parameter_double("P", default=1.0, index_sets=[compartment])
    model.register_equation("Top", body=lambda v: v.result("Middle") + 1.0)
    model.register_equation("Middle", body=lambda v: v.result("Bottom") * 2.0)
    model.register_equation("Bottom", body=lambda v: v.parameter(p))
    model.end_definition()

    assert model.signature_of(EQUATION, "Top") == ("Compartment",)
    assert model.signature_of(EQUATION, "Middle") == ("Compartment",)


def test_signature_from_index_read():
    """Test that reading the bound member of a set adds that set"""
    model, compartment, _ = compartment_model()
    model.register_equation(
        "Label", body=lambda v: 1.0 if v.index(compartment) == "A" else 2.0
    )
    model.end_definition()

    assert model.signature_of(EQUATION, "Label") == ("Compartment",)


def test_signature_from_initial_value():
    """Test that an equation is indexed at least like its initial value"""
    model, compartment, _ = compartment_model()
    depth0 = model.register_parameter_double("depth0", default=1.0, index_sets=[compartment])
    solver = model.register_solver("s", "euler", 1.0)
    model.register_equation_ode("depth", body=lambda v: 0.0, solver=solver, initial_value=depth0)
    model.end_definition()

    assert model.signature_of(EQUATION, "depth") == ("Compartment",)


def test_declared_signature_missing_dimension():
    """Test that a fixed signature must cover everything the body reads"""
    model, compartment, _ = compartment_model()
    p = model.register_parameter_double("P", default=1.0, index_sets=[compartment])
    model.register_equation("Total", body=lambda v: v.parameter(p), index_sets=[])

    with pytest.raises(SignatureMismatchError) as exc_info:
        model.end_definition()

    assert exc_info.value.details["missing"] == ["Compartment"]


def test_pinned_read_removes_dimension():
    """Test that pinning a set with at= lets a scalar equation read one instance"""
    model, compartment, _ = compartment_model()
    p = model.register_parameter_double("P", default=1.0, index_sets=[compartment])
    model.register_equation(
        "FirstP", body=lambda v: v.parameter(p, at={"Compartment": "A"}), index_sets=[]
    )
    model.register_equation("Inferred", body=lambda v: v.parameter(p, at={compartment: "B"}))
    model.end_definition()

    assert model.signature_of(EQUATION, "FirstP") == ()
    assert model.signature_of(EQUATION, "Inferred") == ()


def test_pinning_foreign_set_rejected():
    """Test that a read cannot pin a set the symbol is not indexed by"""
    model, compartment, layer = compartment_model()
    p = model.register_parameter_double("P", default=1.0, index_sets=[compartment])
    model.register_equation("Bad", body=lambda v: v.parameter(p, at={layer: 1}))

    with pytest.raises(SignatureMismatchError):
        model.end_definition()


def test_same_step_and_previous_step_edges():
    """Test that result() and last_result() reads become different edge kinds"""
    model = Model("edges")
    model.register_equation("A", body=lambda v: 1.0)
    model.register_equation("B", body=lambda v: v.result("A") + v.last_result("C"))
    model.register_equation("C", body=lambda v: v.result("B"))
    model.end_definition()

    analysis = model.analysis
    assert analysis.same_step["B"] == {"A"}
    assert analysis.previous_step["B"] == {"C"}
    assert ("A", "B", SAME_STEP) in analysis.edges()
    assert ("C", "B", PREVIOUS_STEP) in analysis.edges()


def test_scan_finds_reads_in_branches_not_taken():
    """Test that static scanning sees reads the trace run skips"""
    model = Model("branches")
    wet = model.register_parameter_bool("wet", default=False)
    model.register_equation("Rain", body=lambda v: 3.0)
    model.register_equation("Dry", body=lambda v: 0.5)

    def flux(v):
        if v.parameter(wet):
            return v.result("Rain")
        return v.result("Dry")

    traced = {r.name for r in trace_references(model, flux) if r.category == EQUATION}
    scanned = {r.name for r in scan_references(model, flux) if r.category == EQUATION}

    assert traced == {"Dry"}
    assert scanned == {"Rain", "Dry"}


def test_trace_finds_dynamic_reads():
    """Test that reads through computed names are found by the trace run"""
    model = Model("dynamic")
    for name in ("X1", "X2", "X3"):
        model.register_equation(name, body=lambda v: 1.0)
    names = ["X1", "X2", "X3"]

    def total(v):
        value = 0.0
        for name in names:
            value += v.result(name)
        return value

    reads = discover_references(model, total)

    assert [r.name for r in reads] == names


def test_callable_object_body():
    """Test that callable objects are scanned with their attributes resolved"""
    model = Model("callable")
    k = model.register_parameter_double("k", default=0.3)

    class Scaled:
        def __init__(self, parameter):
            self.parameter = parameter

        def __call__(self, v):
            return 2.0 * v.parameter(self.parameter)

    reads = scan_references(model, Scaled(k))

    assert reads == [Reference(PARAMETER, "k")]


def test_index_read_reference():
    """Test that index() calls are recorded as index set references"""
    model, compartment, _ = compartment_model()

    reads = discover_references(model, lambda v: float(v.index(compartment) == "A"))

    assert Reference(INDEX_SET, "Compartment") in reads


def test_unknown_symbol_in_body():
    """Test that reading an unregistered symbol fails the build"""
    model = Model("unknown")
    model.register_equation("E", body=lambda v: v.result("Nowhere"))

    with pytest.raises(UnknownSymbolError):
        model.end_definition()


def test_formula_references_bound_at_build():
    """Test that formula references are resolved when the model is finished"""
    model = Model("formula")
    model.register_parameter_double("k", default=2.0)
    model.register_equation("A", body="k * 3")
    model.register_equation("B", body="A + last(B)")
    model.end_definition()

    assert model.analysis.same_step["B"] == {"A"}
    assert model.analysis.previous_step["B"] == {"B"}


def test_formula_unknown_name_fails_build():
    """Test that a formula naming an unknown symbol fails the build"""
    model = Model("formula_unknown")
    model.register_equation("A", body="k * 3")

    with pytest.raises(FormulaError) as exc_info:
        model.end_definition()

    assert exc_info.value.code == "undefined_variable"


def test_tracing_can_be_disabled():
    """Test that discovery falls back to scanning alone when tracing is off"""
    model = Model("no_trace")
    model.register_equation("X1", body=lambda v: 1.0)
    names = ["X1"]

    def total(v):
        return sum(v.result(n) for n in names)

    assert discover_references(model, total, trace=False) == []
    assert [r.name for r in discover_references(model, total)] == ["X1"]
