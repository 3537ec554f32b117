"""
Tests for the symbol registry (model definition API)
"""

import pytest
from envsim.constants import EQUATION, INPUT, PARAMETER
from envsim.exceptions import (
    ModelBuildError,
    NameCollisionError,
    UnknownSymbolError,
)
from envsim.formula import FormulaBody
from envsim.registry import Model


def test_registration_returns_stable_handles():
    """Test that handles returned at registration match later lookups"""
    model = Model("handles")
    p = model.register_parameter_double("k", default=0.1)
    x = model.register_input("rain", unit="mm")
    e = model.register_equation("Runoff", body=lambda v: v.parameter(p) * v.input(x))

    assert model.get_parameter_handle("k") == p
    assert model.get_input_handle("rain") == x
    assert model.get_equation_handle("Runoff") == e
    assert e.category == EQUATION
    assert str(p) == "parameter:k"


def test_name_collision_within_category():
    """Test that a name may be registered only once per category"""
    model = Model("collision")
    model.register_parameter_double("k")

    with pytest.raises(NameCollisionError) as exc_info:
        model.register_parameter_int("k")

    assert exc_info.value.code == "name_collision"
    assert exc_info.value.details["category"] == PARAMETER


def test_same_name_in_different_categories():
    """Test that categories have separate namespaces and resolve() asks for one"""
    model = Model("namespaces")
    model.register_parameter_double("flow")
    model.register_equation("flow", body=lambda v: 1.0)

    assert model.resolve("flow", PARAMETER).category == PARAMETER
    assert model.resolve("flow", EQUATION).category == EQUATION

    with pytest.raises(ModelBuildError) as exc_info:
        model.resolve("flow")

    assert exc_info.value.code == "ambiguous_symbol"


def test_resolve_unknown_name():
    """Test lookup of a name that was never registered"""
    model = Model("unknown")

    with pytest.raises(UnknownSymbolError):
        model.resolve("missing")

    with pytest.raises(UnknownSymbolError):
        model.get_equation_handle("missing")


def test_unknown_index_set_in_declaration():
    """Test that declarations may only use registered index sets"""
    model = Model("sets")

    with pytest.raises(UnknownSymbolError):
        model.register_parameter_double("k", index_sets=["Compartment"])


def test_parameter_groups_replicate_over_index_sets():
    """Test that grouped parameters take the group's (and parent group's) index sets"""
    model = Model("groups")
    catchment = model.register_index_set("Catchment", ["C1", "C2"])
    landscape = model.register_index_set("Landscape", ["forest", "field"])
    outer = model.register_parameter_group("Catchment params", index_sets=[catchment])
    inner = model.register_parameter_group("Land params", index_sets=[landscape], parent=outer)

    model.register_parameter_double("area", default=1.0, group=outer)
    model.register_parameter_double("cover", default=0.5, group=inner)

    assert model.signature_of(PARAMETER, "area") == ("Catchment",)
    assert model.signature_of(PARAMETER, "cover") == ("Catchment", "Landscape")

    with pytest.raises(ModelBuildError) as exc_info:
        model.register_parameter_double("depth", group=inner, index_sets=[catchment])

    assert exc_info.value.code == "invalid_declaration"


def test_parameter_kinds_and_defaults():
    """Test parameter declarations of every kind"""
    model = Model("kinds")
    model.register_parameter_int("layers", default=3, min_value=1, max_value=10)
    model.register_parameter_bool("irrigate", default=True)
    model.register_parameter_enum("scheme", ["simple", "detailed"])

    assert model.parameter_spec("layers").default == 3
    assert model.parameter_spec("irrigate").default is True
    assert model.parameter_spec("scheme").default == "simple"


def test_invalid_parameter_declarations():
    """Test that bad defaults and bounds are rejected at declaration"""
    model = Model("invalid")

    with pytest.raises(ModelBuildError) as exc_info:
        model.register_parameter_double("k", default=1.0, min_value=5.0, max_value=2.0)
    assert exc_info.value.code == "invalid_declaration"

    with pytest.raises(ModelBuildError):
        model.register_parameter_enum("scheme", ["a", "b"], default="c")

    with pytest.raises(ModelBuildError):
        model.register_parameter_int("n", default=1.5)


def test_invalid_solver_declaration():
    """Test that solver method and step size are validated"""
    model = Model("solvers")

    with pytest.raises(ModelBuildError) as exc_info:
        model.register_solver("s", "leapfrog", 0.1)
    assert exc_info.value.code == "invalid_declaration"

    with pytest.raises(ModelBuildError):
        model.register_solver("s", "rk4", 0.0)

    handle = model.register_solver("s", "rk4", 0.5)
    assert model.solver_spec("s").substeps() == 2
    assert model.get_solver_handle("s") == handle


def test_solver_defaults_from_settings():
    """Test that unset solver tolerances come from the engine settings"""
    model = Model("defaults")
    model.register_solver("stiff", "implicit_euler_adaptive", 0.1)

    spec = model.solver_spec("stiff")
    assert spec.is_adaptive
    assert spec.relative_tolerance > 0
    assert spec.max_retries >= 0


def test_string_body_becomes_formula():
    """Test that a string body is parsed into a formula"""
    model = Model("formula")
    model.register_parameter_double("k", default=2.0)
    model.register_equation("E", body="2 * k")

    assert isinstance(model.equation_spec("E").body, FormulaBody)


def test_body_must_be_callable():
    """Test that a non-callable body is rejected"""
    model = Model("body")

    with pytest.raises(ModelBuildError) as exc_info:
        model.register_equation("E", body=42)

    assert exc_info.value.code == "invalid_body"


def test_equation_decorator_sets_body():
    """Test attaching a body with the decorator form"""
    model = Model("decorator")
    k = model.register_parameter_double("k", default=2.0)
    e = model.register_equation("E")

    @model.equation(e)
    def _(v):
        return 3.0 * v.parameter(k)

    model.end_definition()

    assert model.equation_spec("E").body is _


def test_missing_body_rejected_at_end():
    """Test that every equation needs a body before the model is finished"""
    model = Model("missing")
    model.register_equation("E")

    with pytest.raises(ModelBuildError) as exc_info:
        model.end_definition()

    assert exc_info.value.code == "missing_body"


def test_ode_requires_solver_and_initial_value():
    """Test that ODE equations need a solver and an initial value"""
    model = Model("ode")
    y0 = model.register_parameter_double("y0", default=1.0)
    model.register_equation_ode("y", body=lambda v: -v.result("y"), initial_value=y0)

    with pytest.raises(ModelBuildError) as exc_info:
        model.end_definition()
    assert exc_info.value.code == "missing_solver"

    model2 = Model("ode2")
    solver = model2.register_solver("s", "euler", 1.0)
    model2.register_equation_ode("y", body=lambda v: -v.result("y"), solver=solver)

    with pytest.raises(ModelBuildError) as exc_info:
        model2.end_definition()
    assert exc_info.value.code == "missing_initial_value"


def test_initial_value_source_must_be_initial_value_equation_or_parameter():
    """Test the allowed sources of initial values"""
    model = Model("iv")
    algebraic = model.register_equation("A", body=lambda v: 1.0)
    iv = model.register_equation_initial_value("A0", body=lambda v: 5.0)
    scheme = model.register_parameter_enum("scheme", ["a", "b"])
    rain = model.register_input("rain")
    target = model.register_equation("B", body=lambda v: 2.0)

    for source in (algebraic, scheme, rain):
        with pytest.raises(ModelBuildError) as exc_info:
            model.set_initial_value(target, source)
        assert exc_info.value.code == "invalid_initial_value"

    with pytest.raises(ModelBuildError):
        model.set_initial_value(iv, iv)

    model.set_initial_value(target, iv)
    assert model.equation_spec("B").initial_value == iv


def test_initial_value_equation_cannot_have_solver():
    """Test that initial-value equations are never integrated"""
    model = Model("iv_solver")
    solver = model.register_solver("s", "euler", 1.0)
    iv = model.register_equation_initial_value("A0", body=lambda v: 5.0)

    with pytest.raises(ModelBuildError) as exc_info:
        model.set_solver(iv, solver)

    assert exc_info.value.code == "invalid_solver_assignment"


def test_model_is_frozen_after_end_definition():
    """Test that the definition cannot change once finished"""
    model = Model("frozen")
    model.register_parameter_double("k")
    model.end_definition()

    assert model.finished
    with pytest.raises(ModelBuildError) as exc_info:
        model.register_parameter_double("k2")
    assert exc_info.value.code == "model_frozen"

    with pytest.raises(ModelBuildError):
        model.register_index_set("Late", ["x"])


def test_dependency_order_requires_finished_model():
    """Test that the schedule is only available after end_definition()"""
    model = Model("order")
    model.register_equation("E", body=lambda v: 1.0)

    with pytest.raises(ModelBuildError) as exc_info:
        model.dependency_order()

    assert exc_info.value.code == "model_not_finished"


def test_modules_tag_declarations():
    """Test that declarations remember the module they were made in"""
    model = Model("modules")
    model.begin_module("Hydrology", "1.0")
    model.register_input("rain")
    model.begin_module("Soil")
    model.register_parameter_double("porosity")

    assert model.input_spec("rain").module == "Hydrology (1.0)"
    assert model.parameter_spec("porosity").module == "Soil"
    assert model.modules == [("Hydrology", "1.0"), ("Soil", "")]


def test_handle_for_checks_category():
    """Test that a handle of the wrong category is rejected"""
    model = Model("categories")
    k = model.register_parameter_double("k")

    with pytest.raises(ModelBuildError) as exc_info:
        model.handle_for(k, INPUT)

    assert exc_info.value.code == "invalid_reference"


def test_verbose_end_definition_logs_structure(caplog):
    """Test that a verbose model logs its structure when finished"""
    model = Model("verbose", verbose=True)
    c = model.register_index_set("Compartment", ["A", "B"])
    model.register_parameter_double("P", default=1.0, index_sets=[c])
    model.register_equation("E", body=lambda v: 2.0 * v.parameter("P"))

    with caplog.at_level("INFO"):
        model.end_definition()

    assert "MODEL DEFINITION: verbose" in caplog.text
    assert "Evaluation order:" in caplog.text
