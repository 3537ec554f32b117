"""
Tests for pre-run validation
"""

from envsim.config import Settings
from envsim.models import RunConfig
from envsim.registry import Model
from envsim.simulation import run_model
from envsim.storage import DataSet
from envsim.validation import (
    get_validation_summary,
    validate_dataset,
    validate_inputs,
    validate_parameter_values,
    validate_run_config,
)


def soil_dataset():
    model = Model("soil")
    layer = model.register_index_set("Layer", [1, 2])
    porosity = model.register_parameter_double(
        "porosity", default=0.4, min_value=0.0, max_value=1.0, index_sets=[layer]
    )
    model.register_parameter_int("layers", default=2, min_value=1)
    rain = model.register_input("rain", unit="mm")
    model.register_input("unused")
    model.register_equation("Water", body=lambda v: v.parameter(porosity) * v.input(rain))
    model.end_definition()
    return DataSet(model)


def test_validate_run_config_valid():
    """Test that a plain configuration passes"""
    assert validate_run_config(RunConfig(n_steps=10)) == []
    assert validate_run_config(RunConfig(end_time=5.0, time_step=0.5)) == []


def test_validate_run_config_missing_run_length():
    """Test that the run length is required"""
    errors = validate_run_config(RunConfig())

    assert len(errors) == 1
    assert errors[0].code == "missing_run_length"


def test_validate_run_config_invalid_time_range():
    """Test that end_time must not precede start_time"""
    errors = validate_run_config(RunConfig(start_time=10.0, end_time=5.0))

    assert [e.code for e in errors] == ["invalid_time_range"]
    assert errors[0].field == "end_time"


def test_validate_run_config_too_many_steps():
    """Test the configured step limit"""
    errors = validate_run_config(RunConfig(n_steps=11), Settings(max_simulation_steps=10))

    assert [e.code for e in errors] == ["too_many_steps"]
    assert validate_run_config(RunConfig(n_steps=10), Settings(max_simulation_steps=10)) == []


def test_parameter_out_of_range_is_a_warning():
    """Test that values outside the recommended range only warn"""
    dataset = soil_dataset()
    dataset.set_parameter_value("porosity", 1.2, index=2)

    errors, warnings = validate_parameter_values(dataset)

    assert errors == []
    assert len(warnings) == 1
    assert warnings[0].code == "parameter_out_of_range"
    assert warnings[0].symbol == "porosity"
    assert warnings[0].context == {"index": [2], "value": 1.2}


def test_non_finite_parameter_is_an_error():
    """Test that NaN parameter values fail validation"""
    dataset = soil_dataset()
    dataset.set_parameter_value("porosity", float("nan"), index=1)

    errors, warnings = validate_parameter_values(dataset)

    assert [e.code for e in errors] == ["non_finite_parameter"]
    assert warnings == []


def test_input_not_provided_is_a_warning():
    """Test that inputs read by the model but never provided are reported"""
    dataset = soil_dataset()

    errors, warnings = validate_inputs(dataset, n_steps=3)

    assert errors == []
    # "unused" is never read, so only "rain" is reported
    assert [w.symbol for w in warnings] == ["rain"]
    assert warnings[0].code == "input_not_provided"


def test_input_series_too_short():
    """Test that a provided series must cover the run"""
    dataset = soil_dataset()
    dataset.set_input_series("rain", [1.0, 2.0])

    errors, warnings = validate_inputs(dataset, n_steps=3)

    assert [e.code for e in errors] == ["input_series_too_short"]
    assert warnings == []


def test_validate_dataset_collects_everything():
    """Test that every finding is collected in one result"""
    dataset = soil_dataset()
    dataset.set_parameter_value("porosity", float("nan"))
    dataset.set_input_series("rain", [1.0])

    result = validate_dataset(dataset, RunConfig(n_steps=4))

    assert not result.valid
    assert [e.code for e in result.errors] == ["non_finite_parameter", "input_series_too_short"]

    summary = get_validation_summary(result)
    assert summary["error_count"] == 2
    assert summary["errors_by_code"] == {"non_finite_parameter": 1, "input_series_too_short": 1}
    assert summary["errors_by_symbol"] == {"porosity": 1, "rain": 1}


def test_config_errors_skip_input_checks():
    """Test that input checks need a known run length"""
    dataset = soil_dataset()
    dataset.set_input_series("rain", [1.0])

    result = validate_dataset(dataset, RunConfig())

    assert [e.code for e in result.errors] == ["missing_run_length"]
    assert get_validation_summary(result)["errors_by_symbol"] == {"config": 1}


def test_run_with_warnings_still_runs():
    """Test that warnings do not block a run"""
    dataset = soil_dataset()
    dataset.set_parameter_value("porosity", 1.5)

    outcome = run_model(dataset, RunConfig(n_steps=2))

    assert outcome.success
    # rain was never provided, so it reads as 0
    assert dataset.read("Water", 1) == 0.0
