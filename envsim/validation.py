"""
Validation layer for envsim runs
Checks run configuration, parameter values and input series before a run
starts, collecting every finding instead of stopping at the first
"""

from typing import List, Optional, Set, Tuple
from pydantic import BaseModel
import math

import numpy as np

from envsim.config import Settings, get_settings
from envsim.constants import (
    INPUT,
    MAX_SIMULATION_STEPS,
    PARAMETER_DOUBLE,
    PARAMETER_INT,
)
from envsim.exceptions import Diagnostic
from envsim.models import RunConfig
from envsim.types import ValidationSummaryDict


class ValidationResult(BaseModel):
    """Result of validation"""

    valid: bool
    errors: List[Diagnostic]
    warnings: List[Diagnostic] = []


# ============================================================================
# Configuration Validation
# ============================================================================


def validate_run_config(config: RunConfig, settings: Optional[Settings] = None) -> List[Diagnostic]:
    """
    Validate run configuration

    Rules:
    - the run length is given by n_steps or end_time
    - end_time >= start_time
    - total steps <= the configured maximum
    - time values are finite
    """
    settings = settings or get_settings()
    errors: List[Diagnostic] = []

    if not math.isfinite(config.start_time) or not math.isfinite(config.time_step):
        errors.append(
            Diagnostic(
                code="non_finite_time",
                message="start_time and time_step must be finite numbers",
                field="start_time",
            )
        )
        return errors

    if config.n_steps is None and config.end_time is None:
        errors.append(
            Diagnostic(
                code="missing_run_length",
                message="Either n_steps or end_time must be given",
                field="n_steps",
                suggestion="Set n_steps to the number of timesteps to run",
            )
        )
        return errors

    if config.n_steps is None and config.end_time < config.start_time:
        errors.append(
            Diagnostic(
                code="invalid_time_range",
                message=f"End time ({config.end_time}) must not be before start time ({config.start_time})",
                field="end_time",
                suggestion=f"Set end_time to a value of at least {config.start_time}",
            )
        )

    limit = min(settings.max_simulation_steps, MAX_SIMULATION_STEPS)
    n_steps = config.get_num_steps()
    if n_steps > limit:
        errors.append(
            Diagnostic(
                code="too_many_steps",
                message=f"Run would require {n_steps:,} steps, exceeding maximum of {limit:,}",
                field="n_steps",
                suggestion="Increase time_step or reduce the number of steps",
            )
        )

    return errors


# ============================================================================
# Parameter Validation
# ============================================================================


def validate_parameter_values(dataset) -> Tuple[List[Diagnostic], List[Diagnostic]]:
    """
    Validate the parameter values stored in a data set

    Returns:
        Tuple of (errors, warnings): non-finite numbers are errors, values
        outside the recommended min/max are warnings
    """
    errors: List[Diagnostic] = []
    warnings: List[Diagnostic] = []

    for spec in dataset.model.parameters():
        if spec.kind not in (PARAMETER_DOUBLE, PARAMETER_INT):
            continue
        values = dataset.parameters[spec.name]
        layout = dataset.parameter_layout[spec.name]

        if spec.kind == PARAMETER_DOUBLE and not np.all(np.isfinite(values)):
            errors.append(
                Diagnostic(
                    code="non_finite_parameter",
                    message=f"Parameter '{spec.name}' has NaN or infinite values",
                    symbol=spec.name,
                    suggestion="Set every instance to a finite number",
                )
            )
            continue

        for members, offset in layout.offsets.items():
            value = values[offset]
            if spec.is_within_bounds(value):
                continue
            where = f" at {members}" if members else ""
            warnings.append(
                Diagnostic(
                    code="parameter_out_of_range",
                    message=(
                        f"Parameter '{spec.name}'{where} is {value}, outside its recommended "
                        f"range [{spec.min_value}, {spec.max_value}]"
                    ),
                    symbol=spec.name,
                    context={"index": list(members), "value": float(value)},
                )
            )

    return errors, warnings


# ============================================================================
# Input Validation
# ============================================================================


def _inputs_read(model) -> Set[str]:
    if model.analysis is None:
        return set()
    return {
        ref.name
        for refs in model.analysis.references.values()
        for ref in refs
        if ref.category == INPUT
    }


def validate_inputs(dataset, n_steps: int) -> Tuple[List[Diagnostic], List[Diagnostic]]:
    """
    Validate input series against the run length

    Rules:
    - provided series cover every step of the run (error)
    - inputs read by equations were provided (warning; they read as 0)
    """
    errors: List[Diagnostic] = []
    warnings: List[Diagnostic] = []
    read = _inputs_read(dataset.model)

    for spec in dataset.model.inputs():
        provided = dataset.input_provided[spec.name]
        if provided.any() and dataset.n_input_steps < n_steps:
            errors.append(
                Diagnostic(
                    code="input_series_too_short",
                    message=(
                        f"Input '{spec.name}' covers {dataset.n_input_steps} step(s) "
                        f"but the run has {n_steps}"
                    ),
                    symbol=spec.name,
                    suggestion="Provide a value for every timestep or shorten the run",
                )
            )
        if spec.name in read and not provided.all():
            missing = int((~provided).sum())
            warnings.append(
                Diagnostic(
                    code="input_not_provided",
                    message=(
                        f"Input '{spec.name}' is read by the model but {missing} of "
                        f"{len(provided)} instance(s) were never provided; they read as 0"
                    ),
                    symbol=spec.name,
                )
            )

    return errors, warnings


# ============================================================================
# Data set Validation
# ============================================================================


def validate_dataset(dataset, config: RunConfig, settings: Optional[Settings] = None) -> ValidationResult:
    """
    Orchestrate all pre-run checks

    Validation order:
    1. Run configuration
    2. Parameter values
    3. Input series (only if the run length is known)

    Returns:
        ValidationResult with errors and warnings
    """
    errors: List[Diagnostic] = []
    warnings: List[Diagnostic] = []

    config_errors = validate_run_config(config, settings)
    errors.extend(config_errors)

    parameter_errors, parameter_warnings = validate_parameter_values(dataset)
    errors.extend(parameter_errors)
    warnings.extend(parameter_warnings)

    if not config_errors:
        input_errors, input_warnings = validate_inputs(dataset, config.get_num_steps())
        errors.extend(input_errors)
        warnings.extend(input_warnings)

    return ValidationResult(
        valid=len(errors) == 0,
        errors=errors,
        warnings=warnings,
    )


# ============================================================================
# Utility Functions
# ============================================================================


def get_validation_summary(result: ValidationResult) -> ValidationSummaryDict:
    """
    Get a summary of validation results

    Returns:
        Dictionary with error counts by code and by symbol
    """
    summary: ValidationSummaryDict = {
        "valid": result.valid,
        "error_count": len(result.errors),
        "warning_count": len(result.warnings),
        "errors_by_code": {},
        "errors_by_symbol": {},
    }

    for error in result.errors:
        summary["errors_by_code"][error.code] = summary["errors_by_code"].get(error.code, 0) + 1
        symbol = error.symbol or "config"
        summary["errors_by_symbol"][symbol] = summary["errors_by_symbol"].get(symbol, 0) + 1

    return summary
