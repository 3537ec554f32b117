"""
Pydantic models for the envsim engine
Defines handles, declaration records, run configuration and run outcomes
"""

from datetime import date, timedelta
import math
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import List, Dict, Optional, Any, Callable, Tuple, Union

from envsim.constants import (
    VALID_PARAMETER_KINDS,
    VALID_EQUATION_KINDS,
    VALID_SOLVER_METHODS,
    PARAMETER_DOUBLE,
    PARAMETER_INT,
    PARAMETER_BOOL,
    PARAMETER_ENUM,
    ODE,
    ALGEBRAIC,
    FIXED_STEP_METHODS,
)


class Handle(BaseModel):
    """
    Stable opaque reference to a registered entity

    Attributes:
        category: Registry category ('parameter', 'input', 'equation', ...)
        name: Registered name, unique within its category
        index: Registration position within the category
    """

    model_config = ConfigDict(frozen=True)

    category: str
    name: str
    index: int

    def __str__(self) -> str:
        return f"{self.category}:{self.name}"


# Anything an equation body may pass to identify a symbol
SymbolRef = Union[Handle, str]


class ParameterGroupSpec(BaseModel):
    """
    Named group of parameters sharing an index set signature

    Attributes:
        name: Group name
        index_sets: Index sets added by this group
        parent: Optional parent group; its index sets are prepended
        module: Module that declared the group
    """

    name: str
    index_sets: Tuple[str, ...] = ()
    parent: Optional[str] = None
    module: Optional[str] = None


class ParameterSpec(BaseModel):
    """
    Declared parameter

    Attributes:
        name: Parameter name
        kind: 'double', 'int', 'bool' or 'enum'
        unit: Unit label (diagnostics only)
        index_sets: Signature the parameter is replicated over
        group: Owning parameter group, if any
        default: Default value written into freshly allocated storage
        min_value: Lower recommended bound (double/int)
        max_value: Upper recommended bound (double/int)
        choices: Allowed values (enum)
        description: Free text shown in diagnostics
    """

    name: str
    kind: str = PARAMETER_DOUBLE
    unit: str = ""
    index_sets: Tuple[str, ...] = ()
    group: Optional[str] = None
    default: Any = 0.0
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    choices: Tuple[str, ...] = ()
    description: Optional[str] = None
    module: Optional[str] = None
    order: int = 0

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        """Validate parameter kind"""
        if v not in VALID_PARAMETER_KINDS:
            raise ValueError(
                f"Parameter kind must be one of {sorted(VALID_PARAMETER_KINDS)}, got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def validate_default(self) -> "ParameterSpec":
        """Check that bounds are ordered and the default fits the kind"""
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError(
                f"Parameter '{self.name}': min ({self.min_value}) exceeds max ({self.max_value})"
            )
        if self.kind == PARAMETER_ENUM:
            if not self.choices:
                raise ValueError(f"Enum parameter '{self.name}' needs at least one choice")
            if len(set(self.choices)) != len(self.choices):
                raise ValueError(f"Enum parameter '{self.name}' has duplicate choices")
            if self.default not in self.choices:
                raise ValueError(
                    f"Default '{self.default}' of enum parameter '{self.name}' is not one of {list(self.choices)}"
                )
        elif self.kind == PARAMETER_BOOL:
            if not isinstance(self.default, bool):
                raise ValueError(f"Bool parameter '{self.name}' needs a bool default")
        elif self.kind == PARAMETER_INT:
            if isinstance(self.default, bool) or not isinstance(self.default, int):
                raise ValueError(f"Int parameter '{self.name}' needs an int default")
        else:
            if isinstance(self.default, bool) or not isinstance(self.default, (int, float)):
                raise ValueError(f"Double parameter '{self.name}' needs a numeric default")
            self.default = float(self.default)
        return self

    def is_within_bounds(self, value: Any) -> bool:
        """Check a value against the recommended min/max"""
        if self.kind not in (PARAMETER_DOUBLE, PARAMETER_INT):
            return True
        if self.min_value is not None and value < self.min_value:
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        return True


class InputSpec(BaseModel):
    """
    Declared input time series

    Attributes:
        name: Input name
        unit: Unit label
        index_sets: Signature the series is replicated over
        description: Free text
    """

    name: str
    unit: str = ""
    index_sets: Tuple[str, ...] = ()
    description: Optional[str] = None
    module: Optional[str] = None
    order: int = 0


class SolverSpec(BaseModel):
    """
    Numerical solver assignment for ODE blocks

    Attributes:
        name: Solver name
        method: Stepping method (see constants.VALID_SOLVER_METHODS)
        step_size: Base step as a fraction of the model timestep
        relative_tolerance: Relative error bound (adaptive methods)
        absolute_tolerance: Absolute error bound (adaptive methods)
        max_retries: Rejected sub-steps allowed per timestep (adaptive methods)
        min_step: Smallest sub-step as a fraction of the model timestep
    """

    name: str
    method: str
    step_size: float = Field(..., gt=0, le=1, description="Fraction of the model timestep")
    relative_tolerance: float = Field(1e-4, gt=0)
    absolute_tolerance: float = Field(1e-6, gt=0)
    max_retries: int = Field(20, ge=0)
    min_step: float = Field(1e-10, gt=0)
    module: Optional[str] = None

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        """Validate solver method"""
        if v not in VALID_SOLVER_METHODS:
            raise ValueError(
                f"Solver method must be one of {sorted(VALID_SOLVER_METHODS)}, got '{v}'"
            )
        return v

    @property
    def is_adaptive(self) -> bool:
        return self.method not in FIXED_STEP_METHODS

    def substeps(self) -> int:
        """Number of fixed sub-steps per model timestep"""
        return max(1, int(round(1.0 / self.step_size)))


class EquationSpec(BaseModel):
    """
    Declared equation

    Attributes:
        name: Equation name
        kind: 'algebraic', 'ode' or 'initial_value'
        unit: Unit label
        declared_index_sets: Fixed signature, or None to infer it from reads
        body: Callable (StorageView) -> value
        solver: Assigned solver name (required for ODE equations)
        initial_value: Initial-value equation or parameter seeding this equation
        reset_every_timestep: ODE integrates from 0 at every step
        description: Free text
        order: Global registration order, used to break scheduling ties
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    kind: str = ALGEBRAIC
    unit: str = ""
    declared_index_sets: Optional[Tuple[str, ...]] = None
    body: Optional[Callable[..., Any]] = None
    solver: Optional[str] = None
    initial_value: Optional[Handle] = None
    reset_every_timestep: bool = False
    description: Optional[str] = None
    module: Optional[str] = None
    order: int = 0

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        """Validate equation kind"""
        if v not in VALID_EQUATION_KINDS:
            raise ValueError(
                f"Equation kind must be one of {sorted(VALID_EQUATION_KINDS)}, got '{v}'"
            )
        return v

    @property
    def is_ode(self) -> bool:
        return self.kind == ODE

    def has_body(self) -> bool:
        """Check if the equation has a body"""
        return self.body is not None


class RunConfig(BaseModel):
    """
    Configuration for a run

    Attributes:
        start_time: Simulation time at the start of the first step
        time_step: Length of one timestep (must be > 0)
        n_steps: Number of steps to run (takes precedence over end_time)
        end_time: Alternative to n_steps; steps are counted from start_time
        start_date: Calendar date of the first step; when set, time_step is
            measured in days
        verbose: Enable detailed logging
    """

    start_time: float = 0.0
    time_step: float = Field(1.0, gt=0, description="Time step must be greater than 0")
    n_steps: Optional[int] = Field(None, ge=0)
    end_time: Optional[float] = None
    start_date: Optional[date] = None
    verbose: bool = False

    def date_at(self, step: int) -> Optional[date]:
        """Calendar date of a step (None without a start date)"""
        if self.start_date is None:
            return None
        # Fractional days stay within the date they started on
        return self.start_date + timedelta(days=step * self.time_step)

    def get_num_steps(self) -> int:
        """Calculate the number of simulation steps"""
        if self.n_steps is not None:
            return self.n_steps
        if self.end_time is None or self.time_step <= 0:
            return 0
        # Tolerate floating point noise in (end - start) / dt
        return max(0, int(math.floor((self.end_time - self.start_time) / self.time_step + 1e-9)))


class RunOutcome(BaseModel):
    """
    Result of a run

    Attributes:
        success: Whether the run completed
        state: Final run state
        failure_kind: Error code of the fatal error (if any)
        error: Error message (if any)
        details: Structured error context (symbol, index, step, time)
        steps_completed: Number of fully completed timesteps
        time: Time points of recorded history rows
        wall_time: Wall-clock seconds spent in the run
        unit_timings: Seconds spent per evaluation unit (when profiling)
    """

    success: bool
    state: str
    failure_kind: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = {}
    steps_completed: int = 0
    time: List[float] = []
    wall_time: Optional[float] = None
    unit_timings: Optional[Dict[str, float]] = None


class ScheduleEntry(BaseModel):
    """
    One equation in the cached evaluation order

    Attributes:
        name: Equation name
        kind: Equation kind
        batch: Evaluation batch (longest same-step path from a source unit)
        position: Position of the owning unit in the schedule
        unit: Label of the owning unit
    """

    name: str
    kind: str
    batch: int
    position: int
    unit: str
