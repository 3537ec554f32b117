"""
Symbol registry for the envsim engine
Build-time API used by model-definition code to declare index sets,
parameters, inputs, solvers and equations
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging

from pydantic import ValidationError as PydanticValidationError

from envsim.config import get_settings
from envsim.constants import (
    INDEX_SET,
    UNIT,
    PARAMETER_GROUP,
    PARAMETER,
    INPUT,
    EQUATION,
    SOLVER,
    READABLE_CATEGORIES,
    PARAMETER_DOUBLE,
    PARAMETER_INT,
    PARAMETER_BOOL,
    PARAMETER_ENUM,
    ALGEBRAIC,
    ODE,
    INITIAL_VALUE,
)
from envsim.exceptions import (
    ModelBuildError,
    NameCollisionError,
    UnknownSymbolError,
)
from envsim.formula import FormulaBody
from envsim.index_space import IndexSpace
from envsim.models import (
    Handle,
    SymbolRef,
    ParameterGroupSpec,
    ParameterSpec,
    InputSpec,
    SolverSpec,
    EquationSpec,
    ScheduleEntry,
)
from envsim.types import Member

logger = logging.getLogger(__name__)

UnitRef = Union[Handle, str, None]
Body = Union[Callable[..., Any], str, None]


class Model:
    """
    Model definition: index space, symbols and their metadata

    Every build-time call is a method on an explicit Model instance. After
    end_definition() the model is frozen, its dependency analysis and
    evaluation schedule are computed once and cached.
    """

    def __init__(self, name: str, verbose: bool = False):
        """
        Initialize an empty model definition

        Args:
            name: Model name (diagnostics only)
            verbose: Log the model structure when the definition ends
        """
        self.name = name
        self.verbose = verbose
        self.index_space = IndexSpace()

        self._units: Dict[str, Handle] = {}
        self._groups: Dict[str, ParameterGroupSpec] = {}
        self._parameters: Dict[str, ParameterSpec] = {}
        self._inputs: Dict[str, InputSpec] = {}
        self._solvers: Dict[str, SolverSpec] = {}
        self._equations: Dict[str, EquationSpec] = {}
        self._modules: List[Tuple[str, str]] = []
        self._order = 0

        self.finished = False
        self.analysis = None
        self.schedule = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_mutable(self) -> None:
        if self.finished:
            raise ModelBuildError(
                code="model_frozen",
                message=f"Model '{self.name}' is finished; no further declarations are allowed",
            )

    def _check_new(self, category: str, name: str, registry: Mapping[str, Any]) -> None:
        self._check_mutable()
        if not isinstance(name, str) or not name.strip():
            raise ModelBuildError(
                code="invalid_name",
                message=f"A {category.replace('_', ' ')} needs a non-empty name",
            )
        if name in registry:
            raise NameCollisionError(category, name)

    def _current_module(self) -> Optional[str]:
        if not self._modules:
            return None
        name, version = self._modules[-1]
        return f"{name} ({version})" if version else name

    def _next_order(self) -> int:
        order = self._order
        self._order += 1
        return order

    @staticmethod
    def _unit_label(unit: UnitRef) -> str:
        if unit is None:
            return ""
        if isinstance(unit, Handle):
            return unit.name
        return str(unit)

    def _signature(self, index_sets: Optional[Iterable[Any]], owner: str) -> Tuple[str, ...]:
        names = [s.name if isinstance(s, Handle) else s for s in (index_sets or ())]
        return self.index_space.canonical(names, owner=owner)

    def _build_spec(self, spec_cls, **fields):
        try:
            return spec_cls(**fields)
        except PydanticValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise ModelBuildError(
                code="invalid_declaration",
                message=f"Invalid declaration of '{fields.get('name')}': {messages}",
                details={"name": fields.get("name")},
            ) from e

    @staticmethod
    def _wrap_body(body: Body) -> Optional[Callable[..., Any]]:
        if body is None:
            return None
        if isinstance(body, str):
            return FormulaBody(body)
        if not callable(body):
            raise ModelBuildError(
                code="invalid_body",
                message=f"Equation body must be callable or a formula string, got {type(body).__name__}",
            )
        return body

    # ------------------------------------------------------------------
    # Modules, index sets and units
    # ------------------------------------------------------------------

    def begin_module(self, name: str, version: str = "") -> None:
        """Mark subsequent declarations as belonging to a named module"""
        self._check_mutable()
        self._modules.append((name, version))
        logger.debug(f"Model '{self.name}': begin module '{name}' {version}".rstrip())

    @property
    def modules(self) -> List[Tuple[str, str]]:
        return list(self._modules)

    def register_index_set(
        self,
        name: str,
        members: Union[Sequence[Member], Mapping[Member, Sequence[Member]]],
        parent: Union[Handle, str, None] = None,
    ) -> Handle:
        """
        Register an index set

        Args:
            name: Index set name
            members: Ordered members, or {parent member: [members]} for a
                set sub-indexed by `parent`
            parent: Parent index set for sub-indexed sets

        Returns:
            Handle of the index set
        """
        self._check_mutable()
        parent_name = parent.name if isinstance(parent, Handle) else parent
        index_set = self.index_space.add(name, members, parent=parent_name)
        return Handle(category=INDEX_SET, name=name, index=index_set.order)

    def get_index_set_handle(self, name: str) -> Handle:
        index_set = self.index_space.get(name)
        return Handle(category=INDEX_SET, name=name, index=index_set.order)

    def register_unit(self, name: str = "") -> Handle:
        """Register a unit label; repeated labels return the same handle"""
        self._check_mutable()
        if name not in self._units:
            self._units[name] = Handle(category=UNIT, name=name, index=len(self._units))
        return self._units[name]

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def register_parameter_group(
        self,
        name: str,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
        parent: Union[Handle, str, None] = None,
    ) -> Handle:
        """
        Register a parameter group

        Parameters in the group are replicated over the group's index sets,
        prefixed by those of the parent group.
        """
        self._check_new(PARAMETER_GROUP, name, self._groups)
        parent_name = parent.name if isinstance(parent, Handle) else parent
        own = [s.name if isinstance(s, Handle) else s for s in (index_sets or ())]
        if parent_name is not None:
            parent_spec = self._lookup(PARAMETER_GROUP, parent_name)
            own = list(parent_spec.index_sets) + own
        signature = self.index_space.canonical(own, owner=name)
        self._groups[name] = ParameterGroupSpec(
            name=name,
            index_sets=signature,
            parent=parent_name,
            module=self._current_module(),
        )
        return Handle(category=PARAMETER_GROUP, name=name, index=len(self._groups) - 1)

    def _register_parameter(
        self,
        name: str,
        kind: str,
        unit: UnitRef,
        default: Any,
        group: Union[Handle, str, None],
        index_sets: Optional[Iterable[Union[Handle, str]]],
        **extra: Any,
    ) -> Handle:
        self._check_new(PARAMETER, name, self._parameters)
        group_name = group.name if isinstance(group, Handle) else group
        if group_name is not None:
            if index_sets is not None:
                raise ModelBuildError(
                    code="invalid_declaration",
                    message=f"Parameter '{name}' takes its index sets from group '{group_name}'",
                    details={"name": name, "group": group_name},
                )
            signature = self._lookup(PARAMETER_GROUP, group_name).index_sets
        else:
            signature = self._signature(index_sets, owner=name)
        spec = self._build_spec(
            ParameterSpec,
            name=name,
            kind=kind,
            unit=self._unit_label(unit),
            index_sets=signature,
            group=group_name,
            default=default,
            module=self._current_module(),
            order=len(self._parameters),
            **extra,
        )
        self._parameters[name] = spec
        return Handle(category=PARAMETER, name=name, index=spec.order)

    def register_parameter_double(
        self,
        name: str,
        unit: UnitRef = None,
        default: float = 0.0,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        description: Optional[str] = None,
        group: Union[Handle, str, None] = None,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
    ) -> Handle:
        return self._register_parameter(
            name, PARAMETER_DOUBLE, unit, default, group, index_sets,
            min_value=min_value, max_value=max_value, description=description,
        )

    def register_parameter_int(
        self,
        name: str,
        unit: UnitRef = None,
        default: int = 0,
        min_value: Optional[int] = None,
        max_value: Optional[int] = None,
        description: Optional[str] = None,
        group: Union[Handle, str, None] = None,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
    ) -> Handle:
        return self._register_parameter(
            name, PARAMETER_INT, unit, default, group, index_sets,
            min_value=min_value, max_value=max_value, description=description,
        )

    def register_parameter_bool(
        self,
        name: str,
        default: bool = False,
        description: Optional[str] = None,
        group: Union[Handle, str, None] = None,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
    ) -> Handle:
        return self._register_parameter(
            name, PARAMETER_BOOL, None, default, group, index_sets,
            description=description,
        )

    def register_parameter_enum(
        self,
        name: str,
        choices: Sequence[str],
        default: Optional[str] = None,
        description: Optional[str] = None,
        group: Union[Handle, str, None] = None,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
    ) -> Handle:
        choices = tuple(choices)
        return self._register_parameter(
            name, PARAMETER_ENUM, None,
            default if default is not None else (choices[0] if choices else None),
            group, index_sets,
            choices=choices, description=description,
        )

    # ------------------------------------------------------------------
    # Inputs and solvers
    # ------------------------------------------------------------------

    def register_input(
        self,
        name: str,
        unit: UnitRef = None,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
        description: Optional[str] = None,
    ) -> Handle:
        """Register an externally supplied time series"""
        self._check_new(INPUT, name, self._inputs)
        spec = InputSpec(
            name=name,
            unit=self._unit_label(unit),
            index_sets=self._signature(index_sets, owner=name),
            description=description,
            module=self._current_module(),
            order=len(self._inputs),
        )
        self._inputs[name] = spec
        return Handle(category=INPUT, name=name, index=spec.order)

    def register_solver(
        self,
        name: str,
        method: str,
        step_size: float,
        relative_tolerance: Optional[float] = None,
        absolute_tolerance: Optional[float] = None,
        max_retries: Optional[int] = None,
        min_step: Optional[float] = None,
    ) -> Handle:
        """
        Register a solver for ODE blocks

        Args:
            name: Solver name
            method: Stepping method, e.g. 'rk4' or 'implicit_euler_adaptive'
            step_size: Base step as a fraction of the model timestep
            relative_tolerance: Error bound for adaptive methods
            absolute_tolerance: Error bound for adaptive methods
            max_retries: Rejected sub-steps allowed per timestep
            min_step: Smallest sub-step as a fraction of the model timestep
        """
        self._check_new(SOLVER, name, self._solvers)
        settings = get_settings()
        spec = self._build_spec(
            SolverSpec,
            name=name,
            method=method,
            step_size=step_size,
            relative_tolerance=relative_tolerance
            if relative_tolerance is not None
            else settings.default_relative_tolerance,
            absolute_tolerance=absolute_tolerance
            if absolute_tolerance is not None
            else settings.default_absolute_tolerance,
            max_retries=max_retries if max_retries is not None else settings.default_max_retries,
            min_step=min_step if min_step is not None else settings.default_min_step,
            module=self._current_module(),
        )
        self._solvers[name] = spec
        return Handle(category=SOLVER, name=name, index=len(self._solvers) - 1)

    def get_solver_handle(self, name: str) -> Handle:
        self._lookup(SOLVER, name)
        return Handle(category=SOLVER, name=name, index=list(self._solvers).index(name))

    # ------------------------------------------------------------------
    # Equations
    # ------------------------------------------------------------------

    def _register_equation(
        self,
        name: str,
        kind: str,
        unit: UnitRef,
        body: Body,
        index_sets: Optional[Iterable[Union[Handle, str]]],
        solver: Union[Handle, str, None],
        initial_value: Optional[Handle],
        reset_every_timestep: bool,
        description: Optional[str],
    ) -> Handle:
        self._check_new(EQUATION, name, self._equations)
        declared = None if index_sets is None else self._signature(index_sets, owner=name)
        spec = EquationSpec(
            name=name,
            kind=kind,
            unit=self._unit_label(unit),
            declared_index_sets=declared,
            body=self._wrap_body(body),
            reset_every_timestep=reset_every_timestep,
            description=description,
            module=self._current_module(),
            order=self._next_order(),
        )
        self._equations[name] = spec
        handle = Handle(category=EQUATION, name=name, index=len(self._equations) - 1)
        if solver is not None:
            self.set_solver(handle, solver)
        if initial_value is not None:
            self.set_initial_value(handle, initial_value)
        return handle

    def register_equation(
        self,
        name: str,
        unit: UnitRef = None,
        body: Body = None,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
        solver: Union[Handle, str, None] = None,
        initial_value: Optional[Handle] = None,
        description: Optional[str] = None,
    ) -> Handle:
        """
        Register an algebraic equation

        Args:
            name: Equation name
            unit: Unit label or handle
            body: Callable (StorageView) -> value, or a formula string; may be
                set later with set_equation()
            index_sets: Fixed signature; None infers it from what the body reads
            solver: Evaluate the equation inside this solver's ODE block
            initial_value: Seeds the value last_result() sees in the first step
        """
        return self._register_equation(
            name, ALGEBRAIC, unit, body, index_sets, solver, initial_value, False, description
        )

    def register_equation_ode(
        self,
        name: str,
        unit: UnitRef = None,
        body: Body = None,
        solver: Union[Handle, str, None] = None,
        initial_value: Optional[Handle] = None,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
        reset_every_timestep: bool = False,
        description: Optional[str] = None,
    ) -> Handle:
        """
        Register an ODE equation; its body returns the derivative

        The solver and initial value may also be attached later with
        set_solver() / set_initial_value().
        """
        return self._register_equation(
            name, ODE, unit, body, index_sets, solver, initial_value,
            reset_every_timestep, description,
        )

    def register_equation_initial_value(
        self,
        name: str,
        unit: UnitRef = None,
        body: Body = None,
        index_sets: Optional[Iterable[Union[Handle, str]]] = None,
        description: Optional[str] = None,
    ) -> Handle:
        """Register an equation evaluated once, before the first step"""
        return self._register_equation(
            name, INITIAL_VALUE, unit, body, index_sets, None, None, False, description
        )

    def set_solver(self, equation: SymbolRef, solver: Union[Handle, str]) -> None:
        self._check_mutable()
        spec = self._equation_spec(equation)
        solver_name = solver.name if isinstance(solver, Handle) else solver
        self._lookup(SOLVER, solver_name)
        if spec.kind == INITIAL_VALUE:
            raise ModelBuildError(
                code="invalid_solver_assignment",
                message=f"Initial-value equation '{spec.name}' cannot be assigned to a solver",
                details={"equation": spec.name, "solver": solver_name},
            )
        spec.solver = solver_name

    def set_initial_value(self, equation: SymbolRef, source: Handle) -> None:
        """
        Seed an equation from an initial-value equation or a parameter

        Raises:
            ModelBuildError: If the source is neither, or the target is itself
                an initial-value equation
        """
        self._check_mutable()
        spec = self._equation_spec(equation)
        if spec.kind == INITIAL_VALUE:
            raise ModelBuildError(
                code="invalid_initial_value",
                message=f"Initial-value equation '{spec.name}' cannot have an initial value",
                details={"equation": spec.name},
            )
        if not isinstance(source, Handle):
            raise ModelBuildError(
                code="invalid_initial_value",
                message=f"Initial value of '{spec.name}' must be a handle",
                details={"equation": spec.name},
            )
        if source.category == EQUATION:
            if self._lookup(EQUATION, source.name).kind != INITIAL_VALUE:
                raise ModelBuildError(
                    code="invalid_initial_value",
                    message=(
                        f"'{source.name}' is not an initial-value equation and cannot "
                        f"seed '{spec.name}'"
                    ),
                    details={"equation": spec.name, "source": source.name},
                )
        elif source.category == PARAMETER:
            if self._lookup(PARAMETER, source.name).kind == PARAMETER_ENUM:
                raise ModelBuildError(
                    code="invalid_initial_value",
                    message=f"Enum parameter '{source.name}' cannot seed '{spec.name}'",
                    details={"equation": spec.name, "source": source.name},
                )
        else:
            raise ModelBuildError(
                code="invalid_initial_value",
                message=f"Initial value of '{spec.name}' must be an equation or a parameter",
                details={"equation": spec.name, "source": str(source)},
            )
        spec.initial_value = source

    def set_equation(self, equation: SymbolRef, body: Body) -> None:
        """Attach (or replace) the body of a registered equation"""
        self._check_mutable()
        self._equation_spec(equation).body = self._wrap_body(body)

    def equation(self, equation: SymbolRef) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Decorator form of set_equation()

        Example:
            >>> @model.equation(volume)
            ... def _(v):
            ...     return v.result(inflow) - v.result(outflow)
        """
        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.set_equation(equation, fn)
            return fn
        return decorator

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _registry(self, category: str) -> Mapping[str, Any]:
        registries = {
            PARAMETER_GROUP: self._groups,
            PARAMETER: self._parameters,
            INPUT: self._inputs,
            SOLVER: self._solvers,
            EQUATION: self._equations,
            UNIT: self._units,
        }
        if category not in registries:
            raise ModelBuildError(code="invalid_category", message=f"Unknown category '{category}'")
        return registries[category]

    def _lookup(self, category: str, name: str) -> Any:
        registry = self._registry(category)
        try:
            return registry[name]
        except KeyError:
            raise UnknownSymbolError(category, name) from None

    def _equation_spec(self, equation: SymbolRef) -> EquationSpec:
        if isinstance(equation, Handle):
            if equation.category != EQUATION:
                raise ModelBuildError(
                    code="invalid_reference",
                    message=f"{equation} is not an equation",
                )
            return self._lookup(EQUATION, equation.name)
        return self._lookup(EQUATION, equation)

    def get_equation_handle(self, name: str) -> Handle:
        """Cross-module lookup of an equation registered earlier"""
        self._lookup(EQUATION, name)
        return Handle(category=EQUATION, name=name, index=list(self._equations).index(name))

    def get_parameter_handle(self, name: str) -> Handle:
        spec = self._lookup(PARAMETER, name)
        return Handle(category=PARAMETER, name=name, index=spec.order)

    def get_input_handle(self, name: str) -> Handle:
        spec = self._lookup(INPUT, name)
        return Handle(category=INPUT, name=name, index=spec.order)

    def resolve(self, name: str, category: Optional[str] = None) -> Handle:
        """
        Look up a readable symbol by name

        Args:
            name: Symbol name
            category: Restrict the lookup to 'equation', 'input' or 'parameter'

        Raises:
            UnknownSymbolError: If no symbol has that name
            ModelBuildError: If the name is used in several categories and no
                category was given
        """
        if category is not None:
            if category == EQUATION:
                return self.get_equation_handle(name)
            if category == INPUT:
                return self.get_input_handle(name)
            if category == PARAMETER:
                return self.get_parameter_handle(name)
            raise ModelBuildError(code="invalid_category", message=f"Unknown category '{category}'")

        found = [c for c in READABLE_CATEGORIES if name in self._registry(c)]
        if not found:
            raise UnknownSymbolError("symbol", name)
        if len(found) > 1:
            raise ModelBuildError(
                code="ambiguous_symbol",
                message=f"'{name}' names a symbol in several categories ({', '.join(found)}); pass a category",
                details={"name": name, "categories": found},
            )
        return self.resolve(name, found[0])

    def handle_for(self, ref: SymbolRef, category: str) -> Handle:
        """Normalize a handle-or-name reference, checking its category"""
        if isinstance(ref, Handle):
            if ref.category != category:
                raise ModelBuildError(
                    code="invalid_reference",
                    message=f"{ref} is a {ref.category.replace('_', ' ')}, not a {category.replace('_', ' ')}",
                    details={"name": ref.name, "expected": category},
                )
            self._lookup(category, ref.name)
            return ref
        return self.resolve(ref, category)

    # Read-only views used by analysis, storage and the run loop

    def equations(self) -> List[EquationSpec]:
        return list(self._equations.values())

    def parameters(self) -> List[ParameterSpec]:
        return list(self._parameters.values())

    def inputs(self) -> List[InputSpec]:
        return list(self._inputs.values())

    def solvers(self) -> List[SolverSpec]:
        return list(self._solvers.values())

    def parameter_groups(self) -> List[ParameterGroupSpec]:
        return list(self._groups.values())

    def equation_spec(self, name: str) -> EquationSpec:
        return self._lookup(EQUATION, name)

    def parameter_spec(self, name: str) -> ParameterSpec:
        return self._lookup(PARAMETER, name)

    def input_spec(self, name: str) -> InputSpec:
        return self._lookup(INPUT, name)

    def solver_spec(self, name: str) -> SolverSpec:
        return self._lookup(SOLVER, name)

    def has_symbol(self, category: str, name: str) -> bool:
        return name in self._registry(category)

    def signature_of(self, category: str, name: str) -> Tuple[str, ...]:
        """Index set signature of a symbol (inferred signature for equations)"""
        if category == EQUATION:
            if self.analysis is not None:
                return self.analysis.signatures[name]
            declared = self._lookup(EQUATION, name).declared_index_sets
            return declared or ()
        if category == PARAMETER:
            return self._lookup(PARAMETER, name).index_sets
        if category == INPUT:
            return self._lookup(INPUT, name).index_sets
        raise ModelBuildError(code="invalid_category", message=f"'{category}' symbols have no signature")

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _check_complete(self) -> None:
        for spec in self._equations.values():
            if not spec.has_body():
                raise ModelBuildError(
                    code="missing_body",
                    message=f"Equation '{spec.name}' was registered but never given a body",
                    details={"equation": spec.name},
                )
            if spec.kind == ODE:
                if spec.solver is None:
                    raise ModelBuildError(
                        code="missing_solver",
                        message=f"ODE equation '{spec.name}' has no solver",
                        details={"equation": spec.name},
                    )
                if spec.initial_value is None:
                    raise ModelBuildError(
                        code="missing_initial_value",
                        message=f"ODE equation '{spec.name}' has no initial value",
                        details={"equation": spec.name},
                    )

    def end_definition(self) -> "Model":
        """
        Finish the model definition

        Runs dependency analysis (reference discovery, signature resolution,
        cycle checks) and computes the cached evaluation schedule.

        Raises:
            ModelBuildError: Any build-time error (name collision, unknown
                symbol, signature mismatch, cyclic dependency, ...)
        """
        # Local imports keep the registry free of analysis-time dependencies
        from envsim.dependencies import analyze_model
        from envsim.scheduler import build_schedule

        self._check_mutable()
        self._check_complete()

        self.analysis = analyze_model(self)
        self.schedule = build_schedule(self, self.analysis)
        self.finished = True

        if self.verbose:
            self._log_model_structure()
        logger.info(
            f"Model '{self.name}' finished: {len(self._equations)} equation(s), "
            f"{len(self._parameters)} parameter(s), {len(self._inputs)} input(s), "
            f"{len(self.schedule.units)} evaluation unit(s)"
        )
        return self

    def dependency_order(self) -> List[ScheduleEntry]:
        """Evaluation order with batch indices, for build-time inspection"""
        if self.schedule is None:
            raise ModelBuildError(
                code="model_not_finished",
                message=f"Model '{self.name}' has no schedule until end_definition() is called",
            )
        return self.schedule.dependency_order()

    def _log_model_structure(self) -> None:
        """Log model structure for debugging"""
        logger.info("=" * 60)
        logger.info(f"MODEL DEFINITION: {self.name}")
        logger.info("=" * 60)

        logger.info(f"Index sets: {len(self.index_space)}")
        for index_set in self.index_space:
            logger.info(f"  - {index_set.name}: {list(index_set.all_members())}")

        logger.info(f"Parameters: {len(self._parameters)}")
        for spec in self._parameters.values():
            logger.info(f"  - {spec.name} [{spec.kind}] {spec.index_sets} default={spec.default}")

        logger.info(f"Inputs: {len(self._inputs)}")
        for spec in self._inputs.values():
            logger.info(f"  - {spec.name} {spec.index_sets}")

        logger.info(f"Equations: {len(self._equations)}")
        for spec in self._equations.values():
            logger.info(
                f"  - {spec.name} [{spec.kind}] {self.signature_of(EQUATION, spec.name)}"
                + (f" solver={spec.solver}" if spec.solver else "")
            )

        logger.info("Evaluation order:")
        for entry in self.dependency_order():
            logger.info(f"  {entry.batch:3d}  {entry.name} ({entry.unit})")
        logger.info("=" * 60)
