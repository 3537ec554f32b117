"""
Execution loop for the envsim engine
Initializes a data set, steps it through time and reports the outcome
"""

from typing import Dict, List, Optional, Tuple
import logging
import math
import time

import numpy as np

from envsim.config import Settings
from envsim.constants import (
    EQUATION,
    PARAMETER,
    INITIAL_VALUE,
    BUILT,
    INITIALIZED,
    RUNNING,
    COMPLETED,
    FAILED,
)
from envsim.exceptions import (
    EnvsimError,
    EvaluationError,
    SimulationError,
)
from envsim.index_space import project
from envsim.models import EquationSpec, RunConfig, RunOutcome
from envsim.scheduler import EquationUnit, SolverBlock
from envsim.solvers import SolverDispatcher
from envsim.storage import DataSet, StorageView, SymbolLayout, format_index
from envsim.types import MemberTuple
from envsim.utils.logging_config import clear_run_id, set_run_id
from envsim.validation import validate_dataset

logger = logging.getLogger(__name__)


class BlockSystem:
    """
    Adapter between a solver block and the solver dispatcher

    The state vector holds every instance of every ODE in the block, in
    block order. Stage values are written to the current generation without
    setting write flags; commit() performs the flagged writes.
    """

    def __init__(self, simulation: "Simulation", block: SolverBlock):
        self._sim = simulation
        self._ds = simulation.dataset
        self.block = block
        self.solver = block.solver
        self.label = block.label

        layouts = self._ds.equation_layout
        self._odes: List[Tuple[EquationSpec, SymbolLayout]] = [
            (spec, layouts[spec.name]) for spec in block.odes
        ]
        self._algebraics: List[Tuple[EquationSpec, SymbolLayout]] = [
            (spec, layouts[spec.name]) for spec in block.algebraics
        ]
        positions = [layout.positions() for _, layout in self._odes]
        self.state_positions = np.concatenate(positions) if positions else np.zeros(0, dtype=int)
        self._reset = np.concatenate(
            [np.full(layout.count, spec.reset_every_timestep) for spec, layout in self._odes]
        ) if self._odes else np.zeros(0, dtype=bool)
        self.t_end = 0.0

    def initial_state(self) -> np.ndarray:
        y = self._ds.results[self._ds.previous_row, self.state_positions].copy()
        y[self._reset] = 0.0
        return y

    def rhs(self, t: float, y: np.ndarray) -> np.ndarray:
        # Non-finite stage values are left for the dispatcher to reject
        ds = self._ds
        ds.write_stage(self.state_positions, y)
        self._sim.view.time = t
        for spec, layout in self._algebraics:
            ds.write_stage(layout.positions(), self._sim.evaluate(spec, layout, check_finite=False))
        derivatives = np.empty(len(y))
        offset = 0
        for spec, layout in self._odes:
            derivatives[offset:offset + layout.count] = self._sim.evaluate(
                spec, layout, check_finite=False
            )
            offset += layout.count
        return derivatives

    def commit(self, y: np.ndarray) -> None:
        ds = self._ds
        offset = 0
        for spec, layout in self._odes:
            for i, members in enumerate(layout.instances):
                ds.write_slot(layout.base + i, float(y[offset + i]), spec.name, members)
            offset += layout.count
        # Algebraic members take their values at the final state
        self._sim.view.time = self.t_end
        for spec, layout in self._algebraics:
            values = self._sim.evaluate(spec, layout)
            for i, members in enumerate(layout.instances):
                ds.write_slot(layout.base + i, float(values[i]), spec.name, members)


class Simulation:
    """
    Drives one data set through Built -> Initialized -> Running ->
    Completed | Failed
    """

    def __init__(self, dataset: DataSet, config: RunConfig, settings: Optional[Settings] = None):
        """
        Initialize the execution loop

        Args:
            dataset: Storage allocated from a finished model
            config: Run configuration
            settings: Engine settings (defaults to the data set's settings);
                the data set adopts them for the run
        """
        self.dataset = dataset
        self.model = dataset.model
        self.schedule = self.model.schedule
        self.config = config
        self.settings = settings or dataset.settings
        dataset.settings = self.settings
        self.verbose = config.verbose
        self.dispatcher = SolverDispatcher(self.settings)
        self.view = StorageView(dataset)
        self.unit_timings: Optional[Dict[str, float]] = None
        self._started_at: Optional[float] = None
        self._systems: Dict[str, BlockSystem] = {}
        for unit in self.schedule.units:
            if isinstance(unit, SolverBlock):
                self._systems[unit.label] = BlockSystem(self, unit)

    @property
    def state(self) -> str:
        return self.dataset.state

    # ------------------------------------------------------------------
    # Equation evaluation
    # ------------------------------------------------------------------

    def _annotate(self, error: EnvsimError, name: str, members: MemberTuple) -> EnvsimError:
        if isinstance(error, EvaluationError) and error.symbol is None:
            error.symbol = name
            error.index = members
            error.details["symbol"] = name
            error.details["index"] = repr(members)
        error.details.setdefault("step", self.view.step)
        error.details.setdefault("time", self.view.time)
        return error

    def _call_body(self, spec: EquationSpec, members: MemberTuple, check_finite: bool = True) -> float:
        where = f"'{spec.name}'" + (f" at ({format_index(members)})" if members else "")
        try:
            value = spec.body(self.view)
        except SimulationError as e:
            raise self._annotate(e, spec.name, members)
        except EnvsimError as e:
            raise EvaluationError(
                code=e.code,
                message=f"Error evaluating {where}: {e.message}",
                symbol=spec.name,
                index=members,
                details={"step": self.view.step, "time": self.view.time},
            ) from e
        except Exception as e:
            raise EvaluationError(
                code="evaluation_failed",
                message=f"Error evaluating {where}: {type(e).__name__}: {e}",
                symbol=spec.name,
                index=members,
                details={"step": self.view.step, "time": self.view.time},
            ) from e

        try:
            value = float(value)
        except (TypeError, ValueError) as e:
            raise EvaluationError(
                code="invalid_result",
                message=f"{where} returned {value!r}, which is not a number",
                symbol=spec.name,
                index=members,
                details={"step": self.view.step, "time": self.view.time},
            ) from e
        if check_finite and self.settings.check_finite and not math.isfinite(value):
            raise EvaluationError(
                code="non_finite_result",
                message=f"{where} evaluated to {value} at t={self.view.time:.6g}",
                symbol=spec.name,
                index=members,
                details={"step": self.view.step, "time": self.view.time},
            )
        return value

    def evaluate(self, spec: EquationSpec, layout: SymbolLayout, check_finite: bool = True) -> np.ndarray:
        """Evaluate an equation body for every instance, without storing"""
        values = np.empty(layout.count)
        for i, members in enumerate(layout.instances):
            self.view.bind(layout.signature, members)
            values[i] = self._call_body(spec, members, check_finite)
        return values

    def _run_equation(self, spec: EquationSpec) -> None:
        layout = self.dataset.equation_layout[spec.name]
        for i, members in enumerate(layout.instances):
            self.view.bind(layout.signature, members)
            value = self._call_body(spec, members)
            self.dataset.write_slot(layout.base + i, value, spec.name, members)

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _seed_from(self, target: EquationSpec, source_values) -> None:
        """Seed both generations of target from a source with a signature subset"""
        ds = self.dataset
        layout = ds.equation_layout[target.name]
        source_layout, values = source_values
        for i, members in enumerate(layout.instances):
            bound = dict(zip(layout.signature, members))
            key = project(bound, source_layout.signature)
            ds.seed(layout.base + i, float(values[source_layout.offsets[key]]))

    def _seed_targets(self, source_category: str, source_name: str) -> None:
        ds = self.dataset
        if source_category == PARAMETER:
            source = (ds.parameter_layout[source_name], ds.parameters[source_name])
        else:
            layout = ds.equation_layout[source_name]
            source = (layout, ds.results[ds.current_row, layout.base:layout.base + layout.count])
        for spec in self.model.equations():
            iv = spec.initial_value
            if iv is not None and iv.category == source_category and iv.name == source_name:
                self._seed_from(spec, source)

    def _warn_unseeded_reads(self) -> None:
        for name in self.schedule.initial_order:
            for ref in self.model.analysis.references[name]:
                if ref.category != EQUATION:
                    continue
                source = self.model.equation_spec(ref.name)
                if source.kind != INITIAL_VALUE and source.initial_value is None:
                    logger.warning(
                        f"Initial-value equation '{name}' reads '{ref.name}', which has no "
                        f"initial value; it reads 0"
                    )

    def initialize(self, n_steps: Optional[int] = None) -> None:
        """
        Run every initial-value equation once and seed the equations they feed

        Args:
            n_steps: Number of steps the run will take (sizes the history)

        Raises:
            SimulationError: If the data set is not in the Built state or an
                initial-value equation fails
        """
        ds = self.dataset
        if ds.state in (COMPLETED, FAILED):
            ds.reset_results()
        if ds.state != BUILT:
            raise SimulationError(
                code="invalid_state",
                message=f"Cannot initialize a data set in state '{ds.state}'",
                details={"state": ds.state},
            )
        n_steps = self.config.get_num_steps() if n_steps is None else n_steps

        ds.time_step = self.config.time_step
        ds.time = self.config.start_time
        ds.step = 0
        self.view.time = self.config.start_time
        self.view.step = 0
        self.view.timestep = self.config.time_step
        self.view.date = self.config.date_at(0)
        self.dispatcher.reset()
        if self.settings.record_history:
            ds.start_history(n_steps)

        try:
            for spec in self.model.parameters():
                self._seed_targets(PARAMETER, spec.name)

            self._warn_unseeded_reads()
            for name in self.schedule.initial_order:
                spec = self.model.equation_spec(name)
                layout = ds.equation_layout[name]
                values = self.evaluate(spec, layout)
                for i in range(layout.count):
                    ds.seed(layout.base + i, float(values[i]))
                self._seed_targets(EQUATION, name)
        except SimulationError as e:
            ds.state = FAILED
            logger.error(f"Initialization failed: {e}")
            raise

        ds.state = INITIALIZED
        ds.record_history()

        if self.verbose:
            logger.info("Initial values:")
            for spec in self.model.equations():
                if spec.initial_value is None and spec.kind != INITIAL_VALUE:
                    continue
                layout = ds.equation_layout[spec.name]
                for i, members in enumerate(layout.instances):
                    label = f"{spec.name}[{format_index(members)}]" if members else spec.name
                    logger.info(f"  {label}: {ds.results[ds.current_row, layout.base + i]:.4f}")

    # ------------------------------------------------------------------
    # Time stepping
    # ------------------------------------------------------------------

    def start(self, n_steps: Optional[int] = None) -> None:
        """
        Enter the Running state, initializing first if needed

        After start(), call step() once per timestep and finish() at the end;
        run() does all three.

        Args:
            n_steps: Number of steps the run will take; defaults to the run
                configuration

        Raises:
            SimulationError: If initialization fails
        """
        n_steps = self.config.get_num_steps() if n_steps is None else n_steps
        ds = self.dataset
        if ds.state != INITIALIZED:
            self.initialize(n_steps)

        self.unit_timings = {} if self.settings.profile_equations else None
        self._started_at = time.perf_counter()

        if self.verbose:
            logger.info("=" * 60)
            logger.info(f"SIMULATION START ({self.model.name})")
            logger.info(
                f"Start: {self.config.start_time}, dt={self.config.time_step}, steps: {n_steps}"
            )
            if self.config.start_date is not None:
                logger.info(f"Start date: {self.config.start_date.isoformat()}")
            logger.info(f"Units: {len(self.schedule.units)}")
            logger.info("=" * 60)

        ds.state = RUNNING

    def step(self) -> None:
        """
        Advance the run by one timestep

        Any error leaves the data set Failed, so it is unlocked again.

        Raises:
            SimulationError: If the run is not in progress or any unit fails
        """
        ds = self.dataset
        if ds.state != RUNNING:
            raise SimulationError(
                code="invalid_state",
                message=f"Cannot step a data set in state '{ds.state}'",
                details={"state": ds.state},
            )
        try:
            self._advance()
        except Exception:
            ds.state = FAILED
            raise

    def _advance(self) -> None:
        ds = self.dataset
        dt = self.config.time_step
        k = ds.step
        t = self.config.start_time + k * dt
        timings = self.unit_timings

        ds.time = t
        self.view.step = k
        self.view.time = t
        self.view.date = self.config.date_at(k)
        ds.begin_step()

        for unit in self.schedule.units:
            started = time.perf_counter() if timings is not None else 0.0
            if isinstance(unit, EquationUnit):
                self.view.time = t
                self._run_equation(unit.spec)
            else:
                system = self._systems[unit.label]
                system.t_end = t + dt
                try:
                    self.dispatcher.advance(system, t, dt)
                except SimulationError as e:
                    e.details.setdefault("step", k)
                    raise
            if timings is not None:
                timings[unit.label] = timings.get(unit.label, 0.0) + time.perf_counter() - started

        ds.step = k + 1
        ds.time = self.config.start_time + ds.step * dt
        ds.record_history()
        ds.rotate()

    def _wall_time(self) -> Optional[float]:
        if self._started_at is None:
            return None
        return time.perf_counter() - self._started_at

    def finish(self) -> RunOutcome:
        """
        Complete a run started with start()

        Returns:
            RunOutcome of the completed run

        Raises:
            SimulationError: If the run is not in progress
        """
        ds = self.dataset
        if ds.state != RUNNING:
            raise SimulationError(
                code="invalid_state",
                message=f"Cannot finish a data set in state '{ds.state}'",
                details={"state": ds.state},
            )
        ds.state = COMPLETED
        ds.trim_history()
        wall_time = self._wall_time()

        if self.verbose:
            logger.info("=" * 60)
            logger.info("SIMULATION COMPLETE")
            logger.info(f"Steps: {ds.step}, wall time: {wall_time:.3f}s")
            for label, counts in self.dispatcher.statistics().items():
                logger.info(f"  {label}: {counts}")
            if self.unit_timings:
                logger.info("Time per unit:")
                for label, seconds in sorted(self.unit_timings.items(), key=lambda item: -item[1]):
                    logger.info(f"  {label}: {seconds:.4f}s")
            logger.info("=" * 60)

        return RunOutcome(
            success=True,
            state=COMPLETED,
            steps_completed=ds.step,
            time=list(ds.history_time),
            wall_time=wall_time,
            unit_timings=self.unit_timings,
        )

    def _failed(self, code: str, message: str, details: Dict) -> RunOutcome:
        ds = self.dataset
        ds.state = FAILED
        ds.trim_history()
        return RunOutcome(
            success=False,
            state=FAILED,
            failure_kind=code,
            error=message,
            details=details,
            steps_completed=ds.step,
            time=list(ds.history_time),
            wall_time=self._wall_time(),
            unit_timings=self.unit_timings,
        )

    def run(self, n_steps: Optional[int] = None) -> RunOutcome:
        """
        Run the full Initialized -> Completed | Failed sequence

        Args:
            n_steps: Number of steps; defaults to the run configuration

        Returns:
            RunOutcome with success flag, final state and failure kind;
            unexpected errors are reported as 'internal_error'
        """
        n_steps = self.config.get_num_steps() if n_steps is None else n_steps
        ds = self.dataset
        set_run_id()
        try:
            self.start(n_steps)
            interval = max(1, self.settings.progress_report_interval)
            for i in range(n_steps):
                self.step()
                if (i + 1) % interval == 0 or i == n_steps - 1:
                    logger.debug(f"Step {i + 1}/{n_steps} done (t={ds.time:.6g})")
            return self.finish()
        except SimulationError as e:
            logger.error(f"Run of '{self.model.name}' failed at step {ds.step}: {e}")
            return self._failed(e.code, e.message, e.details)
        except Exception as e:
            logger.exception(f"Unexpected error in run of '{self.model.name}' at step {ds.step}")
            return self._failed(
                "internal_error",
                f"{type(e).__name__}: {e}",
                {"step": ds.step, "time": ds.time},
            )
        finally:
            clear_run_id()


def run_model(
    dataset: DataSet,
    config: RunConfig,
    settings: Optional[Settings] = None,
) -> RunOutcome:
    """
    Convenience function to validate and run a populated data set

    A completed or failed data set is reset first, so the same data set can
    be run again.

    Args:
        dataset: Storage with parameters and inputs loaded
        config: Run configuration
        settings: Engine settings (defaults to the data set's settings)

    Returns:
        RunOutcome; failure_kind is 'validation_failed' when pre-run checks
        find errors
    """
    settings = settings or dataset.settings
    validation = validate_dataset(dataset, config, settings)

    if not validation.valid:
        logger.warning(f"Validation failed with {len(validation.errors)} error(s):")
        for i, error in enumerate(validation.errors, 1):
            logger.warning(
                f"  {i}. [{error.code}] {error.message}"
                + (f" (Symbol: {error.symbol})" if error.symbol else "")
            )
        return RunOutcome(
            success=False,
            state=dataset.state,
            failure_kind="validation_failed",
            error=f"Run validation failed: {len(validation.errors)} error(s) found",
            details={
                "errors": [e.model_dump() for e in validation.errors],
                "error_count": len(validation.errors),
            },
        )

    for warning in validation.warnings:
        logger.warning(f"Validation warning: {warning.message}")

    if dataset.finished:
        dataset.reset_results()

    return Simulation(dataset, config, settings).run()
