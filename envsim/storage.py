"""
Storage layer for the envsim engine
Indexed arrays for parameter values, input series and two generations of
equation results, plus the view equation bodies read them through
"""

from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import calendar
import logging

import numpy as np

from envsim.config import Settings, get_settings
from envsim.constants import (
    EQUATION,
    INPUT,
    PARAMETER,
    PARAMETER_DOUBLE,
    PARAMETER_INT,
    PARAMETER_BOOL,
    PARAMETER_ENUM,
    CURRENT,
    PREVIOUS,
    BUILT,
    INITIALIZED,
    RUNNING,
    COMPLETED,
    FAILED,
)
from envsim.exceptions import (
    DataSetError,
    EvaluationError,
    IndexOutOfRangeError,
    ModelBuildError,
    SimulationError,
    UnknownSymbolError,
    WriteConflictError,
)
from envsim.index_space import project
from envsim.models import Handle, SymbolRef
from envsim.types import Member, MemberTuple, RunResultDict, StorageStatsDict

logger = logging.getLogger(__name__)

_DTYPES = {
    PARAMETER_DOUBLE: np.float64,
    PARAMETER_INT: np.int64,
    PARAMETER_BOOL: np.bool_,
    PARAMETER_ENUM: np.int64,
}


class SymbolLayout:
    """
    Where the instances of one symbol live

    Attributes:
        name: Symbol name
        signature: Canonical index set signature
        base: Offset of the first instance (equations share one array)
        instances: Member tuples in storage order
        offsets: Member tuple -> position relative to base
    """

    def __init__(self, name: str, signature: Tuple[str, ...], base: int, index_space):
        self.name = name
        self.signature = signature
        self.base = base
        self.instances = index_space.instances(signature)
        self.offsets = index_space.offsets(signature)

    @property
    def count(self) -> int:
        return len(self.instances)

    def positions(self) -> np.ndarray:
        return np.arange(self.base, self.base + self.count)


def _set_name(key: Any) -> str:
    return key.name if isinstance(key, Handle) else key


def _ref_name(ref: SymbolRef) -> str:
    return ref.name if isinstance(ref, Handle) else ref


def _is_member(value: Any) -> bool:
    return isinstance(value, (str, int, np.integer)) and not isinstance(value, (bool, np.bool_))


def format_index(members: MemberTuple) -> str:
    return ", ".join(str(m) for m in members)


class DataSet:
    """
    Storage for one model run

    Equation results live in a single (2, n_slots) array; `rotate()` flips
    which row is current. Parameters and inputs have one generation each
    and may only be changed while no run owns the data set.
    """

    def __init__(self, model, n_steps: int = 0, settings: Optional[Settings] = None):
        """
        Allocate storage for a finished model

        Args:
            model: Model after end_definition()
            n_steps: Number of input rows to allocate
            settings: Engine settings (defaults to the global settings); a
                run replaces them with the settings it was started with

        Raises:
            ModelBuildError: If the model definition is not finished
        """
        if not model.finished:
            raise ModelBuildError(
                code="model_not_finished",
                message=f"Model '{model.name}' must be finished before storage is allocated",
            )
        self.model = model
        self.index_space = model.index_space
        self.settings = settings or get_settings()

        self.equation_layout: Dict[str, SymbolLayout] = {}
        base = 0
        for spec in model.equations():
            layout = SymbolLayout(spec.name, model.signature_of(EQUATION, spec.name), base, self.index_space)
            self.equation_layout[spec.name] = layout
            base += layout.count
        self.n_slots = base

        self.results = np.zeros((2, self.n_slots), dtype=np.float64)
        self.written = np.zeros(self.n_slots, dtype=bool)
        self._current = 0

        self.parameter_layout: Dict[str, SymbolLayout] = {}
        self.parameters: Dict[str, np.ndarray] = {}
        for spec in model.parameters():
            layout = SymbolLayout(spec.name, spec.index_sets, 0, self.index_space)
            self.parameter_layout[spec.name] = layout
            self.parameters[spec.name] = np.full(
                layout.count, self._encode_parameter(spec, spec.default), dtype=_DTYPES[spec.kind]
            )

        self.input_layout: Dict[str, SymbolLayout] = {}
        self.inputs: Dict[str, np.ndarray] = {}
        self.input_provided: Dict[str, np.ndarray] = {}
        for spec in model.inputs():
            layout = SymbolLayout(spec.name, spec.index_sets, 0, self.index_space)
            self.input_layout[spec.name] = layout
            self.inputs[spec.name] = np.zeros((n_steps, layout.count), dtype=np.float64)
            self.input_provided[spec.name] = np.zeros(layout.count, dtype=bool)
        self.n_input_steps = n_steps

        self.history: Optional[np.ndarray] = None
        self.history_time: List[float] = []

        self.state = BUILT
        self.step = 0
        self.time = 0.0
        self.time_step = 1.0

    # ------------------------------------------------------------------
    # Generations and write flags
    # ------------------------------------------------------------------

    @property
    def current_row(self) -> int:
        return self._current

    @property
    def previous_row(self) -> int:
        return 1 - self._current

    def _row(self, generation: Optional[str]) -> int:
        if generation is None:
            # While running the current generation is being filled; otherwise
            # the last completed step lives in the previous generation
            generation = CURRENT if self.state == RUNNING else PREVIOUS
        if generation == CURRENT:
            return self._current
        if generation == PREVIOUS:
            return 1 - self._current
        raise SimulationError(
            code="invalid_generation",
            message=f"Generation must be '{CURRENT}' or '{PREVIOUS}', got '{generation}'",
        )

    def begin_step(self) -> None:
        """Clear the per-slot written flags at the start of a step"""
        self.written[:] = False

    def rotate(self) -> None:
        """
        Current generation becomes previous (pointer swap, no copy)

        The new current generation starts with cleared write flags.
        """
        self._current = 1 - self._current
        self.written[:] = False

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def _layout(self, table: Dict[str, SymbolLayout], category: str, ref: SymbolRef) -> SymbolLayout:
        if isinstance(ref, Handle) and ref.category != category:
            raise SimulationError(
                code="invalid_reference",
                message=f"{ref} is not a {category.replace('_', ' ')}",
                details={"symbol": ref.name},
            )
        name = _ref_name(ref)
        try:
            return table[name]
        except KeyError:
            raise UnknownSymbolError(category, name) from None

    def member_tuple(self, layout: SymbolLayout, index: Any) -> MemberTuple:
        """
        Normalize an index argument to the member tuple of a symbol

        Accepts None or () for scalars, a bare member, a sequence of members,
        a sequence of (index set, member) pairs or a {index set: member}
        mapping.

        Raises:
            IndexOutOfRangeError: If the index does not address an instance
        """
        signature = layout.signature
        check = self.settings.bounds_check
        if index is None:
            key: MemberTuple = ()
        elif isinstance(index, Mapping):
            by_set = {_set_name(k): v for k, v in index.items()}
            if check and set(by_set) != set(signature):
                raise IndexOutOfRangeError(
                    layout.name,
                    index,
                    message=(
                        f"Index {index!r} names index sets {sorted(by_set)} but "
                        f"'{layout.name}' is indexed by {signature}"
                    ),
                    details={"signature": list(signature), "step": self.step},
                )
            try:
                key = tuple(by_set[s] for s in signature)
            except KeyError:
                raise IndexOutOfRangeError(
                    layout.name, index, details={"signature": list(signature), "step": self.step}
                ) from None
        elif _is_member(index):
            key = (index,)
        else:
            items = tuple(index)
            if items and all(isinstance(i, tuple) and len(i) == 2 for i in items):
                sets = tuple(_set_name(s) for s, _ in items)
                if check and sets != signature:
                    raise IndexOutOfRangeError(
                        layout.name,
                        index,
                        message=(
                            f"Index pairs {index!r} do not follow the signature "
                            f"{signature} of '{layout.name}'"
                        ),
                        details={"signature": list(signature), "step": self.step},
                    )
                key = tuple(m for _, m in items)
            else:
                key = items

        if key not in layout.offsets:
            raise IndexOutOfRangeError(
                layout.name,
                index,
                message=(
                    f"Index {index!r} is out of range for '{layout.name}' "
                    f"(indexed by {signature or 'nothing'})"
                ),
                details={"signature": list(signature), "step": self.step},
            )
        return key

    def position(self, ref: SymbolRef, index: Any = None) -> int:
        """Absolute slot of an equation instance in the results array"""
        layout = self._layout(self.equation_layout, EQUATION, ref)
        return layout.base + layout.offsets[self.member_tuple(layout, index)]

    # ------------------------------------------------------------------
    # Equation results
    # ------------------------------------------------------------------

    def read(self, symbol: SymbolRef, index: Any = None, generation: Optional[str] = None) -> Any:
        """
        Read a stored value

        Args:
            symbol: Handle, or name of an equation, input or parameter
            index: Instance to read (see member_tuple)
            generation: 'current' or 'previous' for equations; defaults to
                current while running and to the last completed step otherwise

        Raises:
            IndexOutOfRangeError: If the index does not match the signature
        """
        if isinstance(symbol, str):
            symbol = self.model.resolve(symbol)
        if symbol.category == PARAMETER:
            return self.parameter_value(symbol, index)
        if symbol.category == INPUT:
            return self.input_value(symbol, index)
        return float(self.results[self._row(generation), self.position(symbol, index)])

    def write(self, symbol: SymbolRef, index: Any, value: float) -> None:
        """
        Store an equation value into the current generation

        Raises:
            WriteConflictError: If the slot was already written this step
        """
        if isinstance(symbol, Handle) and symbol.category != EQUATION:
            raise SimulationError(
                code="read_only_symbol",
                message=f"Only equation results can be written, not {symbol}",
                details={"symbol": symbol.name},
            )
        name = _ref_name(symbol)
        layout = self._layout(self.equation_layout, EQUATION, name)
        members = self.member_tuple(layout, index)
        self.write_slot(layout.base + layout.offsets[members], value, name, members)

    def write_slot(self, position: int, value: float, name: str, members: MemberTuple) -> None:
        if self.written[position]:
            raise WriteConflictError(name, members, self.step, details={"time": self.time})
        self.written[position] = True
        self.results[self._current, position] = value

    def write_stage(self, positions: np.ndarray, values: np.ndarray) -> None:
        """Intermediate solver-stage values; not flagged as written"""
        self.results[self._current, positions] = values

    def seed(self, position: int, value: float) -> None:
        """Set both generations of a slot (initial values)"""
        self.results[:, position] = value

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def _check_unlocked(self, action: str) -> None:
        if self.state in (INITIALIZED, RUNNING):
            raise SimulationError(
                code="dataset_locked",
                message=f"Cannot {action}: the data set is owned by a run (state '{self.state}')",
                details={"state": self.state},
            )

    @staticmethod
    def _encode_parameter(spec, value: Any) -> Any:
        if spec.kind == PARAMETER_ENUM:
            if value not in spec.choices:
                raise DataSetError(
                    code="invalid_enum_value",
                    message=f"'{value}' is not a valid value for '{spec.name}'; choose one of {list(spec.choices)}",
                    details={"parameter": spec.name, "value": repr(value)},
                )
            return spec.choices.index(value)
        if spec.kind == PARAMETER_BOOL:
            if not isinstance(value, (bool, np.bool_)):
                raise DataSetError(
                    code="invalid_parameter_type",
                    message=f"Parameter '{spec.name}' expects a bool, got {value!r}",
                    details={"parameter": spec.name, "value": repr(value)},
                )
            return bool(value)
        if isinstance(value, (bool, np.bool_)):
            raise DataSetError(
                code="invalid_parameter_type",
                message=f"Parameter '{spec.name}' expects a number, got {value!r}",
                details={"parameter": spec.name, "value": repr(value)},
            )
        if spec.kind == PARAMETER_INT:
            if not isinstance(value, (int, np.integer)):
                raise DataSetError(
                    code="invalid_parameter_type",
                    message=f"Parameter '{spec.name}' expects an integer, got {value!r}",
                    details={"parameter": spec.name, "value": repr(value)},
                )
            return int(value)
        if not isinstance(value, (int, float, np.integer, np.floating)):
            raise DataSetError(
                code="invalid_parameter_type",
                message=f"Parameter '{spec.name}' expects a number, got {value!r}",
                details={"parameter": spec.name, "value": repr(value)},
            )
        return float(value)

    @staticmethod
    def _decode_parameter(spec, raw: Any) -> Any:
        if spec.kind == PARAMETER_ENUM:
            return spec.choices[int(raw)]
        if spec.kind == PARAMETER_BOOL:
            return bool(raw)
        if spec.kind == PARAMETER_INT:
            return int(raw)
        return float(raw)

    def parameter_value(self, ref: SymbolRef, index: Any = None) -> Any:
        layout = self._layout(self.parameter_layout, PARAMETER, ref)
        spec = self.model.parameter_spec(layout.name)
        raw = self.parameters[layout.name][layout.offsets[self.member_tuple(layout, index)]]
        return self._decode_parameter(spec, raw)

    def set_parameter_value(self, ref: SymbolRef, value: Any, index: Any = None) -> None:
        """
        Set a parameter value

        Args:
            ref: Parameter handle or name
            value: New value (type checked against the parameter kind)
            index: Instance to set; None sets every instance

        Raises:
            DataSetError: If the value does not fit the parameter kind
            SimulationError: If a run owns the data set
        """
        self._check_unlocked("change parameters")
        layout = self._layout(self.parameter_layout, PARAMETER, ref)
        spec = self.model.parameter_spec(layout.name)
        encoded = self._encode_parameter(spec, value)
        if not spec.is_within_bounds(value):
            logger.warning(
                f"Parameter '{spec.name}' set to {value}, outside its recommended range "
                f"[{spec.min_value}, {spec.max_value}]"
            )
        if index is None and layout.signature:
            self.parameters[layout.name][:] = encoded
        else:
            self.parameters[layout.name][layout.offsets[self.member_tuple(layout, index)]] = encoded

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def allocate_inputs(self, n_steps: int) -> None:
        """Resize every input series to n_steps rows, keeping existing rows"""
        self._check_unlocked("reallocate inputs")
        if n_steps == self.n_input_steps:
            return
        keep = min(n_steps, self.n_input_steps)
        for name, series in self.inputs.items():
            resized = np.zeros((n_steps, series.shape[1]), dtype=np.float64)
            resized[:keep] = series[:keep]
            self.inputs[name] = resized
        self.n_input_steps = n_steps

    def set_input_series(self, ref: SymbolRef, values: Sequence[float], index: Any = None) -> None:
        """
        Provide the time series of an input

        The series grows the input allocation when it is longer than the
        current one; shorter series are rejected.

        Args:
            ref: Input handle or name
            values: One value per timestep
            index: Instance to set; None sets every instance

        Raises:
            DataSetError: If the series is shorter than the allocation or
                not finite
        """
        self._check_unlocked("change inputs")
        layout = self._layout(self.input_layout, INPUT, ref)
        series = np.asarray(values, dtype=np.float64)
        if series.ndim != 1:
            raise DataSetError(
                code="invalid_input_series",
                message=f"Series for input '{layout.name}' must be one-dimensional",
                details={"input": layout.name},
            )
        if not np.all(np.isfinite(series)):
            raise DataSetError(
                code="invalid_input_series",
                message=f"Series for input '{layout.name}' contains NaN or infinite values",
                details={"input": layout.name},
            )
        if len(series) > self.n_input_steps:
            self.allocate_inputs(len(series))
        elif len(series) < self.n_input_steps:
            raise DataSetError(
                code="input_length_mismatch",
                message=(
                    f"Series for input '{layout.name}' has {len(series)} value(s) but "
                    f"{self.n_input_steps} timestep(s) are allocated"
                ),
                details={"input": layout.name, "length": len(series), "n_steps": self.n_input_steps},
            )
        if index is None and layout.signature:
            self.inputs[layout.name][:, :] = series[:, None]
            self.input_provided[layout.name][:] = True
        else:
            column = layout.offsets[self.member_tuple(layout, index)]
            self.inputs[layout.name][:, column] = series
            self.input_provided[layout.name][column] = True

    def input_value(self, ref: SymbolRef, index: Any = None, step: Optional[int] = None) -> float:
        layout = self._layout(self.input_layout, INPUT, ref)
        column = layout.offsets[self.member_tuple(layout, index)]
        return self._input_at(layout.name, column, self.step if step is None else step)

    def _input_at(self, name: str, column: int, step: int) -> float:
        if step >= self.n_input_steps:
            # Nothing was allocated for this step; unprovided inputs read 0
            return 0.0
        return float(self.inputs[name][step, column])

    def input_was_provided(self, ref: SymbolRef, index: Any = None) -> bool:
        layout = self._layout(self.input_layout, INPUT, ref)
        return bool(self.input_provided[layout.name][layout.offsets[self.member_tuple(layout, index)]])

    # ------------------------------------------------------------------
    # History and results
    # ------------------------------------------------------------------

    def start_history(self, n_steps: int) -> None:
        """Allocate history rows for the initial state plus n_steps steps"""
        self.history = np.zeros((n_steps + 1, self.n_slots), dtype=np.float64)
        self.history_time = []

    def record_history(self) -> None:
        """Copy the current generation into the next history row, growing the history if needed"""
        if self.history is None:
            return
        row = len(self.history_time)
        if row >= len(self.history):
            extra = np.zeros((max(1, len(self.history)), self.n_slots), dtype=np.float64)
            self.history = np.vstack([self.history, extra])
        self.history[row] = self.results[self._current]
        self.history_time.append(self.time)

    def trim_history(self) -> None:
        """Drop preallocated history rows that were never recorded"""
        if self.history is not None:
            self.history = self.history[: len(self.history_time)]

    def result_series(self, symbol: SymbolRef, index: Any = None) -> np.ndarray:
        """Recorded values of one equation instance, one per history row"""
        if self.history is None:
            raise SimulationError(
                code="no_history",
                message="No history was recorded; enable record_history before the run",
            )
        position = self.position(symbol, index)
        return self.history[: len(self.history_time), position].copy()

    def results_dict(self) -> RunResultDict:
        """All recorded series, keyed by 'name' or 'name[member, ...]'"""
        rows = len(self.history_time)
        results: Dict[str, List[float]] = {}
        for name, layout in self.equation_layout.items():
            for members, offset in layout.offsets.items():
                key = f"{name}[{format_index(members)}]" if members else name
                if self.history is None:
                    results[key] = []
                else:
                    results[key] = self.history[:rows, layout.base + offset].tolist()
        return {"time": list(self.history_time), "results": results}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset_results(self) -> None:
        """Discard results and history so the data set can be run again"""
        if self.state == RUNNING:
            self._check_unlocked("reset results")
        self.results[:] = 0.0
        self.written[:] = False
        self._current = 0
        self.history = None
        self.history_time = []
        self.step = 0
        self.time = 0.0
        self.state = BUILT

    def copy(self) -> "DataSet":
        """
        Independent copy with the same parameters and inputs

        Results are not copied; the copy starts in the Built state.
        """
        other = DataSet(self.model, self.n_input_steps, self.settings)
        for name, values in self.parameters.items():
            other.parameters[name] = values.copy()
        for name, series in self.inputs.items():
            other.inputs[name] = series.copy()
            other.input_provided[name] = self.input_provided[name].copy()
        return other

    @property
    def finished(self) -> bool:
        return self.state in (COMPLETED, FAILED)

    def stats(self) -> StorageStatsDict:
        return {
            "parameter_slots": int(sum(len(v) for v in self.parameters.values())),
            "input_slots": int(sum(v.size for v in self.inputs.values())),
            "result_slots": int(self.n_slots),
            "n_steps": int(self.n_input_steps),
            "state": self.state,
        }


class StorageView:
    """
    What an equation body sees while it is evaluated

    The view is bound to one instance of the equation being evaluated;
    reads of symbols with fewer index sets broadcast, and index sets the
    body fixes with `at=` override the bound members.
    """

    def __init__(self, dataset: DataSet):
        self._dataset = dataset
        self._index_space = dataset.index_space
        self._bound: Dict[str, Member] = {}
        self.time = 0.0
        self.step = 0
        self.timestep = dataset.time_step
        self.date: Optional[date] = None

    def _calendar_date(self) -> date:
        if self.date is None:
            raise EvaluationError(
                code="missing_start_date",
                message="Calendar time needs a start_date in the run configuration",
                details={"step": self.step, "time": self.time},
            )
        return self.date

    @property
    def day_of_year(self) -> int:
        """Day of the year of the current step, 1 for January 1st"""
        return self._calendar_date().timetuple().tm_yday

    @property
    def days_this_year(self) -> int:
        """Number of days in the year of the current step"""
        return 366 if calendar.isleap(self._calendar_date().year) else 365

    def bind(self, signature: Tuple[str, ...], members: MemberTuple) -> None:
        self._bound = dict(zip(signature, members))

    def _key(self, layout: SymbolLayout, at: Any) -> int:
        pinned = None
        if at:
            items = at.items() if isinstance(at, Mapping) else at
            pinned = {_set_name(k): v for k, v in items}
        try:
            members = project(self._bound, layout.signature, pinned)
        except KeyError as e:
            raise IndexOutOfRangeError(
                layout.name,
                dict(self._bound),
                message=(
                    f"Cannot address '{layout.name}' (indexed by {layout.signature}): "
                    f"index set {e.args[0]!r} is neither bound nor pinned"
                ),
                details={"step": self.step, "time": self.time},
            ) from None
        offset = layout.offsets.get(members)
        if offset is None:
            raise IndexOutOfRangeError(
                layout.name,
                members,
                details={"step": self.step, "time": self.time},
            )
        return offset

    def result(self, ref: SymbolRef, at: Any = None) -> float:
        """Value of an equation from the current step"""
        ds = self._dataset
        layout = ds._layout(ds.equation_layout, EQUATION, ref)
        return float(ds.results[ds.current_row, layout.base + self._key(layout, at)])

    def last_result(self, ref: SymbolRef, at: Any = None) -> float:
        """Value of an equation from the previous step"""
        ds = self._dataset
        layout = ds._layout(ds.equation_layout, EQUATION, ref)
        return float(ds.results[ds.previous_row, layout.base + self._key(layout, at)])

    def parameter(self, ref: SymbolRef, at: Any = None) -> Any:
        ds = self._dataset
        layout = ds._layout(ds.parameter_layout, PARAMETER, ref)
        spec = ds.model.parameter_spec(layout.name)
        return ds._decode_parameter(spec, ds.parameters[layout.name][self._key(layout, at)])

    def input(self, ref: SymbolRef, at: Any = None) -> float:
        ds = self._dataset
        layout = ds._layout(ds.input_layout, INPUT, ref)
        return ds._input_at(layout.name, self._key(layout, at), self.step)

    def input_was_provided(self, ref: SymbolRef, at: Any = None) -> bool:
        ds = self._dataset
        layout = ds._layout(ds.input_layout, INPUT, ref)
        return bool(ds.input_provided[layout.name][self._key(layout, at)])

    def index(self, index_set: Any) -> Member:
        """Member of an index set the evaluated instance is bound to"""
        name = _set_name(index_set)
        try:
            return self._bound[name]
        except KeyError:
            raise EvaluationError(
                code="unbound_index_set",
                message=f"The evaluated instance is not indexed by '{name}'",
                details={"step": self.step, "time": self.time},
            ) from None

    def members(self, index_set: Any) -> Tuple[Member, ...]:
        """Members of an index set (within the bound parent member for sub-indexed sets)"""
        return self._index_space.members(_set_name(index_set), self._bound)
