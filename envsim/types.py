"""
Type definitions for the envsim engine
Provides TypedDict and other type hints for structured data
"""

from typing import TypedDict, List, Dict, Tuple, Union

# A concrete index member and a fully resolved member tuple
Member = Union[str, int]
MemberTuple = Tuple[Member, ...]


class RunResultDict(TypedDict):
    """
    Typed dictionary for recorded run results

    Series are keyed by "<symbol>" for scalar equations and
    "<symbol>[<member>, ...]" for indexed ones.
    """
    time: List[float]
    results: Dict[str, List[float]]


class ScheduleEntryDict(TypedDict):
    """
    Typed dictionary for one line of the dependency-order dump
    """
    name: str
    kind: str
    batch: int
    position: int
    unit: str


class StorageStatsDict(TypedDict):
    """
    Typed dictionary for data set storage statistics
    """
    parameter_slots: int
    input_slots: int
    result_slots: int
    n_steps: int
    state: str


class ValidationSummaryDict(TypedDict, total=False):
    """
    Typed dictionary for validation summary

    All fields are optional to match the actual validation response structure.
    """
    valid: bool
    error_count: int
    warning_count: int
    errors_by_code: Dict[str, int]
    errors_by_symbol: Dict[str, int]
