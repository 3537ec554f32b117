"""
Utility functions for data set manipulation
Provides reusable functions for common data set operations
"""

from typing import Any, Dict, Mapping, Union

from envsim.storage import DataSet


def apply_parameter_values(
    dataset: DataSet,
    parameter_values: Mapping[str, Union[Any, Mapping[Any, Any]]],
) -> DataSet:
    """
    Create a data set copy with updated parameter values.

    This function is used when re-running a model with modified parameter
    values (e.g., in calibration or sensitivity analysis) without touching
    the original data set.

    Args:
        dataset: Original data set
        parameter_values: Dictionary mapping parameter names to a value for
            every instance, or to {index: value} for individual instances

    Returns:
        New data set (Built state) with updated parameter values

    Example:
        >>> modified = apply_parameter_values(dataset, {"k": 0.2})
        >>> modified.parameter_value("k")
        0.2
    """
    modified = dataset.copy()
    for name, value in parameter_values.items():
        if isinstance(value, Mapping):
            for index, instance_value in value.items():
                modified.set_parameter_value(name, instance_value, index=index)
        else:
            modified.set_parameter_value(name, value)
    return modified


def parameter_snapshot(dataset: DataSet) -> Dict[str, Dict[str, Any]]:
    """Current parameter values keyed by name, then by formatted index"""
    snapshot: Dict[str, Dict[str, Any]] = {}
    for name, layout in dataset.parameter_layout.items():
        snapshot[name] = {
            ", ".join(str(m) for m in members): dataset.parameter_value(name, members)
            for members in layout.instances
        }
    return snapshot
