"""
Structured exception classes for the envsim engine
Build-time errors block model definition, run-time errors abort a run
"""

from typing import Optional, Dict, Any, List, Sequence
from pydantic import BaseModel


class Diagnostic(BaseModel):
    """
    Structured validation finding with detailed information

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        symbol: Name of the symbol causing the finding (if applicable)
        field: Field name within the symbol or config (if applicable)
        suggestion: Optional suggestion for fixing the problem
        context: Optional additional context information
    """

    code: str
    message: str
    symbol: Optional[str] = None
    field: Optional[str] = None
    suggestion: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        """String representation for logging"""
        parts = [f"[{self.code}] {self.message}"]
        if self.symbol:
            parts.append(f"Symbol: {self.symbol}")
        if self.field:
            parts.append(f"Field: {self.field}")
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)


class EnvsimError(Exception):
    """
    Base class for all engine errors

    Attributes:
        code: Error code for programmatic handling
        message: Human-readable error message
        details: Additional error details (symbol, index, step, time, ...)
    """

    def __init__(
        self, code: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a plain dictionary"""
        return {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }

    def __str__(self) -> str:
        """String representation for logging"""
        return f"[{self.code}] {self.message}"


# ============================================================================
# Build-time errors
# ============================================================================


class ModelBuildError(EnvsimError):
    """Raised while a model is being defined or finalized"""


class NameCollisionError(ModelBuildError):
    """A name was registered twice within the same category"""

    def __init__(self, category: str, name: str, details: Optional[Dict[str, Any]] = None):
        self.category = category
        self.name = name
        super().__init__(
            code="name_collision",
            message=f"A {category.replace('_', ' ')} named '{name}' is already registered",
            details={**(details or {}), "category": category, "name": name},
        )


class UnknownSymbolError(ModelBuildError):
    """A lookup referenced a name that was never registered"""

    def __init__(
        self,
        category: str,
        name: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.category = category
        self.name = name
        super().__init__(
            code="unknown_symbol",
            message=message
            or f"No {category.replace('_', ' ')} named '{name}' has been registered",
            details={**(details or {}), "category": category, "name": name},
        )


class SignatureMismatchError(ModelBuildError):
    """Index set signatures of a reader and the symbol it reads cannot be reconciled"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="signature_mismatch",
            message=message,
            details=details,
        )


class CyclicDependencyError(ModelBuildError):
    """
    Same-step dependencies form a cycle

    Attributes:
        cycle: List of unit labels forming the cycle (first == last)
    """

    def __init__(
        self,
        message: str,
        cycle: Optional[Sequence[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.cycle: List[str] = list(cycle or [])
        super().__init__(
            code="cyclic_dependency",
            message=message,
            details={**(details or {}), "cycle": self.cycle},
        )


class FormulaError(ModelBuildError):
    """A formula body could not be parsed or bound to the model"""

    def __init__(
        self,
        code: str,
        message: str,
        formula: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.formula = formula
        merged = dict(details or {})
        if formula is not None:
            merged["formula"] = formula
        super().__init__(code=code, message=message, details=merged)


# ============================================================================
# Data set errors
# ============================================================================


class DataSetError(EnvsimError):
    """Invalid parameter or input data supplied to a data set"""


# ============================================================================
# Run-time errors
# ============================================================================


class SimulationError(EnvsimError):
    """
    Exception raised during simulation execution

    Any SimulationError escaping a timestep moves the run to the Failed state.
    """


class IndexOutOfRangeError(SimulationError):
    """An index tuple does not address a slot of the symbol"""

    def __init__(
        self,
        symbol: str,
        index: Any,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.symbol = symbol
        self.index = index
        super().__init__(
            code="index_out_of_range",
            message=message or f"Index {index!r} is out of range for '{symbol}'",
            details={**(details or {}), "symbol": symbol, "index": repr(index)},
        )


class WriteConflictError(SimulationError):
    """A slot was written twice within one timestep"""

    def __init__(
        self,
        symbol: str,
        index: Any,
        step: int,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.symbol = symbol
        self.index = index
        self.step = step
        super().__init__(
            code="write_conflict",
            message=f"'{symbol}' at {index!r} was already written during step {step}",
            details={
                **(details or {}),
                "symbol": symbol,
                "index": repr(index),
                "step": step,
            },
        )


class IntegrationDivergenceError(SimulationError):
    """An ODE block could not be advanced within tolerance and retry budget"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="integration_divergence",
            message=message,
            details=details,
        )


class EvaluationError(SimulationError):
    """
    Exception raised during equation evaluation

    Attributes:
        symbol: Name of the equation being evaluated
        index: Index tuple of the instance being evaluated
    """

    def __init__(
        self,
        code: str,
        message: str,
        symbol: Optional[str] = None,
        index: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.symbol = symbol
        self.index = index
        merged = dict(details or {})
        if symbol:
            merged["symbol"] = symbol
        if index is not None:
            merged["index"] = repr(index)
        super().__init__(code=code, message=message, details=merged)

    def __str__(self) -> str:
        """String representation for logging"""
        parts = [f"[{self.code}] {self.message}"]
        if self.symbol:
            parts.append(f"Symbol: {self.symbol}")
        if self.index is not None:
            parts.append(f"Index: {self.index!r}")
        return " | ".join(parts)
