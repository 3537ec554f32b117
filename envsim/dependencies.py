"""
Dependency graph builder for the envsim engine
Discovers which symbols each equation body reads, resolves inferred index
set signatures and produces the same-step / previous-step edge sets
"""

from typing import Any, Callable, Dict, List, NamedTuple, Optional, Set, Tuple
import ast
import inspect
import logging
import textwrap
import tokenize

import numpy as np

from envsim.config import get_settings
from envsim.constants import (
    EQUATION,
    INPUT,
    PARAMETER,
    INDEX_SET,
    SAME_STEP,
    PREVIOUS_STEP,
)
from envsim.exceptions import ModelBuildError, SignatureMismatchError
from envsim.formula import FormulaBody
from envsim.models import Handle

logger = logging.getLogger(__name__)

# StorageView method -> (category, previous step)
READ_METHODS = {
    "result": (EQUATION, False),
    "last_result": (EQUATION, True),
    "parameter": (PARAMETER, False),
    "input": (INPUT, False),
    "input_was_provided": (INPUT, False),
}


class Reference(NamedTuple):
    """
    One read performed by an equation body

    Attributes:
        category: 'equation', 'parameter', 'input' or 'index_set'
        name: Name of the symbol (or index set) read
        previous: True for last_result() reads
        pinned: Index sets fixed explicitly with at={...}
    """

    category: str
    name: str
    previous: bool = False
    pinned: Tuple[str, ...] = ()


class DependencyAnalysis:
    """
    Result of analysing a finished model definition

    Attributes:
        references: Equation name -> reads discovered in its body
        signatures: Equation name -> resolved index set signature
        same_step: Equation name -> equations it reads from the current step
        previous_step: Equation name -> equations it reads from the previous step
    """

    def __init__(self):
        self.references: Dict[str, List[Reference]] = {}
        self.signatures: Dict[str, Tuple[str, ...]] = {}
        self.same_step: Dict[str, Set[str]] = {}
        self.previous_step: Dict[str, Set[str]] = {}

    def edges(self) -> List[Tuple[str, str, str]]:
        """All dependency edges as (source, target, kind)"""
        result: List[Tuple[str, str, str]] = []
        for target in self.references:
            for source in sorted(self.same_step.get(target, ())):
                result.append((source, target, SAME_STEP))
            for source in sorted(self.previous_step.get(target, ())):
                result.append((source, target, PREVIOUS_STEP))
        return result


# ============================================================================
# Trace discovery
# ============================================================================


class RecordingView:
    """
    Stand-in for StorageView that records every read

    Results and inputs read as 1.0 and parameters as their defaults, so the
    body runs through its common path. Errors caused by the dummy values
    are tolerated by the caller.
    """

    def __init__(self, model: Any):
        self._model = model
        self.reads: List[Reference] = []
        self.time = 0.0
        self.step = 0
        self.timestep = 1.0
        self.day_of_year = 1
        self.days_this_year = 365

    def _record(self, method: str, ref: Any, at: Any) -> Handle:
        category, previous = READ_METHODS[method]
        handle = self._model.handle_for(ref, category)
        pinned: Tuple[str, ...] = ()
        if at:
            pinned = tuple(
                key.name if isinstance(key, Handle) else key
                for key in (at.keys() if hasattr(at, "keys") else (pair[0] for pair in at))
            )
        self.reads.append(Reference(category, handle.name, previous, pinned))
        return handle

    def parameter(self, ref: Any, at: Any = None) -> Any:
        handle = self._record("parameter", ref, at)
        spec = self._model.parameter_spec(handle.name)
        return spec.default

    def input(self, ref: Any, at: Any = None) -> np.float64:
        self._record("input", ref, at)
        return np.float64(1.0)

    def input_was_provided(self, ref: Any, at: Any = None) -> bool:
        self._record("input_was_provided", ref, at)
        return True

    def result(self, ref: Any, at: Any = None) -> np.float64:
        self._record("result", ref, at)
        return np.float64(1.0)

    def last_result(self, ref: Any, at: Any = None) -> np.float64:
        self._record("last_result", ref, at)
        return np.float64(1.0)

    def index(self, index_set: Any) -> Any:
        name = index_set.name if isinstance(index_set, Handle) else index_set
        self.reads.append(Reference(INDEX_SET, name))
        members = self._model.index_space.get(name).all_members()
        return members[0] if members else None

    def members(self, index_set: Any) -> Tuple[Any, ...]:
        name = index_set.name if isinstance(index_set, Handle) else index_set
        return self._model.index_space.get(name).all_members()


def trace_references(model: Any, body: Callable[..., Any]) -> List[Reference]:
    """Run a body once against a RecordingView and return what it read"""
    view = RecordingView(model)
    try:
        with np.errstate(all="ignore"):
            body(view)
    except ModelBuildError:
        raise
    except Exception as e:
        logger.debug(f"Trace run of {body!r} stopped early: {type(e).__name__}: {e}")
    return view.reads


# ============================================================================
# Static discovery
# ============================================================================


def _callable_target(body: Callable[..., Any]) -> Tuple[Optional[Callable[..., Any]], Any]:
    """Function whose source to scan, and the object bound to `self` if any"""
    if inspect.ismethod(body):
        return body.__func__, body.__self__
    if inspect.isfunction(body):
        return body, None
    call = getattr(type(body), "__call__", None)
    if inspect.isfunction(call):
        return call, body
    return None, None


def _function_node(tree: ast.AST, target: Callable[..., Any]) -> Optional[ast.AST]:
    if target.__name__ == "<lambda>":
        lambdas = [n for n in ast.walk(tree) if isinstance(n, ast.Lambda)]
        # Several lambdas on the same source lines cannot be told apart
        return lambdas[0] if len(lambdas) == 1 else None
    for node in ast.walk(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == target.__name__:
            return node
    return None


def _parse_source(target: Callable[..., Any]) -> Optional[ast.AST]:
    try:
        source = textwrap.dedent(inspect.getsource(target))
    except (OSError, TypeError, SyntaxError, tokenize.TokenError):
        return None
    try:
        return ast.parse(source)
    except SyntaxError:
        # A lambda cut out of a larger expression; retry on the stripped text
        try:
            return ast.parse(source.strip().rstrip(",)"))
        except SyntaxError:
            return None


class _Unresolved(Exception):
    pass


class _ReferenceScanner(ast.NodeVisitor):
    """Collects view.<read method>(...) calls whose target resolves statically"""

    def __init__(self, model: Any, view_name: str, namespace: Dict[str, Any]):
        self.model = model
        self.view_name = view_name
        self.namespace = namespace
        self.reads: List[Reference] = []

    def _resolve(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in self.namespace:
                return self.namespace[node.id]
            raise _Unresolved(node.id)
        if isinstance(node, ast.Attribute):
            try:
                return getattr(self._resolve(node.value), node.attr)
            except AttributeError:
                raise _Unresolved(node.attr) from None
        if isinstance(node, ast.Subscript):
            container = self._resolve(node.value)
            try:
                return container[self._resolve(node.slice)]
            except (KeyError, IndexError, TypeError):
                raise _Unresolved("subscript") from None
        raise _Unresolved(type(node).__name__)

    def _pinned(self, call: ast.Call) -> Tuple[str, ...]:
        for keyword in call.keywords:
            if keyword.arg != "at":
                continue
            if isinstance(keyword.value, ast.Dict):
                keys = []
                for key in keyword.value.keys:
                    if key is None:
                        raise _Unresolved("**")
                    value = self._resolve(key)
                    keys.append(value.name if isinstance(value, Handle) else value)
                return tuple(keys)
            value = self._resolve(keyword.value)
            if value is None:
                return ()
            if hasattr(value, "keys"):
                return tuple(k.name if isinstance(k, Handle) else k for k in value.keys())
            raise _Unresolved("at")
        return ()

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        if (
            isinstance(func, ast.Attribute)
            and isinstance(func.value, ast.Name)
            and func.value.id == self.view_name
            and node.args
        ):
            try:
                if func.attr in READ_METHODS:
                    category, previous = READ_METHODS[func.attr]
                    target = self._resolve(node.args[0])
                    if isinstance(target, (Handle, str)):
                        handle = self.model.handle_for(target, category)
                        self.reads.append(
                            Reference(category, handle.name, previous, self._pinned(node))
                        )
                elif func.attr == "index":
                    target = self._resolve(node.args[0])
                    name = target.name if isinstance(target, Handle) else target
                    if isinstance(name, str):
                        self.reads.append(Reference(INDEX_SET, name))
            except _Unresolved:
                pass
        self.generic_visit(node)


def scan_references(model: Any, body: Callable[..., Any]) -> List[Reference]:
    """
    Find reads in a callable body by scanning its source

    Only calls on the body's view argument whose symbol argument is a string
    literal, or a name reachable from the body's closure or globals, are
    recognized. Anything else is left to the trace run.
    """
    target, self_obj = _callable_target(body)
    if target is None:
        return []
    tree = _parse_source(target)
    if tree is None:
        return []
    node = _function_node(tree, target)
    if node is None:
        return []

    arg_names = [a.arg for a in node.args.posonlyargs + node.args.args]
    if self_obj is not None:
        if len(arg_names) < 2:
            return []
        self_name, view_name = arg_names[0], arg_names[1]
    else:
        if not arg_names:
            return []
        self_name, view_name = None, arg_names[0]

    try:
        closure = inspect.getclosurevars(target)
    except (TypeError, ValueError):
        return []
    namespace: Dict[str, Any] = {}
    namespace.update(closure.builtins)
    namespace.update(closure.globals)
    namespace.update(closure.nonlocals)
    if self_name is not None:
        namespace[self_name] = self_obj

    scanner = _ReferenceScanner(model, view_name, namespace)
    body_nodes = node.body if isinstance(node.body, list) else [node.body]
    for child in body_nodes:
        scanner.visit(child)
    return scanner.reads


def discover_references(model: Any, body: Callable[..., Any], trace: bool = True) -> List[Reference]:
    """
    Every read an equation body performs, deduplicated in discovery order

    Args:
        model: Model the body belongs to
        body: FormulaBody or callable (StorageView) -> value
        trace: Also run the body against a RecordingView

    Raises:
        ModelBuildError: If the body references an unknown symbol
    """
    if isinstance(body, FormulaBody):
        reads = [Reference(c, n, p) for c, n, p in body.bind(model)]
    else:
        reads = scan_references(model, body)
        if trace:
            reads = reads + trace_references(model, body)

    seen: Set[Reference] = set()
    unique: List[Reference] = []
    for read in reads:
        if read not in seen:
            seen.add(read)
            unique.append(read)
    return unique


# ============================================================================
# Signature resolution
# ============================================================================


def _contribution(model: Any, signatures: Dict[str, Tuple[str, ...]], ref: Reference) -> Tuple[str, ...]:
    if ref.category == INDEX_SET:
        return (ref.name,)
    if ref.category == EQUATION:
        target = signatures[ref.name]
    else:
        target = model.signature_of(ref.category, ref.name)
    return tuple(s for s in target if s not in ref.pinned)


def _initial_value_signature(model: Any, signatures: Dict[str, Tuple[str, ...]], spec: Any) -> Tuple[str, ...]:
    source = spec.initial_value
    if source is None:
        return ()
    if source.category == EQUATION:
        return signatures[source.name]
    return model.signature_of(PARAMETER, source.name)


def resolve_signatures(model: Any, references: Dict[str, List[Reference]]) -> Dict[str, Tuple[str, ...]]:
    """
    Resolve the index set signature of every equation

    Declared signatures are fixed. Inferred signatures grow to the union of
    the unpinned signatures of everything the equation reads (including
    its initial value) until nothing changes.

    Raises:
        SignatureMismatchError: If a fixed signature lacks a dimension of a
            symbol it reads, or a resolved signature is invalid
    """
    index_space = model.index_space
    specs = model.equations()
    signatures: Dict[str, Tuple[str, ...]] = {
        spec.name: spec.declared_index_sets or () for spec in specs
    }

    changed = True
    while changed:
        changed = False
        for spec in specs:
            if spec.declared_index_sets is not None:
                continue
            parts = [signatures[spec.name], _initial_value_signature(model, signatures, spec)]
            parts.extend(_contribution(model, signatures, ref) for ref in references[spec.name])
            merged = index_space.union(*parts, owner=spec.name)
            if merged != signatures[spec.name]:
                signatures[spec.name] = merged
                changed = True

    for spec in specs:
        own = set(signatures[spec.name])
        checks = [(ref, _contribution(model, signatures, ref)) for ref in references[spec.name]]
        if spec.initial_value is not None:
            checks.append(
                (
                    Reference(spec.initial_value.category, spec.initial_value.name),
                    _initial_value_signature(model, signatures, spec),
                )
            )
        for ref, needed in checks:
            missing = [s for s in needed if s not in own]
            if missing:
                raise SignatureMismatchError(
                    f"'{spec.name}' is indexed by {signatures[spec.name]} but reads "
                    f"{ref.category.replace('_', ' ')} '{ref.name}', which varies over "
                    f"{tuple(missing)}; pin those index sets with at= or aggregate explicitly",
                    details={
                        "symbol": spec.name,
                        "reads": ref.name,
                        "signature": list(signatures[spec.name]),
                        "missing": missing,
                    },
                )
            if ref.pinned and ref.category != INDEX_SET:
                target = (
                    signatures[ref.name]
                    if ref.category == EQUATION
                    else model.signature_of(ref.category, ref.name)
                )
                extra = [s for s in ref.pinned if s not in target]
                if extra:
                    raise SignatureMismatchError(
                        f"'{spec.name}' pins {tuple(extra)} when reading '{ref.name}', "
                        f"which is not indexed by them",
                        details={"symbol": spec.name, "reads": ref.name, "pinned": extra},
                    )
        # Re-validate nesting of the final signature
        index_space.canonical(signatures[spec.name], owner=spec.name)

    return signatures


# ============================================================================
# Analysis entry point
# ============================================================================


def analyze_model(model: Any) -> DependencyAnalysis:
    """
    Analyse a model definition

    Discovers every equation's reads, resolves signatures and collects
    dependency edges. Cycle checks happen when the schedule is built.
    """
    settings = get_settings()
    analysis = DependencyAnalysis()

    for spec in model.equations():
        refs = discover_references(model, spec.body, trace=settings.trace_dependencies)
        analysis.references[spec.name] = refs
        analysis.same_step[spec.name] = {
            r.name for r in refs if r.category == EQUATION and not r.previous
        }
        analysis.previous_step[spec.name] = {
            r.name for r in refs if r.category == EQUATION and r.previous
        }
        logger.debug(
            f"Equation '{spec.name}' reads: "
            + (", ".join(f"{r.category}:{r.name}{' (last)' if r.previous else ''}" for r in refs) or "nothing")
        )

    analysis.signatures = resolve_signatures(model, analysis.references)
    return analysis

