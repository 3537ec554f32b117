"""
Formula bodies for the envsim engine
Safely evaluates equation bodies written as expression strings with a
controlled namespace and AST walking
"""

from typing import Any, Dict, List, Optional, Tuple
import ast
import math
import operator
import re
import logging

from envsim.constants import (
    BUILT_IN_VARIABLES,
    REFERENCE_FUNCTION_NAMES,
    SAFE_AST_OPERATORS,
    SAFE_FUNCTION_NAMES,
    EQUATION,
    INPUT,
    PARAMETER,
    READABLE_CATEGORIES,
)
from envsim.exceptions import EvaluationError, FormulaError

logger = logging.getLogger(__name__)

# Reference function -> (category, previous step)
_REFERENCE_FUNCTIONS = {
    "result": (EQUATION, False),
    "last": (EQUATION, True),
    "param": (PARAMETER, False),
    "input": (INPUT, False),
}


def alias(name: str) -> str:
    """Identifier a symbol name is reachable by inside a formula"""
    ident = re.sub(r"\W", "_", name.strip())
    if ident and ident[0].isdigit():
        ident = "_" + ident
    return ident


class FormulaBody:
    """
    Equation body given as an expression string

    Supports:
    - Basic arithmetic operations (+, -, *, /, **, %, //)
    - Comparison operations (<, <=, >, >=, ==, !=), evaluating to 1.0 / 0.0
    - Boolean operations (and, or, not)
    - Mathematical functions (exp, log, sqrt, min, max, ...)
    - Ternary conditional expressions (x if condition else y)
    - Symbol references by alias, or through result(), last(), param()
      and input() when a name is used in several categories
    - Built-in variables t / time, timestep and step, plus day_of_year and
      days_this_year when the run has a start date

    A formula is parsed when it is created and bound to a model during
    dependency analysis, which resolves every reference to a symbol.
    """

    # Operator implementations
    SAFE_OPERATORS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
        ast.Pow: operator.pow,
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
    }

    # Function implementations
    SAFE_FUNCTIONS = {
        # Basic math
        "abs": abs,
        "min": min,
        "max": max,
        "pow": pow,
        "round": round,
        # Exponential and logarithmic
        "exp": math.exp,
        "log": math.log,
        "log10": math.log10,
        "sqrt": math.sqrt,
        # Trigonometric
        "sin": math.sin,
        "cos": math.cos,
        "tan": math.tan,
        "asin": math.asin,
        "acos": math.acos,
        "atan": math.atan,
        "atan2": math.atan2,
        # Hyperbolic
        "sinh": math.sinh,
        "cosh": math.cosh,
        "tanh": math.tanh,
        # Rounding
        "ceil": math.ceil,
        "floor": math.floor,
    }

    def __init__(self, expression: str):
        """
        Parse a formula

        Raises:
            FormulaError: If the expression has a syntax error or uses a
                construct outside the allowed subset
        """
        self.expression = expression.strip()
        if not self.expression:
            raise FormulaError(code="empty_formula", message="Formula is empty", formula=expression)
        try:
            self.tree = ast.parse(self.expression, mode="eval")
        except SyntaxError as e:
            raise FormulaError(
                code="syntax_error",
                message=f"Syntax error in formula: {self.expression}. {str(e)}",
                formula=self.expression,
            ) from e
        self._check_node(self.tree.body)
        # Populated by bind(): ast node id -> (category, name, previous step)
        self._references: Dict[int, Tuple[str, str, bool]] = {}
        self.bound = False

    def __repr__(self) -> str:
        return f"FormulaBody({self.expression!r})"

    # ------------------------------------------------------------------
    # Parse-time checks
    # ------------------------------------------------------------------

    def _check_node(self, node: ast.AST) -> None:
        if isinstance(node, (ast.Constant, ast.Name)):
            return
        if isinstance(node, (ast.BinOp, ast.UnaryOp, ast.BoolOp)):
            if type(node.op) not in SAFE_AST_OPERATORS:
                raise FormulaError(
                    code="unsupported_operator",
                    message=f"Unsupported operator: {type(node.op).__name__}",
                    formula=self.expression,
                )
        elif isinstance(node, ast.Compare):
            for op in node.ops:
                if type(op) not in SAFE_AST_OPERATORS:
                    raise FormulaError(
                        code="unsupported_comparison",
                        message=f"Unsupported comparison operator: {type(op).__name__}",
                        formula=self.expression,
                    )
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name):
                raise FormulaError(
                    code="invalid_function_call",
                    message="Function call must use a named function",
                    formula=self.expression,
                )
            func_name = node.func.id
            if node.keywords:
                raise FormulaError(
                    code="invalid_function_call",
                    message=f"Keyword arguments are not allowed in call to {func_name}",
                    formula=self.expression,
                )
            if func_name in REFERENCE_FUNCTION_NAMES:
                if len(node.args) != 1 or not isinstance(node.args[0], (ast.Name, ast.Constant)):
                    raise FormulaError(
                        code="invalid_reference",
                        message=f"{func_name}() takes exactly one symbol name",
                        formula=self.expression,
                    )
                return
            if func_name not in SAFE_FUNCTION_NAMES:
                raise FormulaError(
                    code="function_not_allowed",
                    message=(
                        f"Function not allowed: {func_name}. Allowed functions: "
                        f"{', '.join(sorted(SAFE_FUNCTION_NAMES | REFERENCE_FUNCTION_NAMES))}"
                    ),
                    formula=self.expression,
                )
        elif not isinstance(node, ast.IfExp):
            raise FormulaError(
                code="unsupported_node_type",
                message=f"Unsupported expression type: {type(node).__name__}",
                formula=self.expression,
            )
        for child in ast.iter_child_nodes(node):
            if isinstance(child, (ast.expr_context, ast.operator, ast.unaryop, ast.boolop, ast.cmpop)):
                continue
            if isinstance(node, ast.Call) and child is node.func:
                continue
            self._check_node(child)

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind(self, model: Any) -> List[Tuple[str, str, bool]]:
        """
        Resolve every symbol reference in the formula against a model

        Args:
            model: Model the equation belongs to

        Returns:
            List of (category, name, previous step) reads

        Raises:
            FormulaError: If a name is unknown or ambiguous
        """
        aliases: Dict[str, List[Tuple[str, str]]] = {}
        for category in READABLE_CATEGORIES:
            if category == EQUATION:
                names = [spec.name for spec in model.equations()]
            elif category == INPUT:
                names = [spec.name for spec in model.inputs()]
            else:
                names = [spec.name for spec in model.parameters()]
            for name in names:
                aliases.setdefault(alias(name), []).append((category, name))

        references: Dict[int, Tuple[str, str, bool]] = {}
        reads: List[Tuple[str, str, bool]] = []

        def lookup(ident: str, category: Optional[str]) -> Tuple[str, str]:
            # An exact name (e.g. a string literal) wins over an alias
            if category is not None and model.has_symbol(category, ident):
                return category, ident
            candidates = aliases.get(ident, [])
            if category is not None:
                candidates = [c for c in candidates if c[0] == category]
            if not candidates:
                what = category.replace("_", " ") if category else "symbol"
                raise FormulaError(
                    code="undefined_variable",
                    message=f"Undefined {what} '{ident}' in formula",
                    formula=self.expression,
                    details={"name": ident},
                )
            if len(candidates) > 1:
                raise FormulaError(
                    code="ambiguous_reference",
                    message=(
                        f"'{ident}' refers to several symbols "
                        f"({', '.join(f'{c}:{n}' for c, n in candidates)}); "
                        f"use result(), last(), param() or input()"
                    ),
                    formula=self.expression,
                    details={"name": ident},
                )
            return candidates[0]

        for node in ast.walk(self.tree):
            if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
                func_name = node.func.id
                if func_name not in _REFERENCE_FUNCTIONS:
                    continue
                category, previous = _REFERENCE_FUNCTIONS[func_name]
                arg = node.args[0]
                ident = arg.id if isinstance(arg, ast.Name) else str(arg.value)
                _, name = lookup(ident, category)
                references[id(node)] = (category, name, previous)
                reads.append((category, name, previous))
            elif isinstance(node, ast.Name):
                if node.id in BUILT_IN_VARIABLES or id(node) in references:
                    continue
                if self._is_reference_argument(node):
                    continue
                category, name = lookup(node.id, None)
                references[id(node)] = (category, name, False)
                reads.append((category, name, False))

        self._references = references
        self.bound = True
        return reads

    def _is_reference_argument(self, target: ast.Name) -> bool:
        for node in ast.walk(self.tree):
            if (
                isinstance(node, ast.Call)
                and isinstance(node.func, ast.Name)
                and node.func.id in _REFERENCE_FUNCTIONS
                and node.args
                and node.args[0] is target
            ):
                return True
            if isinstance(node, ast.Call) and node.func is target:
                return True
        return False

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def __call__(self, view: Any) -> Any:
        if not self.bound:
            raise EvaluationError(
                code="unbound_formula",
                message=f"Formula '{self.expression}' was never bound to a model",
            )
        return self.eval_node(self.tree.body, view)

    def _read(self, reference: Tuple[str, str, bool], view: Any) -> Any:
        category, name, previous = reference
        if category == EQUATION:
            return view.last_result(name) if previous else view.result(name)
        if category == INPUT:
            return view.input(name)
        return view.parameter(name)

    def eval_node(self, node: ast.AST, view: Any) -> Any:
        """
        Recursively evaluate AST node

        Args:
            node: AST node to evaluate
            view: Storage view of the instance being evaluated

        Returns:
            Evaluated result (usually float, but can be bool or str)

        Raises:
            EvaluationError: If evaluation fails
        """
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            reference = self._references.get(id(node))
            if reference is not None:
                return self._read(reference, view)
            if node.id in ("t", "time"):
                return view.time
            if node.id == "timestep":
                return view.timestep
            if node.id == "step":
                return view.step
            if node.id in ("day_of_year", "days_this_year"):
                return float(getattr(view, node.id))
            raise EvaluationError(
                code="undefined_variable",
                message=f"Undefined variable: {node.id}",
            )

        if isinstance(node, ast.BinOp):
            return self._eval_binop(node, view)

        if isinstance(node, ast.UnaryOp):
            return self._eval_unaryop(node, view)

        if isinstance(node, ast.Call):
            return self._eval_call(node, view)

        if isinstance(node, ast.IfExp):
            if self.eval_node(node.test, view):
                return self.eval_node(node.body, view)
            return self.eval_node(node.orelse, view)

        if isinstance(node, ast.Compare):
            return 1.0 if self._eval_compare(node, view) else 0.0

        if isinstance(node, ast.BoolOp):
            return 1.0 if self._eval_boolop(node, view) else 0.0

        raise EvaluationError(
            code="unsupported_node_type",
            message=f"Unsupported expression type: {type(node).__name__}",
        )

    def _eval_binop(self, node: ast.BinOp, view: Any) -> float:
        """Evaluate binary operation"""
        op_type = type(node.op)
        left = self.eval_node(node.left, view)
        right = self.eval_node(node.right, view)

        if op_type in (ast.Div, ast.FloorDiv, ast.Mod) and right == 0:
            raise EvaluationError(
                code="division_by_zero",
                message=f"Division by zero in formula '{self.expression}'",
            )

        try:
            return self.SAFE_OPERATORS[op_type](left, right)
        except (ArithmeticError, TypeError, ValueError) as e:
            raise EvaluationError(
                code="arithmetic_error",
                message=f"Arithmetic error: {str(e)}",
            ) from e

    def _eval_unaryop(self, node: ast.UnaryOp, view: Any) -> Any:
        """Evaluate unary operation"""
        operand = self.eval_node(node.operand, view)
        if isinstance(node.op, ast.Not):
            return 0.0 if operand else 1.0
        return self.SAFE_OPERATORS[type(node.op)](operand)

    def _eval_call(self, node: ast.Call, view: Any) -> Any:
        """Evaluate function call"""
        func_name = node.func.id
        if func_name in _REFERENCE_FUNCTIONS:
            return self._read(self._references[id(node)], view)

        args = [self.eval_node(arg, view) for arg in node.args]
        try:
            return self.SAFE_FUNCTIONS[func_name](*args)
        except ValueError as e:
            raise EvaluationError(
                code="math_domain_error",
                message=f"Math domain error in {func_name}: {str(e)}",
            ) from e
        except (ArithmeticError, TypeError) as e:
            raise EvaluationError(
                code="function_evaluation_error",
                message=f"Error evaluating function {func_name}: {str(e)}",
            ) from e

    def _eval_compare(self, node: ast.Compare, view: Any) -> bool:
        """Evaluate comparison expression"""
        left = self.eval_node(node.left, view)

        for op, comparator in zip(node.ops, node.comparators):
            right = self.eval_node(comparator, view)

            if isinstance(op, ast.Lt):
                result = left < right
            elif isinstance(op, ast.LtE):
                result = left <= right
            elif isinstance(op, ast.Gt):
                result = left > right
            elif isinstance(op, ast.GtE):
                result = left >= right
            elif isinstance(op, ast.Eq):
                result = left == right
            else:
                result = left != right

            if not result:
                return False
            left = right

        return True

    def _eval_boolop(self, node: ast.BoolOp, view: Any) -> bool:
        """Evaluate boolean operation (and, or)"""
        if isinstance(node.op, ast.And):
            return all(self.eval_node(value, view) for value in node.values)
        return any(self.eval_node(value, view) for value in node.values)
