"""
Shared constants for the envsim engine
Centralizes names so the registry, analysis and run loop agree on them
"""

import ast

# ============================================================================
# Symbol Categories
# ============================================================================

INDEX_SET = "index_set"
UNIT = "unit"
PARAMETER_GROUP = "parameter_group"
PARAMETER = "parameter"
INPUT = "input"
EQUATION = "equation"
SOLVER = "solver"

# Categories that can be read from an equation body
READABLE_CATEGORIES = (EQUATION, INPUT, PARAMETER)

# ============================================================================
# Parameter and Equation Kinds
# ============================================================================

PARAMETER_DOUBLE = "double"
PARAMETER_INT = "int"
PARAMETER_BOOL = "bool"
PARAMETER_ENUM = "enum"

VALID_PARAMETER_KINDS = {PARAMETER_DOUBLE, PARAMETER_INT, PARAMETER_BOOL, PARAMETER_ENUM}

ALGEBRAIC = "algebraic"
ODE = "ode"
INITIAL_VALUE = "initial_value"

VALID_EQUATION_KINDS = {ALGEBRAIC, ODE, INITIAL_VALUE}

# ============================================================================
# Dependency Edges and Generations
# ============================================================================

SAME_STEP = "same_step"
PREVIOUS_STEP = "previous_step"

CURRENT = "current"
PREVIOUS = "previous"

# ============================================================================
# Run States
# ============================================================================

BUILT = "built"
INITIALIZED = "initialized"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

# ============================================================================
# Solver Methods
# ============================================================================

EULER = "euler"
MIDPOINT = "midpoint"
HEUN = "heun"
RALSTON = "ralston"
RK4 = "rk4"
IMPLICIT_EULER_ADAPTIVE = "implicit_euler_adaptive"

FIXED_STEP_METHODS = {EULER, MIDPOINT, HEUN, RALSTON, RK4}
ADAPTIVE_METHODS = {IMPLICIT_EULER_ADAPTIVE}
VALID_SOLVER_METHODS = FIXED_STEP_METHODS | ADAPTIVE_METHODS

# ============================================================================
# Formula Bodies
# ============================================================================

# Variables automatically available in formulas
BUILT_IN_VARIABLES = {"t", "time", "timestep", "step", "day_of_year", "days_this_year"}

# Functions that read model storage from a formula
REFERENCE_FUNCTION_NAMES = {"result", "last", "param", "input"}

# Function names allowed in formulas
SAFE_FUNCTION_NAMES = {
    # Basic math
    "abs",
    "min",
    "max",
    "pow",
    "round",
    # Exponential and logarithmic
    "exp",
    "log",
    "log10",
    "sqrt",
    # Trigonometric
    "sin",
    "cos",
    "tan",
    "asin",
    "acos",
    "atan",
    "atan2",
    # Hyperbolic
    "sinh",
    "cosh",
    "tanh",
    # Rounding
    "ceil",
    "floor",
}

# Binary and unary operators allowed in formulas
SAFE_AST_OPERATORS = {
    # Arithmetic
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Pow,
    ast.Mod,
    ast.FloorDiv,
    # Unary
    ast.USub,
    ast.UAdd,
    # Comparison
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.Eq,
    ast.NotEq,
    # Boolean
    ast.And,
    ast.Or,
    ast.Not,
}

# ============================================================================
# Simulation Limits
# ============================================================================

MAX_SIMULATION_STEPS = 10_000_000
