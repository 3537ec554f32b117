"""
Solver dispatcher for the envsim engine
Advances ODE blocks over one model timestep with explicit Runge-Kutta
schemes or an adaptive implicit Euler scheme for stiff systems
"""

from typing import Any, Dict, List, NamedTuple, Optional, Tuple
import logging

import numpy as np
from scipy.linalg import LinAlgError, lu_factor, lu_solve

from envsim.config import Settings, get_settings
from envsim.constants import (
    EULER,
    MIDPOINT,
    HEUN,
    RALSTON,
    RK4,
    IMPLICIT_EULER_ADAPTIVE,
)
from envsim.exceptions import IntegrationDivergenceError

logger = logging.getLogger(__name__)


class ButcherTableau(NamedTuple):
    """
    Coefficients of an explicit Runge-Kutta method

    Attributes:
        a: Stage coupling coefficients (lower triangular, row i has i entries)
        b: Output weights
        c: Stage time fractions
        order: Global order of accuracy
    """

    a: Tuple[Tuple[float, ...], ...]
    b: Tuple[float, ...]
    c: Tuple[float, ...]
    order: int

    @property
    def stages(self) -> int:
        return len(self.b)


TABLEAUX: Dict[str, ButcherTableau] = {
    # x_{n+1} = x_n + h f(t_n, x_n)
    EULER: ButcherTableau(a=((),), b=(1.0,), c=(0.0,), order=1),
    MIDPOINT: ButcherTableau(a=((), (0.5,)), b=(0.0, 1.0), c=(0.0, 0.5), order=2),
    HEUN: ButcherTableau(a=((), (1.0,)), b=(0.5, 0.5), c=(0.0, 1.0), order=2),
    RALSTON: ButcherTableau(a=((), (2.0 / 3.0,)), b=(0.25, 0.75), c=(0.0, 2.0 / 3.0), order=2),
    # k1 = f(t, y); k2 = f(t + h/2, y + h k1/2); k3 = f(t + h/2, y + h k2/2);
    # k4 = f(t + h, y + h k3); y_{n+1} = y_n + h/6 (k1 + 2 k2 + 2 k3 + k4)
    RK4: ButcherTableau(
        a=((), (0.5,), (0.0, 0.5), (0.0, 0.0, 1.0)),
        b=(1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0),
        c=(0.0, 0.5, 0.5, 1.0),
        order=4,
    ),
}


class _NewtonFailure(Exception):
    """Newton iteration did not converge for one implicit step"""


class SolverDispatcher:
    """
    Integrates solver blocks over one timestep

    A block is driven through three callbacks:

    - ``initial_state()``: state vector at the start of the step
    - ``rhs(t, y)``: derivatives at stage time t and state y
    - ``commit(y)``: store the final state

    The adaptive method remembers the last accepted sub-step of every
    block and starts the next timestep from it.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._step_memory: Dict[str, float] = {}
        self._stats: Dict[str, Dict[str, int]] = {}

    def reset(self) -> None:
        self._step_memory.clear()
        self._stats.clear()

    def statistics(self) -> Dict[str, Dict[str, int]]:
        """Per-block counters of sub-steps, rejections and right-hand-side calls"""
        return {label: dict(counts) for label, counts in self._stats.items()}

    def _counter(self, label: str) -> Dict[str, int]:
        return self._stats.setdefault(
            label, {"steps": 0, "substeps": 0, "rejected": 0, "rhs_evaluations": 0}
        )

    def advance(self, system: Any, t: float, dt: float) -> np.ndarray:
        """
        Advance a block from t to t + dt and commit the final state

        Args:
            system: Block adapter exposing solver, label, initial_state,
                rhs and commit
            t: Start time of the step
            dt: Model timestep

        Returns:
            Final state vector

        Raises:
            IntegrationDivergenceError: If the state becomes non-finite or
                the adaptive method exhausts its retry budget
        """
        spec = system.solver
        counter = self._counter(system.label)
        counter["steps"] += 1

        y0 = np.asarray(system.initial_state(), dtype=np.float64)
        if spec.method in TABLEAUX:
            y = self._explicit(system, TABLEAUX[spec.method], t, dt, y0, counter)
        elif spec.method == IMPLICIT_EULER_ADAPTIVE:
            y = self._implicit_adaptive(system, t, dt, y0, counter)
        else:
            raise IntegrationDivergenceError(
                f"Unknown solver method '{spec.method}' for {system.label}",
                details={"solver": spec.name, "method": spec.method},
            )

        system.commit(y)
        return y

    def _rhs(self, system: Any, t: float, y: np.ndarray, counter: Dict[str, int]) -> np.ndarray:
        counter["rhs_evaluations"] += 1
        return np.asarray(system.rhs(t, y), dtype=np.float64)

    def _diverged(self, system: Any, t: float, reason: str) -> IntegrationDivergenceError:
        return IntegrationDivergenceError(
            f"Integration of {system.label} diverged at t={t:.6g}: {reason}",
            details={"solver": system.solver.name, "block": system.label, "time": t},
        )

    # ------------------------------------------------------------------
    # Explicit Runge-Kutta
    # ------------------------------------------------------------------

    def _explicit(
        self,
        system: Any,
        tableau: ButcherTableau,
        t: float,
        dt: float,
        y0: np.ndarray,
        counter: Dict[str, int],
    ) -> np.ndarray:
        n = system.solver.substeps()
        h = dt / n
        y = y0.copy()
        for i in range(n):
            t_sub = t + i * h
            k: List[np.ndarray] = []
            for stage in range(tableau.stages):
                y_stage = y.copy()
                for j, a in enumerate(tableau.a[stage]):
                    if a:
                        y_stage += h * a * k[j]
                k.append(self._rhs(system, t_sub + tableau.c[stage] * h, y_stage, counter))
            for weight, k_stage in zip(tableau.b, k):
                if weight:
                    y = y + h * weight * k_stage
            counter["substeps"] += 1
            if not np.all(np.isfinite(y)):
                raise self._diverged(system, t_sub + h, "state is not finite")
        return y

    # ------------------------------------------------------------------
    # Adaptive implicit Euler
    # ------------------------------------------------------------------

    def _jacobian(self, system: Any, t: float, y: np.ndarray, f0: np.ndarray, counter: Dict[str, int]) -> np.ndarray:
        """Forward-difference Jacobian of the right-hand side"""
        n = len(y)
        jac = np.empty((n, n))
        eps = np.sqrt(np.finfo(float).eps)
        for j in range(n):
            delta = eps * max(1.0, abs(y[j]))
            y_pert = y.copy()
            y_pert[j] += delta
            jac[:, j] = (self._rhs(system, t, y_pert, counter) - f0) / delta
        return jac

    def _newton_rhs(self, system: Any, t: float, z: np.ndarray, counter: Dict[str, int]) -> np.ndarray:
        f = self._rhs(system, t, z, counter)
        if not np.all(np.isfinite(f)):
            raise _NewtonFailure(f"non-finite right-hand side at t={t:.6g}")
        return f

    def _backward_euler(self, system: Any, t: float, y: np.ndarray, h: float, counter: Dict[str, int]) -> np.ndarray:
        """
        Solve z = y + h f(t + h, z) with simplified Newton iterations

        The Jacobian is evaluated once at the starting guess. A non-finite
        right-hand side or Newton update counts as a Newton failure.
        """
        settings = self.settings
        t_new = t + h
        z = y.copy()
        f = self._newton_rhs(system, t_new, z, counter)
        jac = self._jacobian(system, t_new, z, f, counter)
        try:
            lu = lu_factor(np.eye(len(y)) - h * jac, check_finite=True)
        except (LinAlgError, ValueError) as e:
            raise _NewtonFailure(str(e)) from e

        for _ in range(settings.newton_max_iterations):
            residual = z - y - h * f
            try:
                delta = lu_solve(lu, -residual)
            except (LinAlgError, ValueError) as e:
                raise _NewtonFailure(str(e)) from e
            if not np.all(np.isfinite(delta)):
                raise _NewtonFailure("non-finite Newton update")
            z = z + delta
            if np.max(np.abs(delta)) <= settings.newton_tolerance * (1.0 + np.max(np.abs(z))):
                return z
            f = self._newton_rhs(system, t_new, z, counter)
        raise _NewtonFailure(f"no convergence in {settings.newton_max_iterations} iterations")

    @staticmethod
    def _error_norm(error: np.ndarray, y_old: np.ndarray, y_new: np.ndarray, rtol: float, atol: float) -> float:
        """RMS of the error scaled by atol + rtol * |y|"""
        if error.size == 0:
            return 0.0
        scale = atol + rtol * np.maximum(np.abs(y_old), np.abs(y_new))
        return float(np.sqrt(np.mean((error / scale) ** 2)))

    def _implicit_adaptive(
        self, system: Any, t: float, dt: float, y0: np.ndarray, counter: Dict[str, int]
    ) -> np.ndarray:
        spec = system.solver
        t_end = t + dt
        min_h = spec.min_step * dt
        h_next = min(self._step_memory.get(system.label, spec.step_size * dt), dt)
        y = y0.copy()
        t_cur = t
        retries = 0

        while t_end - t_cur > 1e-12 * max(1.0, abs(t_end)):
            h = min(h_next, t_end - t_cur)
            try:
                # Step doubling: one full step against two half steps
                y_full = self._backward_euler(system, t_cur, y, h, counter)
                y_half = self._backward_euler(system, t_cur, y, h / 2.0, counter)
                y_two = self._backward_euler(system, t_cur + h / 2.0, y_half, h / 2.0, counter)
                error = self._error_norm(
                    y_two - y_full, y, y_two, spec.relative_tolerance, spec.absolute_tolerance
                )
            except _NewtonFailure as e:
                logger.debug(f"{system.label}: Newton failure at t={t_cur:.6g}, h={h:.3g}: {e}")
                error = float("inf")

            if error <= 1.0:
                if not np.all(np.isfinite(y_two)):
                    raise self._diverged(system, t_cur + h, "state is not finite")
                y = y_two
                t_cur += h
                counter["substeps"] += 1
                if error < 0.25 and h >= h_next:
                    h_next = min(2.0 * h, dt)
                continue

            retries += 1
            counter["rejected"] += 1
            if retries > spec.max_retries:
                raise IntegrationDivergenceError(
                    f"Integration of {system.label} could not meet its tolerance within "
                    f"{spec.max_retries} retries at t={t_cur:.6g}",
                    details={
                        "solver": spec.name,
                        "block": system.label,
                        "time": t_cur,
                        "step_size": h,
                        "retries": retries,
                    },
                )
            h_next = h / 2.0
            if h_next < min_h:
                raise IntegrationDivergenceError(
                    f"Integration of {system.label} needs a sub-step below the minimum "
                    f"({min_h:.3g}) at t={t_cur:.6g}",
                    details={
                        "solver": spec.name,
                        "block": system.label,
                        "time": t_cur,
                        "step_size": h_next,
                        "min_step": min_h,
                    },
                )

        self._step_memory[system.label] = h_next
        return y
