"""Direct collocation for optimal control problems without states.

Problems declare named, bounded controls and named equality path
constraints on a fixed time horizon, plus an integral cost. The solver
discretizes the horizon on a uniform mesh, transcribes the cost with the
trapezoidal rule, enforces the path constraints at every mesh point, and
solves the resulting nonlinear program with SciPy's SLSQP. Derivatives come
from JAX.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import math
from pathlib import Path
from typing import Optional

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, ArrayLike, Float, Scalar
from scipy.optimize import Bounds, minimize

from muscle_redundancy.errors import SolverError, ValidationError


logger = logging.getLogger(__name__)


SUPPORTED_SCHEMES = ("trapezoidal",)


# ============================================================================
# Problem interface
# ============================================================================


class AbstractOptimalControlProblem(ABC):
    """An optimal control problem with named controls and path constraints.

    Subclasses declare their variables in `__init__` with `set_time`,
    `add_control` and `add_path_constraint`, and implement the path
    constraints and the integral cost. The solver calls `initialize_on_mesh`
    before evaluating anything on a mesh.
    """

    def __init__(self, name: str):
        self.name = name
        self._initial_time = math.nan
        self._final_time = math.nan
        self._control_names: list[str] = []
        self._control_bounds: list[tuple[float, float]] = []
        self._path_constraint_names: list[str] = []

    def set_time(self, initial_time: float, final_time: float) -> None:
        if not final_time > initial_time:
            raise ValidationError(
                f"Final time ({final_time}) must be greater than initial time ({initial_time})"
            )
        self._initial_time = float(initial_time)
        self._final_time = float(final_time)

    def add_control(self, name: str, bounds: tuple[float, float]) -> None:
        lower, upper = bounds
        if name in self._control_names:
            raise ValidationError(f"Control '{name}' already exists")
        if lower > upper:
            raise ValidationError(f"Control '{name}' has lower bound {lower} > upper bound {upper}")
        self._control_names.append(name)
        self._control_bounds.append((float(lower), float(upper)))

    def add_path_constraint(self, name: str) -> None:
        """Add an equality path constraint, enforced as `value == 0`."""
        if name in self._path_constraint_names:
            raise ValidationError(f"Path constraint '{name}' already exists")
        self._path_constraint_names.append(name)

    @property
    def initial_time(self) -> float:
        return self._initial_time

    @property
    def final_time(self) -> float:
        return self._final_time

    @property
    def control_names(self) -> tuple[str, ...]:
        return tuple(self._control_names)

    @property
    def control_bounds(self) -> Float[np.ndarray, "n_controls 2"]:
        return np.asarray(self._control_bounds, dtype=float).reshape(-1, 2)

    @property
    def path_constraint_names(self) -> tuple[str, ...]:
        return tuple(self._path_constraint_names)

    @property
    def num_controls(self) -> int:
        return len(self._control_names)

    @property
    def num_path_constraints(self) -> int:
        return len(self._path_constraint_names)

    def initialize_on_mesh(self, mesh: Float[ArrayLike, "n_mesh"]) -> None:
        """Prepare for evaluations on `mesh`, given as fractions of the horizon."""

    @abstractmethod
    def path_constraints(
        self,
        i_mesh: int,
        time: Scalar,
        controls: Float[Array, "n_controls"],
    ) -> Float[Array, "n_path_constraints"]:
        """Values of the path constraints at mesh point `i_mesh`."""
        ...

    @abstractmethod
    def integral_cost(self, time: Scalar, controls: Float[Array, "n_controls"]) -> Scalar:
        """Integrand of the cost at one time."""
        ...

    def describe(self) -> str:
        lines = [
            f"Optimal control problem '{self.name}'",
            f"  Time: [{self.initial_time}, {self.final_time}]",
            f"  Controls ({self.num_controls}):",
        ]
        for name, (lower, upper) in zip(self._control_names, self._control_bounds):
            lines.append(f"    {name}: [{lower}, {upper}]")
        lines.append(f"  Path constraints ({self.num_path_constraints}):")
        for name in self._path_constraint_names:
            lines.append(f"    {name}: 0")
        return "\n".join(lines)

    def print_description(self) -> None:
        logger.info(self.describe())


# ============================================================================
# Solution
# ============================================================================


@dataclass
class OptimalControlSolution:
    """Controls on the solver's time grid.

    Attributes:
        time: Mesh times, `[n_mesh]`.
        controls: One column per mesh point, `[n_controls, n_mesh]`.
        control_names: Name of each row of `controls`.
        objective: Value of the transcribed cost.
        success: Whether the solver reported convergence.
        message: The solver's status message.
        num_iterations: Number of solver iterations.
        max_constraint_violation: Largest absolute path constraint value.
    """

    time: np.ndarray
    controls: np.ndarray
    control_names: tuple[str, ...]
    objective: float
    success: bool
    message: str
    num_iterations: int
    max_constraint_violation: float

    def write(self, path: str | Path) -> Path:
        """Write the solution to a CSV file, one row per mesh point."""
        path = Path(path)
        header = ",".join(["time", *self.control_names])
        np.savetxt(
            path,
            np.column_stack([self.time, self.controls.T]),
            delimiter=",",
            header=header,
            comments="",
        )
        return path


# ============================================================================
# Solver
# ============================================================================


def trapezoidal_weights(times: Float[ArrayLike, "n_mesh"]) -> Float[np.ndarray, "n_mesh"]:
    """Quadrature weights `w` such that `w @ f(times)` is the trapezoidal integral."""
    times = np.asarray(times, dtype=float)
    dt = np.diff(times)
    weights = np.zeros_like(times)
    weights[:-1] += dt / 2
    weights[1:] += dt / 2
    return weights


class DirectCollocationSolver:
    """Transcribes an `AbstractOptimalControlProblem` and solves it with SLSQP.

    Attributes:
        problem: The problem to solve.
        scheme: Transcription scheme; only `"trapezoidal"` is available.
        num_mesh_points: Number of points in the uniform mesh.
        tolerance: Convergence tolerance passed to SLSQP.
        max_iterations: Iteration limit passed to SLSQP.
    """

    def __init__(
        self,
        problem: AbstractOptimalControlProblem,
        scheme: str = "trapezoidal",
        num_mesh_points: int = 100,
        tolerance: float = 1e-8,
        max_iterations: int = 500,
    ):
        if scheme not in SUPPORTED_SCHEMES:
            raise ValidationError(
                f"Unsupported transcription scheme '{scheme}'; "
                f"available: {', '.join(SUPPORTED_SCHEMES)}"
            )
        if num_mesh_points < 2:
            raise ValidationError(f"Need at least 2 mesh points, got {num_mesh_points}")
        if problem.num_controls == 0:
            raise ValidationError(f"Problem '{problem.name}' has no controls")
        self.problem = problem
        self.scheme = scheme
        self.num_mesh_points = int(num_mesh_points)
        self.tolerance = tolerance
        self.max_iterations = max_iterations

    @property
    def mesh(self) -> Float[np.ndarray, "n_mesh"]:
        return np.linspace(0.0, 1.0, self.num_mesh_points)

    def _transcribe(self, times: np.ndarray):
        problem = self.problem
        n_mesh = self.num_mesh_points
        n_controls = problem.num_controls
        weights = jnp.asarray(trapezoidal_weights(times))
        times = jnp.asarray(times)
        mesh_indices = jnp.arange(n_mesh)

        def unflatten(x):
            return jnp.reshape(x, (n_mesh, n_controls))

        def objective(x):
            integrands = jax.vmap(problem.integral_cost)(times, unflatten(x))
            return weights @ integrands

        def constraints(x):
            values = jax.vmap(problem.path_constraints)(mesh_indices, times, unflatten(x))
            return jnp.reshape(values, (-1,))

        return (
            jax.jit(objective),
            jax.jit(jax.grad(objective)),
            jax.jit(constraints),
            jax.jit(jax.jacfwd(constraints)),
        )

    def solve(self, initial_guess: Optional[ArrayLike] = None) -> OptimalControlSolution:
        """Solve the problem.

        Args:
            initial_guess: Controls, `[n_controls, n_mesh]`. Defaults to zero,
                clipped to the control bounds.

        Returns:
            The solution on the mesh.

        Raises:
            SolverError: If the solver does not converge.
        """
        problem = self.problem
        mesh = self.mesh
        duration = problem.final_time - problem.initial_time
        times = problem.initial_time + duration * mesh

        problem.initialize_on_mesh(mesh)

        bounds = problem.control_bounds
        lower = np.tile(bounds[:, 0], self.num_mesh_points)
        upper = np.tile(bounds[:, 1], self.num_mesh_points)
        if initial_guess is None:
            x0 = np.zeros_like(lower)
        else:
            x0 = np.asarray(initial_guess, dtype=float).T.reshape(-1)
        x0 = np.clip(x0, lower, upper)

        objective, gradient, constraints, jacobian = self._transcribe(times)

        logger.info(
            "Solving '%s' with %d mesh points, %d variables and %d constraints",
            problem.name,
            self.num_mesh_points,
            x0.size,
            self.num_mesh_points * problem.num_path_constraints,
        )
        nlp_constraints = []
        if problem.num_path_constraints:
            nlp_constraints.append(
                {
                    "type": "eq",
                    "fun": lambda x: np.asarray(constraints(x), dtype=float),
                    "jac": lambda x: np.asarray(jacobian(x), dtype=float),
                }
            )
        result = minimize(
            lambda x: float(objective(x)),
            x0,
            jac=lambda x: np.asarray(gradient(x), dtype=float),
            method="SLSQP",
            bounds=Bounds(lower, upper),
            constraints=nlp_constraints,
            options={"maxiter": self.max_iterations, "ftol": self.tolerance},
        )

        violation = (
            float(np.max(np.abs(constraints(result.x)))) if problem.num_path_constraints else 0.0
        )
        solution = OptimalControlSolution(
            time=times,
            controls=np.reshape(result.x, (self.num_mesh_points, problem.num_controls)).T,
            control_names=problem.control_names,
            objective=float(result.fun),
            success=bool(result.success),
            message=str(result.message),
            num_iterations=int(result.nit),
            max_constraint_violation=violation,
        )

        if not solution.success:
            raise SolverError(
                f"Solving '{problem.name}' failed after {solution.num_iterations} "
                f"iterations: {solution.message}",
                solution=solution,
            )
        logger.info(
            "Converged in %d iterations; objective %.6g, max constraint violation %.3g",
            solution.num_iterations,
            solution.objective,
            solution.max_constraint_violation,
        )
        return solution
