"""Tests for the direct collocation solver.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

import math

import pytest
import jax
import jax.numpy as jnp
import numpy as np

from muscle_redundancy.collocation import (
    AbstractOptimalControlProblem,
    DirectCollocationSolver,
    trapezoidal_weights,
)
from muscle_redundancy.errors import SolverError, ValidationError
from muscle_redundancy.model import ConstantMomentArmModel, Coordinate, CoordinateActuator, Muscle
from muscle_redundancy.motion_data import InverseMuscleSolverMotionData
from muscle_redundancy.problem import GlobalStaticOptimizationProblem
from muscle_redundancy.solution import TimeSeriesTable


jax.config.update("jax_enable_x64", True)


class BalanceProblem(AbstractOptimalControlProblem):
    """Minimize the integral of `sum(u**2)` subject to `gains @ u == 1 + t`."""

    def __init__(self, gains, bounds=(-math.inf, math.inf)):
        super().__init__("balance")
        self.set_time(0.0, 2.0)
        self.gains = jnp.asarray(gains, dtype=float)
        for i in range(len(gains)):
            self.add_control(f"u{i}", bounds)
        self.add_path_constraint("balance")
        self.meshes = []

    def initialize_on_mesh(self, mesh):
        mesh = np.asarray(mesh)
        self.meshes.append(mesh)
        self._demand = jnp.asarray(1.0 + self.final_time * mesh)

    def path_constraints(self, i_mesh, time, controls):
        return jnp.reshape(self._demand[i_mesh] - self.gains @ controls, (1,))

    def integral_cost(self, time, controls):
        return jnp.sum(controls**2)


class TestTrapezoidalWeights:

    def test_uniform(self):
        weights = trapezoidal_weights(np.linspace(0, 1, 5))
        np.testing.assert_allclose(weights, [0.125, 0.25, 0.25, 0.25, 0.125])

    def test_integrates_linear_exactly(self):
        times = np.array([0.0, 0.3, 0.5, 1.2, 2.0])
        assert trapezoidal_weights(times) @ (3 * times + 1) == pytest.approx(8.0)


class TestProblemDeclaration:

    def test_duplicate_control(self):
        problem = BalanceProblem([1.0])
        with pytest.raises(ValidationError, match="already exists"):
            problem.add_control("u0", (0, 1))

    def test_inverted_bounds(self):
        problem = BalanceProblem([1.0])
        with pytest.raises(ValidationError, match="lower bound"):
            problem.add_control("v", (1, 0))

    def test_invalid_time(self):
        problem = BalanceProblem([1.0])
        with pytest.raises(ValidationError):
            problem.set_time(1.0, 1.0)

    def test_describe(self):
        description = BalanceProblem([1.0, 2.0], bounds=(-3, 3)).describe()
        assert "u1: [-3.0, 3.0]" in description
        assert "balance: 0" in description


class TestDirectCollocationSolver:

    def test_invalid_scheme(self):
        with pytest.raises(ValidationError, match="scheme"):
            DirectCollocationSolver(BalanceProblem([1.0]), scheme="hermite-simpson")

    def test_too_few_mesh_points(self):
        with pytest.raises(ValidationError, match="mesh points"):
            DirectCollocationSolver(BalanceProblem([1.0]), num_mesh_points=1)

    def test_no_controls(self):
        with pytest.raises(ValidationError, match="no controls"):
            DirectCollocationSolver(BalanceProblem([]))

    def test_single_actuator(self):
        """With one control the constraint alone determines the solution."""
        problem = BalanceProblem([2.0])
        solution = DirectCollocationSolver(problem, num_mesh_points=11).solve()

        expected = (1.0 + solution.time) / 2.0
        np.testing.assert_allclose(solution.time, np.linspace(0, 2, 11))
        np.testing.assert_allclose(solution.controls[0], expected, atol=1e-6)
        assert solution.objective == pytest.approx(
            trapezoidal_weights(solution.time) @ expected**2, rel=1e-6
        )
        assert solution.success
        assert solution.max_constraint_violation < 1e-8
        assert solution.control_names == ("u0",)

    def test_redundant_actuators(self):
        """Least squares splits the demand in proportion to the gains."""
        problem = BalanceProblem([1.0, 2.0])
        solution = DirectCollocationSolver(problem, num_mesh_points=7).solve()

        demand = 1.0 + solution.time
        np.testing.assert_allclose(solution.controls[0], demand / 5.0, atol=1e-6)
        np.testing.assert_allclose(solution.controls[1], 2.0 * demand / 5.0, atol=1e-6)

    def test_initializes_on_mesh(self):
        problem = BalanceProblem([1.0])
        solver = DirectCollocationSolver(problem, num_mesh_points=4)
        solver.solve()
        assert len(problem.meshes) == 1
        np.testing.assert_allclose(problem.meshes[0], solver.mesh)

    def test_initial_guess(self):
        problem = BalanceProblem([1.0, 1.0], bounds=(-10, 10))
        guess = np.full((2, 5), 20.0)
        solution = DirectCollocationSolver(problem, num_mesh_points=5).solve(initial_guess=guess)
        np.testing.assert_allclose(solution.controls[0], (1.0 + solution.time) / 2.0, atol=1e-4)

    def test_infeasible(self):
        problem = BalanceProblem([1.0], bounds=(-1.0, 1.0))
        with pytest.raises(SolverError) as excinfo:
            DirectCollocationSolver(problem, num_mesh_points=5, max_iterations=50).solve()
        assert excinfo.value.solution is not None
        assert not excinfo.value.solution.success
        assert excinfo.value.solution.max_constraint_violation > 0.1

    def test_write(self, tmp_path):
        problem = BalanceProblem([1.0, 2.0])
        solution = DirectCollocationSolver(problem, num_mesh_points=4).solve()
        path = solution.write(tmp_path / "solution.csv")

        with open(path) as f:
            assert f.readline().strip() == "time,u0,u1"
        data = np.loadtxt(path, delimiter=",", skiprows=1)
        np.testing.assert_allclose(data[:, 0], solution.time)
        np.testing.assert_allclose(data[:, 1:], solution.controls.T)


class TestMuscleProblem:

    def test_muscle_with_reserve(self):
        """A strong muscle carries nearly all of the load of a weak reserve."""
        model = ConstantMomentArmModel(
            coordinates=[Coordinate("elbow")],
            actuators=[
                Muscle("biceps", 1000.0, 0.1, 0.2),
                CoordinateActuator("reserve_elbow", "elbow", optimal_force=1.0),
            ],
            moment_arm_matrix=[[0.05]],
            reference_lengths=[0.3],
        )
        times = np.linspace(0.0, 1.0, 21)
        kinematics = TimeSeriesTable(times, np.zeros_like(times), ["elbow"])
        net_forces = TimeSeriesTable(times, np.full_like(times, 20.0), ["elbow"])
        motion_data = InverseMuscleSolverMotionData(
            model, ["elbow"], 0.0, 1.0, kinematics, net_generalized_forces=net_forces
        )
        problem = GlobalStaticOptimizationProblem(model, motion_data)
        solution = DirectCollocationSolver(problem, num_mesh_points=5).solve()

        assert solution.max_constraint_violation < 1e-6
        activation = solution.controls[1]
        reserve = solution.controls[0]
        assert np.all((activation >= 0) & (activation <= 1))
        assert np.all(activation > 0.3)
        assert np.all(np.abs(reserve) < 0.1)

        gso = problem.deconstruct_iterate(solution)
        np.testing.assert_allclose(
            0.05 * gso.tendon_force.data[:, 0] + gso.other_controls.data[:, 0],
            20.0,
            atol=1e-6,
        )
