"""Tests for motion data interpolation and filtering.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

import pytest
import jax
import numpy as np

from muscle_redundancy.errors import DataRangeError, ValidationError
from muscle_redundancy.model import ConstantMomentArmModel, Coordinate, Muscle
from muscle_redundancy.motion_data import (
    InverseMuscleSolverMotionData,
    check_cutoff_frequency,
    lowpass_filter,
)
from muscle_redundancy.solution import TimeSeriesTable


jax.config.update("jax_enable_x64", True)


@pytest.fixture
def model():
    return ConstantMomentArmModel(
        coordinates=[Coordinate("elbow"), Coordinate("wrist", locked=True)],
        actuators=[
            Muscle("biceps", 600.0, 0.12, 0.2),
            Muscle("triceps", 700.0, 0.1, 0.22),
        ],
        moment_arm_matrix=[[0.04, -0.02], [0.01, 0.0]],
        reference_lengths=[0.33, 0.31],
        inertia=[2.0, 1.0],
    )


@pytest.fixture
def times():
    return np.linspace(0.0, 1.0, 101)


@pytest.fixture
def kinematics(times):
    """Quadratic elbow angle; the locked wrist is absent from the table."""
    return TimeSeriesTable(times, 0.5 * times**2, ["elbow"])


class TestCutoffFrequency:

    @pytest.mark.parametrize("cutoff", [-1, 6.0, 0.5])
    def test_valid(self, cutoff):
        check_cutoff_frequency("kinematics", cutoff)

    @pytest.mark.parametrize("cutoff", [0, -2, -0.5])
    def test_invalid(self, cutoff):
        with pytest.raises(ValidationError, match="should be -1 or positive"):
            check_cutoff_frequency("kinematics", cutoff)


class TestLowpassFilter:

    def test_constant_signal_unchanged(self, times):
        data = np.full((times.shape[0], 2), 3.0)
        filtered = lowpass_filter(times, data, 6.0)
        np.testing.assert_allclose(filtered, data, atol=1e-10)

    def test_removes_high_frequency(self, times):
        slow = np.sin(2 * np.pi * 1.0 * times)
        fast = 0.5 * np.sin(2 * np.pi * 40.0 * times)
        filtered = lowpass_filter(times, slow + fast, 6.0)
        # Compare away from the edges
        interior = slice(20, -20)
        assert np.max(np.abs(filtered[interior] - slow[interior])) < 0.05

    def test_above_nyquist(self, times):
        with pytest.raises(ValidationError, match="Nyquist"):
            lowpass_filter(times, np.zeros_like(times), 60.0)

    def test_nonuniform(self):
        times = np.array([0.0, 0.1, 0.3, 0.4])
        with pytest.raises(ValidationError, match="uniformly sampled"):
            lowpass_filter(times, np.zeros_like(times), 1.0)


class TestInverseMuscleSolverMotionData:

    def test_supplied_net_forces(self, model, kinematics, times):
        forces = TimeSeriesTable(times, np.column_stack([3.0 * times, -times]), ["wrist", "elbow"])
        data = InverseMuscleSolverMotionData(
            model, ["elbow"], 0.0, 1.0, kinematics, net_generalized_forces=forces
        )
        query = np.array([0.0, 0.25, 0.5, 1.0])
        np.testing.assert_allclose(
            data.interpolate_net_generalized_forces(query), [-query], atol=1e-12
        )

    def test_inverse_dynamics(self, model, kinematics):
        """q = t^2 / 2 gives qddot = 1 and tau = inertia."""
        data = InverseMuscleSolverMotionData(model, ["elbow"], 0.1, 0.9, kinematics)
        query = np.linspace(0.1, 0.9, 7)
        np.testing.assert_allclose(
            data.interpolate_net_generalized_forces(query), np.full((1, 7), 2.0), atol=1e-6
        )

    def test_muscle_quantities(self, model, kinematics):
        data = InverseMuscleSolverMotionData(model, ["elbow"], 0.0, 1.0, kinematics)
        query = np.array([0.2, 0.6])
        q = 0.5 * query**2
        qdot = query

        lengths = data.interpolate_muscle_tendon_lengths(query)
        assert lengths.shape == (2, 2)
        np.testing.assert_allclose(lengths[0], 0.33 - 0.04 * q, atol=1e-12)
        np.testing.assert_allclose(lengths[1], 0.31 + 0.02 * q, atol=1e-12)

        velocities = data.interpolate_muscle_tendon_velocities(query)
        np.testing.assert_allclose(velocities[0], -0.04 * qdot, atol=1e-8)
        np.testing.assert_allclose(velocities[1], 0.02 * qdot, atol=1e-8)

        moment_arms = data.interpolate_moment_arms(query)
        assert moment_arms.shape == (2, 1, 2)
        np.testing.assert_allclose(moment_arms[0], [[0.04, -0.02]])

    def test_num_muscles(self, model, kinematics):
        data = InverseMuscleSolverMotionData(model, ["elbow"], 0.0, 1.0, kinematics)
        assert data.num_muscles == 2
        assert data.coordinates_to_actuate == ("elbow",)

    def test_out_of_range(self, model, kinematics):
        data = InverseMuscleSolverMotionData(model, ["elbow"], 0.2, 0.8, kinematics)
        with pytest.raises(DataRangeError):
            data.interpolate_muscle_tendon_lengths([0.1, 0.5])
        with pytest.raises(DataRangeError):
            data.interpolate_net_generalized_forces([0.9])
        # Mesh times computed in floating point are accepted
        data.interpolate_net_generalized_forces([0.2 + 0.6 * 1.0])

    def test_missing_unconstrained_coordinate(self, model, times):
        kinematics = TimeSeriesTable(times, times, ["wrist"])
        with pytest.raises(ValidationError, match="elbow"):
            InverseMuscleSolverMotionData(model, ["elbow"], 0.0, 1.0, kinematics)

    def test_window_outside_data(self, model, kinematics):
        with pytest.raises(ValidationError, match="does not contain"):
            InverseMuscleSolverMotionData(model, ["elbow"], 0.0, 1.5, kinematics)

    def test_invalid_cutoff(self, model, kinematics):
        with pytest.raises(ValidationError):
            InverseMuscleSolverMotionData(
                model,
                ["elbow"],
                0.0,
                1.0,
                kinematics,
                lowpass_cutoff_frequency_for_kinematics=0,
            )

    def test_filtered_kinematics(self, model, times):
        noisy = TimeSeriesTable(
            times, 0.3 + 0.05 * np.sin(2 * np.pi * 45.0 * times), ["elbow"]
        )
        data = InverseMuscleSolverMotionData(
            model,
            ["elbow"],
            0.0,
            1.0,
            noisy,
            lowpass_cutoff_frequency_for_kinematics=5.0,
        )
        lengths = data.interpolate_muscle_tendon_lengths(np.linspace(0.3, 0.7, 5))
        np.testing.assert_allclose(lengths[0], 0.33 - 0.04 * 0.3, atol=5e-4)
