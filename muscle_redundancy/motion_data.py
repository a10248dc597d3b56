"""Motion data interpolated at arbitrary times.

The optimal control problem asks for net generalized forces, muscle-tendon
lengths and velocities, and moment arms at the times of its mesh. It does
so once per mesh, never once per constraint evaluation.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
import logging
from typing import Optional

import jax
import numpy as np
from jaxtyping import ArrayLike, Float
from scipy.interpolate import CubicSpline
from scipy.signal import butter, sosfiltfilt

from muscle_redundancy.errors import DataRangeError, ValidationError
from muscle_redundancy.model import AbstractMusculoskeletalModel
from muscle_redundancy.solution import TimeSeriesTable


logger = logging.getLogger(__name__)


# Relative slack on the time range, for mesh times computed in floating point
TIME_RANGE_RTOL = 1e-12


class AbstractMotionData(ABC):
    """Interpolates the data needed by the optimal control problem.

    All queries are deterministic and side-effect free, and are valid for
    any time in `[initial_time, final_time]`.
    """

    initial_time: float
    final_time: float
    coordinates_to_actuate: tuple[str, ...]
    num_muscles: int

    def _check_times(self, times: ArrayLike) -> np.ndarray:
        times = np.asarray(times, dtype=float).reshape(-1)
        slack = TIME_RANGE_RTOL * max(1.0, abs(self.initial_time), abs(self.final_time))
        if times.size and (
            times.min() < self.initial_time - slack or times.max() > self.final_time + slack
        ):
            raise DataRangeError(
                f"Requested times [{times.min()}, {times.max()}] are outside of the "
                f"motion data range [{self.initial_time}, {self.final_time}]"
            )
        return np.clip(times, self.initial_time, self.final_time)

    @abstractmethod
    def interpolate_net_generalized_forces(
        self, times: ArrayLike
    ) -> Float[np.ndarray, "n_coords n_times"]:
        """Net generalized force for each coordinate to actuate."""
        ...

    @abstractmethod
    def interpolate_muscle_tendon_lengths(
        self, times: ArrayLike
    ) -> Float[np.ndarray, "n_muscles n_times"]:
        ...

    @abstractmethod
    def interpolate_muscle_tendon_velocities(
        self, times: ArrayLike
    ) -> Float[np.ndarray, "n_muscles n_times"]:
        ...

    @abstractmethod
    def interpolate_moment_arms(
        self, times: ArrayLike
    ) -> Float[np.ndarray, "n_times n_coords n_muscles"]:
        """One `[n_coords, n_muscles]` moment arm matrix per time."""
        ...


def check_cutoff_frequency(label: str, cutoff_frequency: float) -> None:
    """Raise unless the cutoff is positive, or -1 for no filtering."""
    if cutoff_frequency <= 0 and cutoff_frequency != -1:
        raise ValidationError(
            f"Invalid value ({cutoff_frequency}) for cutoff frequency for {label}; "
            "should be -1 or positive."
        )


def lowpass_filter(
    times: ArrayLike,
    data: ArrayLike,
    cutoff_frequency: float,
    order: int = 4,
) -> np.ndarray:
    """Zero-phase Butterworth low-pass filter along the first axis of `data`.

    Args:
        times: Uniformly spaced sample times.
        data: Samples, `[n_times, ...]`.
        cutoff_frequency: Cutoff frequency [Hz].
        order: Filter order, before doubling by the forward-backward pass.

    Returns:
        Filtered samples, with the same shape as `data`.
    """
    times = np.asarray(times, dtype=float)
    data = np.asarray(data, dtype=float)
    if times.shape[0] < 2:
        raise ValidationError("Need at least two samples to filter")

    dt = np.diff(times)
    if not np.allclose(dt, dt[0], rtol=1e-3):
        raise ValidationError("Data must be uniformly sampled to be filtered")
    sampling_frequency = 1.0 / dt.mean()
    if cutoff_frequency >= sampling_frequency / 2:
        raise ValidationError(
            f"Cutoff frequency ({cutoff_frequency} Hz) must be below the Nyquist "
            f"frequency ({sampling_frequency / 2} Hz)"
        )

    sos = butter(order, cutoff_frequency, btype="low", fs=sampling_frequency, output="sos")
    padlen = min(times.shape[0] - 1, 3 * (2 * sos.shape[0] + 1))
    return sosfiltfilt(sos, data, axis=0, padlen=padlen)


class InverseMuscleSolverMotionData(AbstractMotionData):
    """Motion data derived from coordinate kinematics and a model.

    Kinematics are optionally low-pass filtered, then fit with cubic splines
    whose derivatives give coordinate velocities and accelerations. Muscle
    quantities are evaluated through the model. Net generalized forces come
    either from a supplied table or from inverse dynamics.

    Attributes:
        initial_time: Start of the valid time range.
        final_time: End of the valid time range.
        coordinates_to_actuate: Coordinates whose net forces are reported, in order.
        num_muscles: Number of force-producing muscles in the model.
    """

    def __init__(
        self,
        model: AbstractMusculoskeletalModel,
        coordinates_to_actuate: Sequence[str],
        initial_time: float,
        final_time: float,
        kinematics: TimeSeriesTable,
        lowpass_cutoff_frequency_for_kinematics: float = -1,
        net_generalized_forces: Optional[TimeSeriesTable] = None,
        lowpass_cutoff_frequency_for_joint_moments: float = -1,
        filter_order: int = 4,
    ):
        check_cutoff_frequency("kinematics", lowpass_cutoff_frequency_for_kinematics)
        if net_generalized_forces is None:
            check_cutoff_frequency("joint moments", lowpass_cutoff_frequency_for_joint_moments)
        if not final_time > initial_time:
            raise ValidationError(
                f"Final time ({final_time}) must be greater than initial time ({initial_time})"
            )

        self._model = model
        self.coordinates_to_actuate = tuple(coordinates_to_actuate)
        self._actuated_index = np.asarray(
            [model.coordinate_index(name) for name in self.coordinates_to_actuate], dtype=int
        )
        self.num_muscles = len(model.muscles)
        self.initial_time = float(initial_time)
        self.final_time = float(final_time)

        times, q = self._coordinate_values(model, kinematics)
        self._check_data_range("kinematics", times)
        if lowpass_cutoff_frequency_for_kinematics != -1:
            logger.debug(
                "Filtering kinematics at %s Hz", lowpass_cutoff_frequency_for_kinematics
            )
            q = lowpass_filter(times, q, lowpass_cutoff_frequency_for_kinematics, filter_order)
        self._q_spline = CubicSpline(times, q, axis=0)

        if net_generalized_forces is not None:
            forces_table = net_generalized_forces.select_columns(self.coordinates_to_actuate)
            self._check_data_range("net generalized forces", forces_table.times)
            self._force_spline = CubicSpline(forces_table.times, forces_table.data, axis=0)
        else:
            logger.info("Computing net generalized forces with inverse dynamics")
            net_forces = self._inverse_dynamics(times)
            if lowpass_cutoff_frequency_for_joint_moments != -1:
                net_forces = lowpass_filter(
                    times, net_forces, lowpass_cutoff_frequency_for_joint_moments, filter_order
                )
            self._force_spline = CubicSpline(times, net_forces, axis=0)

    @staticmethod
    def _coordinate_values(
        model: AbstractMusculoskeletalModel, kinematics: TimeSeriesTable
    ) -> tuple[np.ndarray, np.ndarray]:
        """Coordinate values for every model coordinate, in model order.

        Constrained coordinates missing from the table are held at zero.
        """
        if kinematics.num_rows < 2:
            raise ValidationError("Kinematics must contain at least two rows")
        columns = []
        for coord in model.coordinates:
            if coord.name in kinematics.column_labels:
                columns.append(kinematics.get_dependent_column(coord.name))
            elif coord.is_constrained:
                columns.append(np.zeros(kinematics.num_rows))
            else:
                raise ValidationError(
                    f"Kinematics do not contain a column for coordinate '{coord.name}'"
                )
        return kinematics.times, np.column_stack(columns)

    def _check_data_range(self, label: str, times: np.ndarray) -> None:
        if times[0] > self.initial_time or times[-1] < self.final_time:
            raise ValidationError(
                f"The {label} cover [{times[0]}, {times[-1]}], which does not contain the "
                f"requested time range [{self.initial_time}, {self.final_time}]"
            )

    def _coordinate_kinematics(self, times: np.ndarray):
        return (
            self._q_spline(times),
            self._q_spline(times, 1),
            self._q_spline(times, 2),
        )

    def _inverse_dynamics(self, times: np.ndarray) -> np.ndarray:
        q, qdot, qddot = self._coordinate_kinematics(times)
        tau = jax.vmap(self._model.inverse_dynamics)(q, qdot, qddot)
        return np.asarray(tau)[:, self._actuated_index]

    def interpolate_net_generalized_forces(self, times):
        times = self._check_times(times)
        return np.asarray(self._force_spline(times)).T

    def interpolate_muscle_tendon_lengths(self, times):
        times = self._check_times(times)
        q = self._q_spline(times)
        return np.asarray(jax.vmap(self._model.muscle_tendon_lengths)(q)).T

    def interpolate_muscle_tendon_velocities(self, times):
        times = self._check_times(times)
        q, qdot, _ = self._coordinate_kinematics(times)
        return np.asarray(jax.vmap(self._model.muscle_tendon_velocities)(q, qdot)).T

    def interpolate_moment_arms(self, times):
        times = self._check_times(times)
        q = self._q_spline(times)
        moment_arms = np.asarray(jax.vmap(self._model.moment_arms)(q))
        return moment_arms[:, self._actuated_index, :]
