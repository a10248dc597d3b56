"""Global static optimization, formulated as an optimal control problem.

Find the coordinate actuator controls and muscle activations that reproduce
the net generalized forces of a motion exactly, while minimizing the
integral of the (weighted) sum of squared controls.

With a rigid tendon, muscle force is an algebraic function of activation
and of the muscle-tendon length and velocity, so the problem has no states:
at each mesh point,

    desired_force - (sum_k e_{dof_k} F_k u_k + R(t) f(a, l_mt(t), v_mt(t))) = 0

where `F_k` are the coordinate actuators' optimal forces, `R(t)` is the
moment arm matrix and `f` is the muscle force.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
from typing import Optional, Union

from equinox import Module, field
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, ArrayLike, Float, Scalar

from muscle_redundancy.collocation import AbstractOptimalControlProblem, OptimalControlSolution
from muscle_redundancy.errors import ValidationError
from muscle_redundancy.model import (
    AbstractMusculoskeletalModel,
    CoordinateActuator,
    Muscle,
)
from muscle_redundancy.motion_data import AbstractMotionData
from muscle_redundancy.muscles import (
    DeGroote2016Muscle,
    calc_fiber_kinematics,
    calc_muscle_forces,
    stack_muscles,
)
from muscle_redundancy.solution import GlobalStaticOptimizationSolution, TimeSeriesTable


logger = logging.getLogger(__name__)


# Meshes rebuilt from absolute times may differ from the solver's by rounding
MESH_MATCH_ATOL = 1e-12


# ============================================================================
# Actuators
# ============================================================================


class CoordinateActuatorSpec(Module):
    """A coordinate actuator, resolved against the coordinates to actuate.

    Attributes:
        label: Path of the actuator.
        optimal_force: Generalized force per unit control.
        min_control: Lower control bound.
        max_control: Upper control bound.
        dof_index: Index of the actuated coordinate among the coordinates to actuate.
    """

    label: str = field(static=True)
    optimal_force: float
    min_control: float
    max_control: float
    dof_index: int = field(static=True)


class MuscleSpec(Module):
    """A muscle and the rigid-tendon model used to compute its force."""

    label: str = field(static=True)
    muscle: DeGroote2016Muscle


ActuatorSpec = Union[CoordinateActuatorSpec, MuscleSpec]


# ============================================================================
# Motion cache
# ============================================================================


class MotionCache(Module):
    """Motion data interpolated on one mesh.

    Never updated in place: a new mesh gets a new cache.

    Attributes:
        mesh: Mesh, as fractions of the horizon.
        times: Absolute mesh times.
        desired_generalized_forces: `[n_coords, n_mesh]`.
        muscle_tendon_lengths: `[n_muscles, n_mesh]`.
        muscle_tendon_velocities: `[n_muscles, n_mesh]`.
        moment_arms: `[n_mesh, n_coords, n_muscles]`.
    """

    mesh: Float[Array, "n_mesh"]
    times: Float[Array, "n_mesh"]
    desired_generalized_forces: Float[Array, "n_coords n_mesh"]
    muscle_tendon_lengths: Float[Array, "n_muscles n_mesh"]
    muscle_tendon_velocities: Float[Array, "n_muscles n_mesh"]
    moment_arms: Float[Array, "n_mesh n_coords n_muscles"]

    @property
    def num_mesh_points(self) -> int:
        return self.mesh.shape[0]

    def matches(self, mesh: ArrayLike) -> bool:
        mesh = np.asarray(mesh, dtype=float)
        return mesh.shape == self.mesh.shape and bool(
            np.allclose(mesh, np.asarray(self.mesh), rtol=0, atol=MESH_MATCH_ATOL)
        )


# ============================================================================
# Problem
# ============================================================================


class GlobalStaticOptimizationProblem(AbstractOptimalControlProblem):
    """Muscle redundancy resolution by minimizing squared controls.

    Controls are laid out as one control per force-producing coordinate
    actuator (with its own bounds), followed by one activation per
    force-producing muscle (bounded to [0, 1]). There is one equality path
    constraint per coordinate to actuate.

    Attributes:
        coordinates_to_actuate: Coordinates whose net forces are matched.
        actuators: Coordinate actuator specs, then muscle specs, in control order.
        control_weights: Cost weight of each control.
    """

    def __init__(
        self,
        model: AbstractMusculoskeletalModel,
        motion_data: AbstractMotionData,
        control_weights: Optional[Mapping[str, float]] = None,
    ):
        super().__init__("GSO")
        self._motion_data = motion_data
        self.set_time(motion_data.initial_time, motion_data.final_time)

        for actuator in model.actuators:
            if actuator.applies_force and not isinstance(actuator, (Muscle, CoordinateActuator)):
                raise ValidationError(
                    "Only Muscles and CoordinateActuators are currently supported but the "
                    f"model contains an enabled {actuator.concrete_class_name} "
                    f"('{actuator.name}'). Either set applies_force=False for this "
                    "actuator, or remove it from the model."
                )

        self.coordinates_to_actuate = tuple(motion_data.coordinates_to_actuate)

        coord_actuators = []
        for actuator in model.coordinate_actuators:
            if actuator.coordinate not in self.coordinates_to_actuate:
                raise ValidationError(
                    f"Could not find Coordinate '{actuator.coordinate}' used in "
                    f"CoordinateActuator '{actuator.name}'. Is the coordinate locked?"
                )
            if not actuator.optimal_force > 0:
                raise ValidationError(
                    f"CoordinateActuator '{actuator.name}' has non-positive optimal force "
                    f"({actuator.optimal_force})"
                )
            self.add_control(f"{actuator.name}_control", (actuator.min_control, actuator.max_control))
            coord_actuators.append(
                CoordinateActuatorSpec(
                    label=actuator.name,
                    optimal_force=actuator.optimal_force,
                    min_control=actuator.min_control,
                    max_control=actuator.max_control,
                    dof_index=self.coordinates_to_actuate.index(actuator.coordinate),
                )
            )

        muscles = []
        for muscle in model.muscles:
            # Activation bounds, not the model's excitation bounds
            self.add_control(f"{muscle.name}_activation", (0.0, 1.0))
            muscles.append(MuscleSpec(label=muscle.name, muscle=muscle.to_degroote()))

        if len(muscles) != motion_data.num_muscles:
            raise ValidationError(
                f"Model has {len(muscles)} muscles but the motion data has "
                f"{motion_data.num_muscles}"
            )

        for coord in self.coordinates_to_actuate:
            self.add_path_constraint(f"net_gen_force_{coord}")

        self._coord_actuators: tuple[CoordinateActuatorSpec, ...] = tuple(coord_actuators)
        self._muscles: tuple[MuscleSpec, ...] = tuple(muscles)
        self._optimal_force = jnp.asarray([a.optimal_force for a in coord_actuators], dtype=float)
        self._dof_index = np.asarray([a.dof_index for a in coord_actuators], dtype=int)
        self._stacked_muscles = stack_muscles([m.muscle for m in muscles])
        self.control_weights = self._resolve_control_weights(control_weights or {})

        self._cache: Optional[MotionCache] = None

    def _resolve_control_weights(self, weights: Mapping[str, float]) -> Float[Array, "n_controls"]:
        labels = [a.label for a in self.actuators]
        resolved = np.ones(self.num_controls)
        for key, weight in weights.items():
            if key in labels:
                idx = labels.index(key)
            elif key in self.control_names:
                idx = self.control_names.index(key)
            else:
                raise ValidationError(f"Cost weight given for unknown actuator '{key}'")
            if weight < 0:
                raise ValidationError(f"Cost weight for '{key}' must be non-negative, got {weight}")
            resolved[idx] = weight
        return jnp.asarray(resolved)

    @property
    def actuators(self) -> tuple[ActuatorSpec, ...]:
        return self._coord_actuators + self._muscles

    @property
    def num_coord_actuators(self) -> int:
        return len(self._coord_actuators)

    @property
    def num_muscles(self) -> int:
        return len(self._muscles)

    @property
    def num_coords_to_actuate(self) -> int:
        return len(self.coordinates_to_actuate)

    @property
    def cache(self) -> MotionCache:
        if self._cache is None:
            raise RuntimeError("initialize_on_mesh must be called before evaluating the problem")
        return self._cache

    def initialize_on_mesh(self, mesh: Float[ArrayLike, "n_mesh"]) -> None:
        """Interpolate the motion data at the times of `mesh` and cache it.

        Args:
            mesh: Fractions of the horizon, in [0, 1].
        """
        mesh = np.asarray(mesh, dtype=float)
        duration = self.final_time - self.initial_time
        times = self.initial_time + duration * mesh
        data = self._motion_data

        desired = data.interpolate_net_generalized_forces(times)
        if self.num_muscles:
            lengths = data.interpolate_muscle_tendon_lengths(times)
            velocities = data.interpolate_muscle_tendon_velocities(times)
            moment_arms = data.interpolate_moment_arms(times)
        else:
            lengths = np.zeros((0, mesh.shape[0]))
            velocities = np.zeros((0, mesh.shape[0]))
            moment_arms = np.zeros((mesh.shape[0], self.num_coords_to_actuate, 0))

        self._cache = MotionCache(
            mesh=jnp.asarray(mesh),
            times=jnp.asarray(times),
            desired_generalized_forces=jnp.asarray(desired),
            muscle_tendon_lengths=jnp.asarray(lengths),
            muscle_tendon_velocities=jnp.asarray(velocities),
            moment_arms=jnp.asarray(moment_arms),
        )
        logger.debug("Initialized motion cache on a mesh of %d points", mesh.shape[0])

    def generalized_forces(
        self,
        i_mesh: int,
        controls: Float[Array, "n_controls"],
    ) -> Float[Array, "n_coords"]:
        """Generalized forces produced by `controls` at mesh point `i_mesh`."""
        cache = self.cache
        controls = jnp.asarray(controls)
        gen_force = jnp.zeros(self.num_coords_to_actuate, dtype=controls.dtype)

        if self.num_coord_actuators:
            # Several actuators may act on the same coordinate
            gen_force = gen_force.at[self._dof_index].add(
                self._optimal_force * controls[: self.num_coord_actuators]
            )

        if self.num_muscles:
            muscle_forces = calc_muscle_forces(
                self._stacked_muscles,
                controls[self.num_coord_actuators :],
                cache.muscle_tendon_lengths[:, i_mesh],
                cache.muscle_tendon_velocities[:, i_mesh],
            )
            gen_force = gen_force + cache.moment_arms[i_mesh] @ muscle_forces

        return gen_force

    def path_constraints(
        self,
        i_mesh: int,
        time: Scalar,
        controls: Float[Array, "n_controls"],
    ) -> Float[Array, "n_coords"]:
        """Net generalized force residual at mesh point `i_mesh`."""
        return self.cache.desired_generalized_forces[:, i_mesh] - self.generalized_forces(
            i_mesh, controls
        )

    def integral_cost(self, time: Scalar, controls: Float[Array, "n_controls"]) -> Scalar:
        return jnp.sum(self.control_weights * jnp.asarray(controls) ** 2)

    def deconstruct_iterate(self, iterate: OptimalControlSolution) -> GlobalStaticOptimizationSolution:
        """Split the solver's controls into labeled tables, and add muscle outputs.

        Normalized fiber length and velocity, and tendon force, are computed
        from the cached motion data for reporting only.
        """
        times = np.asarray(iterate.time, dtype=float)
        controls = np.asarray(iterate.controls, dtype=float)
        if controls.shape != (self.num_controls, times.shape[0]):
            raise ValidationError(
                f"Expected controls of shape {(self.num_controls, times.shape[0])}, "
                f"got {controls.shape}"
            )

        mesh = (times - self.initial_time) / (self.final_time - self.initial_time)
        if self._cache is None or not self._cache.matches(mesh):
            self.initialize_on_mesh(mesh)
        cache = self.cache

        solution = GlobalStaticOptimizationSolution()
        n_ca = self.num_coord_actuators

        if n_ca:
            solution.other_controls = TimeSeriesTable(
                times, controls[:n_ca].T, [a.label for a in self._coord_actuators]
            )

        if self.num_muscles:
            labels = [m.label for m in self._muscles]
            activation = controls[n_ca:]
            lengths = cache.muscle_tendon_lengths
            velocities = cache.muscle_tendon_velocities

            # Each muscle's row holds the whole mesh
            norm_fiber_length, norm_fiber_velocity = map(
                np.asarray, calc_fiber_kinematics(self._stacked_muscles, lengths, velocities)
            )
            tendon_force = np.asarray(
                calc_muscle_forces(self._stacked_muscles, activation, lengths, velocities)
            )

            solution.activation = TimeSeriesTable(times, activation.T, labels)
            solution.norm_fiber_length = TimeSeriesTable(times, norm_fiber_length.T, labels)
            solution.norm_fiber_velocity = TimeSeriesTable(times, norm_fiber_velocity.T, labels)
            solution.tendon_force = TimeSeriesTable(times, tendon_force.T, labels)

        return solution
