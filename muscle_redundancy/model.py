"""Musculoskeletal model introspection.

The solver only needs a narrow view of a multibody model: its coordinates
(in multibody tree order, with their locked/constrained status), its
force-producing actuators, muscle-tendon lengths as a function of the
generalized coordinates, and inverse dynamics. `AbstractMusculoskeletalModel`
declares that view; `ConstantMomentArmModel` is a small concrete model with
linear muscle paths and decoupled inertia.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from abc import abstractmethod
import dataclasses
import logging
import math

from equinox import AbstractVar, Module, field
import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, ArrayLike, Float

from muscle_redundancy.errors import ValidationError
from muscle_redundancy.muscles import DeGroote2016Muscle


logger = logging.getLogger(__name__)


# ============================================================================
# Coordinates
# ============================================================================


class Coordinate(Module):
    """A generalized coordinate (degree of freedom) of the model.

    Attributes:
        name: Path of the coordinate, relative to the model.
        locked: Whether the coordinate is locked at its default value.
        constrained: Whether a kinematic constraint determines its value.
    """

    name: str = field(static=True)
    locked: bool = field(static=True, default=False)
    constrained: bool = field(static=True, default=False)

    @property
    def is_constrained(self) -> bool:
        return self.locked or self.constrained


# ============================================================================
# Actuators
# ============================================================================


class AbstractActuator(Module):
    """A scalar actuator of the model.

    Attributes:
        name: Name of the actuator; also used as its path.
        applies_force: Disabled actuators are ignored by the solver.
        min_control: Lower control bound.
        max_control: Upper control bound.
    """

    name: AbstractVar[str]
    applies_force: AbstractVar[bool]
    min_control: AbstractVar[float]
    max_control: AbstractVar[float]

    @property
    def concrete_class_name(self) -> str:
        return type(self).__name__


class CoordinateActuator(AbstractActuator):
    """Applies a generalized force `optimal_force * control` to one coordinate."""

    name: str = field(static=True)
    coordinate: str = field(static=True)
    optimal_force: float = 1.0
    min_control: float = -math.inf
    max_control: float = math.inf
    applies_force: bool = field(static=True, default=True)


class Muscle(AbstractActuator):
    """A muscle, described by its Hill-type architecture parameters."""

    name: str = field(static=True)
    max_isometric_force: float
    optimal_fiber_length: float
    tendon_slack_length: float
    pennation_angle_at_optimal: float = 0.0
    max_contraction_velocity: float = 10.0
    min_control: float = 0.0
    max_control: float = 1.0
    applies_force: bool = field(static=True, default=True)

    def to_degroote(self) -> DeGroote2016Muscle:
        return DeGroote2016Muscle(
            max_isometric_force=self.max_isometric_force,
            optimal_fiber_length=self.optimal_fiber_length,
            tendon_slack_length=self.tendon_slack_length,
            pennation_angle_at_optimal=self.pennation_angle_at_optimal,
            max_contraction_velocity=self.max_contraction_velocity,
        )


class GenericActuator(AbstractActuator):
    """Any other kind of actuator, identified only by its class name.

    The solver supports none of these; a model containing one that applies
    force is rejected.
    """

    name: str = field(static=True)
    class_name: str = field(static=True)
    min_control: float = -math.inf
    max_control: float = math.inf
    applies_force: bool = field(static=True, default=True)

    @property
    def concrete_class_name(self) -> str:
        return self.class_name


# ============================================================================
# Models
# ============================================================================


class AbstractMusculoskeletalModel(Module):
    """Base class for models queried by the solver.

    Subclasses provide coordinates, actuators, muscle-tendon lengths and
    inverse dynamics. Velocities and moment arms follow from the lengths by
    automatic differentiation.

    Muscle quantities are ordered as in `muscles`, and coordinate quantities
    as in `coordinates`.
    """

    coordinates: AbstractVar[tuple[Coordinate, ...]]
    actuators: AbstractVar[tuple[AbstractActuator, ...]]

    @abstractmethod
    def muscle_tendon_lengths(self, q: Float[Array, "n_coords"]) -> Float[Array, "n_muscles"]:
        """Compute the muscle-tendon length of every muscle.

        Args:
            q: Generalized coordinates [n_coords].

        Returns:
            Muscle-tendon lengths [m].
        """
        ...

    @abstractmethod
    def inverse_dynamics(
        self,
        q: Float[Array, "n_coords"],
        qdot: Float[Array, "n_coords"],
        qddot: Float[Array, "n_coords"],
    ) -> Float[Array, "n_coords"]:
        """Compute the net generalized forces that produce `qddot`."""
        ...

    def muscle_tendon_velocities(
        self,
        q: Float[Array, "n_coords"],
        qdot: Float[Array, "n_coords"],
    ) -> Float[Array, "n_muscles"]:
        """Muscle-tendon lengthening velocities, `d l_mt / dq @ qdot`."""
        _, velocities = jax.jvp(self.muscle_tendon_lengths, (q,), (qdot,))
        return velocities

    def moment_arms(self, q: Float[Array, "n_coords"]) -> Float[Array, "n_coords n_muscles"]:
        """Moment arm of each muscle about each coordinate.

        The moment arm is `-d l_mt / dq`, so that a muscle that shortens as
        the coordinate increases has a positive moment arm, and
        `generalized_force = moment_arms(q) @ muscle_forces`.
        """
        return -jax.jacfwd(self.muscle_tendon_lengths)(q).T

    @property
    def muscles(self) -> tuple[Muscle, ...]:
        """Force-producing muscles, in model order."""
        return tuple(a for a in self.actuators if isinstance(a, Muscle) and a.applies_force)

    @property
    def coordinate_actuators(self) -> tuple[CoordinateActuator, ...]:
        """Force-producing coordinate actuators, in model order."""
        return tuple(
            a for a in self.actuators if isinstance(a, CoordinateActuator) and a.applies_force
        )

    @property
    def coordinate_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.coordinates)

    def coordinate_index(self, name: str) -> int:
        try:
            return self.coordinate_names.index(name)
        except ValueError:
            raise ValidationError(f"Model has no coordinate '{name}'") from None

    def actuator(self, name: str) -> AbstractActuator:
        for actuator in self.actuators:
            if actuator.name == name:
                return actuator
        raise ValidationError(f"Model has no actuator '{name}'")

    def with_actuators(self, *actuators: AbstractActuator):
        """Return a copy of the model with `actuators` appended."""
        existing = {a.name for a in self.actuators}
        for actuator in actuators:
            if actuator.name in existing:
                raise ValidationError(f"Model already has an actuator named '{actuator.name}'")
            existing.add(actuator.name)
        return dataclasses.replace(self, actuators=self.actuators + tuple(actuators))

    def with_applies_force(self, name: str, applies_force: bool):
        """Return a copy of the model with actuator `name` enabled or disabled."""
        actuator = self.actuator(name)
        new_actuator = dataclasses.replace(actuator, applies_force=applies_force)
        actuators = tuple(new_actuator if a is actuator else a for a in self.actuators)
        return dataclasses.replace(self, actuators=actuators)


class ConstantMomentArmModel(AbstractMusculoskeletalModel):
    """Model with constant moment arms and decoupled coordinate inertia.

    Muscle-tendon length is linear in the coordinates:

        L_mt = L_ref - R^T q

    where `R` is the `[n_coords, n_muscles]` moment arm matrix, and the
    inverse dynamics are `tau = inertia * qddot + damping * qdot`.

    Attributes:
        coordinates: Coordinates in multibody tree order.
        actuators: All actuators, including disabled ones.
        moment_arm_matrix: Constant moment arms [m], `[n_coords, n_muscles]`.
        reference_lengths: Muscle-tendon lengths at `q = 0` [m].
        inertia: Generalized inertia of each coordinate.
        damping: Viscous damping of each coordinate.
    """

    coordinates: tuple[Coordinate, ...]
    actuators: tuple[AbstractActuator, ...]
    moment_arm_matrix: Float[Array, "n_coords n_muscles"]
    reference_lengths: Float[Array, "n_muscles"]
    inertia: Float[Array, "n_coords"]
    damping: Float[Array, "n_coords"]

    def __init__(
        self,
        coordinates,
        actuators,
        moment_arm_matrix: ArrayLike | None = None,
        reference_lengths: ArrayLike | None = None,
        inertia: ArrayLike | None = None,
        damping: ArrayLike | None = None,
    ):
        self.coordinates = tuple(coordinates)
        self.actuators = tuple(actuators)
        n_coords = len(self.coordinates)
        n_muscles = len([a for a in self.actuators if isinstance(a, Muscle)])
        if moment_arm_matrix is None:
            moment_arm_matrix = jnp.zeros((n_coords, n_muscles))
        if reference_lengths is None:
            reference_lengths = jnp.zeros((n_muscles,))
        self.moment_arm_matrix = jnp.reshape(jnp.asarray(moment_arm_matrix), (n_coords, n_muscles))
        self.reference_lengths = jnp.reshape(jnp.asarray(reference_lengths), (n_muscles,))
        self.inertia = jnp.broadcast_to(
            jnp.asarray(1.0 if inertia is None else inertia), (n_coords,)
        )
        self.damping = jnp.broadcast_to(
            jnp.asarray(0.0 if damping is None else damping), (n_coords,)
        )

    @property
    def _enabled_muscle_index(self) -> np.ndarray:
        all_muscles = [a for a in self.actuators if isinstance(a, Muscle)]
        return np.asarray([i for i, m in enumerate(all_muscles) if m.applies_force], dtype=int)

    def muscle_tendon_lengths(self, q: Array) -> Array:
        """Compute MT lengths assuming a linear relationship with `q`."""
        lengths = self.reference_lengths - self.moment_arm_matrix.T @ q
        return lengths[self._enabled_muscle_index]

    def moment_arms(self, q: Array) -> Array:
        """Return constant moment arms (independent of `q`)."""
        return self.moment_arm_matrix[:, self._enabled_muscle_index]

    def inverse_dynamics(self, q: Array, qdot: Array, qddot: Array) -> Array:
        return self.inertia * qddot + self.damping * qdot
