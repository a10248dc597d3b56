"""Rigid-tendon De Groote (2016) muscle model.

The tendon is treated as inextensible, so fiber length and fiber velocity
are algebraic functions of the muscle-tendon length and velocity, and the
muscle has no internal state.

All formulas are written with `jax.numpy` and contain no Python branching on
values, so the same code evaluates plain floats (for reporting) and JAX
tracers (inside `jit`, `grad` and `jvp`, for the optimization).

Key references:
- De Groote et al. (2016): Evaluation of direct collocation optimal control
  problem formulations for solving the muscle redundancy problem.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Optional

from equinox import Module, field
import jax
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike


logger = logging.getLogger(__name__)


# ============================================================================
# Force-Length-Velocity Curves
# ============================================================================


class ActiveForceLengthCurve(Module):
    """Active force-length relationship: a sum of three Gaussians.

    Attributes:
        b11, b21, b31, b41: Coefficients of the first Gaussian.
        b12, b22, b32, b42: Coefficients of the second Gaussian.
        b13, b23, b33, b43: Coefficients of the third Gaussian.
    """

    b11: float = 0.814483478343008
    b21: float = 1.05503342897057
    b31: float = 0.162384573599574
    b41: float = 0.0633034484654646
    b12: float = 0.433004984392647
    b22: float = 0.716775413397760
    b32: float = -0.0299471169706956
    b42: float = 0.200356847296188
    b13: float = 0.1
    b23: float = 1.0
    b33: float = 0.5 * 0.5**0.5
    b43: float = 0.0

    @staticmethod
    def _gaussian(norm_length, b1, b2, b3, b4):
        num = norm_length - b2
        den = b3 + b4 * norm_length
        return b1 * jnp.exp(-0.5 * num**2 / den**2)

    def __call__(self, norm_length: ArrayLike) -> Array:
        """Compute the active force-length multiplier.

        Args:
            norm_length: Fiber length / optimal fiber length.

        Returns:
            Force multiplier, approximately 1 at optimal length.
        """
        return (
            self._gaussian(norm_length, self.b11, self.b21, self.b31, self.b41)
            + self._gaussian(norm_length, self.b12, self.b22, self.b32, self.b42)
            + self._gaussian(norm_length, self.b13, self.b23, self.b33, self.b43)
        )


class PassiveForceLengthCurve(Module):
    """Passive (exponential) fiber force-length relationship.

    Attributes:
        kpe: Exponential shape factor.
        e0: Passive fiber strain at one normalized force.
        p0: Offset so that the curve is near zero below optimal length.
        p1: Scale so that the curve is near one at `1 + e0`.
    """

    kpe: float = 4.0
    e0: float = 0.6
    p0: float = -0.995172050006169
    p1: float = 53.5981500331442

    def __call__(self, norm_length: ArrayLike) -> Array:
        """Compute the passive force multiplier.

        Args:
            norm_length: Fiber length / optimal fiber length.

        Returns:
            Passive force multiplier.
        """
        t5 = jnp.exp(self.kpe * (norm_length - 1.0) / self.e0)
        return ((t5 - 1.0) - self.p0) / self.p1


class ForceVelocityCurve(Module):
    """Force-velocity relationship, in inverse hyperbolic sine form.

    Attributes:
        d1, d2, d3, d4: Curve coefficients.
    """

    d1: float = -0.318323436899127
    d2: float = -8.14915604347525
    d3: float = -0.374121508647863
    d4: float = 0.885644059915004

    def __call__(self, norm_velocity: ArrayLike) -> Array:
        """Compute the force-velocity multiplier.

        Args:
            norm_velocity: Fiber velocity / max contraction velocity.
                Negative = shortening, positive = lengthening.

        Returns:
            Force multiplier, approximately 1 when isometric.
        """
        x = self.d2 * norm_velocity + self.d3
        return self.d1 * jnp.log(x + jnp.sqrt(x**2 + 1.0)) + self.d4


# ============================================================================
# Rigid Tendon Muscle
# ============================================================================


class DeGroote2016Muscle(Module):
    """Hill-type muscle with a rigid tendon and De Groote (2016) curves.

    Attributes:
        max_isometric_force: Peak active force at optimal length [N].
        optimal_fiber_length: Length at which peak force is produced [m].
        tendon_slack_length: Length of the (inextensible) tendon [m].
        pennation_angle_at_optimal: Fiber angle at optimal length [rad].
        max_contraction_velocity: Max shortening velocity [optimal lengths/s].
        fiber_damping: Linear damping on normalized fiber velocity.
    """

    max_isometric_force: float
    optimal_fiber_length: float
    tendon_slack_length: float
    pennation_angle_at_optimal: float = 0.0
    max_contraction_velocity: float = 10.0
    fiber_damping: float = 0.01
    active_force_length: ActiveForceLengthCurve = field(
        static=True, default_factory=ActiveForceLengthCurve
    )
    passive_force_length: PassiveForceLengthCurve = field(
        static=True, default_factory=PassiveForceLengthCurve
    )
    force_velocity: ForceVelocityCurve = field(static=True, default_factory=ForceVelocityCurve)

    def _fiber_geometry(self, musculotendon_length, musculotendon_velocity):
        # Fiber width is constant as the fiber changes length.
        w = self.optimal_fiber_length * jnp.sin(self.pennation_angle_at_optimal)
        fiber_projection = musculotendon_length - self.tendon_slack_length
        fiber_length = jnp.sqrt(fiber_projection**2 + w**2)
        cos_pennation = fiber_projection / fiber_length
        fiber_velocity = musculotendon_velocity * cos_pennation
        return fiber_length, fiber_velocity, cos_pennation

    def calc_rigid_tendon_fiber_kinematics(
        self,
        musculotendon_length: ArrayLike,
        musculotendon_velocity: ArrayLike,
    ) -> tuple[Array, Array]:
        """Compute normalized fiber length and velocity.

        Args:
            musculotendon_length: Total muscle-tendon length [m].
            musculotendon_velocity: Muscle-tendon lengthening velocity [m/s].

        Returns:
            Fiber length / optimal fiber length, and fiber velocity /
            (max contraction velocity * optimal fiber length).
        """
        fiber_length, fiber_velocity, _ = self._fiber_geometry(
            musculotendon_length, musculotendon_velocity
        )
        norm_fiber_length = fiber_length / self.optimal_fiber_length
        norm_fiber_velocity = fiber_velocity / (
            self.max_contraction_velocity * self.optimal_fiber_length
        )
        return norm_fiber_length, norm_fiber_velocity

    def calc_rigid_tendon_norm_fiber_force_along_tendon(
        self,
        activation: ArrayLike,
        musculotendon_length: ArrayLike,
        musculotendon_velocity: ArrayLike,
    ) -> Array:
        """Fiber force projected onto the tendon, normalized by max isometric force."""
        _, _, cos_pennation = self._fiber_geometry(musculotendon_length, musculotendon_velocity)
        norm_fiber_length, norm_fiber_velocity = self.calc_rigid_tendon_fiber_kinematics(
            musculotendon_length, musculotendon_velocity
        )

        active = (
            activation
            * self.active_force_length(norm_fiber_length)
            * self.force_velocity(norm_fiber_velocity)
        )
        passive = self.passive_force_length(norm_fiber_length)
        norm_fiber_force = active + passive + self.fiber_damping * norm_fiber_velocity

        return norm_fiber_force * cos_pennation

    def calc_rigid_tendon_fiber_force_along_tendon(
        self,
        activation: ArrayLike,
        musculotendon_length: ArrayLike,
        musculotendon_velocity: ArrayLike,
    ) -> Array:
        """Compute the fiber force projected onto the tendon.

        With a rigid tendon this equals the tendon force.

        Args:
            activation: Muscle activation, nominally in [0, 1].
            musculotendon_length: Total muscle-tendon length [m].
            musculotendon_velocity: Muscle-tendon lengthening velocity [m/s].

        Returns:
            Tendon force [N].
        """
        return self.max_isometric_force * self.calc_rigid_tendon_norm_fiber_force_along_tendon(
            activation, musculotendon_length, musculotendon_velocity
        )


def stack_muscles(muscles: Sequence[DeGroote2016Muscle]) -> Optional[DeGroote2016Muscle]:
    """Combine muscles into one whose parameters have a leading muscle axis.

    The result can be evaluated for all muscles at once with `jax.vmap`.
    Returns `None` when there are no muscles.
    """
    if not muscles:
        return None
    return jax.tree.map(lambda *xs: jnp.asarray(xs), *muscles)


def calc_muscle_forces(
    stacked: DeGroote2016Muscle,
    activations: ArrayLike,
    musculotendon_lengths: ArrayLike,
    musculotendon_velocities: ArrayLike,
) -> Array:
    """Tendon forces of stacked muscles, one per muscle."""
    return jax.vmap(DeGroote2016Muscle.calc_rigid_tendon_fiber_force_along_tendon)(
        stacked, activations, musculotendon_lengths, musculotendon_velocities
    )


def calc_fiber_kinematics(
    stacked: DeGroote2016Muscle,
    musculotendon_lengths: ArrayLike,
    musculotendon_velocities: ArrayLike,
) -> tuple[Array, Array]:
    """Normalized fiber lengths and velocities of stacked muscles."""
    return jax.vmap(DeGroote2016Muscle.calc_rigid_tendon_fiber_kinematics)(
        stacked, musculotendon_lengths, musculotendon_velocities
    )
