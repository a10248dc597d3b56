"""Global static optimization driver.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

from __future__ import annotations

import logging
from typing import Optional

from muscle_redundancy.collocation import DirectCollocationSolver
from muscle_redundancy.config import SolverConfig, load_solver_config
from muscle_redundancy.errors import ValidationError
from muscle_redundancy.model import AbstractMusculoskeletalModel, Coordinate, CoordinateActuator
from muscle_redundancy.motion_data import InverseMuscleSolverMotionData, check_cutoff_frequency
from muscle_redundancy.problem import GlobalStaticOptimizationProblem
from muscle_redundancy.solution import GlobalStaticOptimizationSolution, TimeSeriesTable


logger = logging.getLogger(__name__)


class GlobalStaticOptimizationSolver:
    """Solve the muscle redundancy problem for a whole motion at once.

    Unlike classic static optimization, which solves each time frame
    independently, all mesh points are solved in one nonlinear program
    whose cost is the time integral of the squared controls.

    Attributes:
        model: The musculoskeletal model.
        kinematics: Coordinate values over time, one column per coordinate.
        net_generalized_forces: Net generalized forces over time, one column
            per coordinate to actuate. If `None`, they are computed by
            inverse dynamics from `kinematics`.
        config: Solver options.
    """

    def __init__(
        self,
        model: AbstractMusculoskeletalModel,
        kinematics: TimeSeriesTable,
        net_generalized_forces: Optional[TimeSeriesTable] = None,
        *,
        config: Optional[SolverConfig] = None,
        **overrides,
    ):
        if config is None:
            config = load_solver_config(**overrides)
        elif overrides:
            config = SolverConfig.from_dict(vars(config), **overrides)
        self.model = model
        self.kinematics = kinematics
        self.net_generalized_forces = net_generalized_forces
        self.config = config

    def get_coordinates_to_actuate(self) -> list[Coordinate]:
        """Coordinates whose net generalized forces will be matched, in multibody tree order."""
        model = self.model
        coords_to_include = set(self.config.coordinates_to_include)
        if not coords_to_include:
            return [c for c in model.coordinates if not c.is_constrained]

        coords_to_actuate = []
        for coord in model.coordinates:
            if coord.name in coords_to_include:
                if coord.is_constrained:
                    raise ValidationError(
                        f"Coordinate '{coord.name}' is constrained and thus cannot be "
                        "listed under 'coordinates_to_include'."
                    )
                coords_to_actuate.append(coord)
                coords_to_include.discard(coord.name)

        if coords_to_include:
            missing = "".join(f"  {name}\n" for name in sorted(coords_to_include))
            raise ValidationError(
                "Could not find the following coordinates listed under "
                "'coordinates_to_include' (make sure to use the *path* to the "
                f"coordinate):\n{missing}"
            )
        return coords_to_actuate

    def process_actuators_to_include(
        self, model: AbstractMusculoskeletalModel
    ) -> AbstractMusculoskeletalModel:
        """Disable every actuator not listed under 'actuators_to_include', if any are listed."""
        to_include = set(self.config.actuators_to_include)
        if not to_include:
            return model

        names = {a.name for a in model.actuators}
        missing = to_include - names
        if missing:
            raise ValidationError(
                "Could not find the following actuators listed under "
                f"'actuators_to_include': {', '.join(sorted(missing))}"
            )
        for actuator in model.actuators:
            if actuator.name not in to_include and actuator.applies_force:
                logger.info("Disabling actuator '%s'", actuator.name)
                model = model.with_applies_force(actuator.name, False)
        return model

    def create_reserve_actuators(
        self,
        model: AbstractMusculoskeletalModel,
        coords_to_actuate: list[Coordinate],
    ) -> AbstractMusculoskeletalModel:
        """Add one coordinate actuator per actuated coordinate, if requested."""
        optimal_force = self.config.create_reserve_actuators
        if optimal_force == -1:
            return model
        if optimal_force <= 0:
            raise ValidationError(
                f"Invalid value ({optimal_force}) for create_reserve_actuators; "
                "should be -1 or positive."
            )

        logger.info("Adding reserve actuators with an optimal force of %s...", optimal_force)
        reserves = [
            CoordinateActuator(
                name="reserve_" + coord.name.replace("/", "_"),
                coordinate=coord.name,
                optimal_force=optimal_force,
            )
            for coord in coords_to_actuate
        ]
        model = model.with_actuators(*reserves)
        logger.info(
            "Added %d reserve actuator(s), for each of the following coordinates:\n%s",
            len(reserves),
            "\n".join(f"  {coord.name}" for coord in coords_to_actuate),
        )
        return model

    def determine_initial_and_final_times(self) -> tuple[float, float]:
        """The time window of the solve.

        The window is the time range shared by the kinematics and the net
        generalized forces, narrowed by the 'initial_time' and 'final_time'
        options when they are set.
        """
        tables = [self.kinematics]
        if self.net_generalized_forces is not None:
            tables.append(self.net_generalized_forces)
        for table in tables:
            if table.num_rows < 2:
                raise ValidationError("Motion data tables must contain at least two rows")

        data_initial = max(float(t.times[0]) for t in tables)
        data_final = min(float(t.times[-1]) for t in tables)
        if not data_final > data_initial:
            raise ValidationError(
                f"Kinematics and net generalized forces do not overlap in time "
                f"([{data_initial}, {data_final}])"
            )

        initial_time = self.config.initial_time
        final_time = self.config.final_time
        if initial_time is None:
            initial_time = data_initial
        elif not data_initial <= initial_time <= data_final:
            raise ValidationError(
                f"initial_time ({initial_time}) must be within the data range "
                f"[{data_initial}, {data_final}]"
            )
        if final_time is None:
            final_time = data_final
        elif not data_initial <= final_time <= data_final:
            raise ValidationError(
                f"final_time ({final_time}) must be within the data range "
                f"[{data_initial}, {data_final}]"
            )
        if not final_time > initial_time:
            raise ValidationError(
                f"final_time ({final_time}) must be greater than initial_time ({initial_time})"
            )
        return float(initial_time), float(final_time)

    def solve(self) -> GlobalStaticOptimizationSolution:
        """Run the solve.

        Raises:
            ValidationError: For invalid models, data, or options; raised
                before any optimization is attempted.
            SolverError: If the optimization does not converge.
        """
        config = self.config
        check_cutoff_frequency("kinematics", config.lowpass_cutoff_frequency_for_kinematics)
        if self.net_generalized_forces is None:
            check_cutoff_frequency(
                "joint moments", config.lowpass_cutoff_frequency_for_joint_moments
            )

        coords_to_actuate = self.get_coordinates_to_actuate()
        logger.info(
            "The following Coordinates will be actuated:\n%s",
            "\n".join(f"  {coord.name}" for coord in coords_to_actuate),
        )

        model = self.process_actuators_to_include(self.model)
        model = self.create_reserve_actuators(model, coords_to_actuate)

        initial_time, final_time = self.determine_initial_and_final_times()
        logger.info("Solving over the time range [%s, %s]", initial_time, final_time)

        motion_data = InverseMuscleSolverMotionData(
            model,
            [coord.name for coord in coords_to_actuate],
            initial_time,
            final_time,
            self.kinematics,
            lowpass_cutoff_frequency_for_kinematics=config.lowpass_cutoff_frequency_for_kinematics,
            net_generalized_forces=self.net_generalized_forces,
            lowpass_cutoff_frequency_for_joint_moments=config.lowpass_cutoff_frequency_for_joint_moments,
            filter_order=config.filter_order,
        )

        problem = GlobalStaticOptimizationProblem(
            model, motion_data, control_weights=config.control_weights
        )
        problem.print_description()

        dircol = DirectCollocationSolver(
            problem,
            scheme=config.scheme,
            num_mesh_points=config.num_mesh_points,
            tolerance=config.tolerance,
            max_iterations=config.max_iterations,
        )
        ocp_solution = dircol.solve()

        return problem.deconstruct_iterate(ocp_solution)
