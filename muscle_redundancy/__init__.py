"""
:copyright: Copyright 2023-2024 by MLL <mll@mll.bio>.
:license: Apache 2.0, see LICENSE for details.
"""

import importlib.metadata
import logging

import jax

# Collocation tolerances assume double precision
jax.config.update("jax_enable_x64", True)

from muscle_redundancy._logging import enable_logging_handlers
from muscle_redundancy.collocation import (
    AbstractOptimalControlProblem,
    DirectCollocationSolver,
    OptimalControlSolution,
)
from muscle_redundancy.config import SolverConfig, load_solver_config
from muscle_redundancy.errors import (
    DataRangeError,
    MuscleRedundancyError,
    SolverError,
    ValidationError,
)
from muscle_redundancy.model import (
    AbstractActuator,
    AbstractMusculoskeletalModel,
    ConstantMomentArmModel,
    Coordinate,
    CoordinateActuator,
    GenericActuator,
    Muscle,
)
from muscle_redundancy.motion_data import AbstractMotionData, InverseMuscleSolverMotionData
from muscle_redundancy.muscles import DeGroote2016Muscle
from muscle_redundancy.problem import GlobalStaticOptimizationProblem, MotionCache
from muscle_redundancy.solution import GlobalStaticOptimizationSolution, TimeSeriesTable
from muscle_redundancy.solver import GlobalStaticOptimizationSolver


try:
    __version__ = importlib.metadata.version("muscle-redundancy")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"


logger = logging.getLogger(__package__)
logger.addHandler(logging.NullHandler())
