# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
GPMP-JIT: incremental Gaussian-process motion planning on JAX.

The public entry point is :class:`IncrementalTrajOptimizer`; everything it
needs (setting, robot and field models, evaluators, solver) is re-exported
here.
"""

from gpmp_jit.core.errors import (
    FactorIndexError,
    InvalidSettingError,
    SolverError,
    StepIndexError,
    TrajOptError,
)
from gpmp_jit.core.types import Factor, VariableKey, pose_key, vel_key
from gpmp_jit.optimization.incremental import Estimate, IncrementalParams, IncrementalSolver, UpdateResult
from gpmp_jit.optimization.solvers import GNConfig
from gpmp_jit.planning.evaluators import ConstantVelocityGPEvaluator, HingeObstacleEvaluator
from gpmp_jit.planning.graph_builder import TrajectoryGraph, build_trajectory_graph
from gpmp_jit.planning.isam_optimizer import IncrementalTrajOptimizer
from gpmp_jit.planning.robot import PointRobotModel
from gpmp_jit.planning.sdf import PlanarSDF
from gpmp_jit.planning.setting import TrajOptimizerSetting
from gpmp_jit.planning.trajectory import collision_cost, interpolate_trajectory

__version__ = "0.1.0"
