# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""Post-processing helpers for solved trajectories."""

from __future__ import annotations
from typing import Optional

import jax.numpy as jnp

from gpmp_jit.core import gp
from gpmp_jit.core.types import pose_key
from gpmp_jit.optimization.incremental import Estimate
from gpmp_jit.planning.evaluators import CostEvaluator, HingeObstacleEvaluator
from gpmp_jit.planning.robot import RobotModel
from gpmp_jit.planning.sdf import FieldModel
from gpmp_jit.planning.setting import TrajOptimizerSetting


def interpolate_trajectory(
    estimate: Estimate,
    setting: TrajOptimizerSetting,
    inter_step: int,
) -> jnp.ndarray:
    """Densify a solved trajectory with the GP posterior mean.

    Inserts ``inter_step`` evenly spaced configurations between every pair
    of support states and returns an array of shape
    ``(N * (inter_step + 1) + 1, dof)``.
    """
    if inter_step < 0:
        raise ValueError(f"inter_step must be >= 0, got {inter_step}")

    qc = setting.qc_matrix
    delta_t = setting.delta_t
    inter_dt = delta_t / float(inter_step + 1)

    confs = []
    for i in range(setting.total_step):
        pose1, vel1 = estimate.pose(i), estimate.velocity(i)
        pose2, vel2 = estimate.pose(i + 1), estimate.velocity(i + 1)
        confs.append(pose1)
        for k in range(1, inter_step + 1):
            conf, _ = gp.interpolate_state(pose1, vel1, pose2, vel2, qc, delta_t, inter_dt * k)
            confs.append(conf)
    confs.append(estimate.pose(setting.total_step))
    return jnp.stack(confs)


def collision_cost(
    estimate: Estimate,
    robot: RobotModel,
    field: FieldModel,
    setting: TrajOptimizerSetting,
    cost_evaluator: Optional[CostEvaluator] = None,
) -> float:
    """Total squared obstacle cost of the support states of ``estimate``.

    Zero means every body sphere clears obstacles by at least ``epsilon``.
    """
    evaluator = cost_evaluator or HingeObstacleEvaluator()
    residual_fns = evaluator.residuals()

    total = 0.0
    for i in range(setting.total_step + 1):
        factor = evaluator.obstacle_factor(
            pose_key(i), robot, field, setting.cost_sigma, setting.epsilon)
        r = residual_fns[factor.type](estimate.pose(i), factor.params)
        total += float(jnp.sum(r ** 2))
    return total
