# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Initial factor graph construction for a discretized trajectory.

The builder emits factors in a fixed order, which the optimizer relies on
when it records where the goal priors sit:

    for i in 0..N:
        i == 0 : prior(x_0), prior(v_0)
        i == N : prior(x_N), prior(v_N)      <- goal positions recorded
        always : obstacle(x_i)
        i > 0  : obstacle_gp(x_{i-1}, v_{i-1}, x_i, v_i, tau_k), k = 1..obs_check_inter
                 gp_prior(x_{i-1}, v_{i-1}, x_i, v_i)

with ``tau_k = k * dt / (obs_check_inter + 1)`` and ``dt = total_time / N``.
For N steps this gives ``4 + (N + 1) + N * obs_check_inter + N`` factors
over ``2 (N + 1)`` variables.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List

import jax.numpy as jnp

from gpmp_jit.core.types import Factor, VariableKey, pose_key, vel_key
from gpmp_jit.planning.evaluators import CostEvaluator, SmoothnessEvaluator, prior_factor
from gpmp_jit.planning.robot import RobotModel
from gpmp_jit.planning.sdf import FieldModel
from gpmp_jit.planning.setting import TrajOptimizerSetting


@dataclass
class TrajectoryGraph:
    """Output of :func:`build_trajectory_graph`.

    ``goal_conf_pos`` and ``goal_vel_pos`` are the positions of the goal
    priors within ``factors``.
    """
    factors: List[Factor]
    values: Dict[VariableKey, jnp.ndarray]
    goal_conf_pos: int
    goal_vel_pos: int


def as_state(value, setting: TrajOptimizerSetting, name: str) -> jnp.ndarray:
    arr = jnp.asarray(value, dtype=float).reshape(-1)
    if arr.shape[0] != setting.dof:
        raise ValueError(f"{name} has {arr.shape[0]} entries, expected dof={setting.dof}")
    return arr


def straight_line_values(
    start_conf, goal_conf, setting: TrajOptimizerSetting
) -> Dict[VariableKey, jnp.ndarray]:
    """Initial guess: poses on the segment start->goal, constant average velocity."""
    start = as_state(start_conf, setting, "start_conf")
    goal = as_state(goal_conf, setting, "goal_conf")
    n = setting.total_step
    avg_vel = (goal - start) / setting.total_time

    values: Dict[VariableKey, jnp.ndarray] = {}
    for i in range(n + 1):
        ratio = i / float(n)
        values[pose_key(i)] = (1.0 - ratio) * start + ratio * goal
        values[vel_key(i)] = avg_vel
    return values


def build_trajectory_graph(
    start_conf,
    start_vel,
    goal_conf,
    goal_vel,
    setting: TrajOptimizerSetting,
    robot: RobotModel,
    field: FieldModel,
    cost_evaluator: CostEvaluator,
    smoothness_evaluator: SmoothnessEvaluator,
) -> TrajectoryGraph:
    start_conf = as_state(start_conf, setting, "start_conf")
    start_vel = as_state(start_vel, setting, "start_vel")
    goal_conf = as_state(goal_conf, setting, "goal_conf")
    goal_vel = as_state(goal_vel, setting, "goal_vel")

    # GP interpolation setting
    delta_t = setting.delta_t
    inter_dt = setting.inter_dt
    qc = setting.qc_matrix

    factors: List[Factor] = []
    goal_conf_pos = goal_vel_pos = -1

    for i in range(setting.total_step + 1):
        x_i = pose_key(i)
        v_i = vel_key(i)

        # start and end
        if i == 0:
            factors.append(prior_factor(x_i, start_conf, setting.conf_prior_sigma))
            factors.append(prior_factor(v_i, start_vel, setting.vel_prior_sigma))
        elif i == setting.total_step:
            factors.append(prior_factor(x_i, goal_conf, setting.conf_prior_sigma))
            goal_conf_pos = len(factors) - 1
            factors.append(prior_factor(v_i, goal_vel, setting.vel_prior_sigma))
            goal_vel_pos = len(factors) - 1

        factors.append(cost_evaluator.obstacle_factor(
            x_i, robot, field, setting.cost_sigma, setting.epsilon))

        if i > 0:
            x_prev = pose_key(i - 1)
            v_prev = vel_key(i - 1)

            for k in range(1, setting.obs_check_inter + 1):
                tau = inter_dt * k
                factors.append(cost_evaluator.obstacle_gp_factor(
                    x_prev, v_prev, x_i, v_i, robot, field,
                    setting.cost_sigma, setting.epsilon, qc, delta_t, tau))

            factors.append(smoothness_evaluator.gp_factor(
                x_prev, v_prev, x_i, v_i, delta_t, qc))

    values = straight_line_values(start_conf, goal_conf, setting)
    return TrajectoryGraph(
        factors=factors,
        values=values,
        goal_conf_pos=goal_conf_pos,
        goal_vel_pos=goal_vel_pos,
    )
