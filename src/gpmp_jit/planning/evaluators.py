# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Pluggable factor evaluators.

The graph builder never constructs obstacle or smoothness factors itself.
It asks a :class:`CostEvaluator` and a :class:`SmoothnessEvaluator` for
them, and the optimizer registers each evaluator's ``residuals()`` with the
solver. Swapping the cost model (different hinge, different robot body
representation) therefore only means passing another evaluator.

Shipped implementations
-----------------------
HingeObstacleEvaluator
    Hinge loss on sphere signed distances, at support states
    (``"obstacle"``) and at GP-interpolated states (``"obstacle_gp"``).

ConstantVelocityGPEvaluator
    White-noise-on-acceleration prior between consecutive states
    (``"gp_prior"``).
"""

from __future__ import annotations
from typing import Mapping, Protocol

import jax.numpy as jnp

from gpmp_jit.core import gp
from gpmp_jit.core.factor_graph import ResidualFn
from gpmp_jit.core.types import Factor, VariableKey
from gpmp_jit.planning.factors import (
    gp_prior_residual,
    obstacle_gp_residual,
    obstacle_residual,
    prior_residual,
    sigma_to_weight,
)
from gpmp_jit.planning.robot import RobotModel
from gpmp_jit.planning.sdf import FieldModel

PRIOR = "prior"
GP_PRIOR = "gp_prior"
OBSTACLE = "obstacle"
OBSTACLE_GP = "obstacle_gp"


def prior_factor(key: VariableKey, target, sigma) -> Factor:
    """Equality-to-value factor used for start, goal and waypoint pinning."""
    return Factor(
        type=PRIOR,
        var_keys=(key,),
        params={"target": jnp.asarray(target, dtype=float), "weight": sigma_to_weight(sigma)},
    )


class CostEvaluator(Protocol):
    def obstacle_factor(
        self,
        pose_key: VariableKey,
        robot: RobotModel,
        field: FieldModel,
        cost_sigma: float,
        epsilon: float,
    ) -> Factor:
        ...

    def obstacle_gp_factor(
        self,
        pose1: VariableKey,
        vel1: VariableKey,
        pose2: VariableKey,
        vel2: VariableKey,
        robot: RobotModel,
        field: FieldModel,
        cost_sigma: float,
        epsilon: float,
        qc: jnp.ndarray,
        delta_t: float,
        tau: float,
    ) -> Factor:
        ...

    def residuals(self) -> Mapping[str, ResidualFn]:
        ...


class SmoothnessEvaluator(Protocol):
    def gp_factor(
        self,
        pose1: VariableKey,
        vel1: VariableKey,
        pose2: VariableKey,
        vel2: VariableKey,
        delta_t: float,
        qc: jnp.ndarray,
    ) -> Factor:
        ...

    def residuals(self) -> Mapping[str, ResidualFn]:
        ...


class HingeObstacleEvaluator:

    def obstacle_factor(self, pose_key, robot, field, cost_sigma, epsilon) -> Factor:
        return Factor(
            type=OBSTACLE,
            var_keys=(pose_key,),
            params={
                "robot": robot,
                "field": field,
                "epsilon": float(epsilon),
                "weight": sigma_to_weight(cost_sigma),
            },
        )

    def obstacle_gp_factor(
        self, pose1, vel1, pose2, vel2, robot, field, cost_sigma, epsilon, qc, delta_t, tau
    ) -> Factor:
        qc = jnp.asarray(qc)
        return Factor(
            type=OBSTACLE_GP,
            var_keys=(pose1, vel1, pose2, vel2),
            params={
                "robot": robot,
                "field": field,
                "epsilon": float(epsilon),
                "weight": sigma_to_weight(cost_sigma),
                "dof": qc.shape[0],
                "delta_t": float(delta_t),
                "tau": float(tau),
                "lambda": gp.calc_lambda(qc, delta_t, tau),
                "psi": gp.calc_psi(qc, delta_t, tau),
            },
        )

    def residuals(self) -> Mapping[str, ResidualFn]:
        return {OBSTACLE: obstacle_residual, OBSTACLE_GP: obstacle_gp_residual}


class ConstantVelocityGPEvaluator:

    def gp_factor(self, pose1, vel1, pose2, vel2, delta_t, qc) -> Factor:
        qc = jnp.asarray(qc)
        return Factor(
            type=GP_PRIOR,
            var_keys=(pose1, vel1, pose2, vel2),
            params={
                "dof": qc.shape[0],
                "delta_t": float(delta_t),
                "q_chol": jnp.linalg.cholesky(gp.calc_q(qc, delta_t)),
            },
        )

    def residuals(self) -> Mapping[str, ResidualFn]:
        return {GP_PRIOR: gp_prior_residual}


def prior_residuals() -> Mapping[str, ResidualFn]:
    return {PRIOR: prior_residual}
