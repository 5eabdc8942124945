# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Residual models (trajectory factors) for GPMP-JIT.

Each function here implements a residual

      r(x; params) ∈ ℝᵏ

where ``x`` is the concatenation of the factor's variables in ``var_keys``
order. Factor types are mapped to these functions with
``IncrementalSolver.register_residual``; the evaluators in
``planning.evaluators`` do that wiring and build the ``params`` dicts.

Families
--------
1. Priors
    • ``prior_residual``: r = x − target. Pins start, goal and waypoint
      states.

2. Smoothness
    • ``gp_prior_residual``: constant-velocity GP prior between two
      consecutive support states ``(x_i, v_i, x_{i+1}, v_{i+1})``, whitened
      by the lower Cholesky factor of ``Q(dt)``.

3. Obstacle cost
    • ``obstacle_residual``: hinge loss on the signed distance of every
      robot body sphere at one support state.
    • ``obstacle_gp_residual``: the same hinge evaluated at the
      GP-interpolated configuration between two support states.

Weighting
---------
Residuals that take a noise sigma use ``_apply_weight`` with a weight from
``sigma_to_weight``: a scalar weight w scales the residual by ``sqrt(w)``,
a vector weight is used as per-component sqrt-information.

Adding a factor type
--------------------
    1. Implement ``def my_residual(x, params) -> jnp.ndarray`` here.
    2. Return it from an evaluator's ``residuals()`` mapping so the planner
       registers it with the solver.
"""

from __future__ import annotations
from typing import Dict

import jax.numpy as jnp
from jax.scipy.linalg import solve_triangular

from gpmp_jit.core import gp


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Optional weighting of residuals.

    If params[key] is:
      - missing: no change
      - scalar:  r' = sqrt(w) * r          (scalar weight)
      - vector:  r' = w * r                (per-component sqrt-info)
    """
    w = params.get(key, None)
    if w is None:
        return residual

    w = jnp.asarray(w)

    if w.ndim == 0:
        # scalar weight; use sqrt to interpret as information
        return jnp.sqrt(w) * residual
    else:
        return w * residual


def sigma_to_weight(sigma):
    """
    Convert standard deviation sigma (or vector of sigmas) to a weight usable
    by _apply_weight.

    For scalar sigma:
        w = 1 / sigma^2

    For vector sigma (per-component std devs) the result is the
    per-component sqrt-information 1 / sigma[i].
    """
    s = jnp.asarray(sigma, dtype=float)
    if s.ndim == 0:
        return 1.0 / (s * s)
    return 1.0 / s


def hinge_loss(distance: jnp.ndarray, epsilon: float) -> jnp.ndarray:
    """``epsilon - d`` inside the safety margin, zero outside."""
    return jnp.where(distance < epsilon, epsilon - distance, 0.0)


def prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Prior on a single variable:
        residual = x - target
    """
    target = params["target"]
    r = x - target
    return _apply_weight(r, params)


def gp_prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Constant-velocity GP prior.

        x = [pose1, vel1, pose2, vel2]
        e = [pose1 + dt vel1 - pose2; vel1 - vel2]
        r = L⁻¹ e,  with  L Lᵀ = Q(dt)
    """
    dof = params["dof"]
    dt = params["delta_t"]
    pose1, vel1 = x[:dof], x[dof:2 * dof]
    pose2, vel2 = x[2 * dof:3 * dof], x[3 * dof:]
    e = gp.gp_prior_error(pose1, vel1, pose2, vel2, dt)
    return solve_triangular(params["q_chol"], e, lower=True)


def _sphere_hinge(conf: jnp.ndarray, params: Dict) -> jnp.ndarray:
    robot = params["robot"]
    field = params["field"]
    centers = robot.sphere_centers(conf)
    distance = field.signed_distance(centers) - robot.sphere_radii
    return _apply_weight(hinge_loss(distance, params["epsilon"]), params)


def obstacle_residual(x: jnp.ndarray, params: Dict) -> jnp.ndarray:
    """
    Obstacle cost at one support state.

        x = pose
        r_k = hinge(sdf(c_k(pose)) - radius_k, epsilon) / cost_sigma
    """
    return _sphere_hinge(x, params)


def obstacle_gp_residual(x: jnp.ndarray, params: Dict) -> jnp.ndarray:
    """
    Obstacle cost at a GP-interpolated configuration.

        x = [pose1, vel1, pose2, vel2]
        pose(tau) = (Lambda(tau) [pose1; vel1] + Psi(tau) [pose2; vel2])[:dof]

    ``lambda`` and ``psi`` are precomputed for the factor's ``tau``.
    """
    dof = params["dof"]
    state = params["lambda"] @ x[:2 * dof] + params["psi"] @ x[2 * dof:]
    return _sphere_hinge(state[:dof], params)
