# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Constant-velocity Gaussian-process prior utilities.

The trajectory prior is a white-noise-on-acceleration model: the state at
each support point is ``[pose; velocity]`` and, given a power-spectral
density ``Qc``, the transition over an interval ``dt`` is

    Phi(dt) = [[I, dt I],
               [0,    I]]

    Q(dt)   = [[dt³/3 Qc, dt²/2 Qc],
               [dt²/2 Qc,    dt Qc]]

These matrices are used both by the binary GP prior factor and by the
interpolated obstacle factor, which queries the GP posterior mean at a
fractional time ``tau`` between two support points:

    x(tau) = Lambda(tau) x_i + Psi(tau) x_{i+1}

    Psi(tau)    = Q(tau) Phi(dt - tau)ᵀ Q(dt)⁻¹
    Lambda(tau) = Phi(tau) - Psi(tau) Phi(dt)

All functions are pure JAX and safe to call inside jitted residuals.
"""

from __future__ import annotations
from typing import Tuple

import jax.numpy as jnp


def calc_phi(dof: int, dt: float) -> jnp.ndarray:
    eye = jnp.eye(dof)
    zero = jnp.zeros((dof, dof))
    return jnp.block([[eye, dt * eye], [zero, eye]])


def calc_q(qc: jnp.ndarray, dt: float) -> jnp.ndarray:
    qc = jnp.asarray(qc)
    return jnp.block([
        [(dt ** 3 / 3.0) * qc, (dt ** 2 / 2.0) * qc],
        [(dt ** 2 / 2.0) * qc, dt * qc],
    ])


def calc_psi(qc: jnp.ndarray, delta_t: float, tau: float) -> jnp.ndarray:
    dof = qc.shape[0]
    q_tau = calc_q(qc, tau)
    phi_rest = calc_phi(dof, delta_t - tau)
    # Q(tau) Phi(dt - tau)^T Q(dt)^-1, solved rather than inverted
    return jnp.linalg.solve(calc_q(qc, delta_t).T, (q_tau @ phi_rest.T).T).T


def calc_lambda(qc: jnp.ndarray, delta_t: float, tau: float) -> jnp.ndarray:
    dof = qc.shape[0]
    psi = calc_psi(qc, delta_t, tau)
    return calc_phi(dof, tau) - psi @ calc_phi(dof, delta_t)


def interpolate_state(
    pose1: jnp.ndarray,
    vel1: jnp.ndarray,
    pose2: jnp.ndarray,
    vel2: jnp.ndarray,
    qc: jnp.ndarray,
    delta_t: float,
    tau: float,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """GP posterior mean ``(pose, velocity)`` at ``tau`` in ``[0, delta_t]``."""
    dof = pose1.shape[0]
    lam = calc_lambda(qc, delta_t, tau)
    psi = calc_psi(qc, delta_t, tau)
    state = lam @ jnp.concatenate([pose1, vel1]) + psi @ jnp.concatenate([pose2, vel2])
    return state[:dof], state[dof:]


def gp_prior_error(
    pose1: jnp.ndarray,
    vel1: jnp.ndarray,
    pose2: jnp.ndarray,
    vel2: jnp.ndarray,
    delta_t: float,
) -> jnp.ndarray:
    """Unwhitened error ``Phi(dt) x_1 - x_2`` in the order ``[pose; vel]``."""
    return jnp.concatenate([pose1 + delta_t * vel1 - pose2, vel1 - vel2])
