# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Nonlinear least-squares solver for GPMP-JIT.

This module implements the iterative core used by the incremental engine in
``optimization.incremental``: a damped Gauss–Newton loop over a flat state
vector, driven by a residual function produced by
``core.factor_graph.FactorGraph.build_residual_function``.

Key Concepts
------------
GNConfig
    Dataclass holding configuration for Gauss–Newton:
    - max_iters: maximum number of GN iterations
    - damping: Levenberg–Marquardt-style diagonal damping
    - max_step_norm: clamp on the update step size
    - step_tolerance: stop early once the applied step is this small,
      relative to ``1 + ||x||``

The clamp bounds the step of the *whole* state vector, so a long horizon
moved by a large goal change needs roughly ``||Δx|| / max_step_norm``
iterations; the defaults leave room for that.

gauss_newton(residual_fn, x0, cfg) -> GNResult
    Classic Gauss–Newton on a Euclidean state. Computes updates from the
    normal equations

        (Jᵀ J + λ I) Δx = Jᵀ r

    and returns the final state along with the iteration count and whether
    the step tolerance was reached.

Notes
-----
Trajectory states (configurations and velocities) are plain vectors, so no
manifold retraction is needed; every update is applied additively.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable

import jax
import jax.numpy as jnp

ResidualFn = Callable[[jnp.ndarray], jnp.ndarray]


@dataclass(frozen=True)
class GNConfig:
    max_iters: int = 100
    damping: float = 1e-3        # LM-style diagonal damping
    max_step_norm: float = 10.0  # clamp step size for stability
    step_tolerance: float = 1e-6


@dataclass
class GNResult:
    x: jnp.ndarray
    iterations: int
    converged: bool


def gauss_newton(residual_fn: ResidualFn, x0: jnp.ndarray, cfg: GNConfig) -> GNResult:
    """
    Gauss-Newton on residual function r(x): R^n -> R^m.

    residual_fn: x -> r, with shapes:
        x.shape == (n,)
        r.shape == (m,)

    J = dr/dx has shape (m, n), matching math convention.
    """
    J_fn = jax.jacobian(residual_fn)  # J: (m, n)

    @jax.jit
    def step(x: jnp.ndarray):
        r = residual_fn(x)    # (m,)
        J = J_fn(x)           # (m, n)

        H = J.T @ J           # (n, n)
        g = J.T @ r           # (n,)

        n = x.shape[0]
        H_damped = H + cfg.damping * jnp.eye(n)

        delta = jnp.linalg.solve(H_damped, g)  # (n,)

        # Step-size clamp to avoid huge jumps
        step_norm = jnp.linalg.norm(delta)
        scale = jnp.minimum(1.0, cfg.max_step_norm / (step_norm + 1e-9))

        return x - scale * delta, scale * step_norm

    x = x0
    for it in range(cfg.max_iters):
        x, applied = step(x)
        if float(applied) < cfg.step_tolerance * (1.0 + float(jnp.linalg.norm(x))):
            return GNResult(x=x, iterations=it + 1, converged=True)
    return GNResult(x=x, iterations=cfg.max_iters, converged=False)
