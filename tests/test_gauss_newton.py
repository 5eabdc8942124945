from __future__ import annotations

import pytest
import jax.numpy as jnp

from gpmp_jit.core.types import Factor, pose_key
from gpmp_jit.core.factor_graph import FactorGraph
from gpmp_jit.optimization.solvers import GNConfig, gauss_newton
from gpmp_jit.planning.factors import prior_residual


def test_tiny_chain_prior_plus_odom():
    """
    Two 1D variables p0, p1:
      - prior on p0: wants p0 = 0
      - odom between p0 and p1: wants (p1 - p0) = 1

    Optimum: p0 = 0, p1 = 1
    """
    fg = FactorGraph()
    fg.add_variable(pose_key(0), jnp.array([0.5]))
    fg.add_variable(pose_key(1), jnp.array([0.5]))

    fg.register_residual("prior", prior_residual)
    fg.register_residual("odom", lambda x, p: (x[1:] - x[:1]) - p["measurement"])

    fg.add_factor(Factor("prior", (pose_key(0),), {"target": jnp.array([0.0])}))
    fg.add_factor(Factor("odom", (pose_key(0), pose_key(1)), {"measurement": jnp.array([1.0])}))

    x_init, index = fg.pack_state()
    result = gauss_newton(fg.build_residual_function(), x_init, GNConfig(max_iters=20, damping=1e-9))

    values = fg.unpack_state(result.x, index)
    assert float(values[pose_key(0)][0]) == pytest.approx(0.0, abs=1e-6)
    assert float(values[pose_key(1)][0]) == pytest.approx(1.0, abs=1e-6)
    assert result.converged
    assert result.iterations < 20


def test_step_clamp_limits_progress():
    """A clamped step needs several iterations to cover a distance of 10."""
    fg = FactorGraph()
    fg.add_variable(pose_key(0), jnp.array([0.0]))
    fg.register_residual("prior", prior_residual)
    fg.add_factor(Factor("prior", (pose_key(0),), {"target": jnp.array([10.0])}))

    x_init, _ = fg.pack_state()
    residual_fn = fg.build_residual_function()

    short = gauss_newton(residual_fn, x_init, GNConfig(max_iters=3, damping=0.0, max_step_norm=1.0))
    assert float(short.x[0]) == pytest.approx(3.0, abs=1e-6)
    assert not short.converged

    full = gauss_newton(residual_fn, x_init, GNConfig(max_iters=30, damping=0.0, max_step_norm=1.0))
    assert float(full.x[0]) == pytest.approx(10.0, abs=1e-6)
    assert full.converged
