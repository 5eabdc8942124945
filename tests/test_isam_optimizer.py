"""
Incremental trajectory optimizer: update cycle, goal reconfiguration and
waypoint pinning on a planar point robot.
"""

from __future__ import annotations

import dataclasses
import logging

import pytest
import numpy as np
import jax.numpy as jnp

from gpmp_jit.core.errors import SolverError, StepIndexError, TrajOptError
from gpmp_jit.core.types import pose_key, vel_key
from gpmp_jit.optimization.incremental import IncrementalParams, IncrementalSolver
from gpmp_jit.optimization.solvers import GNConfig
from gpmp_jit.planning.evaluators import OBSTACLE, OBSTACLE_GP, HingeObstacleEvaluator
from gpmp_jit.planning.isam_optimizer import IncrementalTrajOptimizer
from gpmp_jit.planning.robot import PointRobotModel
from gpmp_jit.planning.sdf import PlanarSDF
from gpmp_jit.planning.setting import TrajOptimizerSetting

START = (0.0, 0.0)
GOAL = (10.0, 0.0)
ZERO_VEL = (0.0, 0.0)


def _setting(**overrides) -> TrajOptimizerSetting:
    base = TrajOptimizerSetting(
        dof=2,
        total_step=5,
        total_time=5.0,
        obs_check_inter=1,
        conf_prior_sigma=1e-3,
        vel_prior_sigma=1e-3,
        qc=1.0,
        cost_sigma=0.1,
        epsilon=0.2,
        gn=GNConfig(max_iters=50, damping=1e-9, max_step_norm=100.0, step_tolerance=1e-8),
    )
    return dataclasses.replace(base, **overrides)


def _free_space() -> PlanarSDF:
    # single obstacle far above the straight path y = 0
    return PlanarSDF.from_circles((-5.0, -10.0), 0.5, (41, 61), [(5.0, 8.0, 1.0)])


def _optimizer(**overrides) -> IncrementalTrajOptimizer:
    return IncrementalTrajOptimizer(PointRobotModel(dof=2, radius=0.1), _free_space(), _setting(**overrides))


def _initialized(**overrides) -> IncrementalTrajOptimizer:
    opt = _optimizer(**overrides)
    opt.initialize(START, ZERO_VEL, GOAL, ZERO_VEL)
    return opt


def test_initial_update_covers_all_keys():
    opt = _initialized()
    assert opt.is_dirty
    assert len(opt.pending_factors) == 20
    assert len(opt.pending_values) == 10
    assert opt.goal_factor_indices == (15, 16)
    assert opt.values is None

    estimate = opt.update()

    assert len(estimate) == 10
    assert set(estimate) == {pose_key(i) for i in range(6)} | {vel_key(i) for i in range(6)}
    np.testing.assert_allclose(estimate.pose(0), START, atol=1e-3)
    np.testing.assert_allclose(estimate.pose(5), GOAL, atol=1e-3)
    np.testing.assert_allclose(estimate.velocity(5), ZERO_VEL, atol=1e-3)
    assert estimate.poses().shape == (6, 2)
    assert estimate.velocities().shape == (6, 2)
    assert opt.values is estimate


def test_buffers_empty_after_update():
    opt = _initialized()
    opt.update()
    assert not opt.is_dirty
    assert opt.pending_factors == ()
    assert opt.pending_values == {}
    assert opt.pending_removals == ()

    opt.change_goal((12.0, 0.0), ZERO_VEL)
    opt.pin_state(2, (4.0, 0.0), (2.0, 0.0))
    assert opt.is_dirty
    opt.update()
    assert not opt.is_dirty


def test_idle_update_returns_unchanged_estimate():
    opt = _initialized()
    first = opt.update()
    second = opt.update()

    assert second is not first
    for key in first:
        np.testing.assert_array_equal(second[key], first[key])


def test_change_goal_moves_goal_state():
    opt = _initialized()
    opt.update()
    committed = opt.solver.committed_factor_count()
    live = opt.solver.live_factor_count()

    opt.change_goal((12.0, 0.0), ZERO_VEL)
    assert opt.pending_removals == (15, 16)
    assert opt.goal_factor_indices == (committed, committed + 1)

    estimate = opt.update()

    np.testing.assert_allclose(estimate.pose(5), [12.0, 0.0], atol=1e-3)
    np.testing.assert_allclose(estimate.velocity(5), ZERO_VEL, atol=1e-3)
    np.testing.assert_allclose(estimate.pose(0), START, atol=1e-3)
    assert opt.solver.committed_factor_count() == committed + 2
    assert opt.solver.live_factor_count() == live
    assert opt.solver.factor(15) is None
    assert opt.solver.factor(16) is None


def test_change_goal_leaves_start_and_shifts_interior_smoothly():
    """
    Moving the goal from 10 to 12 keeps the start fixed. The interior shift
    is the constant-velocity GP response to the goal offset,
    2 * (3 s^2 - 2 s^3) with s = i / N, so it grows monotonically with i.
    """
    opt = _initialized()
    before = opt.update()
    opt.change_goal((12.0, 0.0), ZERO_VEL)
    after = opt.update()

    np.testing.assert_allclose(after.pose(0), before.pose(0), atol=1e-3)
    np.testing.assert_allclose(after.velocity(0), before.velocity(0), atol=1e-3)

    shift = np.asarray(after.poses() - before.poses())
    np.testing.assert_allclose(shift[:, 1], 0.0, atol=1e-3)
    assert np.all(np.diff(shift[:, 0]) > 0.0)

    s = np.arange(6) / 5.0
    np.testing.assert_allclose(shift[:, 0], 2.0 * (3.0 * s ** 2 - 2.0 * s ** 3), atol=1e-2)


def test_default_setting_reaches_far_goal(caplog):
    """A goal moved by a whole trajectory length converges with stock GNConfig."""
    setting = TrajOptimizerSetting(dof=2, total_step=10, total_time=1.0)
    opt = IncrementalTrajOptimizer(PointRobotModel(dof=2), _free_space(), setting)
    opt.initialize(START, ZERO_VEL, GOAL, ZERO_VEL)
    opt.update()
    assert opt.last_result.converged

    opt.change_goal((20.0, 0.0), ZERO_VEL)
    with caplog.at_level(logging.WARNING, logger="gpmp_jit"):
        estimate = opt.update()

    np.testing.assert_allclose(estimate.pose(10), [20.0, 0.0], atol=1e-3)
    np.testing.assert_allclose(estimate.velocity(10), ZERO_VEL, atol=1e-3)
    assert opt.last_result.converged
    assert opt.last_result.new_factor_indices == list(opt.goal_factor_indices)
    assert not [r for r in caplog.records if r.name.startswith("gpmp_jit")]


def test_non_convergence_is_reported(caplog):
    opt = _optimizer(gn=GNConfig(max_iters=2, max_step_norm=1.0))
    opt.initialize(START, ZERO_VEL, GOAL, ZERO_VEL)
    assert opt.last_result is None

    with caplog.at_level(logging.WARNING, logger="gpmp_jit"):
        opt.update()

    assert not opt.last_result.converged
    assert opt.last_result.iterations == 2
    assert any("max_iters=2" in r.getMessage() for r in caplog.records)


def test_change_goal_index_sequence():
    """
    Each change_goal pushes exactly the indices cached by the previous call
    (or by the initial build), across arbitrary interleaving with update().
    """
    opt = _initialized()
    schedule = ["change", "update", "change", "change", "update", "update", "change", "change", "change", "update"]

    goal_x = 10.0
    for op in schedule:
        if op == "update":
            opt.update()
            continue
        cached = opt.goal_factor_indices
        goal_x += 0.5
        opt.change_goal((goal_x, 0.0), ZERO_VEL)
        assert opt.pending_removals[-2:] == cached
        expected = opt.solver.committed_factor_count() + len(opt.pending_factors)
        assert opt.goal_factor_indices == (expected - 2, expected - 1)

    estimate = opt.values
    np.testing.assert_allclose(estimate.pose(5), [goal_x, 0.0], atol=1e-3)

    conf_idx, vel_idx = opt.goal_factor_indices
    np.testing.assert_allclose(opt.solver.factor(conf_idx).params["target"], [goal_x, 0.0])
    assert opt.solver.factor(conf_idx).var_keys == (pose_key(5),)
    assert opt.solver.factor(vel_idx).var_keys == (vel_key(5),)
    # one goal pose prior and one goal velocity prior stay live
    goal_priors = [
        i for i in range(opt.solver.committed_factor_count())
        if opt.solver.factor(i) is not None
        and opt.solver.factor(i).type == "prior"
        and opt.solver.factor(i).var_keys[0].index == 5
    ]
    assert goal_priors == [conf_idx, vel_idx]


def test_change_goal_before_first_update():
    opt = _initialized()
    opt.change_goal((12.0, 0.0), ZERO_VEL)
    assert opt.pending_removals == (15, 16)
    assert opt.goal_factor_indices == (20, 21)

    estimate = opt.update()
    np.testing.assert_allclose(estimate.pose(5), [12.0, 0.0], atol=1e-3)
    assert opt.solver.committed_factor_count() == 22
    assert opt.solver.live_factor_count() == 20


def test_change_goal_requires_initialized_graph():
    opt = _optimizer()
    with pytest.raises(TrajOptError):
        opt.change_goal(GOAL, ZERO_VEL)


def test_init_factor_graph_twice_rejected():
    opt = _initialized()
    with pytest.raises(TrajOptError):
        opt.init_factor_graph(START, ZERO_VEL, GOAL, ZERO_VEL)


def test_pin_interior_state():
    opt = _initialized()
    opt.update()
    opt.pin_state(2, (4.0, 1.0), (2.0, 0.0))
    assert len(opt.pending_factors) == 2
    assert opt.pending_removals == ()

    estimate = opt.update()
    np.testing.assert_allclose(estimate.pose(2), [4.0, 1.0], atol=1e-2)
    np.testing.assert_allclose(estimate.velocity(2), [2.0, 0.0], atol=1e-2)


def test_pin_at_goal_reconciles_with_goal_prior():
    """Pin and goal prior share a sigma, so the goal settles in between."""
    opt = _initialized()
    opt.update()
    opt.pin_state(5, (11.0, 0.0), ZERO_VEL)
    estimate = opt.update()
    np.testing.assert_allclose(estimate.pose(5), [10.5, 0.0], atol=1e-2)


@pytest.mark.parametrize("step", [-1, 6])
def test_pin_out_of_range(step):
    opt = _initialized()
    opt.update()
    with pytest.raises(StepIndexError):
        opt.pin_state(step, GOAL, ZERO_VEL)
    with pytest.raises(IndexError):
        opt.pin_state(step, GOAL, ZERO_VEL)
    assert not opt.is_dirty


@pytest.mark.parametrize("step", [2.5, "2", True, None])
def test_pin_non_integer_step_rejected(step):
    opt = _initialized()
    opt.update()
    with pytest.raises(StepIndexError):
        opt.pin_state(step, GOAL, ZERO_VEL)
    assert not opt.is_dirty


def test_wrong_state_dimension_rejected_by_mutators():
    opt = _initialized()
    opt.update()
    with pytest.raises(ValueError, match="goal_conf"):
        opt.change_goal((1.0, 2.0, 3.0), ZERO_VEL)
    with pytest.raises(ValueError, match="vel"):
        opt.pin_state(2, (4.0, 0.0), (1.0,))
    assert not opt.is_dirty


def test_pin_accepts_numpy_integer_step():
    opt = _initialized()
    opt.update()
    opt.pin_state(np.int64(2), (4.0, 0.0), (2.0, 0.0))
    assert opt.pending_factors[0].var_keys == (pose_key(2),)


def test_init_values_override():
    opt = _optimizer()
    opt.init_factor_graph(START, ZERO_VEL, GOAL, ZERO_VEL)
    guess = {pose_key(i): jnp.array([2.0 * i, 1.0]) for i in range(6)}
    guess.update({vel_key(i): jnp.zeros(2) for i in range(6)})
    opt.init_values(guess)
    assert opt.pending_values[pose_key(3)].tolist() == [6.0, 1.0]

    estimate = opt.update()
    np.testing.assert_allclose(estimate.pose(5), GOAL, atol=1e-3)

    with pytest.raises(StepIndexError):
        opt.init_values({pose_key(9): jnp.zeros(2)})


def test_obstacle_pushes_trajectory_away():
    from gpmp_jit.optimization.incremental import Estimate
    from gpmp_jit.planning.graph_builder import straight_line_values
    from gpmp_jit.planning.trajectory import collision_cost

    setting = _setting(
        epsilon=0.5,
        gn=GNConfig(max_iters=100, damping=1e-2, max_step_norm=0.5, step_tolerance=1e-8),
    )
    sdf = PlanarSDF.from_circles((-5.0, -10.0), 0.25, (81, 121), [(5.0, 0.3, 1.0)])
    robot = PointRobotModel(dof=2, radius=0.1)
    opt = IncrementalTrajOptimizer(robot, sdf, setting)
    opt.initialize(START, ZERO_VEL, GOAL, ZERO_VEL)

    straight = Estimate(straight_line_values(START, GOAL, setting))
    estimate = opt.update()

    assert collision_cost(estimate, robot, sdf, setting) < collision_cost(straight, robot, sdf, setting)
    np.testing.assert_allclose(estimate.pose(0), START, atol=1e-2)
    np.testing.assert_allclose(estimate.pose(5), GOAL, atol=1e-2)


class _NaNObstacleEvaluator(HingeObstacleEvaluator):
    """Obstacle factors whose residual is never finite."""

    def residuals(self):
        return {OBSTACLE: lambda x, params: x * jnp.nan, OBSTACLE_GP: lambda x, params: x * jnp.nan}


def test_solver_error_clears_buffers_before_first_estimate():
    opt = IncrementalTrajOptimizer(
        PointRobotModel(dof=2, radius=0.1), _free_space(), _setting(),
        cost_evaluator=_NaNObstacleEvaluator(),
    )
    opt.initialize(START, ZERO_VEL, GOAL, ZERO_VEL)

    with pytest.raises(SolverError):
        opt.update()

    assert not opt.is_dirty
    assert opt.values is None
    assert opt.last_result is None
    # the batch was committed structurally
    assert opt.solver.committed_factor_count() == 20


def test_solver_error_keeps_previous_estimate():
    opt = _initialized()
    estimate = opt.update()
    result = opt.last_result

    opt.pin_state(2, (float("nan"), 0.0), ZERO_VEL)
    with pytest.raises(SolverError):
        opt.update()

    assert not opt.is_dirty
    assert opt.values is estimate
    assert opt.last_result is result
    np.testing.assert_allclose(opt.solver.calculate_estimate().pose(5), estimate.pose(5))


class _ShiftedIndexSolver(IncrementalSolver):
    """Reports every new factor one slot past where it was stored."""

    def update(self, new_factors=(), new_values=None, remove_indices=()):
        result = super().update(new_factors, new_values, remove_indices)
        return dataclasses.replace(
            result, new_factor_indices=[i + 1 for i in result.new_factor_indices])


def test_goal_indices_follow_solver_report(caplog):
    setting = _setting()
    opt = IncrementalTrajOptimizer(
        PointRobotModel(dof=2, radius=0.1), _free_space(), setting,
        solver=_ShiftedIndexSolver(IncrementalParams(gn=setting.gn)),
    )
    opt.initialize(START, ZERO_VEL, GOAL, ZERO_VEL)
    assert opt.goal_factor_indices == (15, 16)

    with caplog.at_level(logging.WARNING, logger="gpmp_jit.planning.isam_optimizer"):
        opt.update()

    assert opt.goal_factor_indices == (16, 17)
    messages = [r.getMessage() for r in caplog.records if r.name == "gpmp_jit.planning.isam_optimizer"]
    assert len(messages) == 2
    assert all("using solver index" in m for m in messages)

    # the adopted indices are what the next goal change retracts
    opt.change_goal((12.0, 0.0), ZERO_VEL)
    assert opt.pending_removals == (16, 17)


def test_matching_goal_indices_do_not_warn(caplog):
    opt = _initialized()
    with caplog.at_level(logging.WARNING, logger="gpmp_jit.planning.isam_optimizer"):
        opt.update()
    assert opt.goal_factor_indices == (15, 16)
    assert not [r for r in caplog.records if r.name == "gpmp_jit.planning.isam_optimizer"]
