# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Incremental trajectory optimizer.

:class:`IncrementalTrajOptimizer` keeps a delta buffer between update
cycles and submits it to an :class:`~gpmp_jit.optimization.incremental.IncrementalSolver`
exactly once per :meth:`IncrementalTrajOptimizer.update`:

    pending factors   (ordered, appended by init / change_goal / pin_state)
    pending values    (initial guesses for new variables)
    pending removals  (committed indices of superseded goal priors)

Goal index bookkeeping
----------------------
Replacing the goal means removing the goal priors that are currently in the
solver. Factors are only addressed by their position in the solver's store,
so the optimizer caches the index each goal prior *will* have once the
pending batch is committed:

    committed_factor_count() + position_in_pending

The index is re-derived every time a goal prior is appended, because the
committed size is fixed between updates while the pending list keeps
growing. After each commit the cache is checked against the indices the
solver actually assigned.

Typical usage
-------------
.. code-block:: python

    opt = IncrementalTrajOptimizer(robot, sdf, setting)
    opt.initialize(start_conf, start_vel, goal_conf, goal_vel)
    estimate = opt.update()

    opt.change_goal(new_goal_conf, new_goal_vel)
    opt.pin_state(3, waypoint_conf, waypoint_vel)
    estimate = opt.update()
"""

from __future__ import annotations
from logging import getLogger
from numbers import Integral
from typing import Dict, List, Mapping, Optional, Tuple

import jax.numpy as jnp

from gpmp_jit.core.errors import StepIndexError, SolverError, TrajOptError
from gpmp_jit.core.types import Factor, VariableKey, pose_key, vel_key
from gpmp_jit.optimization.incremental import (
    Estimate,
    IncrementalParams,
    IncrementalSolver,
    UpdateResult,
)
from gpmp_jit.planning.evaluators import (
    ConstantVelocityGPEvaluator,
    CostEvaluator,
    HingeObstacleEvaluator,
    SmoothnessEvaluator,
    prior_factor,
    prior_residuals,
)
from gpmp_jit.planning.graph_builder import as_state, build_trajectory_graph
from gpmp_jit.planning.robot import RobotModel
from gpmp_jit.planning.sdf import FieldModel
from gpmp_jit.planning.setting import TrajOptimizerSetting

logger = getLogger(__name__)


class IncrementalTrajOptimizer:
    """Incremental planner over a fixed-horizon trajectory.

    :param robot: Body model queried by the obstacle factors.
    :param field: Signed distance field of the environment.
    :param setting: Discretization, noise and solver configuration.
    :param solver: Solver to own. A new :class:`IncrementalSolver` using
        ``setting.gn`` is created when omitted.
    :param cost_evaluator: Obstacle factor provider.
    :param smoothness_evaluator: GP prior factor provider.
    """

    def __init__(
        self,
        robot: RobotModel,
        field: FieldModel,
        setting: TrajOptimizerSetting,
        solver: Optional[IncrementalSolver] = None,
        cost_evaluator: Optional[CostEvaluator] = None,
        smoothness_evaluator: Optional[SmoothnessEvaluator] = None,
    ) -> None:
        self.robot = robot
        self.field = field
        self.setting = setting
        self.cost_evaluator = cost_evaluator or HingeObstacleEvaluator()
        self.smoothness_evaluator = smoothness_evaluator or ConstantVelocityGPEvaluator()

        self._solver = solver or IncrementalSolver(IncrementalParams(gn=setting.gn))
        for residuals in (
            prior_residuals(),
            self.cost_evaluator.residuals(),
            self.smoothness_evaluator.residuals(),
        ):
            for factor_type, fn in residuals.items():
                self._solver.register_residual(factor_type, fn)

        # delta buffer
        self._pending_factors: List[Factor] = []
        self._pending_values: Dict[VariableKey, jnp.ndarray] = {}
        self._pending_removals: List[int] = []

        # goal prior index cache, plus where those priors sit while in flight
        self._goal_conf_factor_idx = 0
        self._goal_vel_factor_idx = 0
        self._goal_conf_pending_pos: Optional[int] = None
        self._goal_vel_pending_pos: Optional[int] = None

        self._initialized = False
        self._values: Optional[Estimate] = None
        self._last_result: Optional[UpdateResult] = None

    # --- Read-only views ---

    @property
    def solver(self) -> IncrementalSolver:
        return self._solver

    @property
    def values(self) -> Optional[Estimate]:
        """Estimate from the last :meth:`update`, or None before the first one."""
        return self._values

    @property
    def last_result(self) -> Optional[UpdateResult]:
        """Solver bookkeeping of the last successful :meth:`update`.

        ``last_result.converged`` is False when Gauss–Newton hit
        ``max_iters`` first, in which case the estimate may still be short of
        the constraints (e.g. a newly changed goal).
        """
        return self._last_result

    @property
    def pending_factors(self) -> Tuple[Factor, ...]:
        return tuple(self._pending_factors)

    @property
    def pending_values(self) -> Mapping[VariableKey, jnp.ndarray]:
        return dict(self._pending_values)

    @property
    def pending_removals(self) -> Tuple[int, ...]:
        return tuple(self._pending_removals)

    @property
    def goal_factor_indices(self) -> Tuple[int, int]:
        """Cached ``(goal pose prior, goal velocity prior)`` store indices."""
        return self._goal_conf_factor_idx, self._goal_vel_factor_idx

    @property
    def is_dirty(self) -> bool:
        return bool(self._pending_factors or self._pending_values or self._pending_removals)

    # --- Graph construction ---

    def init_factor_graph(self, start_conf, start_vel, goal_conf, goal_vel) -> None:
        """Queue the initial trajectory graph and its straight-line guess."""
        if self._initialized:
            raise TrajOptError("Factor graph has already been initialized")

        graph = build_trajectory_graph(
            start_conf, start_vel, goal_conf, goal_vel,
            self.setting, self.robot, self.field,
            self.cost_evaluator, self.smoothness_evaluator,
        )

        offset = len(self._pending_factors)
        committed = self._solver.committed_factor_count()
        self._pending_factors.extend(graph.factors)
        self._pending_values.update(graph.values)

        # cache goal factor indices here
        self._goal_conf_pending_pos = offset + graph.goal_conf_pos
        self._goal_vel_pending_pos = offset + graph.goal_vel_pos
        self._goal_conf_factor_idx = committed + self._goal_conf_pending_pos
        self._goal_vel_factor_idx = committed + self._goal_vel_pending_pos
        self._initialized = True

        logger.debug(
            "Built trajectory graph: %d factors, %d variables, goal priors at %d/%d",
            len(graph.factors), len(graph.values),
            self._goal_conf_factor_idx, self._goal_vel_factor_idx,
        )

    def init_values(self, values: Mapping[VariableKey, jnp.ndarray]) -> None:
        """Replace the pending initial guesses with ``values``."""
        values = {key: jnp.asarray(val, dtype=float) for key, val in values.items()}
        for key in values:
            if not 0 <= key.index <= self.setting.total_step:
                raise StepIndexError(f"Variable {key} outside trajectory [0, {self.setting.total_step}]")
        self._pending_values = values

    def initialize(
        self,
        start_conf,
        start_vel,
        goal_conf,
        goal_vel,
        init_values: Optional[Mapping[VariableKey, jnp.ndarray]] = None,
    ) -> None:
        """:meth:`init_factor_graph`, optionally overriding the straight-line guess."""
        self.init_factor_graph(start_conf, start_vel, goal_conf, goal_vel)
        if init_values is not None:
            self.init_values(init_values)

    # --- Update cycle ---

    def update(self) -> Estimate:
        """Commit the delta buffer to the solver and refresh the estimate."""
        try:
            result = self._solver.update(
                self._pending_factors, self._pending_values, self._pending_removals)
        except SolverError:
            # the delta is committed structurally; it now belongs to the solver
            self._clear_pending()
            raise

        self._reconcile_goal_indices(result.new_factor_indices)
        self._last_result = result
        self._values = self._solver.calculate_estimate()
        self._clear_pending()
        return self._values

    def _reconcile_goal_indices(self, new_indices: List[int]) -> None:
        if self._goal_conf_pending_pos is not None:
            actual = new_indices[self._goal_conf_pending_pos]
            if actual != self._goal_conf_factor_idx:
                logger.warning(
                    "Goal pose prior committed at %d, cached %d; using solver index",
                    actual, self._goal_conf_factor_idx)
                self._goal_conf_factor_idx = actual
        if self._goal_vel_pending_pos is not None:
            actual = new_indices[self._goal_vel_pending_pos]
            if actual != self._goal_vel_factor_idx:
                logger.warning(
                    "Goal velocity prior committed at %d, cached %d; using solver index",
                    actual, self._goal_vel_factor_idx)
                self._goal_vel_factor_idx = actual

    def _clear_pending(self) -> None:
        self._pending_factors = []
        self._pending_values = {}
        self._pending_removals = []
        self._goal_conf_pending_pos = None
        self._goal_vel_pending_pos = None

    # --- Mutations ---

    def _future_index(self) -> int:
        return self._solver.committed_factor_count() + len(self._pending_factors) - 1

    def change_goal(self, goal_conf, goal_vel) -> None:
        """Replace the goal priors, effective after the next :meth:`update`."""
        if not self._initialized:
            raise TrajOptError("change_goal called before init_factor_graph")

        n = self.setting.total_step
        goal_conf = as_state(goal_conf, self.setting, "goal_conf")
        goal_vel = as_state(goal_vel, self.setting, "goal_vel")

        # add old goal factors' indices to the remove list
        self._pending_removals.append(self._goal_conf_factor_idx)
        self._pending_removals.append(self._goal_vel_factor_idx)

        self._pending_factors.append(prior_factor(pose_key(n), goal_conf, self.setting.conf_prior_sigma))
        self._goal_conf_factor_idx = self._future_index()
        self._goal_conf_pending_pos = len(self._pending_factors) - 1

        self._pending_factors.append(prior_factor(vel_key(n), goal_vel, self.setting.vel_prior_sigma))
        self._goal_vel_factor_idx = self._future_index()
        self._goal_vel_pending_pos = len(self._pending_factors) - 1

        logger.info(
            "Goal changed to %s, new goal priors at %d/%d",
            goal_conf.tolist(), self._goal_conf_factor_idx, self._goal_vel_factor_idx)

    def pin_state(self, step: int, conf, vel) -> None:
        """Pin pose and velocity at ``step``, effective after the next :meth:`update`."""
        if isinstance(step, bool) or not isinstance(step, Integral):
            raise StepIndexError(f"Step must be an integer, got {step!r}")
        if not 0 <= step <= self.setting.total_step:
            raise StepIndexError(f"Step {step} outside trajectory [0, {self.setting.total_step}]")
        conf = as_state(conf, self.setting, "conf")
        vel = as_state(vel, self.setting, "vel")

        self._pending_factors.append(prior_factor(pose_key(step), conf, self.setting.conf_prior_sigma))
        self._pending_factors.append(prior_factor(vel_key(step), vel, self.setting.vel_prior_sigma))
