# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Incremental solver engine for GPMP-JIT.

The engine owns a persistent :class:`core.factor_graph.FactorGraph` and
accepts deltas through a single entry point:

    update(new_factors, new_values, remove_indices) -> UpdateResult

Each call

    1. validates the whole delta (nothing is committed if it is malformed),
    2. inserts the new variables, appends the new factors in order and
       then retracts the requested indices,
    3. re-solves the live graph with Gauss–Newton, warm-started from the
       current values,
    4. reports the committed index of every new factor.

Because factors are appended before removals are applied, a removal may
target a factor that was appended by the same call. Removed slots are never
reused, so ``committed_factor_count()`` only grows and every index handed out
stays valid.

The latest solution is read back with :meth:`IncrementalSolver.calculate_estimate`,
which returns a fresh :class:`Estimate` each time.
"""

from __future__ import annotations
from collections.abc import Mapping
from dataclasses import dataclass, field
from logging import getLogger
from typing import Dict, Iterable, Iterator, List, Optional

import jax.numpy as jnp

from gpmp_jit.core.errors import FactorIndexError, SolverError
from gpmp_jit.core.factor_graph import FactorGraph, ResidualFn
from gpmp_jit.core.types import POSE, VELOCITY, Factor, VariableKey
from gpmp_jit.optimization.solvers import GNConfig, gauss_newton

logger = getLogger(__name__)


@dataclass(frozen=True)
class IncrementalParams:
    gn: GNConfig = field(default_factory=GNConfig)


@dataclass
class UpdateResult:
    """Bookkeeping returned by :meth:`IncrementalSolver.update`."""
    new_factor_indices: List[int]
    removed_indices: List[int]
    cost_before: float
    cost_after: float
    iterations: int
    converged: bool = True


class Estimate(Mapping):
    """Read-only snapshot of the solved trajectory variables."""

    def __init__(self, values: Dict[VariableKey, jnp.ndarray]):
        self._values = dict(values)

    def __getitem__(self, key: VariableKey) -> jnp.ndarray:
        return self._values[key]

    def __iter__(self) -> Iterator[VariableKey]:
        return iter(sorted(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Estimate({len(self._values)} variables)"

    def pose(self, i: int) -> jnp.ndarray:
        return self._values[VariableKey(POSE, i)]

    def velocity(self, i: int) -> jnp.ndarray:
        return self._values[VariableKey(VELOCITY, i)]

    def _stack(self, kind: str) -> jnp.ndarray:
        keys = sorted(k for k in self._values if k.kind == kind)
        return jnp.stack([self._values[k] for k in keys])

    def poses(self) -> jnp.ndarray:
        """All poses stacked by time step, shape ``(N+1, dof)``."""
        return self._stack(POSE)

    def velocities(self) -> jnp.ndarray:
        """All velocities stacked by time step, shape ``(N+1, dof)``."""
        return self._stack(VELOCITY)


class IncrementalSolver:
    """Persistent factor store re-solved on every delta."""

    def __init__(self, params: Optional[IncrementalParams] = None):
        self.params = params or IncrementalParams()
        self._graph = FactorGraph()
        self._last_cost = 0.0

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self._graph.register_residual(factor_type, fn)

    def committed_factor_count(self) -> int:
        """Raw store size, including retracted slots."""
        return len(self._graph.factors)

    def live_factor_count(self) -> int:
        return len(self._graph.live_factors())

    def factor(self, index: int) -> Optional[Factor]:
        """Factor committed at ``index``, or None if it has been removed."""
        return self._graph.factors[index]

    def calculate_estimate(self) -> Estimate:
        return Estimate(self._graph.variables)

    def _validate(
        self,
        new_factors: List[Factor],
        new_values: Dict[VariableKey, jnp.ndarray],
        remove_indices: List[int],
    ) -> None:
        known = self._graph.variables
        for key in new_values:
            if key in known:
                raise ValueError(f"Variable {key} already exists")

        for factor in new_factors:
            if factor.type not in self._graph.residual_fns:
                raise ValueError(f"No residual fn registered for factor type '{factor.type}'")
            for key in factor.var_keys:
                if key not in known and key not in new_values:
                    raise ValueError(f"Factor '{factor.type}' references unknown variable {key}")

        committed = self.committed_factor_count()
        upper = committed + len(new_factors)
        seen = set()
        for idx in remove_indices:
            if idx in seen:
                raise FactorIndexError(f"Factor index {idx} listed for removal twice")
            seen.add(idx)
            if not 0 <= idx < upper:
                raise FactorIndexError(f"Factor index {idx} out of range [0, {upper})")
            if idx < committed and not self._graph.is_live(idx):
                raise FactorIndexError(f"Factor index {idx} has already been removed")

    def update(
        self,
        new_factors: Iterable[Factor] = (),
        new_values: Optional[Dict[VariableKey, jnp.ndarray]] = None,
        remove_indices: Iterable[int] = (),
    ) -> UpdateResult:
        new_factors = list(new_factors)
        new_values = dict(new_values or {})
        remove_indices = [int(i) for i in remove_indices]

        self._validate(new_factors, new_values, remove_indices)

        for key, value in new_values.items():
            self._graph.add_variable(key, value)
        new_indices = [self._graph.add_factor(f) for f in new_factors]
        for idx in remove_indices:
            self._graph.remove_factor(idx)

        if not (new_factors or new_values or remove_indices):
            logger.debug("Empty delta, keeping current estimate")
            return UpdateResult([], [], self._last_cost, self._last_cost, 0)

        x0, index = self._graph.pack_state()
        if x0.shape[0] == 0:
            return UpdateResult(new_indices, remove_indices, 0.0, 0.0, 0)

        residual_fn = self._graph.build_residual_function()
        cost_before = float(jnp.sum(residual_fn(x0) ** 2))
        result = gauss_newton(residual_fn, x0, self.params.gn)
        cost_after = float(jnp.sum(residual_fn(result.x) ** 2))

        if not bool(jnp.all(jnp.isfinite(result.x))) or not jnp.isfinite(cost_after):
            raise SolverError(
                f"Gauss-Newton diverged after {result.iterations} iterations "
                f"(cost {cost_before:.6g} -> {cost_after})"
            )

        # Write back
        for key, val in self._graph.unpack_state(result.x, index).items():
            self._graph.variables[key] = val
        self._last_cost = cost_after

        logger.debug(
            "Committed %d factors, removed %d, store size %d, cost %.6g -> %.6g in %d iterations",
            len(new_indices), len(remove_indices), self.committed_factor_count(),
            cost_before, cost_after, result.iterations,
        )
        if not result.converged:
            logger.warning(
                "Gauss-Newton stopped at max_iters=%d before reaching step_tolerance; "
                "estimate may not satisfy all constraints", self.params.gn.max_iters)

        return UpdateResult(
            new_indices, remove_indices, cost_before, cost_after, result.iterations, result.converged)
