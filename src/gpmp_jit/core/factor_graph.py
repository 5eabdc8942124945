# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Persistent factor store for GPMP-JIT.

This module implements the structure the incremental solver commits into: a
positional factor store plus the variable table, together with the machinery
that turns the live part of the store into a single JIT-compiled residual
function.

The FactorGraph stores:
    - Variables (``VariableKey`` -> current value)
    - Factors, in commit order. Index ``i`` is the factor committed i-th.
    - Registered residual functions (by factor type)

Key Features
------------
• Stable positional indices
    Removing a factor leaves a hole (``None``) in its slot. The store is
    never compacted, so an index handed out at commit time stays valid for
    the whole lifetime of the graph.

• JIT-compiled residual graph
    The live factors are fused into one residual function
    ``r(x) : ℝ^n → ℝ^m`` over the packed state, ready for Gauss–Newton.

Primary Methods
---------------
add_factor(factor) -> int
    Append to the store, returning the committed index.

remove_factor(index)
    Retract a live factor, keeping its slot.

pack_state() / unpack_state(x, index)
    Flatten the variable table into a single JAX array and back.

build_residual_function() / build_objective()
    Residual and ``||r(x)||²`` over the live factors.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import jax
import jax.numpy as jnp

from .types import Factor, VariableKey


# Type aliases for clarity
ResidualFn = Callable[[jnp.ndarray, Dict], jnp.ndarray]
StateIndex = Dict[VariableKey, Tuple[int, int]]


@dataclass
class FactorGraph:
    """
    Positional factor store.

    - variables: mapping from VariableKey -> value (1-D array)
    - factors: list indexed by committed position, ``None`` where removed
    - residual_fns: mapping factor.type -> callable that computes residuals
    """
    variables: Dict[VariableKey, jnp.ndarray] = field(default_factory=dict)
    factors: List[Optional[Factor]] = field(default_factory=list)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=dict)

    def add_variable(self, key: VariableKey, value: jnp.ndarray) -> None:
        assert key not in self.variables
        self.variables[key] = jnp.asarray(value)

    def add_factor(self, factor: Factor) -> int:
        self.factors.append(factor)
        return len(self.factors) - 1

    def remove_factor(self, index: int) -> Factor:
        factor = self.factors[index]
        assert factor is not None
        self.factors[index] = None
        return factor

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    def is_live(self, index: int) -> bool:
        return 0 <= index < len(self.factors) and self.factors[index] is not None

    def live_factors(self) -> List[Tuple[int, Factor]]:
        return [(i, f) for i, f in enumerate(self.factors) if f is not None]

    # --- State packing/unpacking ---

    def _build_state_index(self) -> StateIndex:
        """
        Returns a mapping: VariableKey -> (start_index, dim)
        Keys are laid out in sorted order (all poses, then all velocities).
        """
        index: StateIndex = {}
        offset = 0
        for key in sorted(self.variables):
            dim = self.variables[key].shape[0]
            index[key] = (offset, dim)
            offset += dim
        return index

    def pack_state(self) -> Tuple[jnp.ndarray, StateIndex]:
        index = self._build_state_index()
        if not index:
            return jnp.zeros((0,)), index
        chunks = [self.variables[key] for key in index]
        return jnp.concatenate(chunks), index

    def unpack_state(self, x: jnp.ndarray, index: StateIndex) -> Dict[VariableKey, jnp.ndarray]:
        result: Dict[VariableKey, jnp.ndarray] = {}
        for key, (start, dim) in index.items():
            result[key] = x[start:start + dim]
        return result

    # --- Objective ---

    def build_residual_function(self):
        """
        Returns a JIT-able function r(x) -> residual vector over the live
        factors, where x is the packed state.
        """
        # Freeze index and factor list inside the closure
        _, index = self.pack_state()
        factors = tuple(f for _, f in self.live_factors())
        residual_fns = dict(self.residual_fns)

        for factor in factors:
            if factor.type not in residual_fns:
                raise ValueError(f"No residual fn registered for factor type '{factor.type}'")

        def residual(x: jnp.ndarray) -> jnp.ndarray:
            var_values = self.unpack_state(x, index)
            res_list = []

            for factor in factors:
                vs = [var_values[key] for key in factor.var_keys]
                stacked = jnp.concatenate(vs)

                res = residual_fns[factor.type](stacked, factor.params)
                res_list.append(jnp.reshape(res, (-1,)))

            if not res_list:
                return jnp.zeros((0,), dtype=x.dtype)

            return jnp.concatenate(res_list)

        return jax.jit(residual)

    def build_objective(self):
        """
        Returns a JIT-able function f(x) -> scalar loss = ||r(x)||^2.
        """
        residual = self.build_residual_function()

        def objective(x: jnp.ndarray) -> jnp.ndarray:
            r = residual(x)
            return jnp.sum(r ** 2)

        return jax.jit(objective)
