# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Core typed data structures for GPMP-JIT.

This module defines the lightweight container classes used throughout the
incremental trajectory optimizer. They only store structure and parameters;
all numerical work happens in JAX-compiled residual functions inside the
optimization layer.

Classes
-------
VariableKey
    Identifies a trajectory variable by kind and time-step index:
    - kind: ``"x"`` for a pose (configuration), ``"v"`` for a velocity
    - index: time-step in ``[0, N]``

Factor
    A constraint over one or more variables. A factor contains:
    - type: String key selecting a residual function
    - var_keys: Ordered tuple of keys consumed by the residual
    - params: Dictionary of parameters passed into the residual function
              (targets, weights, robot/field models, GP intervals...)

Notes
-----
Factors carry no id of their own. Once committed to the incremental solver
they are addressed by the positional index the solver's store assigned to
them, which is the index the planner caches for later removal.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

POSE = "x"
VELOCITY = "v"


@dataclass(frozen=True, order=True)
class VariableKey:
    """Key of one trajectory variable, e.g. ``x3`` or ``v0``."""
    kind: str
    index: int

    def __post_init__(self) -> None:
        if self.kind not in (POSE, VELOCITY):
            raise ValueError(f"Unknown variable kind '{self.kind}'")

    def __str__(self) -> str:
        return f"{self.kind}{self.index}"


def pose_key(i: int) -> VariableKey:
    return VariableKey(POSE, int(i))


def vel_key(i: int) -> VariableKey:
    return VariableKey(VELOCITY, int(i))


@dataclass(frozen=True)
class Factor:
    """Immutable constraint connecting trajectory variables."""
    type: str          # e.g. "prior", "gp_prior", "obstacle", "obstacle_gp"
    var_keys: Tuple[VariableKey, ...]
    params: Dict[str, Any] = field(default_factory=dict, compare=False)
