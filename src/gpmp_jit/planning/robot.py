# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""Robot body models queried by the obstacle factors.

A robot is represented by a set of spheres whose centers depend on the
configuration. Obstacle factors only need two things from it, the sphere
centers for a configuration and the sphere radii, so any object following
:class:`RobotModel` can be plugged into the planner.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Protocol

import jax.numpy as jnp


class RobotModel(Protocol):
    dof: int

    def sphere_centers(self, conf: jnp.ndarray) -> jnp.ndarray:
        """Workspace centers, shape ``(K, d)``."""
        ...

    @property
    def sphere_radii(self) -> jnp.ndarray:
        """Radii, shape ``(K,)``."""
        ...


@dataclass(frozen=True)
class PointRobotModel:
    """Holonomic point robot covered by a single sphere.

    The configuration is the workspace position itself, so ``dof`` is also
    the workspace dimension (2 for a planar robot).
    """
    dof: int = 2
    radius: float = 0.0

    def sphere_centers(self, conf: jnp.ndarray) -> jnp.ndarray:
        return jnp.reshape(conf[:self.dof], (1, self.dof))

    @property
    def sphere_radii(self) -> jnp.ndarray:
        return jnp.array([self.radius])
