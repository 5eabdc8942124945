# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Signed distance fields used as the obstacle cost field.

The obstacle factors only call ``field.signed_distance(points)``, so any
object following :class:`FieldModel` can stand in for the shipped
:class:`PlanarSDF`.

Grid convention
---------------
``data[row, col]`` is the signed distance at the workspace point

    (origin[0] + col * cell_size,  origin[1] + row * cell_size)

i.e. rows run along y and columns along x. Queries between grid points are
bilinearly interpolated. Queries outside the grid are clamped to its
border: a jitted residual cannot raise, so callers should size the grid to
cover every configuration the trajectory may visit.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence, Tuple

import jax.numpy as jnp
import numpy as np


class FieldModel(Protocol):
    def signed_distance(self, points: jnp.ndarray) -> jnp.ndarray:
        """Signed distance for ``(K, d)`` points, shape ``(K,)``."""
        ...


@dataclass(frozen=True, eq=False)
class PlanarSDF:
    """2-D signed distance grid with bilinear lookup."""
    origin: Tuple[float, float]
    cell_size: float
    data: jnp.ndarray

    def __post_init__(self) -> None:
        data = jnp.asarray(self.data, dtype=float)
        if data.ndim != 2 or min(data.shape) < 2:
            raise ValueError(f"SDF grid must be 2-D with at least 2x2 cells, got shape {data.shape}")
        if self.cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {self.cell_size}")
        object.__setattr__(self, "data", data)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    def signed_distance(self, points: jnp.ndarray) -> jnp.ndarray:
        points = jnp.asarray(points)
        if points.shape[-1] != 2:
            raise ValueError(f"PlanarSDF expects 2-D points, got shape {points.shape}")
        pts = jnp.reshape(points, (-1, 2))
        rows, cols = self.data.shape

        col = jnp.clip((pts[:, 0] - self.origin[0]) / self.cell_size, 0.0, cols - 1.0)
        row = jnp.clip((pts[:, 1] - self.origin[1]) / self.cell_size, 0.0, rows - 1.0)
        c0 = jnp.clip(jnp.floor(col).astype(jnp.int32), 0, cols - 2)
        r0 = jnp.clip(jnp.floor(row).astype(jnp.int32), 0, rows - 2)
        fc = col - c0
        fr = row - r0

        d = self.data
        lower = (1.0 - fc) * d[r0, c0] + fc * d[r0, c0 + 1]
        upper = (1.0 - fc) * d[r0 + 1, c0] + fc * d[r0 + 1, c0 + 1]
        return (1.0 - fr) * lower + fr * upper

    @classmethod
    def from_circles(
        cls,
        origin: Sequence[float],
        cell_size: float,
        shape: Tuple[int, int],
        circles: Iterable[Tuple[float, float, float]],
    ) -> "PlanarSDF":
        """Build a grid from circular obstacles given as ``(cx, cy, radius)``.

        Distances are exact for a union of disjoint circles (minimum over
        the per-circle distances). With no circles the grid holds its own
        diagonal length everywhere.
        """
        rows, cols = shape
        xs = origin[0] + cell_size * np.arange(cols)
        ys = origin[1] + cell_size * np.arange(rows)
        gx, gy = np.meshgrid(xs, ys)

        data = np.full(shape, cell_size * float(np.hypot(rows, cols)))
        for cx, cy, radius in circles:
            data = np.minimum(data, np.hypot(gx - cx, gy - cy) - radius)
        return cls(origin=(float(origin[0]), float(origin[1])), cell_size=float(cell_size), data=jnp.asarray(data))
