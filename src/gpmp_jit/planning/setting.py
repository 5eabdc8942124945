# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""
Trajectory optimizer configuration.

:class:`TrajOptimizerSetting` bundles everything the graph builder and the
incremental optimizer read: discretization, noise sigmas, obstacle cost
parameters and the Gauss–Newton configuration used by the solver. It is a
frozen dataclass validated on construction; derive variants with
``dataclasses.replace``.

Example
-------
.. code-block:: python

    setting = TrajOptimizerSetting(dof=2, total_step=10, total_time=5.0,
                                   obs_check_inter=2, epsilon=0.5)
    slower = dataclasses.replace(setting, total_time=10.0)
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Union

import jax.numpy as jnp

from gpmp_jit.core.errors import InvalidSettingError
from gpmp_jit.optimization.solvers import GNConfig

SigmaLike = Union[float, tuple]


@dataclass(frozen=True)
class TrajOptimizerSetting:
    dof: int = 2
    total_step: int = 10
    total_time: float = 1.0
    obs_check_inter: int = 0
    conf_prior_sigma: float = 1e-4   # start/goal/waypoint pose pinning
    vel_prior_sigma: float = 1e-4
    qc: SigmaLike = 1.0              # GP power-spectral density, scalar or per-dof diagonal
    cost_sigma: float = 0.1
    epsilon: float = 0.2             # obstacle safety margin
    gn: GNConfig = field(default_factory=GNConfig)

    def __post_init__(self) -> None:
        if self.dof < 1:
            raise InvalidSettingError(f"dof must be >= 1, got {self.dof}")
        if self.total_step < 1:
            raise InvalidSettingError(f"total_step must be >= 1, got {self.total_step}")
        if not self.total_time > 0:
            raise InvalidSettingError(f"total_time must be positive, got {self.total_time}")
        if self.obs_check_inter < 0:
            raise InvalidSettingError(f"obs_check_inter must be >= 0, got {self.obs_check_inter}")
        for name in ("conf_prior_sigma", "vel_prior_sigma", "cost_sigma"):
            if not getattr(self, name) > 0:
                raise InvalidSettingError(f"{name} must be positive, got {getattr(self, name)}")
        if self.epsilon < 0:
            raise InvalidSettingError(f"epsilon must be >= 0, got {self.epsilon}")

        qc = jnp.asarray(self.qc, dtype=float)
        if qc.ndim not in (0, 1) or (qc.ndim == 1 and qc.shape[0] != self.dof):
            raise InvalidSettingError(f"qc must be a scalar or a length-{self.dof} vector")
        if not bool(jnp.all(qc > 0)):
            raise InvalidSettingError("qc must be positive")

    @property
    def delta_t(self) -> float:
        """Duration of one discretization step."""
        return self.total_time / float(self.total_step)

    @property
    def inter_dt(self) -> float:
        """Spacing of the interpolated obstacle checks within one step."""
        return self.delta_t / float(self.obs_check_inter + 1)

    @property
    def qc_matrix(self) -> jnp.ndarray:
        qc = jnp.asarray(self.qc, dtype=float)
        if qc.ndim == 0:
            return qc * jnp.eye(self.dof)
        return jnp.diag(qc)

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "TrajOptimizerSetting":
        """Build a setting from a plain mapping; ``gn`` may be a nested mapping."""
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise InvalidSettingError(f"Unknown setting keys: {sorted(unknown)}")

        kwargs = dict(config)
        gn = kwargs.get("gn")
        if isinstance(gn, Mapping):
            gn_known = {f.name for f in fields(GNConfig)}
            if set(gn) - gn_known:
                raise InvalidSettingError(f"Unknown gn keys: {sorted(set(gn) - gn_known)}")
            kwargs["gn"] = GNConfig(**gn)
        if isinstance(kwargs.get("qc"), list):
            kwargs["qc"] = tuple(kwargs["qc"])
        return cls(**kwargs)
