# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
"""Exception types raised by GPMP-JIT."""


class TrajOptError(Exception):
    """Base class for all trajectory optimization errors."""


class InvalidSettingError(TrajOptError, ValueError):
    """A :class:`TrajOptimizerSetting` field is out of its valid range."""


class StepIndexError(TrajOptError, IndexError):
    """A time-step index lies outside ``[0, total_step]``."""


class FactorIndexError(TrajOptError, IndexError):
    """A removal targets a factor index that is not live in the store."""


class SolverError(TrajOptError, RuntimeError):
    """The incremental solver produced a non-finite state or cost."""
