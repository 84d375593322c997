"""
Exception and warning types raised by tlgstats.

Configuration problems are raised at call entry and abort the whole tabulation.
Degenerate data never raises: estimators return missing values and emit a
DegenerateDataWarning instead.
"""

from __future__ import annotations

import warnings

from logger import get_logger

logger = get_logger(__name__)


class TlgStatsError(Exception):
    """Base class for tlgstats errors."""


class InvalidConfigurationError(TlgStatsError, ValueError):
    """Role mapping, arm levels or requested statistics are not usable."""


class UnsupportedMethodError(TlgStatsError, ValueError):
    """Unknown test, ties or p-value method name."""


class IncompatibleModeError(TlgStatsError, ValueError):
    """Requested model options cannot be combined."""


class DegenerateDataWarning(UserWarning):
    """Empty group, no events or a constant covariate; estimates are missing."""


class IncompatibleModeWarning(UserWarning):
    """Model options were adjusted to a compatible combination."""


def warn_degenerate(message: str, stacklevel: int = 3) -> None:
    """Log and emit a DegenerateDataWarning."""
    logger.warning(message)
    warnings.warn(message, DegenerateDataWarning, stacklevel=stacklevel)
