"""
Cell formats for tabulated statistics.
Driven by the formatting section of config.py
"""

from __future__ import annotations

from typing import Any, Callable, Union

import numpy as np
import pandas as pd

from config import CONFIG
from tlgstats.exceptions import InvalidConfigurationError

Format = Union[str, Callable[[Any], str], None]


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value)) or not np.isfinite(value)
    except TypeError:
        return False


def format_p_value(p: float, na_str: str | None = None) -> str:
    """
    Format a p-value with four decimals, or as ``<0.0001`` below the threshold.
    """
    if _is_missing(p):
        return CONFIG.get("formatting.na_str", "NA") if na_str is None else na_str

    threshold = CONFIG.get("formatting.pvalue_threshold", 0.0001)
    if p < threshold:
        return CONFIG.get("formatting.pvalue_format_small", "<0.0001")
    return f"{p:.4f}"


def _format_count(value: Any) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:g}"


def _fixed(digits: int) -> Callable[[Any], str]:
    return lambda value: f"{float(value):.{digits}f}"


def _percent(value: Any) -> str:
    return f"{float(value) * 100:.1f}%"


def format_extreme_values(digits: int | None = None) -> Callable[[Any], str]:
    """
    Fixed-decimal format that shows ``<0.01``/``>999.99`` outside the printable range.
    """
    if digits is None:
        digits = CONFIG.get("formatting.extreme_digits", 2)
    lower = 10 ** (-digits)
    upper = 1000 - lower

    def _fmt(value: Any) -> str:
        value = float(value)
        if value < lower:
            return f"<{lower:.{digits}f}"
        if value > upper:
            return f">{upper:.{digits}f}"
        return f"{value:.{digits}f}"

    return _fmt


def format_extreme_values_ci(digits: int | None = None) -> Callable[[Any], str]:
    """Interval version of format_extreme_values: ``(lcl, ucl)``."""
    single = format_extreme_values(digits)

    def _fmt(value: Any) -> str:
        lcl, ucl = value
        return f"({single(lcl)}, {single(ucl)})"

    return _fmt


def _interval(digits: int) -> Callable[[Any], str]:
    def _fmt(value: Any) -> str:
        lcl, ucl = value
        return f"({float(lcl):.{digits}f}, {float(ucl):.{digits}f})"

    return _fmt


FORMATS: dict[str, Callable[[Any], str]] = {
    "xx": _format_count,
    "xx.": _format_count,
    "xx.x": _fixed(1),
    "xx.xx": _fixed(2),
    "xx.xxx": _fixed(3),
    "xx.xxxx": _fixed(4),
    "xx.x%": _percent,
    "(xx.x, xx.x)": _interval(1),
    "(xx.xx, xx.xx)": _interval(2),
    "x.xxxx | (<0.0001)": format_p_value,
}


def format_value(value: Any, fmt: Format = None, na_str: str | None = None) -> str:
    """
    Render a raw cell value.

    ``fmt`` is a format label from FORMATS, a callable, or None for ``str``.
    Missing values (and intervals with a missing bound) render as ``na_str``.
    """
    if na_str is None:
        na_str = CONFIG.get("formatting.na_str", "NA")

    if isinstance(value, tuple):
        if any(_is_missing(v) for v in value):
            return na_str
    elif _is_missing(value):
        return na_str

    if fmt is None:
        return str(value)
    if callable(fmt):
        return fmt(value)
    if fmt not in FORMATS:
        raise InvalidConfigurationError(f"Unknown format '{fmt}'")
    return FORMATS[fmt](value)
