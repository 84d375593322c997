"""
Variable roles, column kinds and label helpers.

A dataset is a pandas DataFrame. Display labels for columns are stored in
``df.attrs["labels"]``; when a column has no label its name is used.
"""

from __future__ import annotations

import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable

import numpy as np
import pandas as pd

from logger import get_logger
from tlgstats.exceptions import InvalidConfigurationError

logger = get_logger(__name__)

_ROLE_ALIASES = {"time": "tte", "event": "is_event"}
_LIST_ROLES = ("covariates", "strata", "subgroups", "biomarkers")


@dataclass
class VariableRoles:
    """Mapping from logical analysis roles to dataset column names."""

    arm: str | None = None
    rsp: str | None = None
    tte: str | None = None
    is_event: str | None = None
    covariates: list[str] = field(default_factory=list)
    strata: list[str] = field(default_factory=list)
    subgroups: list[str] = field(default_factory=list)
    biomarkers: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        for name in _LIST_ROLES:
            value = getattr(self, name)
            if value is None:
                setattr(self, name, [])
            elif isinstance(value, str):
                setattr(self, name, [value])
            else:
                setattr(self, name, list(value))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> VariableRoles:
        """
        Build roles from a plain mapping.

        Accepts ``time``/``event`` as synonyms of ``tte``/``is_event``. The legacy
        ``strat`` key is mapped to ``strata`` with a DeprecationWarning.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in mapping.items():
            if key == "strat":
                warnings.warn(
                    "'strat' is deprecated, use 'strata' instead",
                    DeprecationWarning,
                    stacklevel=2,
                )
                key = "strata"
            key = _ROLE_ALIASES.get(key, key)
            if key not in known:
                raise InvalidConfigurationError(f"Unknown variable role '{key}'")
            kwargs[key] = value
        return cls(**kwargs)

    @property
    def time(self) -> str | None:
        return self.tte

    @property
    def event(self) -> str | None:
        return self.is_event

    def columns(self) -> list[str]:
        """All referenced column names in role order without duplicates."""
        cols: list[str] = []
        for name in ("arm", "rsp", "tte", "is_event"):
            value = getattr(self, name)
            if value is not None:
                cols.append(value)
        for name in _LIST_ROLES:
            cols.extend(getattr(self, name))
        return list(dict.fromkeys(cols))

    def require(self, *roles: str) -> None:
        """Raise if any of the named single-column roles is unset."""
        missing = [r for r in roles if getattr(self, r, None) is None]
        if missing:
            raise InvalidConfigurationError(f"Missing variable role(s): {missing}")

    def validate(self, data: pd.DataFrame) -> None:
        """Check that every referenced column exists in ``data``."""
        missing = [c for c in self.columns() if c not in data.columns]
        if missing:
            raise InvalidConfigurationError(
                f"Variables not found in dataset: {missing}"
            )


def as_roles(variables: VariableRoles | Mapping[str, Any]) -> VariableRoles:
    if isinstance(variables, VariableRoles):
        return variables
    return VariableRoles.from_mapping(variables)


# ==============================================================================
# Column kinds
# ==============================================================================


class ColumnKind(Enum):
    NUMERIC = "numeric"
    LOGICAL = "logical"
    FACTOR = "factor"
    CHARACTER = "character"
    DATE = "date"


def column_kind(series: pd.Series) -> ColumnKind:
    """Classify a column into one of the supported kinds."""
    dtype = series.dtype
    if isinstance(dtype, pd.CategoricalDtype):
        return ColumnKind.FACTOR
    if pd.api.types.is_bool_dtype(dtype):
        return ColumnKind.LOGICAL
    if pd.api.types.is_datetime64_any_dtype(dtype) or pd.api.types.is_timedelta64_dtype(dtype):
        return ColumnKind.DATE
    if pd.api.types.is_numeric_dtype(dtype):
        return ColumnKind.NUMERIC
    non_null = series.dropna()
    if len(non_null) and non_null.map(lambda v: isinstance(v, (bool, np.bool_))).all():
        return ColumnKind.LOGICAL
    return ColumnKind.CHARACTER


def _factor_from_factor(series: pd.Series) -> pd.Series:
    return series


def _factor_from_logical(series: pd.Series) -> pd.Series:
    values = series.astype("object").where(series.notna(), None)
    return pd.Series(
        pd.Categorical(values, categories=[False, True]),
        index=series.index,
        name=series.name,
    )


def _factor_from_values(series: pd.Series) -> pd.Series:
    levels = sorted(series.dropna().unique().tolist())
    return pd.Series(
        pd.Categorical(series, categories=levels),
        index=series.index,
        name=series.name,
    )


def _reject_date(series: pd.Series) -> pd.Series:
    raise InvalidConfigurationError(
        f"Date column '{series.name}' cannot be used as a model or grouping variable"
    )


_AS_FACTOR: dict[ColumnKind, Callable[[pd.Series], pd.Series]] = {
    ColumnKind.FACTOR: _factor_from_factor,
    ColumnKind.LOGICAL: _factor_from_logical,
    ColumnKind.CHARACTER: _factor_from_values,
    ColumnKind.NUMERIC: _factor_from_values,
    ColumnKind.DATE: _reject_date,
}


def as_factor(series: pd.Series) -> pd.Series:
    """Return ``series`` as a categorical column (levels kept for factors)."""
    kind = column_kind(series)
    if kind is not ColumnKind.FACTOR:
        logger.debug(f"Coercing {kind.value} column '{series.name}' to factor")
    return _AS_FACTOR[kind](series)


def _model_numeric(series: pd.Series) -> tuple[str, pd.Series]:
    return "numeric", series.astype(float)


def _model_factor(series: pd.Series) -> tuple[str, pd.Series]:
    return "factor", as_factor(series)


_AS_MODEL: dict[ColumnKind, Callable[[pd.Series], tuple[str, pd.Series]]] = {
    ColumnKind.NUMERIC: _model_numeric,
    ColumnKind.LOGICAL: _model_factor,
    ColumnKind.FACTOR: _model_factor,
    ColumnKind.CHARACTER: _model_factor,
    ColumnKind.DATE: lambda s: ("date", _reject_date(s)),
}


def as_model_column(series: pd.Series) -> tuple[str, pd.Series]:
    """
    Convert a column for use as a model term.

    Returns a ``(tag, series)`` pair where ``tag`` is ``"numeric"`` or ``"factor"``.
    Date columns raise InvalidConfigurationError.
    """
    return _AS_MODEL[column_kind(series)](series)


def as_logical(series: pd.Series) -> pd.Series:
    """Coerce a 0/1 or boolean column to bool; missing values stay missing."""
    if pd.api.types.is_bool_dtype(series.dtype):
        return series
    if series.notna().sum() == 0:
        return series.astype("boolean")
    kind = column_kind(series)
    if kind is ColumnKind.NUMERIC:
        values = series.dropna().unique()
        if not set(values.tolist()) <= {0, 1}:
            raise InvalidConfigurationError(
                f"Column '{series.name}' must be logical or coded 0/1"
            )
        if series.isna().any():
            return series.map(lambda v: bool(v) if pd.notna(v) else pd.NA).astype("boolean")
        return series.astype(bool)
    if kind is ColumnKind.LOGICAL:
        return series.astype("boolean")
    raise InvalidConfigurationError(f"Column '{series.name}' must be logical or coded 0/1")


def arm_factor(series: pd.Series, n_levels: int | None = 2) -> pd.Series:
    """Return the arm column as a factor, optionally enforcing its level count."""
    arm = as_factor(series)
    levels = list(arm.cat.categories)
    if n_levels is not None and len(levels) != n_levels:
        raise InvalidConfigurationError(
            f"Arm '{series.name}' must have exactly {n_levels} levels, found {len(levels)}: {levels}"
        )
    if n_levels is None and len(levels) < 2:
        raise InvalidConfigurationError(
            f"Arm '{series.name}' must have at least 2 levels, found {levels}"
        )
    return arm


# ==============================================================================
# Labels
# ==============================================================================


def var_labels(data: pd.DataFrame) -> dict[str, str]:
    """Labels for every column, falling back to the column name."""
    stored = data.attrs.get("labels", {}) or {}
    return {col: str(stored.get(col, col)) for col in data.columns}


def var_label(data: pd.DataFrame, column: str) -> str:
    stored = data.attrs.get("labels", {}) or {}
    return str(stored.get(column, column))


def with_labels(data: pd.DataFrame, labels: Mapping[str, str]) -> pd.DataFrame:
    """Return a copy of ``data`` with ``labels`` merged into its label attribute."""
    out = data.copy()
    merged = dict(data.attrs.get("labels", {}) or {})
    merged.update(labels)
    out.attrs["labels"] = merged
    return out
