"""
Presentational tables for subgroup, biomarker and Cox regression summaries.

The subgroup and biomarker tables carry forest plot annotations in
``table.attrs``: ``forest_header`` (left and right captions), ``col_x`` and
``col_ci`` (0-based indices of the estimate and interval columns) and
``col_symbol_size`` (column used to scale plot symbols, or None).
"""

from __future__ import annotations

import warnings
from collections.abc import Mapping, Sequence
from dataclasses import replace
from functools import partial
from typing import Any

import pandas as pd

from logger import get_logger
from tlgstats.cache import ModelFitCache
from tlgstats.cox import CoxControl, control_coxreg, fit_coxreg_multivar, fit_coxreg_univar
from tlgstats.exceptions import (
    IncompatibleModeError,
    IncompatibleModeWarning,
    InvalidConfigurationError,
)
from tlgstats.formatting import Format, format_extreme_values, format_extreme_values_ci
from tlgstats.layout import CellContext, DataFrameTableBuilder, Table, cbind_tables, rbind_tables
from tlgstats.variables import VariableRoles, as_roles

logger = get_logger(__name__)

SURVTIME_STATS = ("n", "n_events", "median")
HR_STATS = ("n_tot", "n_tot_events", "hr", "ci", "pval")
PROP_STATS = ("n", "n_rsp", "prop")
OR_STATS = ("n_tot", "or", "ci", "pval")
COXREG_STATS = ("n", "hr", "ci", "pval", "pval_inter")

PVAL_FORMAT = "x.xxxx | (<0.0001)"


def _check_known(vars: Sequence[str], allowed: Sequence[str]) -> None:
    unknown = [v for v in vars if v not in allowed]
    if unknown:
        raise InvalidConfigurationError(f"Unknown statistics {unknown}, expected a subset of {list(allowed)}")


def _colvars(vars: Sequence[str], labels: Mapping[str, str]) -> dict[str, Any]:
    return {
        "vars": ["lcl" if v == "ci" else v for v in vars],
        "labels": {v: labels[v] for v in vars},
    }


def d_survival_subgroups_colvars(
    vars: Sequence[str],
    conf_level: float,
    method: str | None = None,
    time_unit: str | None = None,
) -> dict[str, Any]:
    """
    Column variables and labels of a survival subgroup table.

    ``hr`` and ``ci`` are mandatory, as is at least one of ``n_tot`` and
    ``n_tot_events``. In the returned ``vars`` the interval appears as its
    ``lcl`` column.
    """
    vars = list(vars)
    _check_known(vars, SURVTIME_STATS + HR_STATS)
    if "hr" not in vars or "ci" not in vars:
        raise InvalidConfigurationError("'hr' and 'ci' are required in vars")
    if "n_tot" not in vars and "n_tot_events" not in vars:
        raise InvalidConfigurationError("At least one of 'n_tot' and 'n_tot_events' is required in vars")

    labels = {
        "n": "n",
        "n_events": "Events",
        "median": "Median" if time_unit is None else f"Median ({time_unit})",
        "n_tot": "Total n",
        "n_tot_events": "Total Events",
        "hr": "Hazard Ratio",
        "ci": f"{100 * conf_level:g}% Wald CI",
        "pval": method or "p-value",
    }
    return _colvars(vars, labels)


def d_rsp_subgroups_colvars(
    vars: Sequence[str],
    conf_level: float,
    method: str | None = None,
) -> dict[str, Any]:
    """Column variables and labels of a response subgroup table (``n_tot``, ``or`` and ``ci`` mandatory)."""
    vars = list(vars)
    _check_known(vars, PROP_STATS + OR_STATS)
    missing = [v for v in ("n_tot", "or", "ci") if v not in vars]
    if missing:
        raise InvalidConfigurationError(f"{missing} required in vars")

    labels = {
        "n": "n",
        "n_rsp": "Responders",
        "prop": "Response (%)",
        "n_tot": "Total n",
        "or": "Odds Ratio",
        "ci": f"{100 * conf_level:g}% CI",
        "pval": method or "p-value",
    }
    return _colvars(vars, labels)


def _survival_formats() -> dict[str, Format]:
    return {
        "n": "xx",
        "n_events": "xx",
        "median": "xx.x",
        "n_tot": "xx",
        "n_tot_events": "xx",
        "hr": format_extreme_values(2),
        "ci": format_extreme_values_ci(2),
        "pval": PVAL_FORMAT,
    }


def _rsp_formats() -> dict[str, Format]:
    return {
        "n": "xx",
        "n_rsp": "xx",
        "prop": "xx.x%",
        "n_tot": "xx",
        "or": format_extreme_values(2),
        "ci": format_extreme_values_ci(2),
        "pval": PVAL_FORMAT,
    }


# ==============================================================================
# Subgroup tables
# ==============================================================================


def _subgroup_cell(df: pd.DataFrame, ctx: CellContext) -> dict[str, Any]:
    """Cell values keyed by subgroup label."""
    if ctx.stat == "ci":
        return {str(s): (lcl, ucl) for s, lcl, ucl in zip(df["subgroup"], df["lcl"], df["ucl"])}
    return {str(s): v for s, v in zip(df["subgroup"], df[ctx.stat])}


def _check_columns(df: pd.DataFrame, stats: Sequence[str]) -> None:
    needed = {"subgroup", "var_label", "row_type"}
    for stat in stats:
        needed.update(("lcl", "ucl") if stat == "ci" else (stat,))
    missing = sorted(needed - set(df.columns))
    if missing:
        raise InvalidConfigurationError(f"Result table is missing columns {missing}")


def _subgroup_table(
    df: pd.DataFrame,
    stats: Sequence[str],
    labels: Mapping[str, str],
    formats: Mapping[str, Format],
    col_var: str | None,
    na_str: str | None,
) -> Table:
    """All-patients row followed by one labelled block per subgroup variable."""
    _check_columns(df, stats)
    builder = DataFrameTableBuilder(na_str)
    builder.split_columns(col_var, stats=stats, labels=labels, formats=formats)
    builder.split_rows("row_type", keep=["content"], show_labels=False)
    builder.populate_cell(_subgroup_cell, content=True)
    if (df["row_type"] == "analysis").any():
        builder.split_rows("row_type", keep=["analysis"], show_labels=False, nested=False)
        builder.split_rows("var_label")
        builder.populate_cell(_subgroup_cell)
    return builder.build(df)


def _first_value(df: pd.DataFrame, column: str, default: Any = None) -> Any:
    if column not in df.columns or df.empty:
        return default
    return df[column].iloc[0]


def _merge_arm_and_effect(
    arm_table: Table | None,
    effect_table: Table,
    effect_stats: Sequence[str],
    estimate: str,
) -> tuple[Table, dict[str, Any]]:
    """
    Place the total count columns first, then the per-arm columns, then the
    remaining effect columns. Returns the merged table and its column indices.
    """
    tot_ids = [i for i, s in enumerate(effect_stats) if s in ("n_tot", "n_tot_events")]
    rest_ids = [i for i, s in enumerate(effect_stats) if i not in tot_ids]
    rest_stats = [effect_stats[i] for i in rest_ids]

    if arm_table is None:
        table = effect_table
        indices = {
            "col_x": list(effect_stats).index(estimate),
            "col_ci": list(effect_stats).index("ci"),
            "col_symbol_size": tot_ids[0] if tot_ids else None,
        }
        return table, indices

    parts = [effect_table.select_columns(tot_ids), arm_table]
    if rest_ids:
        parts.append(effect_table.select_columns(rest_ids))
    table = cbind_tables(*parts)
    offset = len(tot_ids) + arm_table.ncol
    indices = {
        "col_x": offset + rest_stats.index(estimate),
        "col_ci": offset + rest_stats.index("ci"),
        "col_symbol_size": 0,
    }
    return table, indices


def tabulate_survival_subgroups(
    df: Mapping[str, pd.DataFrame],
    vars: Sequence[str] = ("n_tot_events", "n_events", "median", "hr", "ci"),
    time_unit: str | None = None,
    na_str: str | None = None,
) -> Table:
    """
    Survival subgroup table from the output of ``extract_survival_subgroups``.

    Per-arm statistics (``n``, ``n_events``, ``median``) are split by arm; the
    hazard ratio statistics form one unsplit block.
    """
    hr_df = df["hr"]
    survtime_df = df["survtime"]
    conf_level = _first_value(hr_df, "conf_level", 0.95)
    method = _first_value(hr_df, "pval_label") if "pval" in vars else None
    colvars = d_survival_subgroups_colvars(vars, conf_level, method, time_unit)
    labels = colvars["labels"]
    formats = _survival_formats()

    survtime_stats = [v for v in vars if v in SURVTIME_STATS]
    hr_stats = [v for v in vars if v in HR_STATS]
    logger.debug(f"Survival subgroup table: per-arm {survtime_stats}, effect {hr_stats}")

    hr_table = _subgroup_table(hr_df, hr_stats, labels, formats, None, na_str)
    survtime_table = None
    if survtime_stats:
        survtime_table = _subgroup_table(survtime_df, survtime_stats, labels, formats, "arm", na_str)

    table, indices = _merge_arm_and_effect(survtime_table, hr_table, hr_stats, "hr")
    levels = list(survtime_df["arm"].cat.categories)
    table.attrs.update(indices)
    table.attrs["forest_header"] = tuple(f"{level}\nBetter" for level in reversed(levels))
    return table


def tabulate_rsp_subgroups(
    df: Mapping[str, pd.DataFrame],
    vars: Sequence[str] = ("n_tot", "n", "prop", "or", "ci"),
    na_str: str | None = None,
) -> Table:
    """Response subgroup table from the output of ``extract_rsp_subgroups``."""
    or_df = df["or"]
    prop_df = df["prop"]
    conf_level = _first_value(or_df, "conf_level", 0.95)
    method = _first_value(or_df, "pval_label") if "pval" in vars else None
    colvars = d_rsp_subgroups_colvars(vars, conf_level, method)
    labels = colvars["labels"]
    formats = _rsp_formats()

    prop_stats = [v for v in vars if v in PROP_STATS]
    or_stats = [v for v in vars if v in OR_STATS]

    or_table = _subgroup_table(or_df, or_stats, labels, formats, None, na_str)
    prop_table = None
    if prop_stats:
        prop_table = _subgroup_table(prop_df, prop_stats, labels, formats, "arm", na_str)

    table, indices = _merge_arm_and_effect(prop_table, or_table, or_stats, "or")
    levels = list(prop_df["arm"].cat.categories)
    table.attrs.update(indices)
    table.attrs["forest_header"] = tuple(f"{level}\nBetter" for level in levels)
    return table


# ==============================================================================
# Biomarker tables
# ==============================================================================


def _biomarker_table(
    df: pd.DataFrame,
    vars: Sequence[str],
    labels: Mapping[str, str],
    formats: Mapping[str, Format],
    estimate: str,
    na_str: str | None,
) -> Table:
    if "biomarker" not in df.columns:
        raise InvalidConfigurationError("Result table has no 'biomarker' column")
    _check_columns(df, vars)

    tables, titles = [], []
    for biomarker in pd.unique(df["biomarker"]):
        block = df[df["biomarker"] == biomarker]
        tables.append(_subgroup_table(block, vars, labels, formats, None, na_str))
        titles.append(str(block["biomarker_label"].iloc[0]))
    table = rbind_tables(tables, labels=titles)

    vars = list(vars)
    table.attrs["col_x"] = vars.index(estimate)
    table.attrs["col_ci"] = vars.index("ci")
    table.attrs["col_symbol_size"] = vars.index("n_tot") if "n_tot" in vars else None
    return table


def tabulate_survival_biomarkers(
    df: pd.DataFrame,
    vars: Sequence[str] = ("n_tot", "n_tot_events", "median", "hr", "ci", "pval"),
    time_unit: str | None = None,
    na_str: str | None = None,
) -> Table:
    """One block of subgroup rows per biomarker, from ``extract_survival_biomarkers``."""
    _check_known(vars, ("n_tot", "n_tot_events", "median", "hr", "ci", "pval"))
    conf_level = _first_value(df, "conf_level", 0.95)
    method = _first_value(df, "pval_label") if "pval" in vars else None
    labels = d_survival_subgroups_colvars(vars, conf_level, method, time_unit)["labels"]

    table = _biomarker_table(df, vars, labels, _survival_formats(), "hr", na_str)
    table.attrs["forest_header"] = ("Higher\nBetter", "Lower\nBetter")
    return table


def tabulate_rsp_biomarkers(
    df: pd.DataFrame,
    vars: Sequence[str] = ("n_tot", "n_rsp", "prop", "or", "ci", "pval"),
    na_str: str | None = None,
) -> Table:
    """One block of subgroup rows per biomarker, from ``extract_rsp_biomarkers``."""
    _check_known(vars, ("n_tot", "n_rsp", "prop", "or", "ci", "pval"))
    conf_level = _first_value(df, "conf_level", 0.95)
    method = _first_value(df, "pval_label") if "pval" in vars else None
    labels = d_rsp_subgroups_colvars(vars, conf_level, method)["labels"]

    table = _biomarker_table(df, vars, labels, _rsp_formats(), "or", na_str)
    table.attrs["forest_header"] = ("Lower\nBetter", "Higher\nBetter")
    return table


# ==============================================================================
# Cox regression summary
# ==============================================================================


def _coxreg_fit(
    df: pd.DataFrame,
    cache: ModelFitCache,
    variables: VariableRoles,
    control: CoxControl,
    covariate: str | None,
    at: Mapping[str, Sequence[float]] | None,
    multivar: bool,
    labels: Mapping[str, str] | None,
) -> pd.DataFrame:
    if multivar:
        return cache.get_or_fit(
            "__multivar__", lambda: fit_coxreg_multivar(variables, df, control, labels)
        )
    if covariate is None:
        return cache.get_or_fit(
            "__treatment__",
            lambda: fit_coxreg_univar(replace(variables, covariates=[]), df, at, control, labels),
        )
    return cache.get_or_fit(
        covariate,
        lambda: fit_coxreg_univar(replace(variables, covariates=[covariate]), df, at, control, labels),
    )


def a_coxreg(
    df: pd.DataFrame,
    ctx: CellContext,
    cache: ModelFitCache,
    variables: VariableRoles,
    control: CoxControl,
    at: Mapping[str, Sequence[float]] | None = None,
    multivar: bool = False,
    labels: Mapping[str, str] | None = None,
    eff: bool = False,
    row_kind: str = "main",
) -> dict[str, Any]:
    """
    Cell callback for ``summarize_coxreg``.

    ``eff`` selects the treatment rows, otherwise the covariate is taken from
    the current row group. ``row_kind`` picks the main or the level rows of
    the term. Fits go through ``cache`` so each model is fitted once per table.
    """
    covariate = None if eff else ctx.row_path[-1][1]
    model_df = _coxreg_fit(df, cache, variables, control, covariate, at, multivar, labels)

    term = variables.arm if eff else covariate
    rows = model_df[(model_df["term"] == term) & (model_df["row_kind"] == row_kind)]
    if not multivar and not eff and row_kind == "main":
        row_labels = [ctx.label] * len(rows)
    else:
        row_labels = list(rows["term_label"])
    return {str(lbl): value for lbl, value in zip(row_labels, rows[ctx.stat])}


def summarize_coxreg(
    data: pd.DataFrame,
    variables: VariableRoles | Mapping[str, Any],
    control: CoxControl | None = None,
    at: Mapping[str, Sequence[float]] | None = None,
    multivar: bool = False,
    varlabels: Mapping[str, str] | None = None,
    stats: Sequence[str] | None = None,
    na_str: str = "",
) -> Table:
    """
    Cox regression table with a Treatment section and a Covariate section.

    Univariable mode fits one model per covariate; multivariable mode fits a
    single model with the arm and all covariates. Interactions are only
    available in univariable mode with an arm; with ``multivar=True`` they are
    switched off with an IncompatibleModeWarning.
    """
    variables = as_roles(variables)
    control = control or control_coxreg()
    varlabels = dict(varlabels or {})

    if multivar and control.interaction:
        message = "Interactions are not available in multivariable mode; fitting without interactions"
        logger.warning(message)
        warnings.warn(message, IncompatibleModeWarning, stacklevel=2)
        control = replace(control, interaction=False)
    if control.interaction and variables.arm is None:
        raise IncompatibleModeError("To include interactions please specify 'arm' in variables")
    variables.require("tte", "is_event")
    variables.validate(data)
    if variables.arm is None and not variables.covariates:
        raise InvalidConfigurationError("Nothing to summarize: specify an arm or covariates")

    if stats is None:
        if variables.arm is None or multivar:
            stats = ["hr", "ci", "pval"]
        elif control.interaction:
            stats = ["n", "hr", "ci", "pval", "pval_inter"]
        else:
            stats = ["n", "hr", "ci", "pval"]
    stats = list(stats)
    _check_known(stats, COXREG_STATS)
    if variables.arm is None or multivar:
        stats = [s for s in stats if s in ("hr", "ci", "pval")]
    elif not control.interaction:
        stats = [s for s in stats if s != "pval_inter"]
    if not stats:
        raise InvalidConfigurationError("None of the requested statistics are available in this mode")

    labels = {
        "n": "n",
        "hr": "Hazard Ratio",
        "ci": f"{control.conf_level * 100:g}% CI",
        "pval": "p-value",
        "pval_inter": "Interaction p-value",
    }
    formats = {
        "n": "xx",
        "hr": "xx.xx",
        "ci": "(xx.xx, xx.xx)",
        "pval": PVAL_FORMAT,
        "pval_inter": PVAL_FORMAT,
    }

    cache = ModelFitCache()
    cell = partial(a_coxreg, cache=cache, variables=variables, control=control,
                   at=at, multivar=multivar, labels=varlabels)

    builder = DataFrameTableBuilder(na_str)
    builder.split_columns(stats=stats, labels=labels, formats=formats)
    if variables.arm is not None:
        builder.split_rows(None, split_label="Treatment:", show_labels=False)
        builder.populate_cell(partial(cell, eff=True, row_kind="main"), content=True)
        builder.populate_cell(partial(cell, eff=True, row_kind="level"))
    if variables.covariates:
        builder.split_rows(
            multivar=variables.covariates, labels=varlabels, split_label="Covariate:", nested=False
        )
        builder.populate_cell(partial(cell, row_kind="main"), content=True)
        # univariable arm-adjusted covariates report the main row only
        if multivar or control.interaction or variables.arm is None:
            builder.populate_cell(partial(cell, row_kind="level"))

    logger.log_operation(
        "summarize_coxreg", "started",
        multivar=multivar, interaction=control.interaction, covariates=len(variables.covariates),
    )
    table = builder.build(data)
    logger.log_operation("summarize_coxreg", "completed", rows=table.nrow, fits=cache.get_stats()["misses"])
    return table
