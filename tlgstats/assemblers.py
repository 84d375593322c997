"""
Long-format result tables for subgroup and biomarker analyses.

Every ``*_subgroups_df`` assembler starts with one ``content`` block computed on
all patients (``var == "ALL"``) followed by one ``analysis`` block per subgroup
partition. The ``arm`` column keeps the input level order.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any

import numpy as np
import pandas as pd

from config import CONFIG
from logger import get_logger
from tlgstats.cox import CoxControl, control_coxph, control_coxreg, cox_fit, s_coxph_pairwise
from tlgstats.estimators import (
    odds_ratio,
    odds_ratio_strat,
    s_proportion,
    s_test_proportion_diff,
    surv_time,
)
from tlgstats.exceptions import InvalidConfigurationError, warn_degenerate
from tlgstats.logistic import logistic_fit
from tlgstats.subgroups import GroupCombination, split_by_subgroups
from tlgstats.variables import (
    ColumnKind,
    VariableRoles,
    arm_factor,
    as_factor,
    as_logical,
    as_roles,
    column_kind,
    var_label,
)

logger = get_logger(__name__)

LABEL_COLUMNS = ["subgroup", "var", "var_label", "row_type"]


def _label_all(label_all: str | None) -> str:
    return CONFIG.get("analysis.label_all", "All Patients") if label_all is None else label_all


def _conf_level(conf_level: float | None) -> float:
    return CONFIG.get("analysis.conf_level", 0.95) if conf_level is None else conf_level


def _with_arm_levels(df: pd.DataFrame, levels: Sequence[Any]) -> pd.DataFrame:
    df["arm"] = pd.Categorical(df["arm"], categories=list(levels))
    return df


def _prepare(variables: VariableRoles, data: pd.DataFrame, roles: Sequence[str]) -> pd.DataFrame:
    """Validate roles and the response kind; return a copy of ``data`` with the arm as a two-level factor."""
    variables.require(*roles)
    variables.validate(data)
    out = data.copy()
    if variables.arm is not None:
        out[variables.arm] = arm_factor(data[variables.arm], n_levels=2)
    if "rsp" in roles:
        as_logical(data[variables.rsp])
    return out


def _subgroups_df(
    data: pd.DataFrame,
    variables: VariableRoles,
    groups_lists: Mapping[str, GroupCombination] | None,
    label_all: str | None,
    compute: Callable[[pd.DataFrame], pd.DataFrame],
    operation: str,
) -> pd.DataFrame:
    """Apply ``compute`` to all patients and to each subgroup partition."""
    label_all = _label_all(label_all)
    logger.log_operation(operation, "started", n=len(data), subgroups=len(variables.subgroups))

    with logger.track_time(operation):
        result_all = compute(data)
        result_all["subgroup"] = label_all
        result_all["var"] = "ALL"
        result_all["var_label"] = label_all
        result_all["row_type"] = "content"
        blocks = [result_all]

        if variables.subgroups:
            for part in split_by_subgroups(data, variables.subgroups, groups_lists):
                result = compute(part.df)
                result["subgroup"] = part.subgroup
                result["var"] = part.var
                result["var_label"] = part.var_label
                result["row_type"] = "analysis"
                blocks.append(result)

    out = pd.concat(blocks, ignore_index=True)
    logger.log_operation(operation, "completed", rows=len(out))
    return out


# ==============================================================================
# Response
# ==============================================================================


def h_proportion_df(rsp: Any, arm: pd.Series) -> pd.DataFrame:
    """Responders and response proportion per arm level."""
    rsp = pd.Series(rsp).reset_index(drop=True)
    arm = as_factor(pd.Series(arm).reset_index(drop=True))
    levels = list(arm.cat.categories)
    denom = CONFIG.get("analysis.denom", "n")

    rows = []
    for level in levels:
        res = s_proportion(rsp[(arm == level).to_numpy()], denom=denom)
        rows.append({"arm": level, **res})
    return _with_arm_levels(pd.DataFrame(rows, columns=["arm", "n", "n_rsp", "prop"]), levels)


def h_proportion_subgroups_df(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    groups_lists: Mapping[str, GroupCombination] | None = None,
    label_all: str | None = None,
) -> pd.DataFrame:
    """Proportion rows per arm for all patients and each subgroup."""
    variables = as_roles(variables)
    data = _prepare(variables, data, ("rsp", "arm"))
    levels = list(data[variables.arm].cat.categories)

    def _compute(df: pd.DataFrame) -> pd.DataFrame:
        return h_proportion_df(df[variables.rsp], df[variables.arm])

    out = _subgroups_df(data, variables, groups_lists, label_all, _compute, "h_proportion_subgroups_df")
    return _with_arm_levels(out, levels)


def h_odds_ratio_df(
    rsp: Any,
    arm: pd.Series,
    conf_level: float | None = None,
    method: str | None = None,
    strata_data: pd.DataFrame | None = None,
) -> pd.DataFrame:
    """
    Odds ratio of the second arm level versus the first, with an optional test.

    The ``arm`` column is a single blank level so that downstream tables get one
    unsplit effect column group. With ``strata_data`` the odds ratio is the
    Mantel-Haenszel estimate.
    """
    conf_level = _conf_level(conf_level)
    arm = arm_factor(pd.Series(arm).reset_index(drop=True), n_levels=2)
    rsp = pd.Series(rsp).reset_index(drop=True)
    ref, trt = list(arm.cat.categories)
    in_ref = (arm == ref).to_numpy()
    in_trt = (arm == trt).to_numpy()
    if strata_data is not None:
        strata_data = pd.DataFrame(strata_data).reset_index(drop=True)

    if not in_ref.any() or not in_trt.any():
        warn_degenerate("Odds ratio needs subjects in both arms; reporting NA")
        est = {"or": np.nan, "lcl": np.nan, "ucl": np.nan}
    elif strata_data is not None:
        est = odds_ratio_strat(rsp, arm, strata_data, conf_level)
    else:
        est = odds_ratio(rsp[in_ref], rsp[in_trt], conf_level)

    row = {
        "arm": " ",
        "n_tot": int(rsp.notna().sum()),
        "or": est["or"],
        "lcl": est["lcl"],
        "ucl": est["ucl"],
        "conf_level": conf_level,
    }
    if method is not None:
        test = s_test_proportion_diff(rsp, arm, method, strata=strata_data)
        row["pval"] = test["pval"]
        row["pval_label"] = test["pval_label"]
    return pd.DataFrame([row])


def h_odds_ratio_subgroups_df(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    groups_lists: Mapping[str, GroupCombination] | None = None,
    conf_level: float | None = None,
    method: str | None = None,
    label_all: str | None = None,
) -> pd.DataFrame:
    """Odds ratio rows for all patients and each subgroup."""
    variables = as_roles(variables)
    data = _prepare(variables, data, ("rsp", "arm"))
    conf_level = _conf_level(conf_level)

    def _compute(df: pd.DataFrame) -> pd.DataFrame:
        strata = df[variables.strata] if variables.strata else None
        return h_odds_ratio_df(df[variables.rsp], df[variables.arm], conf_level, method, strata)

    return _subgroups_df(data, variables, groups_lists, label_all, _compute, "h_odds_ratio_subgroups_df")


def extract_rsp_subgroups(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    groups_lists: Mapping[str, GroupCombination] | None = None,
    conf_level: float | None = None,
    method: str | None = None,
    label_all: str | None = None,
) -> dict[str, pd.DataFrame]:
    """Proportions (``"prop"``) and odds ratios (``"or"``) by subgroup."""
    variables = as_roles(variables)
    return {
        "prop": h_proportion_subgroups_df(variables, data, groups_lists, label_all),
        "or": h_odds_ratio_subgroups_df(variables, data, groups_lists, conf_level, method, label_all),
    }


# ==============================================================================
# Survival
# ==============================================================================


def h_survtime_df(tte: Any, is_event: Any, arm: pd.Series) -> pd.DataFrame:
    """Subjects, events and median survival time per arm level."""
    tte = pd.Series(tte).reset_index(drop=True)
    is_event = pd.Series(is_event).reset_index(drop=True)
    arm = as_factor(pd.Series(arm).reset_index(drop=True))
    levels = list(arm.cat.categories)

    rows = []
    for level in levels:
        mask = (arm == level).to_numpy()
        rows.append({"arm": level, **surv_time(tte[mask], is_event[mask])})
    return _with_arm_levels(pd.DataFrame(rows, columns=["arm", "n", "n_events", "median"]), levels)


def h_survtime_subgroups_df(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    groups_lists: Mapping[str, GroupCombination] | None = None,
    label_all: str | None = None,
) -> pd.DataFrame:
    """Median survival rows per arm for all patients and each subgroup."""
    variables = as_roles(variables)
    data = _prepare(variables, data, ("tte", "is_event", "arm"))
    levels = list(data[variables.arm].cat.categories)

    def _compute(df: pd.DataFrame) -> pd.DataFrame:
        return h_survtime_df(df[variables.tte], df[variables.is_event], df[variables.arm])

    out = _subgroups_df(data, variables, groups_lists, label_all, _compute, "h_survtime_subgroups_df")
    return _with_arm_levels(out, levels)


def h_coxph_df(
    tte: Any,
    is_event: Any,
    arm: pd.Series,
    strata_data: pd.DataFrame | None = None,
    control: CoxControl | None = None,
) -> pd.DataFrame:
    """Hazard ratio of the second arm level versus the first in a single row."""
    control = control or control_coxph()
    arm = arm_factor(pd.Series(arm).reset_index(drop=True), n_levels=2)
    res = s_coxph_pairwise(
        pd.Series(tte).reset_index(drop=True),
        as_logical(pd.Series(is_event).reset_index(drop=True)),
        arm,
        strata=strata_data,
        control=control,
    )
    return pd.DataFrame([{"arm": " ", **res}])


def h_coxph_subgroups_df(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    groups_lists: Mapping[str, GroupCombination] | None = None,
    control: CoxControl | None = None,
    label_all: str | None = None,
) -> pd.DataFrame:
    """Hazard ratio rows for all patients and each subgroup."""
    variables = as_roles(variables)
    data = _prepare(variables, data, ("tte", "is_event", "arm"))
    control = control or control_coxph()

    def _compute(df: pd.DataFrame) -> pd.DataFrame:
        strata = df[variables.strata] if variables.strata else None
        return h_coxph_df(df[variables.tte], df[variables.is_event], df[variables.arm], strata, control)

    return _subgroups_df(data, variables, groups_lists, label_all, _compute, "h_coxph_subgroups_df")


def extract_survival_subgroups(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    groups_lists: Mapping[str, GroupCombination] | None = None,
    control: CoxControl | None = None,
    label_all: str | None = None,
) -> dict[str, pd.DataFrame]:
    """Survival times (``"survtime"``) and hazard ratios (``"hr"``) by subgroup."""
    variables = as_roles(variables)
    return {
        "survtime": h_survtime_subgroups_df(variables, data, groups_lists, label_all),
        "hr": h_coxph_subgroups_df(variables, data, groups_lists, control, label_all),
    }


# ==============================================================================
# Biomarkers
# ==============================================================================


def _check_biomarkers(variables: VariableRoles, data: pd.DataFrame) -> None:
    if not variables.biomarkers:
        raise InvalidConfigurationError("At least one biomarker is required")
    for bm in variables.biomarkers:
        if column_kind(data[bm]) is not ColumnKind.NUMERIC:
            raise InvalidConfigurationError(f"Biomarker '{bm}' must be numeric")


def _sorted_by_biomarker(out: pd.DataFrame, biomarkers: Sequence[str]) -> pd.DataFrame:
    order = pd.Categorical(out["biomarker"], categories=list(biomarkers))
    out = out.iloc[np.argsort(order.codes, kind="stable")].reset_index(drop=True)
    return out


def h_coxreg_mult_cont_df(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    control: CoxControl | None = None,
) -> pd.DataFrame:
    """
    One row per biomarker with the hazard ratio per unit increase, adjusted for
    the covariates and stratified by the strata.
    """
    variables = as_roles(variables)
    variables.require("tte", "is_event")
    variables.validate(data)
    _check_biomarkers(variables, data)
    control = control or control_coxreg()

    km = surv_time(data[variables.tte], data[variables.is_event]) if len(data) else {
        "n": 0, "n_events": 0, "median": np.nan,
    }
    rows = []
    for bm in variables.biomarkers:
        if len(data):
            model = cox_fit(
                data, variables.tte, variables.is_event,
                covariates=[bm, *[c for c in variables.covariates if c != bm]],
                strata=variables.strata, ties=control.ties, conf_level=control.conf_level,
            )
            est = model.hazard_ratio({bm: 1.0})
            pval = model.term_pvalue(bm, control.pval_method)
        else:
            warn_degenerate(f"No observations for biomarker '{bm}'")
            est, pval = {"hr": np.nan, "lcl": np.nan, "ucl": np.nan}, np.nan
        rows.append(
            {
                "biomarker": bm,
                "biomarker_label": var_label(data, bm),
                "n_tot": km["n"],
                "n_tot_events": km["n_events"],
                "median": km["median"],
                **est,
                "conf_level": control.conf_level,
                "pval": pval,
                "pval_label": f"p-value ({control.pval_method})",
            }
        )
    return pd.DataFrame(rows)


def extract_survival_biomarkers(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    groups_lists: Mapping[str, GroupCombination] | None = None,
    control: CoxControl | None = None,
    label_all: str | None = None,
) -> pd.DataFrame:
    """Biomarker hazard ratios for all patients and each subgroup, grouped by biomarker."""
    variables = as_roles(variables)
    variables.require("tte", "is_event")
    variables.validate(data)
    _check_biomarkers(variables, data)
    control = control or control_coxreg()

    def _compute(df: pd.DataFrame) -> pd.DataFrame:
        return h_coxreg_mult_cont_df(variables, df, control)

    out = _subgroups_df(data, variables, groups_lists, label_all, _compute, "extract_survival_biomarkers")
    return _sorted_by_biomarker(out, variables.biomarkers)


def h_logistic_mult_cont_df(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    conf_level: float | None = None,
) -> pd.DataFrame:
    """One row per biomarker with the odds ratio per unit increase."""
    variables = as_roles(variables)
    variables.require("rsp")
    variables.validate(data)
    _check_biomarkers(variables, data)
    conf_level = _conf_level(conf_level)

    prop = s_proportion(data[variables.rsp])
    rows = []
    for bm in variables.biomarkers:
        if len(data):
            est = logistic_fit(
                data, variables.rsp, bm,
                covariates=[c for c in variables.covariates if c != bm],
                strata=variables.strata, conf_level=conf_level,
            )
        else:
            est = {"or": np.nan, "lcl": np.nan, "ucl": np.nan, "pval": np.nan}
        rows.append(
            {
                "biomarker": bm,
                "biomarker_label": var_label(data, bm),
                "n_tot": prop["n"],
                "n_rsp": prop["n_rsp"],
                "prop": prop["prop"],
                "or": est["or"],
                "lcl": est["lcl"],
                "ucl": est["ucl"],
                "conf_level": conf_level,
                "pval": est["pval"],
                "pval_label": "p-value (Wald)",
            }
        )
    return pd.DataFrame(rows)


def extract_rsp_biomarkers(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    groups_lists: Mapping[str, GroupCombination] | None = None,
    conf_level: float | None = None,
    label_all: str | None = None,
) -> pd.DataFrame:
    """Biomarker odds ratios for all patients and each subgroup, grouped by biomarker."""
    variables = as_roles(variables)
    variables.require("rsp")
    variables.validate(data)
    _check_biomarkers(variables, data)
    conf_level = _conf_level(conf_level)

    def _compute(df: pd.DataFrame) -> pd.DataFrame:
        return h_logistic_mult_cont_df(variables, df, conf_level)

    out = _subgroups_df(data, variables, groups_lists, label_all, _compute, "extract_rsp_biomarkers")
    return _sorted_by_biomarker(out, variables.biomarkers)
