"""
Point estimates, confidence intervals and tests for proportions, odds ratios
and survival times.

Estimators never raise on empty or degenerate input. They return missing values
and emit a DegenerateDataWarning so that assembled tables keep a uniform shape.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd
from lifelines import KaplanMeierFitter
from lifelines.statistics import logrank_test
from scipy import stats
from statsmodels.duration.survfunc import survdiff
from statsmodels.stats.contingency_tables import StratifiedTable

from config import CONFIG
from logger import get_logger
from tlgstats.exceptions import (
    InvalidConfigurationError,
    UnsupportedMethodError,
    warn_degenerate,
)
from tlgstats.variables import arm_factor, as_logical

logger = get_logger(__name__)

PVAL_LABELS = {
    "chisq": "p-value (Chi-Squared Test)",
    "schouten": "p-value (Chi-Squared Test with Schouten Correction)",
    "fisher": "p-value (Fisher's Exact Test)",
    "cmh": "p-value (Cochran-Mantel-Haenszel Test)",
}

DENOM_POLICIES = ("n", "N", "omit")


def _z_quantile(conf_level: float) -> float:
    if not 0 < conf_level < 1:
        raise InvalidConfigurationError(f"conf_level must be in (0, 1), got {conf_level}")
    return float(stats.norm.ppf((1 + conf_level) / 2))


def _as_bool_array(x: Any) -> np.ndarray:
    """Non-missing values of a logical vector as a bool array."""
    series = as_logical(pd.Series(x).reset_index(drop=True))
    return series.dropna().astype(bool).to_numpy()


# ==============================================================================
# Proportions
# ==============================================================================


def s_proportion(x: Any, denom: str = "n", N: int | None = None) -> dict[str, float]:
    """
    Number of subjects, responders and response proportion.

    Missing responses are excluded. ``denom`` chooses the denominator: ``"n"``
    uses the non-missing count, ``"N"`` uses the supplied population size ``N``,
    and ``"omit"`` reports no proportion.
    """
    if denom not in DENOM_POLICIES:
        raise InvalidConfigurationError(f"denom must be one of {DENOM_POLICIES}, got '{denom}'")
    if denom == "N" and N is None:
        raise InvalidConfigurationError("denom='N' requires the population size N")

    rsp = _as_bool_array(x)
    n = int(rsp.size)
    n_rsp = int(rsp.sum())

    if denom == "omit":
        prop = np.nan
    else:
        d = n if denom == "n" else int(N)
        if d == 0:
            warn_degenerate("Proportion requested for an empty group; reporting NA")
            prop = np.nan
        else:
            prop = n_rsp / d

    return {"n": n, "n_rsp": n_rsp, "prop": prop}


def _two_by_two(rsp: np.ndarray, grp: np.ndarray, ref: Any, trt: Any) -> np.ndarray:
    """Rows ref/trt, columns responder/non-responder."""
    table = np.zeros((2, 2))
    for i, level in enumerate((ref, trt)):
        in_grp = grp == level
        table[i, 0] = np.sum(rsp & in_grp)
        table[i, 1] = np.sum(~rsp & in_grp)
    return table


def _chisq(table: np.ndarray) -> float:
    _, pval, _, _ = stats.chi2_contingency(table, correction=False)
    return float(pval)


def _schouten(table: np.ndarray) -> float:
    n = table.sum()
    n1, n2 = table.sum(axis=1)
    col1, col2 = table.sum(axis=0)
    ad = table[0, 0] * table[1, 1]
    bc = table[0, 1] * table[1, 0]
    t_stat = (n - 1) * (abs(ad - bc) - 0.5 * min(n1, n2)) ** 2 / (n1 * n2 * col1 * col2)
    return float(stats.chi2.sf(t_stat, df=1))


def _fisher(table: np.ndarray) -> float:
    _, pval = stats.fisher_exact(table)
    return float(pval)


def _cmh(tables: list[np.ndarray]) -> float:
    result = StratifiedTable(tables).test_null_odds(correction=False)
    return float(result.pvalue)


def s_test_proportion_diff(
    rsp: Any,
    grp: pd.Series,
    method: str | None,
    strata: pd.Series | pd.DataFrame | None = None,
) -> dict[str, Any]:
    """
    Test for a difference in response proportions between the two levels of ``grp``.

    Returns ``{"pval", "pval_label"}``; both are missing when ``method`` is None or
    ``"none"``.
    """
    if method is None or method == "none":
        return {"pval": np.nan, "pval_label": None}
    if method not in PVAL_LABELS:
        raise UnsupportedMethodError(
            f"Unknown proportion test '{method}', expected one of {list(PVAL_LABELS)}"
        )
    if method == "cmh" and strata is None:
        raise InvalidConfigurationError("The CMH test requires strata")

    label = PVAL_LABELS[method]
    frame = _response_frame(rsp, grp, strata)
    ref, trt = _two_levels(grp)
    rsp_arr = frame["rsp"].to_numpy()
    grp_arr = frame["grp"].to_numpy()

    if method == "cmh":
        tables = []
        for _, sub in frame.groupby("strata", sort=False):
            tbl = _two_by_two(sub["rsp"].to_numpy(), sub["grp"].to_numpy(), ref, trt)
            if tbl.sum() < 2:
                logger.warning("Dropping stratum with fewer than 2 subjects from CMH test")
                continue
            tables.append(tbl)
        if not tables:
            warn_degenerate("No usable strata for the CMH test; reporting NA")
            return {"pval": np.nan, "pval_label": label}
        return {"pval": _cmh(tables), "pval_label": label}

    table = _two_by_two(rsp_arr, grp_arr, ref, trt)
    if (table.sum(axis=0) == 0).any() or (table.sum(axis=1) == 0).any():
        warn_degenerate(f"Empty margin in 2x2 table; {label} reported as NA")
        return {"pval": np.nan, "pval_label": label}

    tests = {"chisq": _chisq, "schouten": _schouten, "fisher": _fisher}
    return {"pval": tests[method](table), "pval_label": label}


def _two_levels(grp: pd.Series) -> list[Any]:
    series = pd.Series(grp)
    if isinstance(series.dtype, pd.CategoricalDtype):
        levels = list(series.cat.categories)
    else:
        levels = sorted(series.dropna().unique().tolist())
    if len(levels) != 2:
        raise InvalidConfigurationError(f"Exactly 2 groups are required, found {levels}")
    return levels


def _strata_key(strata: pd.Series | pd.DataFrame) -> pd.Series:
    """Single key per row combining all strata columns; missing if any column is missing."""
    frame = pd.DataFrame(strata).reset_index(drop=True)
    if frame.empty:
        return pd.Series(index=frame.index, dtype=object)
    key = frame.astype(str).agg("\x1f".join, axis=1)
    return key.where(frame.notna().all(axis=1))


def _response_frame(
    rsp: Any, grp: pd.Series, strata: pd.Series | pd.DataFrame | None = None
) -> pd.DataFrame:
    """Aligned response, group and optional strata key with missing rows dropped."""
    frame = pd.DataFrame(
        {
            "rsp": as_logical(pd.Series(rsp).reset_index(drop=True)).to_numpy(dtype=object),
            "grp": pd.Series(grp).to_numpy(dtype=object),
        }
    )
    if strata is not None:
        frame["strata"] = _strata_key(strata).to_numpy()
    frame = frame.dropna()
    frame["rsp"] = frame["rsp"].astype(bool)
    return frame


# ==============================================================================
# Odds ratios
# ==============================================================================


def odds_ratio(
    rsp_ref: Any,
    rsp_trt: Any,
    conf_level: float = 0.95,
    correction: float | None = None,
) -> dict[str, float]:
    """
    Odds ratio of treatment versus reference with a Wald interval on the log scale.

    When any cell of the 2x2 table is zero, ``correction`` (Haldane, default from
    ``analysis.continuity_correction``) is added to every cell.
    """
    z = _z_quantile(conf_level)
    if correction is None:
        correction = CONFIG.get("analysis.continuity_correction", 0.5)

    ref = _as_bool_array(rsp_ref)
    trt = _as_bool_array(rsp_trt)
    if ref.size == 0 or trt.size == 0:
        warn_degenerate("Odds ratio requested with an empty group; reporting NA")
        return {"or": np.nan, "lcl": np.nan, "ucl": np.nan}

    a, b = float(trt.sum()), float((~trt).sum())
    c, d = float(ref.sum()), float((~ref).sum())
    if min(a, b, c, d) == 0:
        if not correction:
            warn_degenerate("Zero cell in odds ratio table; reporting NA")
            return {"or": np.nan, "lcl": np.nan, "ucl": np.nan}
        logger.debug(f"Zero cell in odds ratio table, adding {correction} to each cell")
        a, b, c, d = a + correction, b + correction, c + correction, d + correction

    log_or = np.log((a * d) / (b * c))
    se = np.sqrt(1 / a + 1 / b + 1 / c + 1 / d)
    return {
        "or": float(np.exp(log_or)),
        "lcl": float(np.exp(log_or - z * se)),
        "ucl": float(np.exp(log_or + z * se)),
    }


def odds_ratio_strat(
    rsp: Any,
    grp: pd.Series,
    strata: pd.Series | pd.DataFrame,
    conf_level: float = 0.95,
) -> dict[str, float]:
    """Mantel-Haenszel pooled odds ratio over strata."""
    frame = _response_frame(rsp, grp, strata)
    ref, trt = _two_levels(grp)

    tables = []
    for _, sub in frame.groupby("strata", sort=False):
        tbl = _two_by_two(sub["rsp"].to_numpy(), sub["grp"].to_numpy(), ref, trt)
        if (tbl.sum(axis=1) == 0).any():
            continue
        # treatment first
        tables.append(tbl[::-1])
    if not tables:
        warn_degenerate("No stratum contains both groups; odds ratio reported as NA")
        return {"or": np.nan, "lcl": np.nan, "ucl": np.nan}

    st = StratifiedTable(tables)
    lcl, ucl = st.oddsratio_pooled_confint(alpha=1 - conf_level)
    return {"or": float(st.oddsratio_pooled), "lcl": float(lcl), "ucl": float(ucl)}



# ==============================================================================
# Survival
# ==============================================================================


def surv_time(tte: Any, is_event: Any) -> dict[str, float]:
    """Number of subjects, events and Kaplan-Meier median survival time."""
    frame = pd.DataFrame({"tte": pd.Series(tte).to_numpy(), "ev": pd.Series(is_event).to_numpy()}).dropna()
    n = len(frame)
    if n == 0:
        warn_degenerate("Survival time requested for an empty group; reporting NA")
        return {"n": 0, "n_events": 0, "median": np.nan}

    events = frame["ev"].astype(bool)
    kmf = KaplanMeierFitter()
    kmf.fit(frame["tte"].astype(float), event_observed=events)
    median = float(kmf.median_survival_time_)
    if not np.isfinite(median):
        median = np.nan
    return {"n": n, "n_events": int(events.sum()), "median": median}


def logrank_pvalue(
    tte: Any,
    is_event: Any,
    arm: pd.Series,
    strata: pd.Series | pd.DataFrame | None = None,
) -> float:
    """
    Two-sided log-rank p-value comparing the two arm levels.

    Without strata the test comes from lifelines; with strata the per-stratum
    observed-minus-expected counts and variances are pooled by statsmodels.
    Rows with a missing stratum are dropped.
    """
    arm = arm_factor(pd.Series(arm).reset_index(drop=True), n_levels=2)
    frame = pd.DataFrame(
        {
            "tte": pd.Series(tte).to_numpy(dtype=float),
            "ev": pd.Series(is_event).to_numpy(),
            "arm": arm.to_numpy(),
        }
    )
    if strata is not None:
        frame["strata"] = _strata_key(strata).to_numpy()
    frame = frame.dropna()
    ref, trt = list(arm.cat.categories)[:2]
    in_trt = (frame["arm"] == trt).to_numpy()
    in_ref = (frame["arm"] == ref).to_numpy()
    event = frame["ev"].astype(bool).to_numpy()
    time = frame["tte"].to_numpy()

    if not in_trt.any() or not in_ref.any() or not event.any():
        warn_degenerate("Log-rank test needs both arms and at least one event; reporting NA")
        return np.nan

    if strata is None:
        result = logrank_test(
            time[in_ref], time[in_trt], event_observed_A=event[in_ref], event_observed_B=event[in_trt]
        )
        return float(result.p_value)

    keep = in_trt | in_ref
    codes, _ = pd.factorize(frame["strata"])
    try:
        _, pval = survdiff(
            time[keep], event[keep].astype(float), in_trt[keep].astype(int), strata=codes[keep]
        )
    except np.linalg.LinAlgError:
        warn_degenerate("Stratified log-rank variance is zero; reporting NA")
        return np.nan
    return float(pval)
