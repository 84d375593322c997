"""
Cox proportional hazards models.

Efron and Breslow ties are fitted with statsmodels' PHReg. The exact
(discrete) partial likelihood is fitted as a conditional logistic regression
over the risk sets at each event time.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import gammaln
from statsmodels.discrete.conditional_models import ConditionalLogit
from statsmodels.duration.hazard_regression import PHReg

from config import CONFIG, VALID_PVAL_METHODS, VALID_TIES
from logger import get_logger
from tlgstats.design import TermInfo, build_design, independent_columns
from tlgstats.estimators import logrank_pvalue
from tlgstats.exceptions import (
    IncompatibleModeError,
    InvalidConfigurationError,
    UnsupportedMethodError,
    warn_degenerate,
)
from tlgstats.variables import (
    VariableRoles,
    arm_factor,
    as_factor,
    as_logical,
    as_roles,
    var_label,
)

logger = get_logger(__name__)

TIDY_COLUMNS = [
    "effect", "term", "term_label", "row_kind",
    "n", "hr", "lcl", "ucl", "ci", "pval", "pval_inter",
]


@dataclass
class CoxControl:
    """Options for Cox model fits."""

    pval_method: str = "wald"
    ties: str = "exact"
    conf_level: float = 0.95
    interaction: bool = False

    def __post_init__(self) -> None:
        if self.ties not in VALID_TIES:
            raise UnsupportedMethodError(f"Unknown ties method '{self.ties}', expected one of {list(VALID_TIES)}")
        if self.pval_method not in VALID_PVAL_METHODS:
            raise UnsupportedMethodError(
                f"Unknown p-value method '{self.pval_method}', expected one of {list(VALID_PVAL_METHODS)}"
            )
        if not 0 < self.conf_level < 1:
            raise InvalidConfigurationError(f"conf_level must be in (0, 1), got {self.conf_level}")


def control_coxph(
    pval_method: str | None = None,
    ties: str | None = None,
    conf_level: float | None = None,
) -> CoxControl:
    """Options for the pairwise treatment comparison (log-rank p-value, Efron ties)."""
    return CoxControl(
        pval_method=pval_method or CONFIG.get("analysis.coxph_pval_method", "log-rank"),
        ties=ties or CONFIG.get("analysis.coxph_ties", "efron"),
        conf_level=conf_level or CONFIG.get("analysis.conf_level", 0.95),
    )


def control_coxreg(
    pval_method: str | None = None,
    ties: str | None = None,
    conf_level: float | None = None,
    interaction: bool = False,
) -> CoxControl:
    """Options for Cox regression summaries (Wald p-value, exact ties)."""
    control = CoxControl(
        pval_method=pval_method or CONFIG.get("analysis.coxreg_pval_method", "wald"),
        ties=ties or CONFIG.get("analysis.coxreg_ties", "exact"),
        conf_level=conf_level or CONFIG.get("analysis.conf_level", 0.95),
        interaction=interaction,
    )
    if control.pval_method == "log-rank":
        raise UnsupportedMethodError("Cox regression p-values must be 'wald' or 'likelihood'")
    return control


# ==============================================================================
# Fitting backends
# ==============================================================================


def _risk_sets(time: np.ndarray, event: np.ndarray, strata: np.ndarray):
    """Row indices, outcomes and group ids of the informative risk sets."""
    rows, outcome, groups = [], [], []
    gid = 0
    for stratum in pd.unique(strata):
        idx = np.flatnonzero(strata == stratum)
        t_s, e_s = time[idx], event[idx]
        for t in np.unique(t_s[e_s]):
            at_risk = idx[t_s >= t]
            died = (time[at_risk] == t) & event[at_risk]
            if died.all():
                continue
            rows.append(at_risk)
            outcome.append(died.astype(float))
            groups.append(np.full(len(at_risk), gid))
            gid += 1
    if not rows:
        return None
    return np.concatenate(rows), np.concatenate(outcome), np.concatenate(groups)


class _PartialLikelihood:
    """Fits one ties method on a fixed set of subjects."""

    def __init__(self, time: np.ndarray, event: np.ndarray, strata: np.ndarray, ties: str):
        self.time = time
        self.event = event
        self.strata = strata
        self.ties = ties
        self._risk = _risk_sets(time, event, strata) if ties == "exact" else None

    def _model(self, x: np.ndarray):
        if self.ties == "exact":
            rows, outcome, groups = self._risk
            return ConditionalLogit(outcome, x[rows], groups=groups)
        return PHReg(self.time, x, status=self.event.astype(float), strata=self.strata, ties=self.ties)

    def design_rows(self, x: pd.DataFrame) -> pd.DataFrame:
        """Rows of ``x`` that enter the likelihood."""
        if self.ties == "exact":
            return x.iloc[self._risk[0]]
        return x

    def null_loglik(self) -> float:
        if self.ties == "exact":
            # each risk set contributes -log C(size, deaths) at beta = 0
            _, outcome, groups = self._risk
            sizes = np.bincount(groups)
            deaths = np.bincount(groups, weights=outcome)
            return float(-np.sum(gammaln(sizes + 1) - gammaln(deaths + 1) - gammaln(sizes - deaths + 1)))
        return float(self._model(np.zeros((len(self.time), 1))).loglike(np.zeros(1)))

    def fit(self, x: np.ndarray, start_params: np.ndarray | None = None):
        """Returns (params, covariance, log-likelihood)."""
        if x.shape[1] == 0:
            return np.zeros(0), np.zeros((0, 0)), self.null_loglik()
        if self.ties == "exact" and start_params is None:
            start_params, _, _ = _PartialLikelihood(self.time, self.event, self.strata, "breslow").fit(x)
        model = self._model(x)
        if self.ties == "exact":
            result = model.fit(start_params=start_params, method="newton", maxiter=100, disp=False)
        else:
            result = model.fit(disp=False)
        return np.asarray(result.params), np.asarray(result.cov_params()), float(result.llf)

    @property
    def informative(self) -> bool:
        """False when the exact likelihood has no risk set with a survivor."""
        return self.ties != "exact" or self._risk is not None


@dataclass
class CoxModel:
    """Fitted Cox model with per-term tests and linear contrasts."""

    params: pd.Series
    cov: pd.DataFrame
    loglik: float
    n: int
    n_events: int
    conf_level: float
    ties: str
    terms: dict[str, TermInfo] = field(default_factory=dict)
    data: pd.DataFrame | None = None
    refit_loglik: Callable[[list[str]], float] | None = None

    @property
    def fitted_columns(self) -> list[str]:
        return list(self.cov.index)

    @property
    def is_degenerate(self) -> bool:
        return self.params.isna().all()

    def _z(self) -> float:
        return float(stats.norm.ppf((1 + self.conf_level) / 2))

    def estimate(self, weights: Mapping[str, float]) -> tuple[float, float]:
        """Estimate and standard error of a linear combination of coefficients."""
        weights = {k: v for k, v in weights.items() if v != 0}
        if not weights or any(k not in self.cov.index for k in weights):
            return np.nan, np.nan
        cols = list(weights)
        w = np.array([weights[c] for c in cols], dtype=float)
        est = float(w @ self.params[cols].to_numpy())
        var = float(w @ self.cov.loc[cols, cols].to_numpy() @ w)
        return est, float(np.sqrt(var)) if var >= 0 else np.nan

    def hazard_ratio(self, weights: Mapping[str, float]) -> dict[str, float]:
        est, se = self.estimate(weights)
        z = self._z()
        return {
            "hr": float(np.exp(est)),
            "lcl": float(np.exp(est - z * se)),
            "ucl": float(np.exp(est + z * se)),
        }

    def pvalue(self, columns: Sequence[str], method: str = "wald") -> float:
        """Wald or likelihood-ratio test that the given coefficients are zero."""
        cols = [c for c in columns if c in self.cov.index]
        if not cols:
            return np.nan
        if method == "wald":
            b = self.params[cols].to_numpy()
            v = self.cov.loc[cols, cols].to_numpy()
            try:
                stat = float(b @ np.linalg.solve(v, b))
            except np.linalg.LinAlgError:
                return np.nan
        elif method == "likelihood":
            if self.refit_loglik is None:
                return np.nan
            stat = 2 * (self.loglik - self.refit_loglik(cols))
        else:
            raise UnsupportedMethodError(f"Term p-values use 'wald' or 'likelihood', got '{method}'")
        return float(stats.chi2.sf(max(stat, 0.0), df=len(cols)))

    def term_pvalue(self, term: str, method: str = "wald") -> float:
        return self.pvalue(self.terms[term].columns, method)

    def interaction_effects(
        self, arm: str, covariate: str, at: Sequence[float] | None = None
    ) -> list[tuple[str, dict[str, float]]]:
        """
        Hazard ratio of the treatment within each covariate level, or at each of
        the ``at`` values of a numeric covariate (default: its median).
        """
        arm_info = self.terms[arm]
        cov_info = self.terms[covariate]
        inter = self.terms[f"{arm}:{covariate}"]
        arm_col = arm_info.columns[0]
        effects = []
        if cov_info.kind == "factor":
            for level in cov_info.levels:
                weights = {arm_col: 1.0}
                if level in cov_info.level_columns:
                    weights[f"{arm_col}:{cov_info.level_columns[level]}"] = 1.0
                effects.append((str(level), self.hazard_ratio(weights)))
        else:
            if at is None or len(at) == 0:
                at = [float(np.median(self.data[covariate]))] if self.data is not None else []
            for value in at:
                weights = {arm_col: 1.0, inter.columns[0]: float(value)}
                effects.append((f"{value:g}", self.hazard_ratio(weights)))
        return effects

    def tidy(self) -> pd.DataFrame:
        """One row per design column."""
        z = self._z()
        rows = []
        for col, coef in self.params.items():
            se = float(np.sqrt(self.cov.loc[col, col])) if col in self.cov.index else np.nan
            rows.append(
                {
                    "term": col,
                    "estimate": coef,
                    "std_error": se,
                    "hr": np.exp(coef),
                    "lcl": np.exp(coef - z * se),
                    "ucl": np.exp(coef + z * se),
                    "pval": self.pvalue([col], "wald"),
                }
            )
        return pd.DataFrame(rows, columns=["term", "estimate", "std_error", "hr", "lcl", "ucl", "pval"])


def _strata_codes(data: pd.DataFrame, strata: Sequence[str]) -> np.ndarray:
    if not strata:
        return np.zeros(len(data), dtype=int)
    key = data[list(strata)].astype(str).agg("\x1f".join, axis=1)
    return pd.factorize(key)[0]


def cox_fit(
    data: pd.DataFrame,
    time: str,
    event: str,
    arm: str | None = None,
    covariates: Sequence[str] = (),
    strata: Sequence[str] = (),
    ties: str = "efron",
    conf_level: float = 0.95,
    interaction: bool = False,
) -> CoxModel:
    """
    Fit ``time ~ arm + covariates (+ arm:covariate) + strata(...)``.

    Rows with missing values in any used column are dropped. Degenerate input
    (no rows, no events, nothing estimable) gives an all-missing model and a
    DegenerateDataWarning instead of an error.
    """
    if ties not in VALID_TIES:
        raise UnsupportedMethodError(f"Unknown ties method '{ties}'")
    if interaction and arm is None:
        raise IncompatibleModeError("Interaction effects require an arm variable")

    covariates = list(covariates)
    strata = list(strata)
    terms = ([arm] if arm is not None else []) + covariates
    used = list(dict.fromkeys([time, event] + terms + strata))
    frame = data[used].dropna().copy()
    if arm is not None:
        frame[arm] = as_factor(frame[arm])

    interactions = [(arm, cov) for cov in covariates] if interaction else []
    design, infos = build_design(frame, terms, interactions)
    event_arr = as_logical(frame[event]).to_numpy(dtype=bool)
    time_arr = frame[time].to_numpy(dtype=float)
    n, n_events = len(frame), int(event_arr.sum())

    def _degenerate(reason: str) -> CoxModel:
        warn_degenerate(f"Cox model not estimable: {reason}")
        return CoxModel(
            params=pd.Series(np.nan, index=design.columns, dtype=float),
            cov=pd.DataFrame(dtype=float),
            loglik=np.nan,
            n=n,
            n_events=n_events,
            conf_level=conf_level,
            ties=ties,
            terms=infos,
            data=frame,
        )

    if n == 0:
        return _degenerate("no complete observations")
    if n_events == 0:
        return _degenerate("no events")

    likelihood = _PartialLikelihood(time_arr, event_arr, _strata_codes(frame, strata), ties)
    if not likelihood.informative:
        return _degenerate("no informative risk sets")

    kept = independent_columns(likelihood.design_rows(design))
    if not kept:
        return _degenerate("no estimable coefficients")

    x = design[kept].to_numpy(dtype=float)
    with logger.track_time(f"cox_fit[{ties}]"):
        try:
            params, cov, llf = likelihood.fit(x)
        except (ValueError, np.linalg.LinAlgError, FloatingPointError, ZeroDivisionError) as e:
            logger.debug(f"Cox fit failed: {e}")
            return _degenerate(str(e))

    if not np.all(np.isfinite(params)) or not np.all(np.isfinite(cov)):
        return _degenerate("fit did not converge")

    logger.debug(f"Cox fit ({ties}): n={n}, events={n_events}, columns={kept}")
    logger.log_analysis("Cox regression", time, len(kept), n)

    def refit_loglik(drop: list[str]) -> float:
        remaining = [c for c in kept if c not in drop]
        start = np.array([params[kept.index(c)] for c in remaining])
        return likelihood.fit(design[remaining].to_numpy(dtype=float), start_params=start if remaining else None)[2]

    return CoxModel(
        params=pd.Series(params, index=kept).reindex(design.columns),
        cov=pd.DataFrame(cov, index=kept, columns=kept),
        loglik=llf,
        n=n,
        n_events=n_events,
        conf_level=conf_level,
        ties=ties,
        terms=infos,
        data=frame,
        refit_loglik=refit_loglik,
    )


# ==============================================================================
# Pairwise treatment comparison
# ==============================================================================


def s_coxph_pairwise(
    tte: Any,
    is_event: Any,
    arm: pd.Series,
    strata: pd.DataFrame | None = None,
    control: CoxControl | None = None,
) -> dict[str, Any]:
    """
    Hazard ratio of the second arm level versus the first with its p-value.

    The p-value is a (stratified) log-rank, Wald or likelihood-ratio test
    depending on ``control.pval_method``.
    """
    control = control or control_coxph()
    arm = arm_factor(pd.Series(arm).reset_index(drop=True), n_levels=2)
    frame = pd.DataFrame(
        {
            "tte": pd.Series(tte).to_numpy(dtype=float),
            "is_event": pd.Series(is_event).to_numpy(),
            "arm": arm,
        }
    )
    strata_cols: list[str] = []
    if strata is not None:
        strata = pd.DataFrame(strata).reset_index(drop=True)
        strata_cols = [f"strata_{i}" for i in range(strata.shape[1])]
        for col, src in zip(strata_cols, strata.columns):
            frame[col] = strata[src].to_numpy()

    model = cox_fit(
        frame, "tte", "is_event", arm="arm", strata=strata_cols,
        ties=control.ties, conf_level=control.conf_level,
    )
    trt = arm.cat.categories[1]
    est = model.hazard_ratio({model.terms["arm"].level_columns[trt]: 1.0})

    if control.pval_method == "log-rank":
        complete = frame.dropna()
        pval = logrank_pvalue(
            complete["tte"], complete["is_event"].astype(bool), complete["arm"],
            strata=complete[strata_cols] if strata_cols else None,
        )
    else:
        pval = model.term_pvalue("arm", control.pval_method)

    return {
        "n_tot": model.n,
        "n_tot_events": model.n_events,
        "hr": est["hr"],
        "lcl": est["lcl"],
        "ucl": est["ucl"],
        "conf_level": control.conf_level,
        "pval": pval,
        "pval_label": f"p-value ({control.pval_method})",
    }


# ==============================================================================
# Cox regression summaries
# ==============================================================================


def _row(effect: str, term: str, term_label: str, row_kind: str, n: float = np.nan,
         hr: float = np.nan, lcl: float = np.nan, ucl: float = np.nan,
         pval: float = np.nan, pval_inter: float = np.nan) -> dict[str, Any]:
    return {
        "effect": effect, "term": term, "term_label": term_label, "row_kind": row_kind,
        "n": n, "hr": hr, "lcl": lcl, "ucl": ucl, "ci": (lcl, ucl),
        "pval": pval, "pval_inter": pval_inter,
    }


def _label(data: pd.DataFrame, column: str, labels: Mapping[str, str] | None) -> str:
    if labels and column in labels:
        return labels[column]
    return var_label(data, column)


def _check_roles(variables: VariableRoles, data: pd.DataFrame, control: CoxControl) -> None:
    variables.require("tte", "is_event")
    variables.validate(data)
    if variables.arm is not None:
        arm_factor(data[variables.arm], n_levels=None)
    if control.interaction:
        if variables.arm is None:
            raise IncompatibleModeError("To include interactions please specify 'arm' in variables")
        if len(arm_factor(data[variables.arm], n_levels=None).cat.categories) != 2:
            raise IncompatibleModeError("Interaction effects require a two-level arm")


def _arm_rows(model: CoxModel, arm: str, effect: str, term: str, main_label: str,
              control: CoxControl) -> list[dict[str, Any]]:
    """Treatment effect rows: a single contrast, or an overall row plus one row per contrast."""
    info = model.terms[arm]
    ref = info.ref
    if len(info.levels) == 2:
        trt = info.levels[1]
        est = model.hazard_ratio({info.level_columns[trt]: 1.0})
        pval = model.term_pvalue(arm, control.pval_method)
        return [_row(effect, term, f"{trt} vs control ({ref})", "main", model.n, pval=pval, **est)]

    rows = [_row(effect, term, main_label, "main", model.n,
                 pval=model.term_pvalue(arm, control.pval_method))]
    for level, col in info.level_columns.items():
        est = model.hazard_ratio({col: 1.0})
        rows.append(_row(effect, term, f"{level} vs control ({ref})", "level", model.n,
                         pval=model.pvalue([col], control.pval_method), **est))
    return rows


def _factor_rows(model: CoxModel, term: str, effect: str, main_label: str, control: CoxControl,
                 level_label: Callable[[Any, Any], str]) -> list[dict[str, Any]]:
    info = model.terms[term]
    if info.kind == "numeric":
        est = model.hazard_ratio({term: 1.0})
        return [_row(effect, term, main_label, "main", model.n,
                     pval=model.term_pvalue(term, control.pval_method), **est)]
    rows = [_row(effect, term, main_label, "main", model.n,
                 pval=model.term_pvalue(term, control.pval_method))]
    for level, col in info.level_columns.items():
        est = model.hazard_ratio({col: 1.0})
        rows.append(_row(effect, term, level_label(level, info.ref), "level", model.n,
                         pval=model.pvalue([col], control.pval_method), **est))
    return rows


def fit_coxreg_univar(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    at: Mapping[str, Sequence[float]] | None = None,
    control: CoxControl | None = None,
    labels: Mapping[str, str] | None = None,
) -> pd.DataFrame:
    """
    Univariable Cox regressions, one model per covariate.

    With an arm, the Treatment rows come from ``time ~ arm`` and each covariate
    row reports the arm effect adjusted for (or, with interaction, within the
    levels of) that covariate. Without an arm each covariate is modelled alone.
    """
    variables = as_roles(variables)
    control = control or control_coxreg()
    _check_roles(variables, data, control)
    at = at or {}
    arm = variables.arm
    rows: list[dict[str, Any]] = []

    def _fit(terms_cov: list[str], interaction: bool = False) -> CoxModel:
        return cox_fit(
            data, variables.tte, variables.is_event, arm=arm, covariates=terms_cov,
            strata=variables.strata, ties=control.ties, conf_level=control.conf_level,
            interaction=interaction,
        )

    if arm is None:
        for cov in variables.covariates:
            model = cox_fit(
                data, variables.tte, variables.is_event, covariates=[cov],
                strata=variables.strata, ties=control.ties, conf_level=control.conf_level,
            )
            rows.extend(_factor_rows(model, cov, "Covariate:", _label(data, cov, labels), control,
                                     lambda level, ref: f"{level} vs. {ref}"))
        return pd.DataFrame(rows, columns=TIDY_COLUMNS)

    arm_label = _label(data, arm, labels)
    rows.extend(_arm_rows(_fit([]), arm, "Treatment:", arm, arm_label, control))

    for cov in variables.covariates:
        cov_label = _label(data, cov, labels)
        if not control.interaction:
            rows.extend(_arm_rows(_fit([cov]), arm, "Covariate:", cov, cov_label, control))
            continue
        model = _fit([cov], interaction=True)
        pval_inter = model.term_pvalue(f"{arm}:{cov}", control.pval_method)
        rows.append(_row("Covariate:", cov, cov_label, "main", model.n, pval_inter=pval_inter))
        for level_label, est in model.interaction_effects(arm, cov, at.get(cov)):
            rows.append(_row("Covariate:", cov, level_label, "level", model.n, **est))

    return pd.DataFrame(rows, columns=TIDY_COLUMNS)


def fit_coxreg_multivar(
    variables: VariableRoles | Mapping[str, Any],
    data: pd.DataFrame,
    control: CoxControl | None = None,
    labels: Mapping[str, str] | None = None,
) -> pd.DataFrame:
    """
    One Cox model with the arm and all covariates.

    Factor terms get a ``"<label> (reference = <ref>)"`` row with the overall
    p-value followed by one row per non-reference level; numeric terms get a
    single row.
    """
    variables = as_roles(variables)
    control = control or control_coxreg()
    if control.interaction:
        raise IncompatibleModeError("Interactions are not available for multivariable Cox regression")
    _check_roles(variables, data, control)

    model = cox_fit(
        data, variables.tte, variables.is_event, arm=variables.arm,
        covariates=variables.covariates, strata=variables.strata,
        ties=control.ties, conf_level=control.conf_level,
    )

    rows: list[dict[str, Any]] = []
    terms = ([("Treatment:", variables.arm)] if variables.arm is not None else []) + [
        ("Covariate:", cov) for cov in variables.covariates
    ]
    for effect, term in terms:
        label = _label(data, term, labels)
        if model.terms[term].kind == "factor":
            label = f"{label} (reference = {model.terms[term].ref})"
        rows.extend(_factor_rows(model, term, effect, label, control, lambda level, ref: str(level)))
    return pd.DataFrame(rows, columns=TIDY_COLUMNS)


WHICH_VARS = ("all", "var_main", "inter", "multi_lvl")


def s_coxreg(
    model_df: pd.DataFrame,
    stat: str,
    which_vars: str = "all",
    var_nms: Sequence[str] | None = None,
) -> dict[str, dict[str, Any]]:
    """
    Select rows of a tidy Cox regression frame as ``{term: {term_label: value}}``.

    ``var_main`` keeps the first (main) row of each term; ``inter`` and
    ``multi_lvl`` keep the level rows.
    """
    if which_vars not in WHICH_VARS:
        raise InvalidConfigurationError(f"which_vars must be one of {WHICH_VARS}")
    if stat not in model_df.columns:
        raise InvalidConfigurationError(f"Unknown statistic '{stat}'")

    rows = model_df
    if var_nms:
        rows = rows[rows["term"].isin(list(var_nms))]

    result: dict[str, dict[str, Any]] = {}
    for term in pd.unique(rows["term"]):
        block = rows[rows["term"] == term]
        if which_vars == "var_main":
            block = block.iloc[:1]
        elif which_vars in ("inter", "multi_lvl"):
            block = block[block["row_kind"] == "level"]
        result[term] = dict(zip(block["term_label"], block[stat]))
    return result
