"""
Logistic regression for response biomarkers.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from statsmodels.discrete.conditional_models import ConditionalLogit
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from logger import get_logger
from tlgstats.design import build_design, independent_columns
from tlgstats.exceptions import warn_degenerate
from tlgstats.variables import as_logical

logger = get_logger(__name__)


def logistic_fit(
    data: pd.DataFrame,
    response: str,
    term: str,
    covariates: Sequence[str] = (),
    strata: Sequence[str] = (),
    conf_level: float = 0.95,
) -> dict[str, float]:
    """
    Odds ratio per unit of ``term`` from ``response ~ term + covariates``.

    With strata the model is a conditional logistic regression grouped by the
    strata. Separation or a singular design gives missing values.
    """
    empty = {"or": np.nan, "lcl": np.nan, "ucl": np.nan, "pval": np.nan}
    used = list(dict.fromkeys([response, term, *covariates, *strata]))
    frame = data[used].dropna()
    if frame.empty:
        warn_degenerate(f"No complete observations for logistic model of '{term}'")
        return empty

    y = as_logical(frame[response]).to_numpy(dtype=float)
    design, _ = build_design(frame, [term, *covariates])
    kept = independent_columns(design)
    if term not in kept or y.min() == y.max():
        warn_degenerate(f"Logistic model of '{term}' is not estimable")
        return empty

    x = design[kept]
    try:
        if strata:
            groups = pd.factorize(frame[list(strata)].astype(str).agg("\x1f".join, axis=1))[0]
            result = ConditionalLogit(y, x.to_numpy(), groups=groups).fit(disp=False)
            params = pd.Series(np.asarray(result.params), index=kept)
            bse = pd.Series(np.asarray(result.bse), index=kept)
        else:
            result = sm.Logit(y, sm.add_constant(x, has_constant="add")).fit(disp=0)
            params, bse = result.params, result.bse
    except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as e:
        logger.debug(f"Logistic fit for '{term}' failed: {e}")
        warn_degenerate(f"Logistic model of '{term}' failed: {e}")
        return empty

    est, se = float(params[term]), float(bse[term])
    if not (np.isfinite(est) and np.isfinite(se)):
        warn_degenerate(f"Logistic model of '{term}' did not converge")
        return empty
    logger.log_analysis("Logistic regression", response, len(kept), len(frame))

    z = float(stats.norm.ppf((1 + conf_level) / 2))
    return {
        "or": float(np.exp(est)),
        "lcl": float(np.exp(est - z * se)),
        "ucl": float(np.exp(est + z * se)),
        "pval": float(2 * stats.norm.sf(abs(est / se))),
    }
