"""
🧪 Unit Tests for Cox Models
File: tests/unit/test_cox.py

Tests tlgstats/cox.py:
- CoxControl validation and defaults
- cox_fit backends (efron, breslow, exact) and degenerate input
- s_coxph_pairwise treatment comparison
- fit_coxreg_univar / fit_coxreg_multivar row contracts
- s_coxreg row selection

Run with: pytest tests/unit/test_cox.py -v
"""

import numpy as np
import pandas as pd
import pytest
from lifelines import CoxPHFitter

from tlgstats.cox import (
    TIDY_COLUMNS,
    CoxControl,
    control_coxph,
    control_coxreg,
    cox_fit,
    fit_coxreg_multivar,
    fit_coxreg_univar,
    s_coxph_pairwise,
    s_coxreg,
)
from tlgstats.exceptions import (
    DegenerateDataWarning,
    IncompatibleModeError,
    InvalidConfigurationError,
    UnsupportedMethodError,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def untied_data():
    """Survival data without tied event times."""
    rng = np.random.default_rng(3)
    n = 120
    arm = rng.choice(["A", "B"], n)
    x = rng.normal(size=n)
    time = rng.exponential(10 / np.exp(-0.6 * (arm == "B") + 0.3 * x))
    return pd.DataFrame(
        {
            "time": time,
            "event": rng.random(n) < 0.8,
            "arm": pd.Categorical(arm, categories=["A", "B"]),
            "x": x,
        }
    )


# ============================================================================
# Control options
# ============================================================================


class TestCoxControl:
    """Tests for CoxControl, control_coxph and control_coxreg."""

    def test_coxph_defaults(self):
        control = control_coxph()
        assert control.pval_method == "log-rank"
        assert control.ties == "efron"
        assert control.conf_level == 0.95

    def test_coxreg_defaults(self):
        control = control_coxreg()
        assert control.pval_method == "wald"
        assert control.ties == "exact"
        assert control.interaction is False

    def test_unknown_ties(self):
        """❌ Unknown ties method"""
        with pytest.raises(UnsupportedMethodError):
            CoxControl(ties="kalbfleisch")

    def test_unknown_pval_method(self):
        with pytest.raises(UnsupportedMethodError):
            CoxControl(pval_method="score")

    def test_bad_conf_level(self):
        with pytest.raises(InvalidConfigurationError):
            CoxControl(conf_level=1.5)

    def test_coxreg_rejects_logrank(self):
        with pytest.raises(UnsupportedMethodError):
            control_coxreg(pval_method="log-rank")


# ============================================================================
# Model fitting
# ============================================================================


class TestCoxFit:
    """Tests for cox_fit."""

    def test_efron_matches_lifelines(self, untied_data):
        """🔬 Efron estimates agree with lifelines"""
        model = cox_fit(untied_data, "time", "event", arm="arm", covariates=["x"], ties="efron")

        ref = pd.DataFrame(
            {
                "time": untied_data["time"],
                "event": untied_data["event"].astype(int),
                "armB": (untied_data["arm"] == "B").astype(float),
                "x": untied_data["x"],
            }
        )
        cph = CoxPHFitter().fit(ref, duration_col="time", event_col="event")
        assert model.params["arm[B]"] == pytest.approx(cph.params_["armB"], abs=1e-4)
        assert model.params["x"] == pytest.approx(cph.params_["x"], abs=1e-4)

    def test_ties_methods_agree_without_ties(self, untied_data):
        """🤝 Without tied times all ties methods give the same fit"""
        fits = {
            ties: cox_fit(untied_data, "time", "event", arm="arm", ties=ties).params["arm[B]"]
            for ties in ("efron", "breslow", "exact")
        }
        assert fits["breslow"] == pytest.approx(fits["efron"], abs=1e-5)
        assert fits["exact"] == pytest.approx(fits["efron"], abs=1e-4)

    def test_hazard_ratio_interval(self, survival_data):
        model = cox_fit(survival_data, "AVAL", "is_event", arm="ARM", ties="exact")
        est = model.hazard_ratio({"ARM[B: Drug]": 1.0})
        assert est["lcl"] < est["hr"] < est["ucl"]

    def test_wald_and_likelihood_pvalues(self, survival_data):
        model = cox_fit(survival_data, "AVAL", "is_event", arm="ARM", covariates=["SEX"], ties="efron")
        wald = model.term_pvalue("ARM", "wald")
        lrt = model.term_pvalue("ARM", "likelihood")
        assert 0 <= wald <= 1
        assert 0 <= lrt <= 1

    def test_tidy_frame(self, survival_data):
        model = cox_fit(survival_data, "AVAL", "is_event", arm="ARM", covariates=["AGE"], ties="breslow")
        tidy = model.tidy()
        assert list(tidy.columns) == ["term", "estimate", "std_error", "hr", "lcl", "ucl", "pval"]
        assert list(tidy["term"]) == ["ARM[B: Drug]", "AGE"]

    def test_no_events_is_degenerate(self, survival_data):
        """⚠️ Zero events gives an all-missing model and a warning"""
        df = survival_data.assign(is_event=False)
        with pytest.warns(DegenerateDataWarning):
            model = cox_fit(df, "AVAL", "is_event", arm="ARM")
        assert model.is_degenerate
        assert np.isnan(model.hazard_ratio({"ARM[B: Drug]": 1.0})["hr"])

    def test_empty_data_is_degenerate(self, survival_data):
        with pytest.warns(DegenerateDataWarning):
            model = cox_fit(survival_data.iloc[:0], "AVAL", "is_event", arm="ARM")
        assert model.n == 0
        assert model.is_degenerate

    def test_constant_covariate_is_dropped(self, survival_data):
        """🧹 A constant covariate is dropped and the arm is still estimated"""
        df = survival_data.assign(CONST=1.0)
        model = cox_fit(df, "AVAL", "is_event", arm="ARM", covariates=["CONST"], ties="efron")
        assert "CONST" not in model.fitted_columns
        assert np.isfinite(model.params["ARM[B: Drug]"])

    def test_interaction_requires_arm(self, survival_data):
        with pytest.raises(IncompatibleModeError):
            cox_fit(survival_data, "AVAL", "is_event", covariates=["SEX"], interaction=True)

    def test_unknown_ties(self, survival_data):
        with pytest.raises(UnsupportedMethodError):
            cox_fit(survival_data, "AVAL", "is_event", arm="ARM", ties="average")

    def test_interaction_effects_numeric_default_median(self, survival_data):
        model = cox_fit(
            survival_data, "AVAL", "is_event", arm="ARM", covariates=["AGE"],
            ties="efron", interaction=True,
        )
        effects = model.interaction_effects("ARM", "AGE")
        assert len(effects) == 1
        assert effects[0][0] == f"{survival_data['AGE'].median():g}"


class TestCoxphPairwise:
    """Tests for s_coxph_pairwise."""

    def test_logrank_result(self, survival_data):
        df = survival_data
        res = s_coxph_pairwise(df["AVAL"], df["is_event"], df["ARM"])
        assert res["n_tot"] == len(df)
        assert res["n_tot_events"] == int(df["is_event"].sum())
        assert res["pval_label"] == "p-value (log-rank)"
        assert res["lcl"] < res["hr"] < res["ucl"]

    @pytest.mark.parametrize("method", ["wald", "likelihood"])
    def test_model_pvalues(self, survival_data, method):
        df = survival_data
        res = s_coxph_pairwise(df["AVAL"], df["is_event"], df["ARM"], control=control_coxph(pval_method=method))
        assert res["pval_label"] == f"p-value ({method})"
        assert 0 <= res["pval"] <= 1

    def test_stratified(self, survival_data):
        df = survival_data
        res = s_coxph_pairwise(df["AVAL"], df["is_event"], df["ARM"], strata=df[["SEX"]])
        assert np.isfinite(res["hr"])
        assert 0 <= res["pval"] <= 1

    def test_three_arms_rejected(self, survival_data):
        arm = pd.Series(np.resize(["A", "B", "C"], len(survival_data)))
        with pytest.raises(InvalidConfigurationError):
            s_coxph_pairwise(survival_data["AVAL"], survival_data["is_event"], arm)


# ============================================================================
# Cox regression summaries
# ============================================================================


class TestCoxregUnivar:
    """Branch contracts of fit_coxreg_univar."""

    def test_with_arm_no_interaction(self, survival_data):
        """1️⃣ Treatment row then one adjusted arm row per covariate"""
        variables = {"tte": "AVAL", "is_event": "is_event", "arm": "ARM", "covariates": ["SEX", "AGE"]}
        res = fit_coxreg_univar(variables, survival_data)
        assert list(res.columns) == TIDY_COLUMNS
        assert list(res["term"]) == ["ARM", "SEX", "AGE"]
        assert list(res["effect"]) == ["Treatment:", "Covariate:", "Covariate:"]
        assert res["term_label"].iloc[0] == "B: Drug vs control (A: Placebo)"
        assert (res["row_kind"] == "main").all()
        assert (res["n"] == len(survival_data)).all()

    def test_with_interaction(self, survival_data):
        """2️⃣ Main row with interaction p-value and one row per level"""
        variables = {"tte": "AVAL", "is_event": "is_event", "arm": "ARM", "covariates": ["SEX", "AGE"]}
        res = fit_coxreg_univar(
            variables, survival_data, at={"AGE": [50, 65]}, control=control_coxreg(interaction=True)
        )
        sex = res[res["term"] == "SEX"]
        assert list(sex["row_kind"]) == ["main", "level", "level"]
        assert list(sex["term_label"]) == ["Sex", "F", "M"]
        assert 0 <= sex["pval_inter"].iloc[0] <= 1
        age = res[res["term"] == "AGE"]
        assert list(age["term_label"]) == ["Age", "50", "65"]

    def test_without_arm(self, survival_data):
        """3️⃣ Each covariate modelled alone"""
        variables = {"tte": "AVAL", "is_event": "is_event", "covariates": ["REGION", "AGE"]}
        res = fit_coxreg_univar(variables, survival_data)
        region = res[res["term"] == "REGION"]
        assert list(region["term_label"]) == ["Region", "Europe vs. Asia", "America vs. Asia"]
        assert np.isnan(region["hr"].iloc[0])
        assert 0 <= region["pval"].iloc[0] <= 1
        age = res[res["term"] == "AGE"]
        assert len(age) == 1
        assert np.isfinite(age["hr"].iloc[0])

    def test_interaction_without_arm(self, survival_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "covariates": ["SEX"]}
        with pytest.raises(IncompatibleModeError):
            fit_coxreg_univar(variables, survival_data, control=control_coxreg(interaction=True))

    def test_multilevel_arm(self, survival_data):
        """🔀 More than two arms: overall row plus one row per contrast"""
        df = survival_data.assign(ARM3=pd.Categorical(np.resize(["X", "Y", "Z"], len(survival_data))))
        variables = {"tte": "AVAL", "is_event": "is_event", "arm": "ARM3"}
        res = fit_coxreg_univar(variables, df)
        assert list(res["term_label"]) == ["ARM3", "Y vs control (X)", "Z vs control (X)"]
        assert list(res["row_kind"]) == ["main", "level", "level"]

    def test_missing_column(self, survival_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "arm": "ARM", "covariates": ["NOPE"]}
        with pytest.raises(InvalidConfigurationError):
            fit_coxreg_univar(variables, survival_data)


class TestCoxregMultivar:
    """Branch contract of fit_coxreg_multivar."""

    def test_rows(self, survival_data):
        """4️⃣ Reference rows for factors, single rows for numerics"""
        variables = {"tte": "AVAL", "is_event": "is_event", "arm": "ARM", "covariates": ["SEX", "AGE"]}
        res = fit_coxreg_multivar(variables, survival_data)
        assert list(res["term_label"]) == [
            "Treatment Arm (reference = A: Placebo)",
            "B: Drug",
            "Sex (reference = F)",
            "M",
            "Age",
        ]
        assert list(res["row_kind"]) == ["main", "level", "main", "level", "main"]

    def test_label_override(self, survival_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "arm": "ARM", "covariates": ["SEX"]}
        res = fit_coxreg_multivar(variables, survival_data, labels={"SEX": "Gender"})
        assert "Gender (reference = F)" in list(res["term_label"])

    def test_interaction_rejected(self, survival_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "arm": "ARM", "covariates": ["SEX"]}
        with pytest.raises(IncompatibleModeError):
            fit_coxreg_multivar(variables, survival_data, control=control_coxreg(interaction=True))


class TestSCoxreg:
    """Tests for s_coxreg row selection."""

    @pytest.fixture
    def model_df(self, survival_data):
        variables = {"tte": "AVAL", "is_event": "is_event", "arm": "ARM", "covariates": ["SEX", "AGE"]}
        return fit_coxreg_multivar(variables, survival_data, control=control_coxreg(ties="efron"))

    def test_all(self, model_df):
        res = s_coxreg(model_df, "hr")
        assert list(res) == ["ARM", "SEX", "AGE"]
        assert list(res["SEX"]) == ["Sex (reference = F)", "M"]

    def test_var_main(self, model_df):
        res = s_coxreg(model_df, "pval", which_vars="var_main")
        assert all(len(v) == 1 for v in res.values())

    def test_multi_lvl(self, model_df):
        res = s_coxreg(model_df, "hr", which_vars="multi_lvl", var_nms=["SEX"])
        assert list(res) == ["SEX"]
        assert list(res["SEX"]) == ["M"]

    def test_unknown_stat(self, model_df):
        with pytest.raises(InvalidConfigurationError):
            s_coxreg(model_df, "odds")

    def test_unknown_selection(self, model_df):
        with pytest.raises(InvalidConfigurationError):
            s_coxreg(model_df, "hr", which_vars="some")
