"""
🧪 Pytest Configuration for tlgstats Tests

Shared synthetic datasets for the unit and integration suites:
- small survival trial with arm, subgroups, strata and biomarkers
- small response trial with the same layout
"""

import warnings

import numpy as np
import pandas as pd
import pytest

from tlgstats.exceptions import DegenerateDataWarning
from tlgstats.variables import with_labels

# ============================================================================
# 📦 Synthetic Trial Data
# ============================================================================


@pytest.fixture
def survival_data():
    """Two-arm survival trial with factor, logical and numeric baseline columns."""
    rng = np.random.default_rng(42)
    n = 160

    arm = rng.choice(["A: Placebo", "B: Drug"], n)
    sex = rng.choice(["F", "M"], n)
    region = rng.choice(["Asia", "Europe", "America"], n)
    age = rng.normal(60, 8, n).round(0)
    bmrk = rng.normal(5, 1.5, n).round(2)

    log_hr = -0.5 * (arm == "B: Drug") + 0.02 * (age - 60)
    time = rng.exponential(12 / np.exp(log_hr)).round(1) + 0.1
    is_event = rng.random(n) < 0.75

    df = pd.DataFrame(
        {
            "ARM": pd.Categorical(arm, categories=["A: Placebo", "B: Drug"]),
            "SEX": pd.Categorical(sex, categories=["F", "M"]),
            "REGION": pd.Categorical(region, categories=["Asia", "Europe", "America"]),
            "AGE": age,
            "BMRK": bmrk,
            "AVAL": time,
            "is_event": is_event,
        }
    )
    return with_labels(
        df,
        {
            "ARM": "Treatment Arm",
            "SEX": "Sex",
            "REGION": "Region",
            "AGE": "Age",
            "BMRK": "Biomarker 1",
        },
    )


@pytest.fixture
def response_data():
    """Two-arm response trial with one factor subgroup and one continuous biomarker."""
    rng = np.random.default_rng(7)
    n = 200

    arm = rng.choice(["ARM A", "ARM B"], n)
    sex = rng.choice(["F", "M"], n)
    bmrk = rng.normal(0, 1, n)
    logit = -0.3 + 0.8 * (arm == "ARM B") + 0.5 * bmrk
    rsp = rng.random(n) < 1 / (1 + np.exp(-logit))

    df = pd.DataFrame(
        {
            "ARM": pd.Categorical(arm, categories=["ARM A", "ARM B"]),
            "SEX": pd.Categorical(sex, categories=["F", "M"]),
            "STRATA": rng.choice(["S1", "S2"], n),
            "BMRK": bmrk,
            "rsp": rsp,
        }
    )
    return with_labels(df, {"SEX": "Sex", "BMRK": "Biomarker 1"})


@pytest.fixture
def quiet_degenerate():
    """Silence DegenerateDataWarning inside a test."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DegenerateDataWarning)
        yield


# ============================================================================
# 🎨 Pytest Configuration & Markers
# ============================================================================


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
