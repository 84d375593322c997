"""
🧪 Unit Tests for Variable Roles and Column Kinds
File: tests/unit/test_variables.py

Run with: pytest tests/unit/test_variables.py -v
"""

import pandas as pd
import pytest

from tlgstats.exceptions import InvalidConfigurationError
from tlgstats.variables import (
    ColumnKind,
    VariableRoles,
    arm_factor,
    as_factor,
    as_logical,
    as_model_column,
    column_kind,
    var_label,
    var_labels,
    with_labels,
)

pytestmark = pytest.mark.unit


class TestVariableRoles:
    """Tests for VariableRoles."""

    def test_aliases(self):
        roles = VariableRoles.from_mapping({"time": "AVAL", "event": "EVNT", "arm": "ARM"})
        assert roles.tte == "AVAL"
        assert roles.is_event == "EVNT"
        assert roles.time == "AVAL"
        assert roles.event == "EVNT"

    def test_strat_is_deprecated(self):
        """🕰️ The legacy 'strat' key maps to strata with a warning"""
        with pytest.warns(DeprecationWarning):
            roles = VariableRoles.from_mapping({"strat": "REGION"})
        assert roles.strata == ["REGION"]

    def test_unknown_role(self):
        with pytest.raises(InvalidConfigurationError):
            VariableRoles.from_mapping({"outcome": "Y"})

    def test_list_roles_normalised(self):
        roles = VariableRoles(covariates="AGE", subgroups=None)
        assert roles.covariates == ["AGE"]
        assert roles.subgroups == []

    def test_columns_unique_and_ordered(self):
        roles = VariableRoles(arm="ARM", tte="T", is_event="E", covariates=["AGE", "ARM"], subgroups=["SEX"])
        assert roles.columns() == ["ARM", "T", "E", "AGE", "SEX"]

    def test_validate_missing_column(self):
        roles = VariableRoles(arm="ARM", covariates=["AGE"])
        with pytest.raises(InvalidConfigurationError, match="AGE"):
            roles.validate(pd.DataFrame({"ARM": ["A"]}))

    def test_require(self):
        with pytest.raises(InvalidConfigurationError):
            VariableRoles(arm="ARM").require("arm", "rsp")


class TestColumnKinds:
    """Tests for column_kind and the per-kind conversions."""

    @pytest.mark.parametrize(
        "series,kind",
        [
            (pd.Series([1.0, 2.5]), ColumnKind.NUMERIC),
            (pd.Series([True, False]), ColumnKind.LOGICAL),
            (pd.Series(pd.Categorical(["a", "b"])), ColumnKind.FACTOR),
            (pd.Series(["a", "b"]), ColumnKind.CHARACTER),
            (pd.Series(pd.to_datetime(["2024-01-01", "2024-02-01"])), ColumnKind.DATE),
        ],
    )
    def test_column_kind(self, series, kind):
        assert column_kind(series) is kind

    def test_factor_keeps_levels(self):
        series = pd.Series(pd.Categorical(["b", "a"], categories=["b", "a"]))
        assert list(as_factor(series).cat.categories) == ["b", "a"]

    def test_logical_factor_levels(self):
        assert list(as_factor(pd.Series([True, True])).cat.categories) == [False, True]

    def test_character_factor_sorted(self):
        assert list(as_factor(pd.Series(["z", "a", "m"])).cat.categories) == ["a", "m", "z"]

    def test_date_rejected(self):
        """❌ Dates cannot be used as model terms"""
        series = pd.Series(pd.to_datetime(["2024-01-01"]), name="DT")
        with pytest.raises(InvalidConfigurationError):
            as_model_column(series)

    def test_model_column_tags(self):
        assert as_model_column(pd.Series([1, 2]))[0] == "numeric"
        assert as_model_column(pd.Series(["a", "b"]))[0] == "factor"

    def test_as_logical(self):
        assert list(as_logical(pd.Series([0, 1, 1]))) == [False, True, True]
        with pytest.raises(InvalidConfigurationError):
            as_logical(pd.Series([0, 2]))

    def test_arm_factor_levels(self):
        with pytest.raises(InvalidConfigurationError):
            arm_factor(pd.Series(["A", "B", "C"]), n_levels=2)
        with pytest.raises(InvalidConfigurationError):
            arm_factor(pd.Series(["A", "A"]), n_levels=None)
        assert list(arm_factor(pd.Series(["B", "A"])).cat.categories) == ["A", "B"]


class TestLabels:
    """Tests for label helpers."""

    def test_fallback_to_name(self):
        df = with_labels(pd.DataFrame({"A": [1], "B": [2]}), {"A": "Alpha"})
        assert var_label(df, "A") == "Alpha"
        assert var_label(df, "B") == "B"
        assert var_labels(df) == {"A": "Alpha", "B": "B"}

    def test_with_labels_does_not_mutate(self):
        df = pd.DataFrame({"A": [1]})
        with_labels(df, {"A": "Alpha"})
        assert "labels" not in df.attrs
