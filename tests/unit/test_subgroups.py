"""
🧪 Unit Tests for Subgroup Splitting
File: tests/unit/test_subgroups.py

Tests tlgstats/subgroups.py:
- split_by_subgroups: ordering, empty levels, combined groups
- combine_groups / groups_list_to_df / combine_levels

Run with: pytest tests/unit/test_subgroups.py -v
"""

import pandas as pd
import pytest

from tlgstats.exceptions import InvalidConfigurationError
from tlgstats.subgroups import (
    combine_groups,
    combine_levels,
    groups_list_to_df,
    split_by_subgroups,
)
from tlgstats.variables import with_labels

pytestmark = pytest.mark.unit


@pytest.fixture
def small_data():
    df = pd.DataFrame(
        {
            "SEX": pd.Categorical(["M", "F", "M", "F", "M"], categories=["M", "F"]),
            "RACE": pd.Categorical(
                ["Asian", "White", "White", "Asian", "White"],
                categories=["White", "Asian", "Other"],
            ),
            "GRADE": ["II", "I", "III", "I", "II"],
        }
    )
    return with_labels(df, {"SEX": "Sex"})


class TestSplitBySubgroups:
    """Tests for split_by_subgroups."""

    def test_order_follows_variables_then_levels(self, small_data):
        """📋 Variables in caller order, levels in factor order"""
        parts = split_by_subgroups(small_data, ["SEX", "RACE"])
        assert [(p.var, p.subgroup) for p in parts] == [
            ("SEX", "M"),
            ("SEX", "F"),
            ("RACE", "White"),
            ("RACE", "Asian"),
            ("RACE", "Other"),
        ]

    def test_labels(self, small_data):
        parts = split_by_subgroups(small_data, ["SEX", "RACE"])
        assert parts[0].var_label == "Sex"
        assert parts[-1].var_label == "RACE"

    def test_empty_level_kept(self, small_data):
        """🕳️ A level without rows gives an empty partition"""
        parts = split_by_subgroups(small_data, ["RACE"])
        other = parts[-1]
        assert other.subgroup == "Other"
        assert other.n == 0
        assert list(other.df.columns) == list(small_data.columns)

    def test_character_column_sorted(self, small_data):
        parts = split_by_subgroups(small_data, ["GRADE"])
        assert [p.subgroup for p in parts] == ["I", "II", "III"]
        assert [p.n for p in parts] == [2, 2, 1]

    def test_rows_partitioned(self, small_data):
        parts = split_by_subgroups(small_data, ["SEX"])
        assert sum(p.n for p in parts) == len(small_data)

    def test_groups_lists(self, small_data):
        """🧩 Combined groups in declaration order"""
        groups = {"GRADE": {"III": ["III"], "I/II": ["I", "II"]}}
        parts = split_by_subgroups(small_data, ["GRADE"], groups)
        assert [p.subgroup for p in parts] == ["III", "I/II"]
        assert [p.n for p in parts] == [1, 4]

    def test_groups_lists_unknown_level(self, small_data):
        with pytest.raises(InvalidConfigurationError):
            split_by_subgroups(small_data, ["GRADE"], {"GRADE": {"IV": ["IV"]}})

    def test_missing_variable(self, small_data):
        with pytest.raises(InvalidConfigurationError):
            split_by_subgroups(small_data, ["AGE"])


class TestCombineGroups:
    """Tests for combine_groups and friends."""

    def test_default_reference(self):
        fct = pd.Series(pd.Categorical(["A", "B", "C"], categories=["A", "B", "C"]))
        assert combine_groups(fct) == {"A": ["A"], "B/C": ["B", "C"]}

    def test_explicit_reference(self):
        fct = pd.Series(pd.Categorical(["A", "B", "C"]))
        assert combine_groups(fct, ref=["A", "B"]) == {"A/B": ["A", "B"], "C": ["C"]}

    def test_collapse(self):
        fct = pd.Series(pd.Categorical(["A", "B", "C"]))
        assert "B|C" in combine_groups(fct, collapse="|")

    def test_character_input(self):
        """🔁 Non-factor input is converted"""
        assert combine_groups(["y", "x", "z"], ref="y") == {"y": ["y"], "x/z": ["x", "z"]}

    def test_unknown_reference(self):
        with pytest.raises(InvalidConfigurationError):
            combine_groups(pd.Series(pd.Categorical(["A", "B"])), ref="Z")

    def test_groups_list_to_df(self):
        groups = {"A": ["A"], "B/C": ["B", "C"]}
        df = groups_list_to_df(groups)
        assert list(df.columns) == ["valname", "label", "levelcombo"]
        assert list(df["valname"]) == ["A", "BC"]
        assert df["levelcombo"].iloc[1] == ["B", "C"]

    def test_combine_levels(self):
        series = pd.Series(pd.Categorical(["a", "b", "c", "a"], categories=["a", "b", "c"]))
        out = combine_levels(series, ["b", "c"], "b+c")
        assert list(out.cat.categories) == ["a", "b+c"]
        assert list(out) == ["a", "b+c", "b+c", "a"]

    def test_combine_levels_default_name(self):
        series = pd.Series(pd.Categorical(["a", "b", "c"]))
        out = combine_levels(series, ["a", "c"])
        assert list(out.cat.categories) == ["a/c", "b"]

    def test_combine_levels_unknown(self):
        with pytest.raises(InvalidConfigurationError):
            combine_levels(pd.Series(pd.Categorical(["a"])), ["z"])
