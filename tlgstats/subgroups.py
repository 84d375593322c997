"""
Subgroup splitting and level-combination helpers.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import pandas as pd

from logger import get_logger
from tlgstats.exceptions import InvalidConfigurationError
from tlgstats.variables import as_factor, column_kind, ColumnKind, var_label

logger = get_logger(__name__)

GroupCombination = Mapping[str, Sequence[Any]]


@dataclass(frozen=True)
class SubgroupPartition:
    """Rows of one subgroup level (or combined group) with its label metadata."""

    df: pd.DataFrame
    subgroup: str
    var: str
    var_label: str

    @property
    def n(self) -> int:
        return len(self.df)


def split_by_subgroups(
    data: pd.DataFrame,
    subgroups: Sequence[str],
    groups_lists: Mapping[str, GroupCombination] | None = None,
) -> list[SubgroupPartition]:
    """
    Partition ``data`` by each subgroup variable in turn.

    Variables are visited in the given order and levels in factor-level order.
    When ``groups_lists`` holds a combination for a variable, one partition per
    named group is produced in declaration order instead. Levels without rows
    still yield a partition with an empty frame.
    """
    groups_lists = groups_lists or {}
    missing = [v for v in subgroups if v not in data.columns]
    if missing:
        raise InvalidConfigurationError(f"Subgroup variables not found in dataset: {missing}")

    partitions: list[SubgroupPartition] = []
    for var in subgroups:
        factor = as_factor(data[var])
        levels = list(factor.cat.categories)
        label = var_label(data, var)

        if var in groups_lists:
            for name, members in groups_lists[var].items():
                members = list(members)
                unknown = [m for m in members if m not in levels]
                if unknown:
                    raise InvalidConfigurationError(
                        f"Group '{name}' of '{var}' refers to unknown levels {unknown}"
                    )
                mask = factor.isin(members).to_numpy()
                partitions.append(SubgroupPartition(data.loc[mask], str(name), var, label))
        else:
            for level in levels:
                mask = (factor == level).to_numpy()
                partitions.append(SubgroupPartition(data.loc[mask], str(level), var, label))

    logger.debug(f"Split {len(data)} rows into {len(partitions)} subgroup partitions")
    return partitions


def combine_groups(
    fct: pd.Series | Sequence[Any],
    ref: Sequence[Any] | Any | None = None,
    collapse: str = "/",
) -> dict[str, list[Any]]:
    """
    Reference level(s) against all remaining levels.

    The first level is the reference when ``ref`` is not given. Group names are
    the member levels joined by ``collapse``.
    """
    series = fct if isinstance(fct, pd.Series) else pd.Series(list(fct))
    if column_kind(series) is not ColumnKind.FACTOR:
        logger.warning("combine_groups: input is not a factor, converting it")
    levels = list(as_factor(series).cat.categories)

    if ref is None:
        ref_levels = [levels[0]]
    else:
        ref_levels = [ref] if isinstance(ref, (str, int, float, bool)) else list(ref)
        unknown = [r for r in ref_levels if r not in levels]
        if unknown:
            raise InvalidConfigurationError(f"Reference level(s) {unknown} not in {levels}")

    comparison = [lvl for lvl in levels if lvl not in ref_levels]
    groups = [ref_levels, comparison]
    return {collapse.join(str(v) for v in g): g for g in groups}


def groups_list_to_df(groups: GroupCombination) -> pd.DataFrame:
    """One row per group with a syntactic ``valname``, ``label`` and ``levelcombo``."""
    labels = list(groups.keys())
    return pd.DataFrame(
        {
            "valname": [re.sub(r"[^0-9A-Za-z]", "", str(lbl)) for lbl in labels],
            "label": labels,
            "levelcombo": [list(groups[lbl]) for lbl in labels],
        }
    )


def combine_levels(
    series: pd.Series, levels: Sequence[Any], new_level: str | None = None
) -> pd.Series:
    """
    Merge ``levels`` of a factor into one level placed where the first of them was.
    """
    factor = as_factor(series)
    current = list(factor.cat.categories)
    levels = list(levels)
    unknown = [lvl for lvl in levels if lvl not in current]
    if unknown:
        raise InvalidConfigurationError(f"Levels {unknown} not in {current}")
    if new_level is None:
        new_level = "/".join(str(lvl) for lvl in levels)

    new_categories: list[Any] = []
    for lvl in current:
        target = new_level if lvl in levels else lvl
        if target not in new_categories:
            new_categories.append(target)

    values = factor.astype(object).map(lambda v: new_level if v in levels else v)
    return pd.Series(
        pd.Categorical(values, categories=new_categories),
        index=series.index,
        name=series.name,
    )
