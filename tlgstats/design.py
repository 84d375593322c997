"""
Model design matrices for Cox and logistic fits.

Factor terms are treatment-coded against their first level. Interaction terms
are products of the arm indicator columns with the covariate columns.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from logger import get_logger
from tlgstats.variables import as_model_column

logger = get_logger(__name__)


@dataclass
class TermInfo:
    """Design columns belonging to one model term."""

    name: str
    kind: str  # numeric, factor or interaction
    columns: list[str] = field(default_factory=list)
    levels: list[Any] = field(default_factory=list)
    level_columns: dict[Any, str] = field(default_factory=dict)
    parents: tuple[str, ...] = ()

    @property
    def ref(self) -> Any:
        return self.levels[0] if self.levels else None


def column_name(term: str, level: Any = None) -> str:
    return term if level is None else f"{term}[{level}]"


def build_design(
    data: pd.DataFrame,
    terms: Sequence[str],
    interactions: Sequence[tuple[str, str]] = (),
) -> tuple[pd.DataFrame, dict[str, TermInfo]]:
    """
    Expand ``terms`` of ``data`` into a float design matrix.

    Returns the matrix and a mapping from term name to its TermInfo. Interaction
    terms are keyed ``"a:b"``.
    """
    blocks: list[pd.DataFrame] = []
    infos: dict[str, TermInfo] = {}

    for term in terms:
        tag, values = as_model_column(data[term])
        if tag == "numeric":
            block = pd.DataFrame({term: values.to_numpy(dtype=float)}, index=data.index)
            infos[term] = TermInfo(term, "numeric", [term])
        else:
            levels = list(values.cat.categories)
            level_columns = {lvl: column_name(term, lvl) for lvl in levels[1:]}
            block = pd.DataFrame(
                {col: (values == lvl).to_numpy(dtype=float) for lvl, col in level_columns.items()},
                index=data.index,
            )
            infos[term] = TermInfo(term, "factor", list(level_columns.values()), levels, level_columns)
        blocks.append(block)

    design = pd.concat(blocks, axis=1) if blocks else pd.DataFrame(index=data.index)

    for left, right in interactions:
        name = f"{left}:{right}"
        products = {}
        for lcol in infos[left].columns:
            for rcol in infos[right].columns:
                products[f"{lcol}:{rcol}"] = design[lcol] * design[rcol]
        block = pd.DataFrame(products, index=data.index)
        design = pd.concat([design, block], axis=1)
        infos[name] = TermInfo(name, "interaction", list(products), parents=(left, right))

    return design, infos


def independent_columns(design: pd.DataFrame, with_intercept: bool = True) -> list[str]:
    """
    Columns that are not constant and not linearly dependent on earlier columns.

    An implicit intercept is included in the rank check because the partial
    likelihood is invariant to constant shifts.
    """
    kept: list[str] = []
    base = [np.ones(len(design))] if with_intercept else []
    rank = np.linalg.matrix_rank(np.column_stack(base)) if base else 0
    for col in design.columns:
        values = design[col].to_numpy(dtype=float)
        candidate = np.column_stack(base + [design[c].to_numpy(dtype=float) for c in kept] + [values])
        new_rank = np.linalg.matrix_rank(candidate)
        if new_rank > rank:
            kept.append(col)
            rank = new_rank
        else:
            logger.debug(f"Dropping aliased design column '{col}'")
    return kept
