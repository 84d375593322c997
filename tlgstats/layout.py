"""
Minimal table layout engine.

A TableBuilder collects column splits, row splits and cell callbacks and then
builds a Table from a DataFrame. Cell callbacks receive the rows of the current
row group and column and return an ordered mapping of row label to raw value.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Callable

import numpy as np
import pandas as pd

from config import CONFIG
from logger import get_logger
from tlgstats.exceptions import InvalidConfigurationError
from tlgstats.formatting import Format, format_value
from tlgstats.variables import var_label

logger = get_logger(__name__)

ROW_TYPES = ("label", "content", "data")


@dataclass
class ColumnSpec:
    """One displayed column: a statistic, optionally within a column split value."""

    stat: str
    label: str
    format: Format = None
    var: str | None = None
    value: Any = None
    group: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def header(self) -> str:
        return self.label if self.group is None else f"{self.group}: {self.label}"


@dataclass
class CellValue:
    """Raw value returned by a cell callback with an optional extra indent."""

    value: Any
    indent_mod: int = 0


@dataclass
class CellContext:
    stat: str
    column: ColumnSpec
    row_path: tuple[tuple[str | None, Any], ...]
    label: str | None
    extra: dict[str, Any]


CellFunction = Callable[[pd.DataFrame, CellContext], Mapping[str, Any]]


@dataclass
class TableRow:
    label: str
    row_type: str
    indent: int
    values: list[Any]
    formatted: list[str]


class Table:
    """Built table: ordered rows, ordered columns and free-form annotations."""

    def __init__(self, columns: Sequence[ColumnSpec], rows: Sequence[TableRow], attrs: dict | None = None):
        self.columns = list(columns)
        self.rows = list(rows)
        self.attrs: dict[str, Any] = dict(attrs or {})

    @property
    def ncol(self) -> int:
        return len(self.columns)

    @property
    def nrow(self) -> int:
        return len(self.rows)

    @property
    def row_labels(self) -> list[str]:
        return [row.label for row in self.rows]

    @property
    def column_labels(self) -> list[str]:
        return [col.header for col in self.columns]

    def select_columns(self, indices: Sequence[int]) -> Table:
        indices = list(indices)
        rows = [
            replace(
                row,
                values=[row.values[i] for i in indices],
                formatted=[row.formatted[i] for i in indices],
            )
            for row in self.rows
        ]
        return Table([self.columns[i] for i in indices], rows, self.attrs)

    def to_frame(self, formatted: bool = True) -> pd.DataFrame:
        """One line per row with ``label``, ``row_type``, ``indent`` and the cells."""
        headers = self.column_labels
        records = []
        for row in self.rows:
            record = {"label": row.label, "row_type": row.row_type, "indent": row.indent}
            record.update(zip(headers, row.formatted if formatted else row.values))
            records.append(record)
        return pd.DataFrame(records, columns=["label", "row_type", "indent", *headers])

    def __str__(self) -> str:
        labels = ["  " * row.indent + row.label for row in self.rows]
        label_width = max([len(lbl) for lbl in labels] + [0])
        widths = [
            max([len(col.header)] + [len(row.formatted[i]) for row in self.rows])
            for i, col in enumerate(self.columns)
        ]
        header = " " * label_width + "".join(f"   {h:>{w}}" for h, w in zip(self.column_labels, widths))
        lines = [header, "-" * len(header)]
        for label, row in zip(labels, self.rows):
            cells = "".join(f"   {c:>{w}}" for c, w in zip(row.formatted, widths))
            lines.append(f"{label:<{label_width}}{cells}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Table({self.nrow} rows x {self.ncol} columns)"


def cbind_tables(*tables: Table) -> Table:
    """Place tables side by side; all must have the same row structure."""
    tables = [t for t in tables if t is not None]
    if not tables:
        raise InvalidConfigurationError("cbind_tables needs at least one table")
    first = tables[0]
    for other in tables[1:]:
        if other.row_labels != first.row_labels:
            raise InvalidConfigurationError("Tables to combine by column must have identical rows")

    rows = []
    for i, row in enumerate(first.rows):
        values, formatted = [], []
        for table in tables:
            values.extend(table.rows[i].values)
            formatted.extend(table.rows[i].formatted)
        rows.append(replace(row, values=values, formatted=formatted))
    columns = [col for table in tables for col in table.columns]
    return Table(columns, rows)


def rbind_tables(tables: Sequence[Table], labels: Sequence[str] | None = None) -> Table:
    """
    Stack tables with identical columns, optionally under one label row each.
    """
    tables = list(tables)
    if not tables:
        raise InvalidConfigurationError("rbind_tables needs at least one table")
    ncol = tables[0].ncol
    if any(t.ncol != ncol for t in tables):
        raise InvalidConfigurationError("Tables to combine by row must have the same columns")
    if labels is not None and len(labels) != len(tables):
        raise InvalidConfigurationError("One label per table is required")

    rows: list[TableRow] = []
    for i, table in enumerate(tables):
        shift = 0
        if labels is not None:
            rows.append(TableRow(labels[i], "label", 0, [None] * ncol, [""] * ncol))
            shift = 1
        rows.extend(replace(row, indent=row.indent + shift) for row in table.rows)
    return Table(tables[0].columns, rows)


# ==============================================================================
# Builders
# ==============================================================================


class TableBuilder(ABC):
    """Declarative table construction: column splits, row splits and cell callbacks."""

    @abstractmethod
    def split_columns(
        self,
        var: str | None = None,
        *,
        stats: Sequence[str],
        labels: Mapping[str, str] | None = None,
        formats: Mapping[str, Format] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> TableBuilder:
        ...

    @abstractmethod
    def split_rows(
        self,
        var: str | None = None,
        *,
        multivar: Sequence[str] | None = None,
        labels: Mapping[Any, str] | None = None,
        keep: Sequence[Any] | None = None,
        show_labels: bool = True,
        nested: bool = True,
        split_label: str | None = None,
    ) -> TableBuilder:
        ...

    @abstractmethod
    def populate_cell(
        self, fn: CellFunction, *, content: bool = False, extra: Mapping[str, Any] | None = None
    ) -> TableBuilder:
        ...

    @abstractmethod
    def build(self, df: pd.DataFrame) -> Table:
        ...


@dataclass
class _RowSplit:
    var: str | None
    multivar: list[str] | None
    labels: dict[Any, str]
    keep: list[Any] | None
    show_labels: bool
    split_label: str | None


@dataclass
class _RowChain:
    splits: list[_RowSplit] = field(default_factory=list)
    content: dict[int, tuple[CellFunction, dict]] = field(default_factory=dict)
    analysis: list[tuple[CellFunction, dict]] = field(default_factory=list)


class DataFrameTableBuilder(TableBuilder):
    """
    Builds tables directly from pandas DataFrames.

    Row splits with ``nested=False`` start a new sibling branch at the top level.
    Content callbacks run once per group of the split they are attached to; the
    analysis callback runs at the leaves of its branch.
    """

    def __init__(self, na_str: str | None = None):
        self.na_str = CONFIG.get("formatting.na_str", "NA") if na_str is None else na_str
        self._column_split: tuple[str | None, list[str], dict, dict, dict] | None = None
        self._chains: list[_RowChain] = [_RowChain()]

    def split_columns(self, var=None, *, stats, labels=None, formats=None, extra=None):
        if self._column_split is not None:
            raise InvalidConfigurationError("Columns are already split")
        if not stats:
            raise InvalidConfigurationError("At least one statistic column is required")
        self._column_split = (var, list(stats), dict(labels or {}), dict(formats or {}), dict(extra or {}))
        return self

    def split_rows(self, var=None, *, multivar=None, labels=None, keep=None,
                   show_labels=True, nested=True, split_label=None):
        split = _RowSplit(
            var=var,
            multivar=list(multivar) if multivar is not None else None,
            labels=dict(labels or {}),
            keep=list(keep) if keep is not None else None,
            show_labels=show_labels,
            split_label=split_label,
        )
        chain = self._chains[-1]
        if not nested and (chain.splits or chain.analysis):
            chain = _RowChain()
            self._chains.append(chain)
        chain.splits.append(split)
        return self

    def populate_cell(self, fn, *, content=False, extra=None):
        chain = self._chains[-1]
        if content:
            if not chain.splits:
                raise InvalidConfigurationError("Content rows need a row split")
            chain.content[len(chain.splits) - 1] = (fn, dict(extra or {}))
        else:
            chain.analysis.append((fn, dict(extra or {})))
        return self

    # ------------------------------------------------------------------

    def _columns(self, df: pd.DataFrame) -> list[ColumnSpec]:
        if self._column_split is None:
            raise InvalidConfigurationError("split_columns must be called before build")
        var, stats, labels, formats, extra = self._column_split

        def _specs(value: Any = None, group: str | None = None) -> list[ColumnSpec]:
            return [
                ColumnSpec(stat, labels.get(stat, stat), formats.get(stat), var, value, group, dict(extra))
                for stat in stats
            ]

        if var is None:
            return _specs()
        return [spec for value in _levels(df[var]) for spec in _specs(value, str(value))]

    def _groups(self, df: pd.DataFrame, split: _RowSplit):
        if split.multivar is not None:
            for var in split.multivar:
                yield var, split.labels.get(var, var_label(df, var)), df
            return
        if split.var is None:
            yield None, None, df
            return
        levels = _levels(df[split.var])
        if split.keep is not None:
            levels = [lvl for lvl in split.keep if lvl in levels]
        column = df[split.var]
        for level in levels:
            mask = (column == level).to_numpy()
            yield level, split.labels.get(level, str(level)), df.loc[mask]

    def _cell_rows(self, fn: CellFunction, extra: dict, df: pd.DataFrame, columns: list[ColumnSpec],
                   path: tuple, label: str | None, row_type: str, indent: int) -> list[TableRow]:
        results = []
        for col in columns:
            sub = df if col.var is None else df.loc[(df[col.var] == col.value).to_numpy()]
            ctx = CellContext(col.stat, col, path, label, {**col.extra, **extra})
            results.append(dict(fn(sub, ctx)))

        order: list[str] = []
        for result in results:
            order.extend(lbl for lbl in result if lbl not in order)

        rows = []
        for lbl in order:
            values, formatted, indent_mod = [], [], 0
            for col, result in zip(columns, results):
                raw = result.get(lbl, np.nan)
                if isinstance(raw, CellValue):
                    indent_mod = raw.indent_mod
                    raw = raw.value
                values.append(raw)
                formatted.append(format_value(raw, col.format, self.na_str))
            rows.append(TableRow(str(lbl), row_type, indent + indent_mod, values, formatted))
        return rows

    def _build_chain(self, df, chain: _RowChain, depth: int, path: tuple, indent: int,
                     columns: list[ColumnSpec], rows: list[TableRow]) -> None:
        if depth == len(chain.splits):
            for fn, extra in chain.analysis:
                rows.extend(self._cell_rows(fn, extra, df, columns, path, None, "data", indent))
            return

        split = chain.splits[depth]
        ncol = len(columns)
        if split.split_label:
            rows.append(TableRow(split.split_label, "label", indent, [None] * ncol, [""] * ncol))
            indent += 1

        for value, label, sub in self._groups(df, split):
            group_path = path + ((split.var, value),)
            child_indent = indent
            if depth in chain.content:
                fn, extra = chain.content[depth]
                rows.extend(self._cell_rows(fn, extra, sub, columns, group_path, label, "content", indent))
                child_indent = indent + 1
            elif split.show_labels and label is not None:
                rows.append(TableRow(str(label), "label", indent, [None] * ncol, [""] * ncol))
                child_indent = indent + 1
            self._build_chain(sub, chain, depth + 1, group_path, child_indent, columns, rows)

    def build(self, df: pd.DataFrame) -> Table:
        columns = self._columns(df)
        rows: list[TableRow] = []
        with logger.track_time("table_build"):
            for chain in self._chains:
                self._build_chain(df, chain, 0, (), 0, columns, rows)
        logger.debug(f"Built table with {len(rows)} rows and {len(columns)} columns")
        return Table(columns, rows)


def _levels(series: pd.Series) -> list[Any]:
    """Factor levels, or values in order of first appearance."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return list(pd.unique(series.dropna()))
