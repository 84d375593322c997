"""
tlgstats: subgroup and biomarker summaries for clinical tables, listings and graphs.

Typical use:

    from tlgstats import extract_survival_subgroups, tabulate_survival_subgroups

    df = extract_survival_subgroups(
        {"tte": "AVAL", "is_event": "is_event", "arm": "ARM", "subgroups": ["SEX"]},
        data,
    )
    table = tabulate_survival_subgroups(df, time_unit="Months")
"""

from tlgstats.assemblers import (
    extract_rsp_biomarkers,
    extract_rsp_subgroups,
    extract_survival_biomarkers,
    extract_survival_subgroups,
    h_coxph_df,
    h_coxph_subgroups_df,
    h_coxreg_mult_cont_df,
    h_logistic_mult_cont_df,
    h_odds_ratio_df,
    h_odds_ratio_subgroups_df,
    h_proportion_df,
    h_proportion_subgroups_df,
    h_survtime_df,
    h_survtime_subgroups_df,
)
from tlgstats.cache import ModelFitCache
from tlgstats.cox import (
    CoxControl,
    CoxModel,
    control_coxph,
    control_coxreg,
    cox_fit,
    fit_coxreg_multivar,
    fit_coxreg_univar,
    s_coxph_pairwise,
    s_coxreg,
)
from tlgstats.estimators import (
    logrank_pvalue,
    odds_ratio,
    odds_ratio_strat,
    s_proportion,
    s_test_proportion_diff,
    surv_time,
)
from tlgstats.exceptions import (
    DegenerateDataWarning,
    IncompatibleModeError,
    IncompatibleModeWarning,
    InvalidConfigurationError,
    TlgStatsError,
    UnsupportedMethodError,
)
from tlgstats.layout import DataFrameTableBuilder, Table, TableBuilder, cbind_tables, rbind_tables
from tlgstats.logistic import logistic_fit
from tlgstats.subgroups import (
    SubgroupPartition,
    combine_groups,
    combine_levels,
    groups_list_to_df,
    split_by_subgroups,
)
from tlgstats.tabulation import (
    a_coxreg,
    d_rsp_subgroups_colvars,
    d_survival_subgroups_colvars,
    summarize_coxreg,
    tabulate_rsp_biomarkers,
    tabulate_rsp_subgroups,
    tabulate_survival_biomarkers,
    tabulate_survival_subgroups,
)
from tlgstats.variables import ColumnKind, VariableRoles, column_kind, var_label, with_labels

__version__ = "0.1.0"

__all__ = [
    "ColumnKind",
    "CoxControl",
    "CoxModel",
    "DataFrameTableBuilder",
    "DegenerateDataWarning",
    "IncompatibleModeError",
    "IncompatibleModeWarning",
    "InvalidConfigurationError",
    "ModelFitCache",
    "SubgroupPartition",
    "Table",
    "TableBuilder",
    "TlgStatsError",
    "UnsupportedMethodError",
    "VariableRoles",
    "a_coxreg",
    "cbind_tables",
    "column_kind",
    "combine_groups",
    "combine_levels",
    "control_coxph",
    "control_coxreg",
    "cox_fit",
    "d_rsp_subgroups_colvars",
    "d_survival_subgroups_colvars",
    "extract_rsp_biomarkers",
    "extract_rsp_subgroups",
    "extract_survival_biomarkers",
    "extract_survival_subgroups",
    "fit_coxreg_multivar",
    "fit_coxreg_univar",
    "groups_list_to_df",
    "h_coxph_df",
    "h_coxph_subgroups_df",
    "h_coxreg_mult_cont_df",
    "h_logistic_mult_cont_df",
    "h_odds_ratio_df",
    "h_odds_ratio_subgroups_df",
    "h_proportion_df",
    "h_proportion_subgroups_df",
    "h_survtime_df",
    "h_survtime_subgroups_df",
    "logistic_fit",
    "logrank_pvalue",
    "odds_ratio",
    "odds_ratio_strat",
    "rbind_tables",
    "s_coxph_pairwise",
    "s_coxreg",
    "s_proportion",
    "s_test_proportion_diff",
    "split_by_subgroups",
    "summarize_coxreg",
    "surv_time",
    "tabulate_rsp_biomarkers",
    "tabulate_rsp_subgroups",
    "tabulate_survival_biomarkers",
    "tabulate_survival_subgroups",
    "var_label",
    "with_labels",
]
