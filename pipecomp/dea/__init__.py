"""Differential expression analysis pipeline steps.

Importing this package registers the filtering, surrogate variable and
differential testing methods in :mod:`pipecomp.utils.registry`.
"""

from .diff_expr import (
    DEAResult,
    adjust_fdr,
    dea_limma_trend,
    dea_voom,
    dea_welch,
    dea_wilcoxon,
    fit_linear_model,
    moderate_variances,
    run_dea,
)
from .evaluation import (
    DEFAULT_THRESHOLDS,
    call_metrics,
    evaluate_dea,
    evaluate_filtering,
    evaluate_sva,
    join_truth,
)
from .filtering import filter_by_expr, filter_features, filter_min_count
from .pipeline import DEFAULT_ARGUMENTS, dea_pipeline, default_alternatives
from .sva import estimate_n_sv, estimate_surrogate_variables, local_fdr

__all__ = [
    "DEAResult",
    "adjust_fdr",
    "fit_linear_model",
    "moderate_variances",
    "run_dea",
    "dea_limma_trend",
    "dea_voom",
    "dea_welch",
    "dea_wilcoxon",
    "DEFAULT_THRESHOLDS",
    "call_metrics",
    "evaluate_dea",
    "evaluate_filtering",
    "evaluate_sva",
    "join_truth",
    "filter_features",
    "filter_by_expr",
    "filter_min_count",
    "estimate_n_sv",
    "estimate_surrogate_variables",
    "local_fdr",
    "DEFAULT_ARGUMENTS",
    "dea_pipeline",
    "default_alternatives",
]
