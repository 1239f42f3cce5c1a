"""pipecomp: Benchmarking of multi-step analysis pipelines.

Declare a pipeline as a sequence of steps, attach evaluation functions,
enumerate parameter alternatives and run every combination over a set of
datasets. Shared prefixes of combinations are computed only once.

Key Features:
    - Pipeline definition with per-step evaluation and default arguments
    - Step-wise execution of all parameter combinations, in parallel over datasets
    - Result tables keyed by parameter combination, saved as CSV and merged across runs
    - A differential expression benchmark: gene filtering, surrogate variable
      analysis and differential testing on simulated RNA-seq counts
    - TPR/FDR curves, metric heatmaps and timing plots

Quick Start:
    >>> from pipecomp import dea_pipeline, run_pipeline, simulate_benchmark_datasets
    >>> datasets = simulate_benchmark_datasets(2, n_genes=500)
    >>> results = run_pipeline(datasets, {"dea_method": ["limma_trend", "welch"]}, dea_pipeline())
    >>> results.summarize("dea", metric=["FDR", "TPR"])
"""

from __future__ import annotations

__version__ = "0.1.0"

# Core data structures and exceptions
from pipecomp.core import (
    CountDataset,
    MissingParameterError,
    PipeCompError,
    PipelineDefinitionError,
    ResultsNotFoundError,
    StepExecutionError,
    ValidationError,
)

# Pipeline engine
from pipecomp.pipeline import (
    ParameterGrid,
    PipelineDefinition,
    PipelineResults,
    PipelineStep,
    merge_results,
    read_results,
    run_pipeline,
)

# DEA benchmark
from pipecomp.dea import (
    DEAResult,
    dea_pipeline,
    default_alternatives,
    estimate_surrogate_variables,
    evaluate_dea,
    filter_features,
    run_dea,
)
from pipecomp.datasets import simulate_benchmark_datasets, simulate_dea_dataset

# Visualization
from pipecomp.viz import configure_plots, eval_heatmap, plot_dea_curve, plot_elapsed

__all__ = [
    "__version__",
    "CountDataset",
    "PipeCompError",
    "ValidationError",
    "PipelineDefinitionError",
    "MissingParameterError",
    "StepExecutionError",
    "ResultsNotFoundError",
    "ParameterGrid",
    "PipelineDefinition",
    "PipelineStep",
    "PipelineResults",
    "run_pipeline",
    "read_results",
    "merge_results",
    "DEAResult",
    "dea_pipeline",
    "default_alternatives",
    "filter_features",
    "estimate_surrogate_variables",
    "run_dea",
    "evaluate_dea",
    "simulate_dea_dataset",
    "simulate_benchmark_datasets",
    "configure_plots",
    "plot_dea_curve",
    "eval_heatmap",
    "plot_elapsed",
]
