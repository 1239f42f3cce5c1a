"""Pipeline definition, combination enumeration, execution and results."""

from .definition import PipelineDefinition, PipelineStep
from .parameter_grid import (
    ParameterGrid,
    build_comb_matrix,
    combination_key,
    combination_label,
    parse_combination_label,
    restrict_combinations,
)
from .results import PipelineResults, default_aggregation, merge_results, read_results
from .runner import evaluation_to_frame, run_pipeline

__all__ = [
    "PipelineDefinition",
    "PipelineStep",
    "ParameterGrid",
    "build_comb_matrix",
    "restrict_combinations",
    "combination_key",
    "combination_label",
    "parse_combination_label",
    "run_pipeline",
    "evaluation_to_frame",
    "PipelineResults",
    "default_aggregation",
    "merge_results",
    "read_results",
]
