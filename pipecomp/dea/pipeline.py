"""The three-step DEA benchmark pipeline.

Filtering, surrogate variable estimation and differential testing, each
evaluated against the simulated ground truth.

Examples
--------
>>> from pipecomp.datasets import simulate_benchmark_datasets
>>> from pipecomp.dea import dea_pipeline
>>> from pipecomp.pipeline import run_pipeline
>>> datasets = simulate_benchmark_datasets(2, n_genes=500)
>>> results = run_pipeline(
...     datasets,
...     alternatives={"sva_method": ["none", "svd"], "dea_method": ["limma_trend", "welch"]},
...     pipeline=dea_pipeline(),
...     random_seed=42,
... )
>>> results.summarize("dea", metric="TPR")
"""

from __future__ import annotations

from collections.abc import Sequence
from functools import partial
from typing import Any

import numpy as np

from pipecomp.core.structures import CountDataset
from pipecomp.dea.diff_expr import DEAResult, run_dea
from pipecomp.dea.evaluation import DEFAULT_THRESHOLDS, evaluate_dea, evaluate_filtering, evaluate_sva
from pipecomp.dea.filtering import filter_features
from pipecomp.dea.sva import estimate_surrogate_variables
from pipecomp.pipeline.definition import PipelineDefinition, PipelineStep
from pipecomp.utils.registry import list_methods

__all__ = ["DEFAULT_ARGUMENTS", "dea_pipeline", "default_alternatives"]

DEFAULT_ARGUMENTS: dict[str, Any] = {
    "filter_method": "filter_by_expr",
    "min_count": 10,
    "sva_method": "svd",
    "n_sv": "auto",
    "dea_method": "limma_trend",
}


def filtering_step(x: CountDataset, filter_method: str, min_count: float) -> CountDataset:
    return filter_features(x, filter_method=filter_method, min_count=min_count)


def sva_step(
    x: CountDataset,
    sva_method: str,
    n_sv: int | str,
    random_state: np.random.Generator | None = None,
) -> CountDataset:
    return estimate_surrogate_variables(x, sva_method=sva_method, n_sv=n_sv, random_state=random_state)


def dea_step(x: CountDataset, dea_method: str) -> DEAResult:
    return run_dea(x, dea_method=dea_method)


def dea_pipeline(thresholds: Sequence[float] = DEFAULT_THRESHOLDS) -> PipelineDefinition:
    """
    Build the DEA benchmark pipeline.

    Parameters
    ----------
    thresholds : Sequence[float], default=(0.01, 0.05, 0.1)
        Adjusted p-value thresholds of the differential testing evaluation.

    Returns
    -------
    PipelineDefinition
        Steps ``filtering``, ``sva`` and ``dea``. Each step returns a new
        object, so inputs are not copied between steps.
    """
    steps = [
        PipelineStep(
            "filtering",
            filtering_step,
            evaluation=evaluate_filtering,
            description="Remove lowly expressed genes",
            parameter_constraints={
                "filter_method": {"choices": list_methods("filtering")},
                "min_count": {"min": 0},
            },
        ),
        PipelineStep(
            "sva",
            sva_step,
            evaluation=evaluate_sva,
            description="Estimate surrogate variables of unwanted variation",
            parameter_constraints={
                "sva_method": {"choices": list_methods("sva")},
                "n_sv": {"min": 0},
            },
        ),
        PipelineStep(
            "dea",
            dea_step,
            evaluation=partial(evaluate_dea, thresholds=tuple(thresholds)),
            description="Test for differential expression between the two groups",
            parameter_constraints={"dea_method": {"choices": list_methods("dea")}},
        ),
    ]
    return PipelineDefinition(
        steps,
        default_arguments=DEFAULT_ARGUMENTS,
        description="Differential expression analysis benchmark",
        copy_inputs=False,
    )


def default_alternatives() -> dict[str, list[Any]]:
    """Every registered method of each step, with default thresholds."""
    return {
        "filter_method": list_methods("filtering"),
        "min_count": [DEFAULT_ARGUMENTS["min_count"]],
        "sva_method": list_methods("sva"),
        "n_sv": [DEFAULT_ARGUMENTS["n_sv"]],
        "dea_method": list_methods("dea"),
    }
