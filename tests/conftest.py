"""Shared pytest fixtures for pipecomp tests.

Fixtures provide small simulated count datasets and a toy arithmetic
pipeline whose results can be checked by hand.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import polars as pl
import pytest

from pipecomp.core import CountDataset
from pipecomp.datasets import simulate_dea_dataset
from pipecomp.pipeline import PipelineDefinition, PipelineStep


@pytest.fixture
def small_dataset() -> CountDataset:
    """Simulated dataset with 12 samples and 600 genes, 10% DE.

    Returns
    -------
    CountDataset
        Two groups (A, B) of 6 samples, hidden batch in ``obs``.
    """
    return simulate_dea_dataset(n_samples=12, n_genes=600, random_seed=7, name="small")


@pytest.fixture
def batch_dataset() -> CountDataset:
    """Simulated dataset dominated by a strong hidden batch effect."""
    return simulate_dea_dataset(
        n_samples=12,
        n_genes=600,
        batch_strength=2.5,
        prop_batch=0.5,
        random_seed=11,
        name="batch",
    )


@pytest.fixture
def tiny_counts() -> CountDataset:
    """Hand-made 4 sample x 5 gene dataset with library sizes of one million.

    Genes: g1 expressed everywhere, g2 absent, g3 expressed in group A
    only, g4 barely expressed, g5 filler making up the library size.
    """
    g1 = [100, 100, 100, 100]
    g2 = [0, 0, 0, 0]
    g3 = [50, 50, 0, 0]
    g4 = [0, 5, 0, 5]
    g5 = [1e6 - a - b - c - d for a, b, c, d in zip(g1, g2, g3, g4)]
    counts = np.array([g1, g2, g3, g4, g5], dtype=float).T
    obs = pl.DataFrame({
        "sample_id": ["S1", "S2", "S3", "S4"],
        "group": ["A", "A", "B", "B"],
        "batch": ["b1", "b2", "b1", "b2"],
    })
    var = pl.DataFrame({
        "gene_id": ["g1", "g2", "g3", "g4", "g5"],
        "is_de": [False, False, True, False, False],
        "true_log2_fc": [0.0, 0.0, -3.0, 0.0, 0.0],
    })
    return CountDataset(counts=counts, obs=obs, var=var, name="tiny")


@pytest.fixture
def call_log() -> list:
    """List collecting (step, input, params) of toy pipeline calls."""
    return []


@pytest.fixture
def toy_pipeline(call_log) -> PipelineDefinition:
    """Two-step arithmetic pipeline: ``(x + a) * b``, evaluated at the end."""

    def add(x, a):
        call_log.append(("add", x, a))
        return x + a

    def mul(x, b=1):
        call_log.append(("mul", x, b))
        return x * b

    return PipelineDefinition(
        [
            PipelineStep("add", add, evaluation=lambda y: {"sum": y}),
            PipelineStep("mul", mul, evaluation=lambda y: {"value": y}),
        ],
        default_arguments={"a": 0},
        description="toy arithmetic",
    )


@pytest.fixture
def toy_datasets() -> dict:
    return {"one": 1, "two": 2}
