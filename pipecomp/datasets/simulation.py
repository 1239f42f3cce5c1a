"""
Simulated RNA-seq count datasets with known differential expression.
"""

from __future__ import annotations

from typing import Dict, Optional

import numpy as np
import polars as pl

from pipecomp.core.exceptions import ValidationError
from pipecomp.core.structures import CountDataset

GROUP_LEVELS = ("A", "B")


class DEASimulator:
    """
    Generate two-group RNA-seq count datasets for benchmarking DEA pipelines.

    Features:
    - Negative binomial counts with gene-specific abundances
    - Known differentially expressed genes and fold changes
    - A hidden batch factor affecting part of the genes, recorded in ``obs``
      but absent from the design
    - Varying library sizes
    """

    def __init__(
        self,
        n_samples: int = 12,
        n_genes: int = 2000,
        prop_de: float = 0.1,
        log2_fc_mean: float = 1.5,
        n_batches: int = 2,
        batch_strength: float = 1.0,
        prop_batch: float = 0.3,
        dispersion: float = 0.1,
        mean_library_size: float = 1e6,
        random_seed: Optional[int] = None,
    ):
        """
        Initialize simulation parameters.

        Args:
            n_samples: Number of samples, split evenly between the two groups
            n_genes: Number of genes
            prop_de: Proportion of differentially expressed genes
            log2_fc_mean: Mean absolute log2 fold change of DE genes
            n_batches: Number of hidden batches (1 disables the batch effect)
            batch_strength: Standard deviation of log2 batch effects
            prop_batch: Proportion of genes affected by the batch
            dispersion: Negative binomial dispersion
            mean_library_size: Mean sequencing depth per sample
            random_seed: Random seed for reproducibility
        """
        if n_samples < 4:
            raise ValidationError("n_samples must be at least 4", field="n_samples")
        if n_genes < 1:
            raise ValidationError("n_genes must be positive", field="n_genes")
        for name, value in (("prop_de", prop_de), ("prop_batch", prop_batch)):
            if not 0 <= value <= 1:
                raise ValidationError(f"{name} must be in [0, 1], got {value}", field=name)
        if n_batches < 1:
            raise ValidationError("n_batches must be at least 1", field="n_batches")
        if dispersion <= 0:
            raise ValidationError("dispersion must be positive", field="dispersion")

        self.n_samples = n_samples
        self.n_genes = n_genes
        self.prop_de = prop_de
        self.log2_fc_mean = log2_fc_mean
        self.n_batches = n_batches
        self.batch_strength = batch_strength
        self.prop_batch = prop_batch
        self.dispersion = dispersion
        self.mean_library_size = mean_library_size
        self.random_seed = random_seed

    def generate(self, name: Optional[str] = None) -> CountDataset:
        """
        Generate a dataset.

        Args:
            name: Dataset name

        Returns:
            CountDataset with counts, sample annotations (group, batch) and
            gene truth columns (is_de, true_log2_fc)
        """
        rng = np.random.default_rng(self.random_seed)

        # 1. Sample annotations
        sample_ids = [f"S{i + 1:02d}" for i in range(self.n_samples)]
        groups = self._generate_groups()
        batches = self._generate_batches(rng)
        obs = pl.DataFrame({"sample_id": sample_ids, "group": groups, "batch": batches})

        # 2. Baseline abundances and library sizes
        log_abundance = rng.normal(0.0, 1.5, size=self.n_genes)
        abundance = np.exp(log_abundance) / np.exp(log_abundance).sum()
        library_sizes = self.mean_library_size * rng.lognormal(0.0, 0.2, size=self.n_samples)

        # 3. Group and batch effects on the log2 scale
        is_de, true_log2_fc = self._generate_de(rng)
        log2_effect = np.outer(np.array(groups) == GROUP_LEVELS[1], true_log2_fc)
        log2_effect += self._batch_effects(rng, np.array(batches))

        # 4. Negative binomial counts
        mu = library_sizes[:, np.newaxis] * abundance[np.newaxis, :] * np.exp2(log2_effect)
        size = 1.0 / self.dispersion
        counts = rng.negative_binomial(size, size / (size + mu))

        var = pl.DataFrame({
            "gene_id": [f"gene{j + 1:05d}" for j in range(self.n_genes)],
            "is_de": is_de,
            "true_log2_fc": true_log2_fc,
        })
        dataset = CountDataset(counts=counts, obs=obs, var=var, name=name)
        dataset.log_operation(
            action="simulate",
            params={
                "n_samples": self.n_samples,
                "n_genes": self.n_genes,
                "prop_de": self.prop_de,
                "n_batches": self.n_batches,
                "random_seed": self.random_seed,
            },
            description=f"Simulated {int(is_de.sum())} DE genes",
        )
        return dataset

    def _generate_groups(self) -> list:
        """Balanced group assignment; an odd sample goes to the last group."""
        n_first = self.n_samples // 2
        return [GROUP_LEVELS[0]] * n_first + [GROUP_LEVELS[1]] * (self.n_samples - n_first)

    def _generate_batches(self, rng: np.random.Generator) -> list:
        """Batch assignment, shuffled so that batches mix with groups."""
        batches = [f"Batch{i % self.n_batches + 1}" for i in range(self.n_samples)]
        return [batches[i] for i in rng.permutation(self.n_samples)]

    def _generate_de(self, rng: np.random.Generator):
        """Pick DE genes and draw their fold changes."""
        n_de = int(round(self.prop_de * self.n_genes))
        is_de = np.zeros(self.n_genes, dtype=bool)
        is_de[rng.choice(self.n_genes, size=n_de, replace=False)] = True

        true_log2_fc = np.zeros(self.n_genes)
        magnitude = rng.gamma(shape=4.0, scale=self.log2_fc_mean / 4.0, size=n_de)
        sign = rng.choice([-1.0, 1.0], size=n_de)
        true_log2_fc[is_de] = sign * magnitude
        return is_de, true_log2_fc

    def _batch_effects(self, rng: np.random.Generator, batches: np.ndarray) -> np.ndarray:
        """Log2 batch effects of shape (n_samples, n_genes)."""
        effect = np.zeros((self.n_samples, self.n_genes))
        if self.n_batches < 2 or self.batch_strength == 0:
            return effect
        n_affected = int(round(self.prop_batch * self.n_genes))
        affected = rng.choice(self.n_genes, size=n_affected, replace=False)
        for level in np.unique(batches):
            shift = rng.normal(0.0, self.batch_strength, size=n_affected)
            effect[np.ix_(batches == level, affected)] = shift
        return effect


def simulate_dea_dataset(
    n_samples: int = 12,
    n_genes: int = 2000,
    prop_de: float = 0.1,
    log2_fc_mean: float = 1.5,
    n_batches: int = 2,
    batch_strength: float = 1.0,
    prop_batch: float = 0.3,
    dispersion: float = 0.1,
    mean_library_size: float = 1e6,
    random_seed: Optional[int] = None,
    name: Optional[str] = None,
) -> CountDataset:
    """
    Simulate a two-group count dataset with known differential expression.

    Args:
        n_samples: Number of samples, split evenly between groups A and B
        n_genes: Number of genes
        prop_de: Proportion of differentially expressed genes
        log2_fc_mean: Mean absolute log2 fold change (B vs A) of DE genes
        n_batches: Number of hidden batches
        batch_strength: Standard deviation of log2 batch effects
        prop_batch: Proportion of genes affected by the batch
        dispersion: Negative binomial dispersion
        mean_library_size: Mean sequencing depth per sample
        random_seed: Random seed for reproducibility
        name: Dataset name

    Returns:
        CountDataset carrying ``group`` and ``batch`` in ``obs`` and
        ``is_de``, ``true_log2_fc`` in ``var``
    """
    return DEASimulator(
        n_samples=n_samples,
        n_genes=n_genes,
        prop_de=prop_de,
        log2_fc_mean=log2_fc_mean,
        n_batches=n_batches,
        batch_strength=batch_strength,
        prop_batch=prop_batch,
        dispersion=dispersion,
        mean_library_size=mean_library_size,
        random_seed=random_seed,
    ).generate(name=name)


def simulate_benchmark_datasets(
    n: int = 3,
    random_seed: int = 42,
    prefix: str = "sim",
    **kwargs,
) -> Dict[str, CountDataset]:
    """
    Simulate several independent datasets with the same parameters.

    Args:
        n: Number of datasets
        random_seed: Seed of the first dataset; dataset i uses ``random_seed + i``
        prefix: Name prefix, datasets are named ``{prefix}1``, ``{prefix}2``, ...
        **kwargs: Passed to :func:`simulate_dea_dataset`

    Returns:
        Dictionary of dataset name to CountDataset, in order
    """
    if n < 1:
        raise ValidationError("n must be at least 1", field="n")
    datasets = {}
    for i in range(n):
        name = f"{prefix}{i + 1}"
        datasets[name] = simulate_dea_dataset(random_seed=random_seed + i, name=name, **kwargs)
    return datasets
