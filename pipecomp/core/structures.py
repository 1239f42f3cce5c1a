"""Data containers passed between pipeline steps."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np
import polars as pl

from pipecomp.core.exceptions import ValidationError


@dataclass
class ProvenanceLog:
    """
    Record of an operation performed on a dataset.
    """
    timestamp: str
    action: str
    params: dict[str, Any]
    description: str | None = None


@dataclass
class CountDataset:
    """
    Count matrix with sample and gene annotations.

    Attributes
    ----------
    counts : np.ndarray
        Read counts, shape (n_samples, n_features).
    obs : pl.DataFrame
        Sample annotations, one row per sample. Must contain ``sample_id_col``.
    var : pl.DataFrame
        Gene annotations, one row per gene. Must contain ``feature_id_col``.
        Simulated datasets also carry the truth columns ``is_de`` and
        ``true_log2_fc``.
    covariates : np.ndarray | None
        Nuisance covariates (e.g. surrogate variables), shape (n_samples, k).
    name : str | None
        Optional dataset name.
    group_col : str
        Column of ``obs`` holding the compared condition.
    truth_table : pl.DataFrame | None
        Ground truth of every gene of the unfiltered dataset. Taken from
        ``var`` when it has an ``is_de`` column, and kept unchanged when genes
        are subset.
    """
    counts: np.ndarray
    obs: pl.DataFrame
    var: pl.DataFrame
    covariates: np.ndarray | None = None
    name: str | None = None
    sample_id_col: str = "sample_id"
    feature_id_col: str = "gene_id"
    group_col: str = "group"
    truth_table: pl.DataFrame | None = None
    history: list[ProvenanceLog] = field(default_factory=list)

    def __post_init__(self):
        self.counts = np.asarray(self.counts, dtype=np.float64)
        if self.counts.ndim != 2:
            raise ValidationError(
                f"counts must be 2-dimensional, got shape {self.counts.shape}",
                field="counts",
            )
        n_samples, n_features = self.counts.shape
        if self.obs.height != n_samples:
            raise ValidationError(
                f"obs has {self.obs.height} rows but counts has {n_samples} samples",
                field="obs",
            )
        if self.var.height != n_features:
            raise ValidationError(
                f"var has {self.var.height} rows but counts has {n_features} features",
                field="var",
            )
        if self.feature_id_col not in self.var.columns:
            raise ValidationError(
                f"Feature id column '{self.feature_id_col}' not found in var",
                field="feature_id_col",
            )
        if np.any(self.counts < 0):
            raise ValidationError("counts must be non-negative", field="counts")
        if self.covariates is not None:
            cov = np.asarray(self.covariates, dtype=np.float64)
            if cov.ndim == 1:
                cov = cov[:, np.newaxis]
            if cov.shape[0] != n_samples:
                raise ValidationError(
                    f"covariates have {cov.shape[0]} rows, expected {n_samples}",
                    field="covariates",
                )
            self.covariates = cov if cov.shape[1] > 0 else None
        if self.truth_table is None and "is_de" in self.var.columns:
            self.truth_table = self._truth_from_var()

    @property
    def n_samples(self) -> int:
        return self.counts.shape[0]

    @property
    def n_features(self) -> int:
        return self.counts.shape[1]

    @property
    def n_covariates(self) -> int:
        return 0 if self.covariates is None else self.covariates.shape[1]

    @property
    def feature_ids(self) -> np.ndarray:
        return self.var[self.feature_id_col].to_numpy()

    def library_sizes(self) -> np.ndarray:
        """Total counts per sample."""
        return self.counts.sum(axis=1)

    def log_cpm(self, prior_count: float = 0.5) -> np.ndarray:
        """
        Log2 counts per million.

        Follows the voom convention: ``log2((count + prior) / (lib + 2 * prior) * 1e6)``.

        Parameters
        ----------
        prior_count : float, default=0.5
            Pseudo-count added to every observation.

        Returns
        -------
        np.ndarray
            Matrix of shape (n_samples, n_features).
        """
        lib = np.maximum(self.library_sizes(), 1.0)
        return np.log2(
            (self.counts + prior_count) / (lib[:, np.newaxis] + 2.0 * prior_count) * 1e6
        )

    def groups(self, group_col: str | None = None) -> np.ndarray:
        group_col = group_col or self.group_col
        if group_col not in self.obs.columns:
            raise ValidationError(
                f"Group column '{group_col}' not found in obs", field="group_col"
            )
        return self.obs[group_col].cast(pl.Utf8).to_numpy()

    def design_matrix(
        self,
        group_col: str | None = None,
        reference: str | None = None,
        include_covariates: bool = True,
    ) -> tuple[np.ndarray, list[str]]:
        """
        Build a treatment-coded design matrix.

        Parameters
        ----------
        group_col : str | None
            Column of ``obs`` holding the condition. Defaults to ``self.group_col``.
        reference : str | None
            Reference level. Defaults to the first level in sorted order.
        include_covariates : bool, default=True
            Append ``covariates`` as extra columns.

        Returns
        -------
        tuple[np.ndarray, list[str]]
            Design matrix (n_samples, p) and its column names. Column 0 is
            the intercept; columns 1.. are the non-reference group levels.
        """
        group_col = group_col or self.group_col
        groups = self.groups(group_col)
        levels = sorted(set(groups.tolist()))
        if reference is None:
            reference = levels[0]
        elif reference not in levels:
            raise ValidationError(
                f"Reference level '{reference}' not in {levels}", field="reference"
            )
        others = [lv for lv in levels if lv != reference]

        columns = [np.ones(self.n_samples)]
        names = ["intercept"]
        for level in others:
            columns.append((groups == level).astype(np.float64))
            names.append(f"{group_col}{level}")

        if include_covariates and self.covariates is not None:
            for j in range(self.covariates.shape[1]):
                columns.append(self.covariates[:, j])
                names.append(f"sv{j + 1}")

        return np.column_stack(columns), names

    def subset_features(self, mask: np.ndarray) -> CountDataset:
        """Return a new dataset restricted to the selected genes."""
        mask = np.asarray(mask)
        if mask.dtype != bool:
            keep = np.zeros(self.n_features, dtype=bool)
            keep[mask.astype(np.intp)] = True
            mask = keep
        if mask.shape[0] != self.n_features:
            raise ValidationError(
                f"Mask length {mask.shape[0]} != n_features {self.n_features}",
                field="mask",
            )
        return CountDataset(
            counts=self.counts[:, mask],
            obs=self.obs.clone(),
            var=self.var.filter(pl.Series(mask)),
            covariates=None if self.covariates is None else self.covariates.copy(),
            name=self.name,
            sample_id_col=self.sample_id_col,
            feature_id_col=self.feature_id_col,
            group_col=self.group_col,
            truth_table=self.truth_table,
            history=list(self.history),
        )

    def with_covariates(self, covariates: np.ndarray | None) -> CountDataset:
        """Return a copy carrying the given covariates (None clears them)."""
        new = self.copy()
        if covariates is not None and np.asarray(covariates).size == 0:
            covariates = None
        new.covariates = None
        if covariates is not None:
            new.covariates = np.asarray(covariates, dtype=np.float64)
            new.__post_init__()
        return new

    def _truth_from_var(self) -> pl.DataFrame:
        cols = [
            pl.col(self.feature_id_col).cast(pl.Utf8).alias("gene_id"),
            pl.col("is_de").cast(pl.Boolean),
        ]
        if "true_log2_fc" in self.var.columns:
            cols.append(pl.col("true_log2_fc").cast(pl.Float64))
        else:
            cols.append(pl.lit(None, dtype=pl.Float64).alias("true_log2_fc"))
        return self.var.select(cols)

    @property
    def has_truth(self) -> bool:
        return self.truth_table is not None

    def truth(self) -> pl.DataFrame:
        """
        Gene-level ground truth of the unfiltered dataset.

        Returns
        -------
        pl.DataFrame
            Columns ``gene_id``, ``is_de`` and ``true_log2_fc``.

        Raises
        ------
        ValidationError
            If the dataset carries no ground truth.
        """
        if self.truth_table is None:
            raise ValidationError("Dataset carries no ground truth ('is_de')", field="var")
        return self.truth_table

    def log_operation(self, action: str, params: dict[str, Any], description: str | None = None):
        self.history.append(
            ProvenanceLog(
                timestamp=datetime.now().isoformat(),
                action=action,
                params=params,
                description=description,
            )
        )

    def copy(self) -> CountDataset:
        """
        Deep copy of the dataset.
        """
        return CountDataset(
            counts=self.counts.copy(),
            obs=self.obs.clone(),
            var=self.var.clone(),
            covariates=None if self.covariates is None else self.covariates.copy(),
            name=self.name,
            sample_id_col=self.sample_id_col,
            feature_id_col=self.feature_id_col,
            group_col=self.group_col,
            truth_table=self.truth_table,
            history=copy.deepcopy(self.history),
        )

    def __repr__(self) -> str:
        return (
            f"CountDataset(name={self.name!r}, n_samples={self.n_samples}, "
            f"n_features={self.n_features}, n_covariates={self.n_covariates})"
        )
