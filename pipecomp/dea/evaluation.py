"""Accuracy evaluation of the DEA pipeline steps.

Each function here serves as the evaluation of one step: it receives the
step's output and returns the metrics that end up in the benchmark table.

Metrics
-------
- TP, FP, FN, TN: Confusion counts of significance calls
- FDR: False discovery rate of the calls. Lower is better.
- TPR: True positive rate (sensitivity). Higher is better.
- PPV: Positive predictive value (precision). Higher is better.
- F1: Harmonic mean of PPV and TPR. Higher is better.
- log2fc_pearson, log2fc_spearman: Correlation of estimated and true fold
  changes. Higher is better.
- auroc: Area under the ROC curve of -log10 p-values. Higher is better.
"""

from __future__ import annotations

import warnings
from collections.abc import Sequence

import numpy as np
import pandas as pd
import polars as pl
from scipy.stats import pearsonr, spearmanr
from sklearn.metrics import roc_auc_score

from pipecomp.core.exceptions import ValidationError
from pipecomp.core.structures import CountDataset
from pipecomp.dea.diff_expr import DEAResult

__all__ = [
    "DEFAULT_THRESHOLDS",
    "call_metrics",
    "evaluate_dea",
    "evaluate_filtering",
    "evaluate_sva",
    "join_truth",
]

DEFAULT_THRESHOLDS = (0.01, 0.05, 0.1)


def join_truth(result: DEAResult, truth: pl.DataFrame | None = None) -> pl.DataFrame:
    """
    Left-join the ground truth with the estimates on ``gene_id``.

    Genes absent from the result (e.g. removed by filtering) keep null
    estimates.

    Raises
    ------
    ValidationError
        If no truth is given and the result carries none.
    """
    truth = truth if truth is not None else result.truth
    if truth is None:
        raise ValidationError("No ground truth available for evaluation", field="truth")
    if "gene_id" not in truth.columns or "is_de" not in truth.columns:
        raise ValidationError("Truth table needs 'gene_id' and 'is_de' columns", field="truth")
    truth = truth.with_columns(pl.col("gene_id").cast(pl.Utf8))
    return truth.join(result.to_dataframe(), on="gene_id", how="left")


def call_metrics(is_de: np.ndarray, called: np.ndarray) -> dict[str, float]:
    """
    Confusion counts and derived rates of a set of calls.

    FDR is 0 when nothing is called; PPV is NaN in that case.
    """
    is_de = np.asarray(is_de, dtype=bool)
    called = np.asarray(called, dtype=bool)
    tp = int(np.sum(called & is_de))
    fp = int(np.sum(called & ~is_de))
    fn = int(np.sum(~called & is_de))
    tn = int(np.sum(~called & ~is_de))
    n_called = tp + fp
    n_true = tp + fn

    ppv = tp / n_called if n_called > 0 else np.nan
    fdr = fp / n_called if n_called > 0 else 0.0
    tpr = tp / n_true if n_true > 0 else np.nan
    if np.isnan(ppv) or np.isnan(tpr) or ppv + tpr == 0:
        f1 = np.nan if np.isnan(ppv) or np.isnan(tpr) else 0.0
    else:
        f1 = 2 * ppv * tpr / (ppv + tpr)
    return {"TP": tp, "FP": fp, "FN": fn, "TN": tn, "FDR": fdr, "TPR": tpr, "PPV": ppv, "F1": f1}


def _correlations(joined: pl.DataFrame) -> tuple[float, float]:
    pairs = (
        joined.select(["true_log2_fc", "log2_fc"])
        .drop_nulls()
        .filter(pl.col("true_log2_fc").is_not_nan() & pl.col("log2_fc").is_not_nan())
    )
    if pairs.height < 3:
        return np.nan, np.nan
    true_fc = pairs["true_log2_fc"].to_numpy()
    est_fc = pairs["log2_fc"].to_numpy()
    if np.ptp(true_fc) == 0 or np.ptp(est_fc) == 0:
        return np.nan, np.nan
    return float(pearsonr(true_fc, est_fc)[0]), float(spearmanr(true_fc, est_fc)[0])


def evaluate_dea(
    result: DEAResult,
    truth: pl.DataFrame | None = None,
    thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
) -> pd.DataFrame:
    """
    Evaluate differential expression calls against the ground truth.

    Parameters
    ----------
    result : DEAResult
        Output of the differential testing step.
    truth : pl.DataFrame | None
        Truth table with ``gene_id``, ``is_de`` and optionally
        ``true_log2_fc``. Defaults to the truth carried by ``result``.
    thresholds : Sequence[float], default=(0.01, 0.05, 0.1)
        Adjusted p-value thresholds. A gene is called when its adjusted
        p-value is below the threshold.

    Returns
    -------
    pd.DataFrame
        One row per threshold with columns ``threshold``, ``TP``, ``FP``,
        ``FN``, ``TN``, ``FDR``, ``TPR``, ``PPV``, ``F1`` and the
        threshold-independent ``log2fc_pearson``, ``log2fc_spearman``,
        ``auroc`` and ``n_tested``.

    Examples
    --------
    >>> from pipecomp.datasets import simulate_dea_dataset
    >>> from pipecomp.dea import run_dea, evaluate_dea
    >>> ds = simulate_dea_dataset(random_seed=0)
    >>> evaluate_dea(run_dea(ds))[["threshold", "FDR", "TPR"]]
    """
    joined = join_truth(result, truth)
    is_de = joined["is_de"].fill_null(False).to_numpy().astype(bool)
    padj = joined["p_value_adj"].fill_nan(None).fill_null(1.0).to_numpy()
    pval = joined["p_value"].fill_nan(None).fill_null(1.0).to_numpy()

    pearson, spearman = _correlations(joined)
    if 0 < is_de.sum() < len(is_de):
        score = -np.log10(np.clip(pval, 1e-300, 1.0))
        auroc = float(roc_auc_score(is_de, score))
    else:
        auroc = np.nan

    rows = []
    for threshold in thresholds:
        if not 0 < threshold < 1:
            warnings.warn(f"Threshold {threshold} is outside (0, 1)")
        row = {"threshold": float(threshold)}
        row.update(call_metrics(is_de, padj < threshold))
        rows.append(row)

    frame = pd.DataFrame(rows)
    frame["log2fc_pearson"] = pearson
    frame["log2fc_spearman"] = spearman
    frame["auroc"] = auroc
    frame["n_tested"] = result.n_features
    return frame


def evaluate_filtering(x: CountDataset) -> dict[str, float]:
    """
    Genes kept by the filtering step.

    Returns
    -------
    dict[str, float]
        ``n_genes`` kept and, when the truth is known, ``n_removed`` and the
        fraction of true DE genes retained (``de_retained``).
    """
    out: dict[str, float] = {"n_genes": x.n_features}
    if not x.has_truth:
        return out
    truth = x.truth()
    kept = set(str(g) for g in x.feature_ids)
    de_ids = truth.filter(pl.col("is_de"))["gene_id"].to_list()
    out["n_removed"] = truth.height - x.n_features
    out["de_retained"] = (
        sum(1 for g in de_ids if g in kept) / len(de_ids) if de_ids else np.nan
    )
    return out


def _r_squared(y: np.ndarray, labels: np.ndarray) -> float:
    """Share of the variance of ``y`` explained by a categorical factor."""
    total = np.sum((y - y.mean()) ** 2)
    if total == 0:
        return 0.0
    fitted = np.empty_like(y)
    for level in np.unique(labels):
        idx = labels == level
        fitted[idx] = y[idx].mean()
    return float(1 - np.sum((y - fitted) ** 2) / total)


def evaluate_sva(x: CountDataset, batch_col: str = "batch") -> dict[str, float]:
    """
    Surrogate variables found and how well they capture a known batch.

    Returns
    -------
    dict[str, float]
        ``n_sv_found`` and, when ``obs`` has ``batch_col``, ``batch_r2``: the
        largest R² of the batch on any surrogate variable (NaN without
        surrogate variables).
    """
    out: dict[str, float] = {"n_sv_found": x.n_covariates}
    if batch_col not in x.obs.columns:
        return out
    if x.covariates is None:
        out["batch_r2"] = np.nan
        return out
    labels = x.obs[batch_col].cast(pl.Utf8).to_numpy()
    out["batch_r2"] = max(_r_squared(x.covariates[:, j], labels) for j in range(x.n_covariates))
    return out
