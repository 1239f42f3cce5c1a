"""Differential expression testing.

This module implements the differential testing step of the DEA pipeline.
All methods work on log2 counts per million and compare the two levels of the
dataset's group column, adjusting for any covariates (surrogate variables)
attached by the previous step.

Supported methods:
    - limma_trend: Linear model with mean-dependent empirical Bayes moderation
    - voom: Precision-weighted linear model with empirical Bayes moderation
    - welch: Welch's t-test on covariate-adjusted log-CPM
    - wilcoxon: Wilcoxon rank-sum test on covariate-adjusted log-CPM
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import polars as pl
import scipy.special as special
import scipy.stats as stats

from pipecomp.core.exceptions import ValidationError
from pipecomp.core.structures import CountDataset
from pipecomp.utils.registry import get_method, list_methods, register_method

logger = logging.getLogger(__name__)

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
]

STEP = "dea"


# =============================================================================
# Result container
# =============================================================================


@dataclass(frozen=True)
class DEAResult:
    """
    Result container for differential expression analysis.

    Attributes
    ----------
    feature_ids : np.ndarray
        Gene identifiers.
    log2_fc : np.ndarray
        Estimated log2 fold changes (non-reference vs reference group).
    ave_expr : np.ndarray
        Average log2-CPM of each gene.
    statistics : np.ndarray
        Test statistic values.
    p_values : np.ndarray
        Raw p-values.
    p_values_adj : np.ndarray
        Benjamini-Hochberg adjusted p-values.
    method : str
        Method used.
    truth : pl.DataFrame | None
        Ground truth of the input dataset, when known. Carried along so that
        the evaluation can see genes removed by upstream filtering.
    params : dict[str, Any]
        Parameters of the analysis.
    """

    feature_ids: np.ndarray
    log2_fc: np.ndarray
    ave_expr: np.ndarray
    statistics: np.ndarray
    p_values: np.ndarray
    p_values_adj: np.ndarray
    method: str
    truth: pl.DataFrame | None = None
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def n_features(self) -> int:
        return len(self.feature_ids)

    def to_dataframe(self) -> pl.DataFrame:
        """
        Convert results to a Polars DataFrame sorted by p-value.

        Returns
        -------
        pl.DataFrame
            Columns gene_id, log2_fc, ave_expr, statistic, p_value, p_value_adj.
        """
        return pl.DataFrame(
            {
                "gene_id": [str(f) for f in self.feature_ids],
                "log2_fc": self.log2_fc,
                "ave_expr": self.ave_expr,
                "statistic": self.statistics,
                "p_value": self.p_values,
                "p_value_adj": self.p_values_adj,
            }
        ).sort("p_value", nulls_last=True)

    def get_significant(self, alpha: float = 0.05, min_log2_fc: float | None = None) -> pl.DataFrame:
        """
        Get significant genes based on adjusted p-value threshold.

        Parameters
        ----------
        alpha : float, default=0.05
            FDR threshold for significance
        min_log2_fc : float, optional
            Minimum absolute log2 fold change for significance

        Returns
        -------
        pl.DataFrame
            Significant genes sorted by p-value
        """
        df = self.to_dataframe()
        mask = pl.col("p_value_adj") < alpha
        if min_log2_fc is not None:
            mask = mask & (pl.col("log2_fc").abs() >= min_log2_fc)
        return df.filter(mask)


# =============================================================================
# Multiple testing
# =============================================================================


def adjust_fdr(p_values: np.ndarray, method: str = "bh") -> np.ndarray:
    """
    Adjust p-values for multiple testing using False Discovery Rate methods.

    Parameters
    ----------
    p_values : np.ndarray
        Raw p-values to adjust. NaN values are kept and ignored.
    method : str, default="bh"
        - "bh": Benjamini-Hochberg (step-up)
        - "by": Benjamini-Yekutieli (more conservative, assumes dependence)

    Returns
    -------
    np.ndarray
        Adjusted p-values

    References
    ----------
    Benjamini, Y., & Hochberg, Y. (1995). Controlling the false discovery
    rate: a practical and powerful approach to multiple testing. Journal of
    the Royal Statistical Society Series B, 57(1), 289-300.
    """
    p_values = np.asarray(p_values, dtype=np.float64)
    if p_values.size == 0:
        return np.array([], dtype=np.float64)

    nan_mask = np.isnan(p_values)
    if nan_mask.all():
        return p_values.copy()

    valid_idx = ~nan_mask
    p_clean = p_values[valid_idx]
    n_valid = len(p_clean)

    sorted_idx = np.argsort(p_clean)
    sorted_p = p_clean[sorted_idx]
    ranks = np.arange(1, n_valid + 1, dtype=np.float64)

    multiplier = float(n_valid)
    if method == "by":
        multiplier *= float(np.sum(1.0 / ranks))
    elif method != "bh":
        raise ValidationError(
            f"Unknown FDR correction method: {method}. Use 'bh' or 'by'.",
            field="method",
        )

    adjusted = sorted_p * multiplier / ranks
    adjusted = np.minimum.accumulate(adjusted[::-1])[::-1]
    adjusted = np.clip(adjusted, 0.0, 1.0)

    result = np.full_like(p_values, np.nan, dtype=np.float64)
    result[valid_idx] = adjusted[np.argsort(sorted_idx)]
    return result


# =============================================================================
# Linear models and empirical Bayes
# =============================================================================


@dataclass
class LinearModelFit:
    """Per-gene least squares fit."""

    coefficients: np.ndarray  # (n_genes, p)
    stdev_unscaled: np.ndarray  # (n_genes, p)
    sigma: np.ndarray  # (n_genes,)
    df_residual: np.ndarray  # (n_genes,)
    amean: np.ndarray  # (n_genes,)


def fit_linear_model(
    y: np.ndarray,
    design: np.ndarray,
    weights: np.ndarray | None = None,
) -> LinearModelFit:
    """
    Fit a linear model to every gene.

    Parameters
    ----------
    y : np.ndarray
        Expression matrix (n_samples, n_genes).
    design : np.ndarray
        Design matrix (n_samples, p) of full column rank.
    weights : np.ndarray | None
        Observation weights (n_samples, n_genes). None fits by ordinary
        least squares.

    Returns
    -------
    LinearModelFit
        Coefficients, unscaled standard deviations and residual SD.

    Raises
    ------
    ValidationError
        If the design is rank deficient or leaves no residual degrees of freedom.
    """
    n, p = design.shape
    if np.linalg.matrix_rank(design) < p:
        raise ValidationError("Design matrix is not of full column rank", field="design")
    df_res = n - p
    if df_res < 1:
        raise ValidationError(
            f"No residual degrees of freedom ({n} samples, {p} coefficients)",
            field="design",
        )
    n_genes = y.shape[1]
    amean = y.mean(axis=0)

    if weights is None:
        xtx_inv = np.linalg.inv(design.T @ design)
        coef = (xtx_inv @ design.T @ y).T
        resid = y - design @ coef.T
        sigma = np.sqrt(np.sum(resid**2, axis=0) / df_res)
        stdev = np.tile(np.sqrt(np.diag(xtx_inv)), (n_genes, 1))
        return LinearModelFit(coef, stdev, sigma, np.full(n_genes, float(df_res)), amean)

    coef = np.empty((n_genes, p))
    stdev = np.empty((n_genes, p))
    sigma = np.empty(n_genes)
    for g in range(n_genes):
        w = weights[:, g]
        xw = design * w[:, np.newaxis]
        xtwx_inv = np.linalg.inv(design.T @ xw)
        beta = xtwx_inv @ (xw.T @ y[:, g])
        r = y[:, g] - design @ beta
        coef[g] = beta
        stdev[g] = np.sqrt(np.diag(xtwx_inv))
        sigma[g] = np.sqrt(np.sum(w * r**2) / df_res)
    return LinearModelFit(coef, stdev, sigma, np.full(n_genes, float(df_res)), amean)


def _trigamma_inverse(x: np.ndarray) -> np.ndarray:
    """Solve trigamma(y) = x by Newton iteration (Smyth 2004)."""
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = 0.5 + 1.0 / x
    large = x > 1e7
    small = x < 1e-6
    for _ in range(50):
        tri = special.polygamma(1, y)
        dif = tri * (1 - tri / x) / special.polygamma(2, y)
        y = y + dif
        if np.max(-dif / y) < 1e-8:
            break
    y[large] = 1.0 / np.sqrt(x[large])
    y[small] = 1.0 / x[small]
    return y


def _lowess_smooth(x: np.ndarray, y: np.ndarray, frac: float = 0.5) -> np.ndarray:
    """
    Locally weighted linear smoothing with tricube weights.

    Returns the fitted values at ``x``, in the original order.
    """
    n = len(x)
    if n < 3:
        return y.copy()

    order = np.argsort(x)
    xs = x[order]
    ys = y[order]
    k = max(3, int(np.ceil(frac * n)))
    fitted = np.empty(n)

    for i in range(n):
        distances = np.abs(xs - xs[i])
        neighbors = np.argpartition(distances, k - 1)[:k]
        h = max(distances[neighbors].max(), 1e-12)
        w = (1 - (distances[neighbors] / h) ** 3) ** 3
        xn, yn = xs[neighbors], ys[neighbors]
        sw = w.sum()
        if sw <= 0:
            fitted[i] = ys[i]
            continue
        xm = np.sum(w * xn) / sw
        ym = np.sum(w * yn) / sw
        sxx = np.sum(w * (xn - xm) ** 2)
        slope = np.sum(w * (xn - xm) * (yn - ym)) / sxx if sxx > 1e-12 else 0.0
        fitted[i] = ym + slope * (xs[i] - xm)

    result = np.empty(n)
    result[order] = fitted
    return result


def _fit_f_dist(
    s2: np.ndarray,
    df: np.ndarray,
    covariate: np.ndarray | None = None,
) -> tuple[np.ndarray, float]:
    """
    Moment estimation of the scaled F prior of the gene-wise variances.

    Returns
    -------
    tuple
        (s2_prior, df_prior); s2_prior has one value per gene when a
        covariate is given (variance trend), otherwise a constant.
    """
    n = len(s2)
    s2 = np.maximum(s2, 1e-5 * np.median(s2[s2 > 0]) if np.any(s2 > 0) else 1e-12)
    z = np.log(s2)
    e = z - special.digamma(df / 2) + np.log(df / 2)

    if covariate is None:
        emean = np.full(n, e.mean())
        n_coef = 1
    else:
        emean = _lowess_smooth(covariate, e, frac=0.5)
        n_coef = 4
    evar = np.sum((e - emean) ** 2) / max(n - n_coef, 1)
    evar = evar - np.mean(special.polygamma(1, df / 2))

    if evar > 0:
        df_prior = float(2 * _trigamma_inverse(np.array([evar]))[0])
        s2_prior = np.exp(emean + special.digamma(df_prior / 2) - np.log(df_prior / 2))
    else:
        df_prior = np.inf
        s2_prior = np.exp(emean)
    return s2_prior, df_prior


def moderate_variances(fit: LinearModelFit, coefficient: int, trend: bool = False) -> dict[str, np.ndarray]:
    """
    Empirical Bayes moderated t-statistics for one coefficient.

    Parameters
    ----------
    fit : LinearModelFit
        Per-gene linear model fit.
    coefficient : int
        Column of the design to test.
    trend : bool, default=False
        Let the prior variance depend on average expression.

    Returns
    -------
    dict[str, np.ndarray]
        ``t``, ``p_value``, ``s2_post``, ``df_total`` and the scalar
        ``df_prior``.

    References
    ----------
    Smyth GK (2004) Linear models and empirical Bayes methods for assessing
    differential expression in microarray experiments. Statistical
    Applications in Genetics and Molecular Biology 3:Article3.
    """
    s2 = fit.sigma**2
    df = fit.df_residual
    s2_prior, df_prior = _fit_f_dist(s2, df, fit.amean if trend else None)

    if np.isfinite(df_prior):
        s2_post = (df_prior * s2_prior + df * s2) / (df_prior + df)
        df_total = np.minimum(df + df_prior, df.sum())
    else:
        s2_post = np.broadcast_to(s2_prior, s2.shape).astype(np.float64)
        df_total = np.full_like(df, np.inf)

    se = fit.stdev_unscaled[:, coefficient] * np.sqrt(s2_post)
    t = fit.coefficients[:, coefficient] / se
    if np.all(np.isinf(df_total)):
        p = 2 * stats.norm.sf(np.abs(t))
    else:
        p = 2 * stats.t.sf(np.abs(t), df_total)
    return {"t": t, "p_value": p, "s2_post": s2_post, "df_total": df_total, "df_prior": df_prior}


# =============================================================================
# Helpers
# =============================================================================


def _two_groups(x: CountDataset, reference: str | None) -> tuple[np.ndarray, np.ndarray, str, str]:
    groups = x.groups()
    levels = sorted(set(groups.tolist()))
    if len(levels) != 2:
        raise ValidationError(
            f"Differential testing needs exactly 2 groups in '{x.group_col}', found {levels}",
            field="group_col",
        )
    if reference is None:
        reference = levels[0]
    elif reference not in levels:
        raise ValidationError(f"Reference level '{reference}' not in {levels}", field="reference")
    other = levels[1] if levels[0] == reference else levels[0]
    idx_ref = np.flatnonzero(groups == reference)
    idx_other = np.flatnonzero(groups == other)
    for level, idx in ((reference, idx_ref), (other, idx_other)):
        if len(idx) < 2:
            raise ValidationError(
                f"Group '{level}' has only {len(idx)} samples, minimum 2 required",
                field="group_col",
            )
    return idx_ref, idx_other, reference, other


def _covariate_adjusted(x: CountDataset, y: np.ndarray, reference: str | None) -> np.ndarray:
    """Remove the covariate effects from ``y``, keeping the group effect."""
    if x.covariates is None:
        return y
    design, _ = x.design_matrix(reference=reference)
    fit = fit_linear_model(y, design)
    n_group_cols = design.shape[1] - x.n_covariates
    cov_part = design[:, n_group_cols:] @ fit.coefficients[:, n_group_cols:].T
    return y - cov_part


def _result(
    x: CountDataset,
    method: str,
    log2_fc: np.ndarray,
    ave_expr: np.ndarray,
    statistics: np.ndarray,
    p_values: np.ndarray,
    params: dict[str, Any],
) -> DEAResult:
    truth = x.truth() if x.has_truth else None
    return DEAResult(
        feature_ids=x.feature_ids.astype(str),
        log2_fc=np.asarray(log2_fc, dtype=np.float64),
        ave_expr=np.asarray(ave_expr, dtype=np.float64),
        statistics=np.asarray(statistics, dtype=np.float64),
        p_values=np.asarray(p_values, dtype=np.float64),
        p_values_adj=adjust_fdr(p_values),
        method=method,
        truth=truth,
        params=params,
    )


# =============================================================================
# Methods
# =============================================================================


@register_method(STEP, "limma_trend")
def dea_limma_trend(x: CountDataset, reference: str | None = None, prior_count: float = 2.0) -> DEAResult:
    """limma-trend: linear model on log-CPM with a mean-variance trended prior.

    Parameters
    ----------
    x : CountDataset
        Input counts, with optional covariates.
    reference : str | None
        Reference group level.
    prior_count : float, default=2.0
        Pseudo-count of the log-CPM transformation.

    Returns
    -------
    DEAResult
        Moderated t-test results.

    References
    ----------
    Law CW et al. (2014) voom: precision weights unlock linear model
    analysis tools for RNA-seq read counts. Genome Biology 15:R29.
    """
    _two_groups(x, reference)
    y = x.log_cpm(prior_count=prior_count)
    design, _ = x.design_matrix(reference=reference)
    fit = fit_linear_model(y, design)
    mod = moderate_variances(fit, coefficient=1, trend=True)
    return _result(
        x, "limma_trend", fit.coefficients[:, 1], fit.amean, mod["t"], mod["p_value"],
        {"prior_count": prior_count, "df_prior": mod["df_prior"]},
    )


def voom_weights(x: CountDataset, design: np.ndarray, span: float = 0.5) -> tuple[np.ndarray, np.ndarray]:
    """
    voom observation-level precision weights.

    Fits the gene-wise model, smooths the square root of the residual standard
    deviation against the average log count, and predicts a variance for
    every observation from its fitted log count.

    Returns
    -------
    tuple
        (log2_cpm, weights), both (n_samples, n_genes).
    """
    lib = np.maximum(x.library_sizes(), 1.0)
    y = x.log_cpm(prior_count=0.5)
    fit = fit_linear_model(y, design)

    mean_log_count = fit.amean + np.mean(np.log2(lib + 1.0)) - np.log2(1e6)
    sqrt_sd = np.sqrt(np.maximum(fit.sigma, 0.0))
    smoothed = _lowess_smooth(mean_log_count, sqrt_sd, frac=span)

    order = np.argsort(mean_log_count)
    fitted_cpm = design @ fit.coefficients.T
    fitted_count = fitted_cpm + np.log2(lib + 1.0)[:, np.newaxis] - np.log2(1e6)
    predicted = np.interp(fitted_count, mean_log_count[order], smoothed[order])
    weights = 1.0 / np.maximum(predicted, 1e-3) ** 4
    return y, weights


@register_method(STEP, "voom")
def dea_voom(x: CountDataset, reference: str | None = None) -> DEAResult:
    """voom: precision-weighted linear model with empirical Bayes moderation."""
    _two_groups(x, reference)
    design, _ = x.design_matrix(reference=reference)
    y, weights = voom_weights(x, design)
    fit = fit_linear_model(y, design, weights=weights)
    mod = moderate_variances(fit, coefficient=1, trend=False)
    return _result(
        x, "voom", fit.coefficients[:, 1], fit.amean, mod["t"], mod["p_value"],
        {"df_prior": mod["df_prior"]},
    )


@register_method(STEP, "welch")
def dea_welch(x: CountDataset, reference: str | None = None, prior_count: float = 2.0) -> DEAResult:
    """Welch's t-test on covariate-adjusted log-CPM."""
    idx_ref, idx_other, _, _ = _two_groups(x, reference)
    y = _covariate_adjusted(x, x.log_cpm(prior_count=prior_count), reference)
    a, b = y[idx_other], y[idx_ref]
    t, p = stats.ttest_ind(a, b, axis=0, equal_var=False)
    log2_fc = a.mean(axis=0) - b.mean(axis=0)
    # Constant genes give NaN statistics; they are not differential
    p = np.where(np.isnan(p), 1.0, p)
    t = np.where(np.isnan(t), 0.0, t)
    return _result(x, "welch", log2_fc, y.mean(axis=0), t, p, {"prior_count": prior_count})


@register_method(STEP, "wilcoxon")
def dea_wilcoxon(x: CountDataset, reference: str | None = None, prior_count: float = 2.0) -> DEAResult:
    """Wilcoxon rank-sum (Mann-Whitney U) test on covariate-adjusted log-CPM."""
    idx_ref, idx_other, _, _ = _two_groups(x, reference)
    y = _covariate_adjusted(x, x.log_cpm(prior_count=prior_count), reference)
    a, b = y[idx_other], y[idx_ref]
    u, p = stats.mannwhitneyu(a, b, alternative="two-sided", axis=0)
    log2_fc = np.median(a, axis=0) - np.median(b, axis=0)
    p = np.where(np.isnan(p), 1.0, p)
    return _result(x, "wilcoxon", log2_fc, y.mean(axis=0), u, p, {"prior_count": prior_count})


def run_dea(x: CountDataset, dea_method: str = "limma_trend", reference: str | None = None) -> DEAResult:
    """
    Differential expression step of the DEA pipeline.

    Parameters
    ----------
    x : CountDataset
        Filtered counts, optionally carrying surrogate variables.
    dea_method : str, default="limma_trend"
        Registered method name, see :func:`pipecomp.utils.registry.list_methods`.
    reference : str | None
        Reference group level. Defaults to the first level in sorted order.

    Returns
    -------
    DEAResult
        Gene-level results together with the dataset's ground truth.

    Raises
    ------
    ValidationError
        If the method is unknown or the design is not a two-group comparison.
    """
    method = get_method(STEP, dea_method)
    if method is None:
        raise ValidationError(
            f"Unknown DEA method '{dea_method}'. Available: {list_methods(STEP)}",
            field="dea_method",
        )
    logger.debug("Running %s on %d genes with %d covariate(s)",
                 dea_method, x.n_features, x.n_covariates)
    return method(x, reference=reference)
