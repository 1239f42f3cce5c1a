"""Surrogate variable analysis.

Estimates latent sample-level factors of unwanted variation (e.g. hidden
batches) from the residuals of the group model, and attaches them to the
dataset as covariates for the differential testing step.

Supported methods:
    - none: No surrogate variables
    - svd: Leading singular vectors of the residual matrix
    - irw: Iteratively re-weighted SVA (Leek & Storey 2008)

References
----------
Leek JT, Storey JD (2007). Capturing heterogeneity in gene expression studies
by surrogate variable analysis. PLoS Genetics 3(9):e161.

Buja A, Eyuboglu N (1992). Remarks on parallel analysis. Multivariate
Behavioral Research 27(4):509-540.
"""

from __future__ import annotations

import logging

import numpy as np
import scipy.stats as stats

from pipecomp.core.exceptions import ValidationError
from pipecomp.core.structures import CountDataset
from pipecomp.utils.registry import get_method, list_methods, register_method

logger = logging.getLogger(__name__)

__all__ = [
    "estimate_n_sv",
    "estimate_surrogate_variables",
    "local_fdr",
    "sva_irw",
    "sva_none",
    "sva_svd",
]

STEP = "sva"

N_PERMUTATIONS = 20
SIGNIFICANCE = 0.1
IRW_ITERATIONS = 5


def _residualize(y: np.ndarray, mod: np.ndarray) -> np.ndarray:
    """Residuals of ``y`` (n_samples, n_genes) after projecting out ``mod``."""
    hat = mod @ np.linalg.pinv(mod)
    return y - hat @ y


def _variance_fractions(res: np.ndarray, ndf: int) -> np.ndarray:
    d = np.linalg.svd(res, compute_uv=False)[:ndf] ** 2
    total = d.sum()
    return d / total if total > 0 else np.zeros(ndf)


def estimate_n_sv(
    y: np.ndarray,
    mod: np.ndarray,
    n_permutations: int = N_PERMUTATIONS,
    significance: float = SIGNIFICANCE,
    random_state: np.random.Generator | None = None,
) -> int:
    """
    Number of significant surrogate variables by permutation.

    Each gene's residuals are permuted independently across samples and the
    share of variance explained by every singular value is compared with its
    permutation distribution. p-values are made monotone so that a factor
    is only significant when all stronger factors are.

    Parameters
    ----------
    y : np.ndarray
        Expression matrix (n_samples, n_genes).
    mod : np.ndarray
        Full model design matrix (n_samples, p).
    n_permutations : int, default=20
        Number of permutations.
    significance : float, default=0.1
        Significance level.
    random_state : np.random.Generator | None
        Source of randomness.

    Returns
    -------
    int
        Estimated number of surrogate variables.
    """
    rng = random_state if random_state is not None else np.random.default_rng()
    n = y.shape[0]
    ndf = n - int(np.ceil(np.trace(mod @ np.linalg.pinv(mod))))
    if ndf < 1:
        return 0

    res = _residualize(y, mod)
    observed = _variance_fractions(res, ndf)
    null = np.empty((n_permutations, ndf))
    for b in range(n_permutations):
        res0 = _residualize(rng.permuted(res, axis=0), mod)
        null[b] = _variance_fractions(res0, ndf)

    p = (null >= observed).mean(axis=0)
    p = np.maximum.accumulate(p)
    return int(np.sum(p <= significance))


def _f_pvalues(y: np.ndarray, mod: np.ndarray, mod0: np.ndarray) -> np.ndarray:
    """Per-gene F-test p-values of ``mod`` against the nested ``mod0``."""
    n = y.shape[0]
    rss1 = np.sum(_residualize(y, mod) ** 2, axis=0)
    rss0 = np.sum(_residualize(y, mod0) ** 2, axis=0)
    df1, df0 = mod.shape[1], mod0.shape[1]
    with np.errstate(divide="ignore", invalid="ignore"):
        f = ((rss0 - rss1) / (df1 - df0)) / (rss1 / (n - df1))
    p = stats.f.sf(f, df1 - df0, n - df1)
    return np.where(np.isnan(p), 1.0, p)


def local_fdr(p_values: np.ndarray, lam: float = 0.8, adjust: float = 1.5, eps: float = 1e-8) -> np.ndarray:
    """
    Local false discovery rate of each p-value.

    The null proportion is estimated from the p-values above ``lam``; the
    density of probit-transformed p-values is estimated with a Gaussian
    kernel whose Silverman bandwidth is widened by ``adjust``.

    Returns
    -------
    np.ndarray
        Local FDR values in [0, 1].
    """
    p = np.asarray(p_values, dtype=np.float64)
    pi0 = min(np.mean(p >= lam) / (1 - lam), 1.0)
    z = stats.norm.ppf(np.clip(p, eps, 1 - eps))
    if np.ptp(z) == 0:
        return np.full_like(p, pi0)

    kde = stats.gaussian_kde(z, bw_method=lambda k: k.silverman_factor() * adjust)
    grid = np.linspace(z.min(), z.max(), 512)
    density = np.interp(z, grid, kde(grid))
    lfdr = pi0 * stats.norm.pdf(z) / np.maximum(density, 1e-300)
    return np.clip(lfdr, 0.0, 1.0)


def _leading_vectors(mat: np.ndarray, k: int) -> np.ndarray:
    u, _, _ = np.linalg.svd(mat, full_matrices=False)
    return u[:, :k]


@register_method(STEP, "none")
def sva_none(y: np.ndarray, mod: np.ndarray, mod0: np.ndarray, n_sv: int) -> np.ndarray:
    """No surrogate variables."""
    return np.empty((y.shape[0], 0))


@register_method(STEP, "svd")
def sva_svd(y: np.ndarray, mod: np.ndarray, mod0: np.ndarray, n_sv: int) -> np.ndarray:
    """Leading left singular vectors of the residuals of the full model."""
    return _leading_vectors(_residualize(y, mod), n_sv)


@register_method(STEP, "irw")
def sva_irw(
    y: np.ndarray,
    mod: np.ndarray,
    mod0: np.ndarray,
    n_sv: int,
    n_iterations: int = IRW_ITERATIONS,
) -> np.ndarray:
    """
    Iteratively re-weighted surrogate variable estimation.

    Genes are weighted by the posterior probability that they are associated
    with the current surrogate variables but not with the group, and the
    surrogate variables are re-estimated from the weighted data.
    """
    sv = _leading_vectors(_residualize(y, mod), n_sv)
    weighted = y
    for _ in range(n_iterations):
        p_group = _f_pvalues(y, np.column_stack([mod, sv]), np.column_stack([mod0, sv]))
        prob_group = 1 - local_fdr(p_group)
        p_latent = _f_pvalues(y, np.column_stack([mod0, sv]), mod0)
        prob_latent = 1 - local_fdr(p_latent)
        weights = prob_latent * (1 - prob_group)
        weighted = y * weights[np.newaxis, :]
        weighted = weighted - weighted.mean(axis=0, keepdims=True)
        sv = _leading_vectors(weighted, n_sv)
    return sv


def estimate_surrogate_variables(
    x: CountDataset,
    sva_method: str = "svd",
    n_sv: int | str = "auto",
    random_state: np.random.Generator | None = None,
) -> CountDataset:
    """
    Surrogate variable step of the DEA pipeline.

    Parameters
    ----------
    x : CountDataset
        Filtered counts.
    sva_method : str, default="svd"
        One of the registered methods (``none``, ``svd``, ``irw``).
    n_sv : int or "auto", default="auto"
        Number of surrogate variables. ``"auto"`` estimates it by
        permutation. The number is capped so that one residual degree of
        freedom is left for testing.
    random_state : np.random.Generator | None
        Source of randomness for the permutation estimate.

    Returns
    -------
    CountDataset
        Copy of ``x`` with the surrogate variables as covariates (none when
        zero are found).

    Raises
    ------
    ValidationError
        If the method is unknown or ``n_sv`` is invalid.
    """
    method = get_method(STEP, sva_method)
    if method is None:
        raise ValidationError(
            f"Unknown SVA method '{sva_method}'. Available: {list_methods(STEP)}",
            field="sva_method",
        )

    y = x.log_cpm()
    mod, _ = x.design_matrix(include_covariates=False)
    mod0 = mod[:, :1]
    max_sv = max(x.n_samples - mod.shape[1] - 1, 0)

    if sva_method == "none":
        k = 0
    elif n_sv == "auto":
        k = estimate_n_sv(y, mod, random_state=random_state)
        logger.debug("Estimated %d surrogate variable(s)", k)
    elif isinstance(n_sv, (int, np.integer)) and not isinstance(n_sv, bool) and n_sv >= 0:
        k = int(n_sv)
    else:
        raise ValidationError(f"n_sv must be 'auto' or a non-negative integer, got {n_sv!r}", field="n_sv")

    if k > max_sv:
        logger.debug("Capping %d surrogate variables at %d", k, max_sv)
        k = max_sv

    sv = method(y, mod, mod0, k) if k > 0 else None
    out = x.with_covariates(sv)
    out.log_operation(
        action="estimate_surrogate_variables",
        params={"sva_method": sva_method, "n_sv": n_sv},
        description=f"{out.n_covariates} surrogate variable(s)",
    )
    return out
