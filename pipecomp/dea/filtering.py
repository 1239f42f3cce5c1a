"""Gene filtering, the first step of the DEA pipeline."""

from __future__ import annotations

import logging

import numpy as np

from pipecomp.core.exceptions import ValidationError
from pipecomp.core.structures import CountDataset
from pipecomp.utils.registry import get_method, list_methods, register_method

logger = logging.getLogger(__name__)

__all__ = ["filter_features", "filter_by_expr", "filter_min_count", "filter_none"]

STEP = "filtering"

LARGE_N = 10
MIN_PROP = 0.7
TOLERANCE = 1e-14


def _smallest_group(x: CountDataset) -> int:
    _, sizes = np.unique(x.groups(), return_counts=True)
    return int(sizes.min())


@register_method(STEP, "none")
def filter_none(x: CountDataset, **kwargs) -> CountDataset:
    """Keep every gene."""
    return x


@register_method(STEP, "filter_by_expr")
def filter_by_expr(
    x: CountDataset,
    min_count: float = 10,
    min_total_count: float = 15,
    **kwargs,
) -> CountDataset:
    """
    Keep genes with worthwhile counts in enough samples.

    A gene is kept when its CPM reaches ``min_count`` expressed at the median
    library size in at least ``n_min`` samples, and its total count reaches
    ``min_total_count``. ``n_min`` is the smallest group size, relaxed
    towards 70% of it for groups larger than 10.

    Parameters
    ----------
    x : CountDataset
        Input counts.
    min_count : float, default=10
        Minimum count at the median library size.
    min_total_count : float, default=15
        Minimum total count across samples.

    Returns
    -------
    CountDataset
        Dataset restricted to the kept genes.

    References
    ----------
    Chen Y, Lun ATL, Smyth GK (2016). From reads to genes to pathways:
    differential expression analysis of RNA-Seq experiments using Rsubread
    and the edgeR quasi-likelihood pipeline. F1000Research 5:1438.
    """
    lib = x.library_sizes()
    median_lib = float(np.median(lib))
    if median_lib <= 0:
        raise ValidationError("All libraries are empty", field="counts")
    cpm_cutoff = min_count / median_lib * 1e6
    cpm = x.counts / np.maximum(lib, 1.0)[:, np.newaxis] * 1e6

    n_min = float(_smallest_group(x))
    if n_min > LARGE_N:
        n_min = LARGE_N + (n_min - LARGE_N) * MIN_PROP

    keep_cpm = (cpm >= cpm_cutoff).sum(axis=0) >= n_min - TOLERANCE
    keep_total = x.counts.sum(axis=0) >= min_total_count - TOLERANCE
    return x.subset_features(keep_cpm & keep_total)


@register_method(STEP, "min_count")
def filter_min_count(
    x: CountDataset,
    min_count: float = 10,
    min_samples: int | None = None,
    **kwargs,
) -> CountDataset:
    """Keep genes with at least ``min_count`` reads in ``min_samples`` samples."""
    if min_samples is None:
        min_samples = _smallest_group(x)
    keep = (x.counts >= min_count).sum(axis=0) >= min_samples
    return x.subset_features(keep)


def filter_features(
    x: CountDataset,
    filter_method: str = "filter_by_expr",
    min_count: float = 10,
    min_total_count: float = 15,
    min_samples: int | None = None,
) -> CountDataset:
    """
    Filtering step of the DEA pipeline.

    Parameters
    ----------
    x : CountDataset
        Raw counts.
    filter_method : str, default="filter_by_expr"
        One of the registered filtering methods (``none``,
        ``filter_by_expr``, ``min_count``).
    min_count, min_total_count, min_samples
        Thresholds passed on to the method.

    Returns
    -------
    CountDataset
        A new dataset holding the genes that pass the filter.

    Raises
    ------
    ValidationError
        If the method is unknown.
    """
    method = get_method(STEP, filter_method)
    if method is None:
        raise ValidationError(
            f"Unknown filtering method '{filter_method}'. Available: {list_methods(STEP)}",
            field="filter_method",
        )
    out = method(x, min_count=min_count, min_total_count=min_total_count, min_samples=min_samples)
    if out is x:
        out = x.copy()
    out.log_operation(
        action="filter_features",
        params={"filter_method": filter_method, "min_count": min_count},
        description=f"Kept {out.n_features}/{x.n_features} genes",
    )
    logger.debug("%s kept %d of %d genes", filter_method, out.n_features, x.n_features)
    return out
