"""Figures of benchmark results.

All functions take a :class:`~pipecomp.pipeline.results.PipelineResults` and
return a matplotlib ``Figure``; use :func:`pipecomp.viz.style.save_figure`
to write them.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib import pyplot as plt
from matplotlib.figure import Figure
from matplotlib.lines import Line2D

from pipecomp.core.exceptions import ValidationError
from pipecomp.pipeline.parameter_grid import combination_label
from pipecomp.pipeline.results import PipelineResults

__all__ = ["eval_heatmap", "plot_dea_curve", "plot_elapsed"]


def _check_params(results: PipelineResults, step: str, names: Sequence[str] | None) -> list[str]:
    if names is None:
        return []
    names = [names] if isinstance(names, str) else list(names)
    known = results.parameter_columns(step)
    unknown = [n for n in names if n not in known]
    if unknown:
        raise ValidationError(
            f"{unknown} are not parameters of step '{step}'. Known: {known}", field="agg_by"
        )
    return names


def _labelled(table: pd.DataFrame, agg_by: list[str]) -> pd.DataFrame:
    """Add a ``label`` column identifying the plotted entity."""
    table = table.copy()
    if agg_by:
        table["label"] = [
            combination_label(dict(zip(agg_by, row)), agg_by)
            for row in table[agg_by].itertuples(index=False)
        ]
    else:
        table["label"] = table["combination"].astype(str)
    return table


def plot_dea_curve(
    results: PipelineResults,
    step: str = "dea",
    color_by: str | None = None,
    facet_by: str | None = "dataset",
    agg_by: Sequence[str] | None = None,
) -> Figure:
    """
    TPR against observed FDR at each nominal threshold.

    Each combination (or each ``agg_by`` group) is a line through one point
    per threshold. A point is filled when the observed FDR is at or below
    its nominal threshold, hollow otherwise. Dashed vertical lines mark the
    thresholds.

    Parameters
    ----------
    results : PipelineResults
        Benchmark results whose ``step`` evaluation holds ``threshold``,
        ``FDR`` and ``TPR`` columns.
    step : str, default="dea"
        Evaluated step.
    color_by : str | None
        Parameter mapped to color. None colors each line separately.
    facet_by : str | None, default="dataset"
        Column split into panels. None averages across datasets.
    agg_by : Sequence[str] | None
        Parameters kept when averaging over the others. None keeps every
        combination.

    Returns
    -------
    Figure
        The figure, one panel per facet.
    """
    table = results.get_evaluation(step)
    missing = [c for c in ("threshold", "FDR", "TPR") if c not in table.columns]
    if missing:
        raise ValidationError(f"Evaluation of step '{step}' lacks columns {missing}", field="step")
    agg_by = _check_params(results, step, agg_by)
    if color_by is not None:
        _check_params(results, step, [color_by])
        if agg_by and color_by not in agg_by:
            raise ValidationError("color_by must be one of the agg_by parameters", field="color_by")
    if facet_by is not None and facet_by not in table.columns:
        raise ValidationError(f"Unknown facet column '{facet_by}'", field="facet_by")

    ids = agg_by or ["combination"]
    group = list(dict.fromkeys(
        ids + ([color_by] if color_by else []) + ["threshold"] + ([facet_by] if facet_by else [])
    ))
    data = table.groupby(group, sort=False, dropna=False)[["FDR", "TPR"]].mean().reset_index()
    data = _labelled(data, agg_by)

    color_key = color_by or "label"
    keys = list(dict.fromkeys(data[color_key].tolist()))
    palette = dict(zip(keys, sns.color_palette(n_colors=len(keys))))
    thresholds = sorted(data["threshold"].unique())
    facets = list(dict.fromkeys(data[facet_by].tolist())) if facet_by else [None]

    fig, axes = plt.subplots(
        1, len(facets), figsize=(3.2 * len(facets) + 1.5, 3.2), sharey=True, squeeze=False
    )
    for ax, facet in zip(axes[0], facets):
        panel = data if facet is None else data[data[facet_by] == facet]
        for _, line in panel.groupby("label", sort=False):
            line = line.sort_values("threshold")
            color = palette[line[color_key].iloc[0]]
            ax.plot(line["FDR"], line["TPR"], color=color, linewidth=1)
            ok = (line["FDR"] <= line["threshold"]).to_numpy()
            ax.scatter(line["FDR"][ok], line["TPR"][ok], color=color, s=18, zorder=3)
            ax.scatter(line["FDR"][~ok], line["TPR"][~ok], facecolors="white",
                       edgecolors=color, s=18, zorder=3)
        for t in thresholds:
            ax.axvline(t, linestyle="--", color="grey", linewidth=0.7)
        if facet is not None:
            ax.set_title(str(facet))
        ax.set_xlabel("FDR")
    axes[0][0].set_ylabel("TPR")

    handles = [Line2D([0], [0], color=palette[k], marker="o", label=str(k)) for k in keys]
    fig.legend(handles=handles, title=color_by, loc="center left",
               bbox_to_anchor=(1.0, 0.5), frameon=False)
    fig.tight_layout()
    return fig


def _pivot_metric(
    results: PipelineResults,
    step: str,
    metric: str,
    threshold: float | None,
    agg_by: list[str],
) -> pd.DataFrame:
    table = results.get_evaluation(step)
    if metric not in table.columns:
        raise ValidationError(
            f"Unknown metric '{metric}'. Available: {results.metric_columns(step)}", field="metric"
        )
    if "threshold" in table.columns:
        available = sorted(table["threshold"].unique())
        if threshold is None:
            threshold = 0.05 if 0.05 in available else available[0]
        table = table[np.isclose(table["threshold"], threshold)]
        if table.empty:
            raise ValidationError(
                f"No rows at threshold {threshold}. Available: {available}", field="threshold"
            )
    table = _labelled(table, agg_by)
    return table.pivot_table(index="label", columns="dataset", values=metric, aggfunc="mean", sort=False)


def eval_heatmap(
    results: PipelineResults,
    step: str,
    metric: str,
    threshold: float | None = None,
    scale: bool = False,
    agg_by: Sequence[str] | None = None,
) -> Figure:
    """
    Heatmap of one metric, combinations by datasets.

    Parameters
    ----------
    results : PipelineResults
        Benchmark results.
    step : str
        Evaluated step.
    metric : str
        Metric column.
    threshold : float | None
        Threshold row to show for thresholded evaluations. Defaults to 0.05
        when present, otherwise the smallest threshold.
    scale : bool, default=False
        Z-score each dataset's column before display.
    agg_by : Sequence[str] | None
        Parameters kept when averaging over the others.

    Returns
    -------
    Figure
        Heatmap with an extra ``mean`` column, rows sorted by it.
    """
    agg_by = _check_params(results, step, agg_by)
    pivot = _pivot_metric(results, step, metric, threshold, agg_by)
    if scale:
        std = pivot.std(axis=0, ddof=0).replace(0, np.nan)
        pivot = ((pivot - pivot.mean(axis=0)) / std).fillna(0.0)
    pivot["mean"] = pivot.mean(axis=1)
    pivot = pivot.sort_values("mean", ascending=False)

    fig, ax = plt.subplots(figsize=(1.0 * pivot.shape[1] + 3, 0.35 * pivot.shape[0] + 1.5))
    sns.heatmap(
        pivot,
        annot=True,
        fmt=".2f",
        cmap="RdYlBu_r" if scale else "viridis",
        center=0 if scale else None,
        ax=ax,
        cbar_kws={"label": f"{metric} (scaled)" if scale else metric},
    )
    ax.set_xlabel("")
    ax.set_ylabel("")
    ax.set_title(metric if threshold is None else f"{metric} at threshold {threshold:g}")
    fig.tight_layout()
    return fig


def plot_elapsed(results: PipelineResults, by: Sequence[str] | None = None) -> Figure:
    """
    Mean total running time of each combination across datasets.

    Parameters
    ----------
    results : PipelineResults
        Benchmark results.
    by : Sequence[str] | None
        Parameters to group combinations by. None shows every combination.

    Returns
    -------
    Figure
        Horizontal bar chart in seconds.
    """
    last = results.steps[-1] if results.steps else None
    by = _check_params(results, last, by) if last is not None else []
    elapsed = results.total_elapsed()
    if elapsed.empty:
        raise ValidationError("No timing information to plot", field="results")

    summary = _labelled(elapsed, by).groupby("label", sort=False)["elapsed_seconds"].mean()
    summary = summary.sort_values()

    fig, ax = plt.subplots(figsize=(6, 0.3 * len(summary) + 1.2))
    ax.barh(summary.index, summary.to_numpy(), color=sns.color_palette()[0])
    ax.set_xlabel("Elapsed time (s)")
    fig.tight_layout()
    return fig
