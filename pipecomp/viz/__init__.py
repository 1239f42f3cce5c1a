"""Plotting of benchmark results."""

from .plots import eval_heatmap, plot_dea_curve, plot_elapsed
from .style import PlotStyle, configure_plots, save_figure

__all__ = [
    "PlotStyle",
    "configure_plots",
    "eval_heatmap",
    "plot_dea_curve",
    "plot_elapsed",
    "save_figure",
]
