"""Plot styling shared by the benchmark figures.

Examples
--------
>>> from pipecomp.viz import configure_plots, PlotStyle
>>> configure_plots(style=PlotStyle.SCIENCE, dpi=150)
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from collections.abc import Sequence

import scienceplots  # noqa: F401 (registers the science styles)
from matplotlib import pyplot as plt
from matplotlib.figure import Figure

__all__ = ["PlotStyle", "configure_plots", "save_figure"]


class PlotStyle(Enum):
    """Available plot styles for publication-quality figures.

    Options
    -------
    SCIENCE : str
        Science magazine style (clean, minimal)
    IEEE : str
        IEEE journal style (compact, technical)
    NATURE : str
        Nature journal style
    DEFAULT : str
        Default matplotlib style
    """

    SCIENCE = "science"
    IEEE = "ieee"
    NATURE = "nature"
    DEFAULT = "default"


_STYLE_MAP = {
    PlotStyle.SCIENCE: ["science", "no-latex"],
    PlotStyle.IEEE: ["science", "ieee", "no-latex"],
    PlotStyle.NATURE: ["science", "nature", "no-latex"],
    PlotStyle.DEFAULT: ["default"],
}


def configure_plots(style: PlotStyle | str = PlotStyle.SCIENCE, dpi: int = 150) -> None:
    """Configure matplotlib for benchmark figures.

    Parameters
    ----------
    style : PlotStyle | str, default=PlotStyle.SCIENCE
        Plot style, or its name (``"science"``, ``"ieee"``, ``"nature"``,
        ``"default"``).
    dpi : int, default=150
        Resolution of displayed and saved figures.

    Raises
    ------
    ValueError
        If ``style`` names no known style.
    """
    style = PlotStyle(style)
    plt.style.use(_STYLE_MAP[style])
    plt.rcParams.update(
        {
            "figure.dpi": dpi,
            "savefig.dpi": dpi,
            "font.size": 9,
            "axes.labelsize": 10,
            "axes.titlesize": 10,
            "xtick.labelsize": 8,
            "ytick.labelsize": 8,
            "legend.fontsize": 8,
        }
    )


def save_figure(
    fig: Figure,
    path: str | Path,
    formats: Sequence[str] = ("png",),
    close: bool = True,
) -> list[Path]:
    """Save a figure in one or more formats.

    Parameters
    ----------
    fig : Figure
        Figure to save.
    path : str | Path
        Output path without extension; a given extension is replaced.
    formats : Sequence[str], default=("png",)
        File formats, e.g. ``("png", "pdf")``.
    close : bool, default=True
        Close the figure afterwards.

    Returns
    -------
    list[Path]
        Written files.
    """
    base = Path(path)
    if base.suffix.lstrip(".") in {"png", "pdf", "svg", "jpg", "jpeg", "tiff", "eps"}:
        base = base.with_suffix("")
    base.parent.mkdir(parents=True, exist_ok=True)
    written = []
    for fmt in formats:
        target = base.parent / f"{base.name}.{fmt.lstrip('.')}"
        fig.savefig(target, bbox_inches="tight")
        written.append(target)
    if close:
        plt.close(fig)
    return written
