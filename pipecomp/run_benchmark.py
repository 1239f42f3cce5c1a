#!/usr/bin/env python3
"""Command line runner for DEA pipeline benchmarks.

Simulates the configured datasets, runs every combination of the
configured alternatives through the filtering, SVA and DEA steps, saves the
result tables and draws the summary figures.

Usage:
    python -m pipecomp.run_benchmark init-config pipecomp_config.yaml
    python -m pipecomp.run_benchmark run --config pipecomp_config.yaml
    python -m pipecomp.run_benchmark plot --results results/pipecomp --kind heatmap --metric TPR
"""

import argparse
import logging
import sys
import time
from pathlib import Path

from pipecomp.config.loader import (
    ConfigurationError,
    PlotConfig,
    RunConfig,
    build_datasets,
    get_default_config,
    load_config,
    save_config,
)
from pipecomp.core.exceptions import PipeCompError
from pipecomp.dea.pipeline import dea_pipeline, default_alternatives
from pipecomp.pipeline.results import PipelineResults, read_results
from pipecomp.pipeline.runner import run_pipeline
from pipecomp.viz import configure_plots, eval_heatmap, plot_dea_curve, plot_elapsed, save_figure

logger = logging.getLogger(__name__)

PLOT_KINDS = ("curve", "heatmap", "elapsed")


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Parameters
    ----------
    argv : list[str] | None
        Arguments, defaults to ``sys.argv[1:]``.

    Returns
    -------
    argparse.Namespace
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="pipecomp",
        description="Benchmark differential expression analysis pipelines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Write a default configuration
  pipecomp init-config pipecomp_config.yaml

  # Run the benchmark with 4 threads
  pipecomp run --config pipecomp_config.yaml --n-threads 4

  # Redraw a figure from saved results
  pipecomp plot --results results/pipecomp --kind heatmap --metric TPR
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a benchmark")
    run.add_argument(
        "--config",
        type=str,
        required=True,
        help="YAML configuration file (created with defaults if missing)",
    )
    run.add_argument(
        "--output-prefix",
        type=str,
        default=None,
        help="Prefix of the result files (overrides the configuration)",
    )
    run.add_argument(
        "--n-threads",
        type=int,
        default=None,
        help="Number of datasets processed in parallel (overrides the configuration)",
    )
    run.add_argument(
        "--no-plots",
        action="store_true",
        help="Skip generating figures",
    )
    run.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    init = subparsers.add_parser("init-config", help="Write the default configuration")
    init.add_argument("path", type=str, help="Destination YAML file")
    init.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing file",
    )

    plot = subparsers.add_parser("plot", help="Plot saved results")
    plot.add_argument("--results", type=str, required=True, help="Prefix of saved results")
    plot.add_argument("--kind", choices=PLOT_KINDS, default="curve", help="Figure type")
    plot.add_argument("--step", type=str, default="dea", help="Evaluated step (default: dea)")
    plot.add_argument("--metric", type=str, default="F1", help="Heatmap metric (default: F1)")
    plot.add_argument("--color-by", type=str, default=None, help="Curve color parameter")
    plot.add_argument("--output", type=str, default=None, help="Output path without extension")
    plot.add_argument("--formats", type=str, nargs="+", default=["png"], help="File formats")
    plot.add_argument("--style", type=str, default="science", help="Plot style")

    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def generate_plots(results: PipelineResults, prefix: str, plots: PlotConfig) -> list[Path]:
    """Draw the summary figures of a run next to its result files.

    Returns
    -------
    list[Path]
        Written files.
    """
    configure_plots(plots.style)
    color_by = plots.color_by
    if color_by is not None and color_by not in results.parameter_columns("dea"):
        color_by = None

    written = []
    written += save_figure(plot_dea_curve(results, color_by=color_by), f"{prefix}.curve", plots.formats)
    written += save_figure(
        eval_heatmap(results, "dea", plots.metric), f"{prefix}.heatmap.{plots.metric}", plots.formats
    )
    written += save_figure(plot_elapsed(results), f"{prefix}.elapsed", plots.formats)
    return written


def print_summary(results: PipelineResults, threshold: float = 0.05) -> None:
    table = results.get_evaluation("dea")
    if table.empty:
        print("No successful combinations.")
        return
    if "threshold" in table.columns and threshold in set(table["threshold"]):
        table = table[table["threshold"] == threshold]
    summary = (
        table.groupby("combination", sort=False)[["FDR", "TPR", "F1"]]
        .mean()
        .sort_values("F1", ascending=False)
    )
    print(f"\nMean accuracy across datasets at threshold {threshold:g}:")
    print(summary.to_string(float_format=lambda v: f"{v:.3f}"))
    if not results.errors.empty:
        print(f"\n{len(results.errors)} combination(s) failed; see the errors table.")


def run_command(args: argparse.Namespace) -> int:
    config: RunConfig = load_config(args.config)
    if args.output_prefix is not None:
        config.output_prefix = args.output_prefix
    if args.n_threads is not None:
        config.n_threads = args.n_threads
    configure_logging(args.verbose or config.verbose)

    datasets = build_datasets(config)
    if not datasets:
        raise ConfigurationError("No datasets configured", config_path=Path(args.config))
    alternatives = config.alternatives or default_alternatives()
    logger.info("Simulated %d dataset(s): %s", len(datasets), ", ".join(datasets))

    start = time.perf_counter()
    results = run_pipeline(
        datasets,
        alternatives,
        dea_pipeline(thresholds=config.thresholds),
        comb=config.comb,
        output_prefix=config.output_prefix,
        n_threads=config.n_threads,
        skip_errors=config.skip_errors,
        save_end_results=config.save_end_results,
        random_seed=config.random_seed,
    )
    logger.info("Benchmark completed in %.2fs", time.perf_counter() - start)
    print_summary(results)
    print(f"\nResults saved with prefix: {config.output_prefix}")

    if config.plots.generate and not args.no_plots:
        for path in generate_plots(results, config.output_prefix, config.plots):
            print(f"  - {path}")
    return 0


def init_config_command(args: argparse.Namespace) -> int:
    path = Path(args.path)
    if path.exists() and not args.force:
        raise ConfigurationError(f"{path} exists; use --force to overwrite", config_path=path)
    save_config(get_default_config(), path)
    print(f"Default configuration written to {path}")
    return 0


def plot_command(args: argparse.Namespace) -> int:
    results = read_results(args.results)
    configure_plots(args.style)
    if args.kind == "curve":
        fig = plot_dea_curve(results, step=args.step, color_by=args.color_by)
    elif args.kind == "heatmap":
        fig = eval_heatmap(results, args.step, args.metric)
    else:
        fig = plot_elapsed(results)
    output = args.output or f"{args.results}.{args.kind}"
    for path in save_figure(fig, output, args.formats):
        print(f"  - {path}")
    return 0


COMMANDS = {
    "run": run_command,
    "init-config": init_config_command,
    "plot": plot_command,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns
    -------
    int
        Exit code (0 for success, 1 for configuration or results errors).
    """
    args = parse_arguments(argv)
    try:
        return COMMANDS[args.command](args)
    except ConfigurationError as e:
        where = f" ({e.config_path})" if e.config_path else ""
        print(f"ERROR: {e.message}{where}", file=sys.stderr)
        return 1
    except PipeCompError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
