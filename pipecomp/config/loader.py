"""Configuration file loader for benchmark runs.

Provides YAML-based configuration loading with default value support
and type-safe configuration dataclasses.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from pipecomp.core.structures import CountDataset
from pipecomp.datasets.simulation import simulate_benchmark_datasets
from pipecomp.viz.style import PlotStyle


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors.

    Attributes
    ----------
    message : str
        Error message describing the configuration issue.
    config_path : Path | None
        Path to the configuration file that caused the error.
    """

    def __init__(self, message: str, config_path: Path | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.config_path = config_path


DEFAULT_CONFIG_PATH = Path("pipecomp_config.yaml")


@dataclass(slots=True)
class SimulationConfig:
    """Parameters of a family of simulated datasets.

    Attributes
    ----------
    name : str
        Name prefix; datasets are named ``{name}1``, ``{name}2``, ...
    n_datasets : int
        Number of datasets simulated with these parameters.
    random_seed : int
        Seed of the first dataset; the others use consecutive seeds.

    The remaining attributes are passed to
    :func:`pipecomp.datasets.simulate_dea_dataset`.
    """

    name: str = "sim"
    n_datasets: int = 2
    n_samples: int = 12
    n_genes: int = 2000
    prop_de: float = 0.1
    log2_fc_mean: float = 1.5
    n_batches: int = 2
    batch_strength: float = 1.0
    prop_batch: float = 0.3
    dispersion: float = 0.1
    mean_library_size: float = 1e6
    random_seed: int = 42


@dataclass(slots=True)
class PlotConfig:
    """Configuration of the figures generated after a run.

    Attributes
    ----------
    generate : bool
        Whether to generate plots.
    formats : list[str]
        Output formats (e.g., ['png', 'pdf']).
    style : str
        Plot style name, see :class:`pipecomp.viz.PlotStyle`.
    metric : str
        Metric shown in the heatmap.
    color_by : str | None
        Parameter mapped to color in the curve plot.
    """

    generate: bool = True
    formats: list[str] = field(default_factory=lambda: ["png"])
    style: str = "science"
    metric: str = "F1"
    color_by: str | None = "dea_method"


@dataclass(slots=True)
class RunConfig:
    """Main configuration of a benchmark run.

    Attributes
    ----------
    output_prefix : str
        Prefix of the result files (may include directories).
    n_threads : int
        Number of datasets processed in parallel.
    skip_errors : bool
        Record failing combinations and continue instead of aborting.
    save_end_results : bool
        Cache the outputs of the last step next to the results.
    random_seed : int | None
        Seed of the per-step random generators.
    verbose : bool
        Whether to enable debug logging.
    thresholds : list[float]
        Adjusted p-value thresholds of the DEA evaluation.
    alternatives : dict[str, list]
        Parameter alternatives; missing parameters use the pipeline defaults.
    comb : list[dict] | None
        Explicit parameter combinations to run instead of the full grid.
    datasets : list[SimulationConfig]
        Simulated dataset families.
    plots : PlotConfig
        Figure settings.
    """

    output_prefix: str = "results/pipecomp"
    n_threads: int = 1
    skip_errors: bool = True
    save_end_results: bool = False
    random_seed: int | None = 42
    verbose: bool = False
    thresholds: list[float] = field(default_factory=lambda: [0.01, 0.05, 0.1])
    alternatives: dict[str, list[Any]] = field(default_factory=dict)
    comb: list[dict[str, Any]] | None = None
    datasets: list[SimulationConfig] = field(default_factory=list)
    plots: PlotConfig = field(default_factory=PlotConfig)


def _parse_datasets(data: list | None, path: Path) -> list[SimulationConfig]:
    """Parse the dataset section.

    Parameters
    ----------
    data : list | None
        Raw YAML list of simulation settings.
    path : Path
        Configuration file, for error messages.

    Returns
    -------
    list[SimulationConfig]
        Parsed dataset families.
    """
    if not data:
        return []
    if not isinstance(data, list):
        raise ConfigurationError("'datasets' must be a list", config_path=path)

    known = {f.name for f in fields(SimulationConfig)}
    configs = []
    for entry in data:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Invalid dataset entry: {entry!r}", config_path=path)
        unknown = set(entry) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown dataset settings {sorted(unknown)}", config_path=path
            )
        configs.append(SimulationConfig(**entry))
    return configs


def _parse_plots(data: dict | None, path: Path) -> PlotConfig:
    if data is None:
        return PlotConfig()
    if not isinstance(data, dict):
        raise ConfigurationError("'plots' must be a mapping", config_path=path)
    unknown = set(data) - {f.name for f in fields(PlotConfig)}
    if unknown:
        raise ConfigurationError(f"Unknown plot settings {sorted(unknown)}", config_path=path)

    style = data.get("style", "science")
    try:
        PlotStyle(style)
    except ValueError as e:
        known = [s.value for s in PlotStyle]
        raise ConfigurationError(
            f"Unknown plot style {style!r}. Known: {known}", config_path=path
        ) from e
    formats = data.get("formats", ["png"])
    if isinstance(formats, str):
        formats = [formats]
    if not isinstance(formats, list) or not all(isinstance(x, str) for x in formats):
        raise ConfigurationError("'plots.formats' must be a list of strings", config_path=path)
    return PlotConfig(
        generate=bool(data.get("generate", True)),
        formats=formats,
        style=style,
        metric=data.get("metric", "F1"),
        color_by=data.get("color_by", "dea_method"),
    )

def _parse_alternatives(data: dict | None, path: Path) -> dict[str, list[Any]]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("'alternatives' must be a mapping", config_path=path)
    return {k: v if isinstance(v, list) else [v] for k, v in data.items()}


def _validate(config: RunConfig, path: Path) -> RunConfig:
    if not isinstance(config.n_threads, int) or config.n_threads < 1:
        raise ConfigurationError(
            f"n_threads must be a positive integer, got {config.n_threads!r}", config_path=path
        )
    if config.comb is not None and not isinstance(config.comb, list):
        raise ConfigurationError("'comb' must be a list of mappings", config_path=path)
    return config


def load_config(config_path: str | Path = DEFAULT_CONFIG_PATH) -> RunConfig:
    """Load a run configuration from a YAML file.

    If the file does not exist, creates and returns a default configuration.
    The default configuration is saved to the specified path.

    Parameters
    ----------
    config_path : str | Path
        Path to the configuration YAML file.

    Returns
    -------
    RunConfig
        Loaded run configuration.

    Raises
    ------
    ConfigurationError
        If YAML parsing fails, the file is unreadable or a setting is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        default_config = get_default_config()
        save_config(default_config, path)
        return default_config

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML config: {e}",
            config_path=path,
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read config file: {e}",
            config_path=path,
        ) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping", config_path=path)

    try:
        config = RunConfig(
            output_prefix=str(data.get("output_prefix", "results/pipecomp")),
            n_threads=data.get("n_threads", 1),
            skip_errors=data.get("skip_errors", True),
            save_end_results=data.get("save_end_results", False),
            random_seed=data.get("random_seed", 42),
            verbose=data.get("verbose", False),
            thresholds=[float(t) for t in data.get("thresholds", [0.01, 0.05, 0.1])],
            alternatives=_parse_alternatives(data.get("alternatives"), path),
            comb=data.get("comb"),
            datasets=_parse_datasets(data.get("datasets"), path),
            plots=_parse_plots(data.get("plots"), path),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}", config_path=path) from e
    return _validate(config, path)


def save_config(config: RunConfig, config_path: str | Path) -> None:
    """Save configuration to YAML file.

    Parameters
    ----------
    config : RunConfig
        Configuration to save.
    config_path : str | Path
        Path where configuration should be saved.

    Raises
    ------
    ConfigurationError
        If file cannot be written.
    """
    path = Path(config_path)

    # Ensure parent directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    data = asdict(config)

    try:
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Failed to save config file: {e}",
            config_path=path,
        ) from e


def get_default_config() -> RunConfig:
    """Get the default run configuration.

    Returns
    -------
    RunConfig
        Two families of simulated datasets, with and without a hidden batch,
        and alternatives covering the main methods of each step.
    """
    return RunConfig(
        output_prefix="results/pipecomp",
        n_threads=2,
        skip_errors=True,
        save_end_results=False,
        random_seed=42,
        verbose=False,
        thresholds=[0.01, 0.05, 0.1],
        alternatives={
            "filter_method": ["none", "filter_by_expr"],
            "sva_method": ["none", "svd", "irw"],
            "dea_method": ["limma_trend", "voom", "welch"],
        },
        comb=None,
        datasets=[
            SimulationConfig(name="batch", n_datasets=2, batch_strength=1.0, random_seed=42),
            SimulationConfig(name="clean", n_datasets=1, n_batches=1, random_seed=100),
        ],
        plots=PlotConfig(),
    )


def build_datasets(config: RunConfig) -> dict[str, CountDataset]:
    """Simulate the datasets described by a run configuration.

    Parameters
    ----------
    config : RunConfig
        Run configuration.

    Returns
    -------
    dict[str, CountDataset]
        Datasets by name, in configuration order.

    Raises
    ------
    ConfigurationError
        If two families produce the same dataset name.
    """
    datasets: dict[str, CountDataset] = {}
    for sim in config.datasets:
        params = asdict(sim)
        name = params.pop("name")
        n = params.pop("n_datasets")
        seed = params.pop("random_seed")
        family = simulate_benchmark_datasets(n, random_seed=seed, prefix=name, **params)
        clash = set(family) & set(datasets)
        if clash:
            raise ConfigurationError(f"Duplicate dataset names {sorted(clash)}")
        datasets.update(family)
    return datasets
