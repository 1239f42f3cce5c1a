"""Run configuration."""

from .loader import (
    DEFAULT_CONFIG_PATH,
    ConfigurationError,
    PlotConfig,
    RunConfig,
    SimulationConfig,
    build_datasets,
    get_default_config,
    load_config,
    save_config,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ConfigurationError",
    "PlotConfig",
    "RunConfig",
    "SimulationConfig",
    "build_datasets",
    "get_default_config",
    "load_config",
    "save_config",
]
