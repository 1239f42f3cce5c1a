"""Benchmark datasets."""

from .simulation import DEASimulator, simulate_benchmark_datasets, simulate_dea_dataset

__all__ = ["DEASimulator", "simulate_benchmark_datasets", "simulate_dea_dataset"]
