"""Execution of all parameter combinations of a pipeline.

The runner walks the pipeline step by step. At each step, every distinct
prefix of parameter values (the values of all parameters of the steps so far)
is computed exactly once from the output of its parent prefix, so that
combinations differing only in downstream parameters share upstream work.
"""

from __future__ import annotations

import copy
import hashlib
import logging
import time
import warnings
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import polars as pl

from pipecomp.core.exceptions import StepExecutionError, ValidationError
from pipecomp.pipeline.definition import PipelineDefinition
from pipecomp.pipeline.parameter_grid import (
    ParameterGrid,
    combination_key,
    combination_label,
    restrict_combinations,
)
from pipecomp.pipeline.results import PipelineResults, software_versions
from pipecomp.utils.cache import ResultCache

logger = logging.getLogger(__name__)

__all__ = ["run_pipeline", "evaluation_to_frame"]


@dataclass
class _DatasetRun:
    """Tables produced by the run of one dataset."""

    name: str
    evaluation: dict[str, pd.DataFrame] = field(default_factory=dict)
    elapsed: dict[str, pd.DataFrame] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    outputs: dict[tuple[str, str, str], Any] = field(default_factory=dict)


def evaluation_to_frame(value: Any) -> pd.DataFrame:
    """Normalize the return value of an evaluation function to a DataFrame.

    Parameters
    ----------
    value : dict | list[dict] | pd.DataFrame | pl.DataFrame | float
        A dict gives one row, a list of dicts several rows, a number a
        single ``value`` column.

    Returns
    -------
    pd.DataFrame
        Evaluation rows.

    Raises
    ------
    ValidationError
        If the value has another type.
    """
    if isinstance(value, pd.DataFrame):
        return value.reset_index(drop=True)
    if isinstance(value, pl.DataFrame):
        return pd.DataFrame(value.to_dict(as_series=False))
    if isinstance(value, Mapping):
        return pd.DataFrame([dict(value)])
    if isinstance(value, list) and all(isinstance(v, Mapping) for v in value):
        return pd.DataFrame([dict(v) for v in value])
    if isinstance(value, (int, float, np.number)) and not isinstance(value, bool):
        return pd.DataFrame([{"value": float(value)}])
    raise ValidationError(
        f"Evaluation must return a dict, a list of dicts or a DataFrame, "
        f"got {type(value).__name__}",
        field="evaluation",
    )


def _derive_seed(random_seed: int, dataset: str, step: str, label: str) -> int:
    digest = hashlib.md5(f"{random_seed}:{dataset}:{step}:{label}".encode()).hexdigest()
    return int(digest[:8], 16)


def _parameter_frame(rows: list[dict[str, Any]], columns: list[str],
                     keys: Sequence[str]) -> pd.DataFrame:
    """Frame of ``rows`` whose parameter columns keep the values as given."""
    frame = pd.DataFrame(rows, columns=columns)
    for k in keys:
        frame[k] = pd.Series([row[k] for row in rows], index=frame.index, dtype=object)
    return frame


def _keyed_frame(params: Mapping[str, Any], keys: Sequence[str], label: str,
                 body: pd.DataFrame) -> pd.DataFrame:
    head = {"combination": label}
    for k in keys:
        head[k] = params[k]
    n = max(len(body), 1) if body.shape[1] else 1
    key_frame = _parameter_frame([head] * n, list(head), keys)
    if body.shape[1] == 0:
        return key_frame
    reserved = set(key_frame.columns) | {"dataset"}
    clashing = [c for c in body.columns if c in reserved]
    if clashing:
        warnings.warn(
            f"Evaluation columns {clashing} clash with key columns and are "
            f"renamed with an 'eval_' prefix",
            UserWarning,
            stacklevel=2,
        )
        body = body.rename(columns={c: f"eval_{c}" for c in clashing})
    return pd.concat([key_frame, body.reset_index(drop=True)], axis=1)


def _check_distinct_labels(alternatives: Mapping[str, Sequence[Any]]) -> None:
    """Reject alternatives that are different values but print alike (``1`` and ``"1"``)."""
    for name, values in alternatives.items():
        seen: dict[str, tuple] = {}
        for value in values:
            label = combination_label({name: value}, [name])
            key = combination_key({name: value}, [name])
            if seen.setdefault(label, key) != key:
                raise ValidationError(
                    f"Alternatives of '{name}' are distinct values with the same "
                    f"label '{label}'",
                    field=name,
                )


def _run_dataset(
    name: str,
    dataset: Any,
    pipeline: PipelineDefinition,
    combinations: list[dict[str, Any]],
    skip_errors: bool,
    debug: bool,
    random_seed: int | None,
    cache: ResultCache | None,
) -> _DatasetRun:
    run = _DatasetRun(name=name)
    logger.info("Running pipeline on dataset '%s' (%d combinations)", name, len(combinations))
    start = time.perf_counter()

    try:
        root = pipeline.initiate(dataset)
    except Exception as e:
        if not skip_errors:
            raise StepExecutionError("initiation", name, {}, e) from e
        logger.warning("Initiation failed on dataset '%s': %s", name, e)
        run.errors.append({"dataset": name, "step": "initiation", "combination": "",
                           "error": f"{type(e).__name__}: {e}"})
        return run

    frontier: dict[tuple, Any] = {(): root}
    previous_keys: list[str] = []
    steps = pipeline.steps

    for position, step in enumerate(steps):
        keys = previous_keys + list(step.parameters)
        is_last = position == len(steps) - 1
        elapsed_rows: list[dict[str, Any]] = []
        eval_frames: list[pd.DataFrame] = []
        next_frontier: dict[tuple, Any] = {}
        failed: set[tuple] = set()
        skipped: set[tuple] = set()

        for params in combinations:
            key = combination_key(params, keys)
            if key in next_frontier or key in failed or key in skipped:
                continue
            parent_key = combination_key(params, previous_keys)
            if parent_key not in frontier:
                skipped.add(key)
                continue

            label = combination_label(params, keys)
            step_params = {k: params[k] for k in step.parameters}
            x = frontier[parent_key]
            if pipeline.copy_inputs:
                x = copy.deepcopy(x)
            rng = np.random.default_rng(
                None if random_seed is None else _derive_seed(random_seed, name, step.name, label)
            )

            try:
                step.validate_parameters(step_params)
                t0 = time.perf_counter()
                output = step.run(x, step_params, random_state=rng)
                duration = time.perf_counter() - t0
                evaluation = None
                if step.evaluation is not None:
                    evaluation = evaluation_to_frame(step.evaluation(output))
            except Exception as e:
                if not skip_errors:
                    raise StepExecutionError(step.name, name, step_params, e) from e
                logger.warning(
                    "Step '%s' failed on dataset '%s' for [%s]: %s", step.name, name, label, e
                )
                run.errors.append({"dataset": name, "step": step.name, "combination": label,
                                   "error": f"{type(e).__name__}: {e}"})
                failed.add(key)
                continue

            logger.debug("%s / %s [%s]: %.3fs", name, step.name, label, duration)
            row = {"combination": label}
            row.update({k: params[k] for k in keys})
            row["elapsed_seconds"] = duration
            elapsed_rows.append(row)
            if evaluation is not None:
                eval_frames.append(_keyed_frame(params, keys, label, evaluation))

            next_frontier[key] = output
            if debug:
                run.outputs[(name, step.name, label)] = output
            if is_last and cache is not None:
                cache.set(name, step.name, {k: params[k] for k in keys}, output)

        if skipped:
            logger.warning(
                "Skipped %d combination(s) of step '%s' on dataset '%s' after upstream errors",
                len(skipped), step.name, name,
            )

        run.elapsed[step.name] = _parameter_frame(
            elapsed_rows, ["combination", *keys, "elapsed_seconds"], keys
        )
        if step.evaluation is not None:
            run.evaluation[step.name] = (
                pd.concat(eval_frames, ignore_index=True, sort=False)
                if eval_frames
                else pd.DataFrame(columns=["combination", *keys])
            )

        # Parents are no longer needed once all their children exist
        frontier = next_frontier
        previous_keys = keys

    logger.info("Finished dataset '%s' in %.2fs", name, time.perf_counter() - start)
    return run


def run_pipeline(
    datasets: Mapping[str, Any] | Sequence[Any],
    alternatives: Mapping[str, Any] | None,
    pipeline: PipelineDefinition,
    comb: pd.DataFrame | np.ndarray | list[dict[str, Any]] | None = None,
    output_prefix: str | Path | None = None,
    n_threads: int = 1,
    skip_errors: bool = True,
    save_end_results: bool = False,
    debug: bool = False,
    random_seed: int | None = None,
) -> PipelineResults:
    """Run every combination of parameter alternatives on every dataset.

    Parameters
    ----------
    datasets : Mapping[str, Any] | Sequence[Any]
        Named datasets (or a sequence, named ``dataset_<i>``). Each is passed
        through the pipeline's initiation function first.
    alternatives : Mapping[str, Any] | None
        Parameter name to list of values to try. Parameters not listed use
        the pipeline's default arguments.
    pipeline : PipelineDefinition
        Pipeline to benchmark.
    comb : DataFrame | ndarray | list[dict] | None
        Restrict the run to these combinations: an index matrix into the
        alternatives (see :func:`build_comb_matrix`) or explicit parameter
        dicts. None runs the full grid.
    output_prefix : str | Path | None
        When set, results are saved with this prefix (see
        :meth:`PipelineResults.save`).
    n_threads : int, default=1
        Number of datasets processed concurrently.
    skip_errors : bool, default=True
        Record failing step calls and skip their downstream combinations
        instead of raising.
    save_end_results : bool, default=False
        Pickle the output of the last step of every combination into
        ``<output_prefix>_end_results/``. Requires ``output_prefix``.
    debug : bool, default=False
        Keep every intermediate output in ``PipelineResults.outputs``.
    random_seed : int | None
        Seed of the ``random_state`` generator passed to steps accepting one.
        Each (dataset, step, combination) gets its own derived seed, so
        results do not depend on ``n_threads``.

    Returns
    -------
    PipelineResults
        Aggregated evaluation, timing and error tables.

    Raises
    ------
    StepExecutionError
        If a step fails and ``skip_errors`` is False.
    ValidationError
        If arguments are inconsistent.

    Examples
    --------
    >>> from pipecomp.dea import dea_pipeline
    >>> from pipecomp.datasets import simulate_benchmark_datasets
    >>> datasets = simulate_benchmark_datasets(2, n_genes=500)
    >>> res = run_pipeline(datasets, {"dea_method": ["limma_trend", "welch"]},
    ...                    dea_pipeline())
    >>> res.summarize("dea", "TPR")
    """
    if isinstance(datasets, Mapping):
        named = dict(datasets)
    else:
        named = {f"dataset_{i}": d for i, d in enumerate(datasets)}
    if not named:
        raise ValidationError("No datasets given", field="datasets")
    if n_threads < 1:
        raise ValidationError(f"n_threads must be >= 1, got {n_threads}", field="n_threads")
    if save_end_results and output_prefix is None:
        raise ValidationError("save_end_results requires output_prefix", field="save_end_results")

    resolved = pipeline.resolve_parameters(alternatives)
    grid = ParameterGrid(resolved)
    for message in grid.validate_parameter_space():
        logger.warning(message)
    if comb is None:
        combinations = grid.generate_combinations(strategy="grid")
    else:
        combinations = restrict_combinations(grid.expanded_values(), comb)
    if not combinations:
        raise ValidationError("No parameter combination to run", field="comb")
    _check_distinct_labels(grid.expanded_values())

    cache = None
    if save_end_results:
        prefix = Path(output_prefix)
        cache = ResultCache(prefix.with_name(f"{prefix.name}_end_results"))

    logger.info(
        "Benchmarking %d combination(s) on %d dataset(s) with %d thread(s)",
        len(combinations), len(named), n_threads,
    )

    def job(name: str) -> _DatasetRun:
        return _run_dataset(name, named[name], pipeline, combinations,
                            skip_errors, debug, random_seed, cache)

    if n_threads == 1 or len(named) == 1:
        runs = [job(name) for name in named]
    else:
        with ThreadPoolExecutor(max_workers=min(n_threads, len(named))) as executor:
            futures = [executor.submit(job, name) for name in named]
            runs = [f.result() for f in futures]

    evaluation = {
        s: {r.name: r.evaluation[s] for r in runs if s in r.evaluation}
        for s in pipeline.evaluated_steps()
    }
    elapsed = {
        s: {r.name: r.elapsed[s] for r in runs if s in r.elapsed}
        for s in pipeline.step_names
    }
    errors = [e for r in runs for e in r.errors]
    outputs = {k: v for r in runs for k, v in r.outputs.items()}

    info = {
        "arguments": pipeline.arguments(),
        "alternatives": {k: list(v) for k, v in grid.expanded_values().items()},
        "n_combinations": len(combinations),
        "datasets": list(named),
        "timestamp": datetime.now().isoformat(),
        "random_seed": random_seed,
        "software_versions": software_versions(),
    }
    if pipeline.description:
        info["description"] = pipeline.description

    results = PipelineResults.from_dataset_tables(
        evaluation, elapsed, errors,
        {s.name: s.aggregation for s in pipeline.steps},
        info, outputs,
    )
    if errors:
        logger.warning("%d step call(s) failed; see results.errors", len(errors))

    if output_prefix is not None:
        written = results.save(output_prefix)
        logger.info("Results written to %s", ", ".join(str(p) for p in written))

    return results
