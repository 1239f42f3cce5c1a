"""Containers for pipeline benchmark results.

Results are kept as one pandas table per evaluated step. Every row is keyed
by the dataset and by the values of all parameters of the steps up to that
step; the remaining columns hold the metrics returned by the step's
evaluation function. A ``combination`` column carries the same key as a
readable label (``"param=value; ..."``).
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from pipecomp.core.exceptions import ResultsNotFoundError, ValidationError
from pipecomp.pipeline.parameter_grid import _parse_value, combination_key, combination_label

__all__ = [
    "PipelineResults",
    "default_aggregation",
    "merge_results",
    "read_results",
    "software_versions",
]

_KEY_COLUMNS = ("dataset", "combination")


def software_versions() -> dict[str, str]:
    import polars
    import scipy
    import sklearn

    import pipecomp

    return {
        "pipecomp": pipecomp.__version__,
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "polars": polars.__version__,
        "scipy": scipy.__version__,
        "scikit-learn": sklearn.__version__,
    }


def default_aggregation(tables: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
    """Concatenate per-dataset evaluation tables.

    Parameters
    ----------
    tables : Mapping[str, pd.DataFrame]
        Dataset name to that dataset's evaluation table.

    Returns
    -------
    pd.DataFrame
        Row-bound table with a leading ``dataset`` column.
    """
    frames = []
    for name, table in tables.items():
        if table is None or table.empty:
            continue
        frame = table.copy()
        if "dataset" in frame.columns:
            frame = frame.drop(columns="dataset")
        frame.insert(0, "dataset", name)
        frames.append(frame)
    if not frames:
        return pd.DataFrame(columns=["dataset"])
    return pd.concat(frames, ignore_index=True, sort=False)


class PipelineResults:
    """Aggregated evaluation, timing and error tables of a pipeline run.

    Attributes
    ----------
    evaluation : dict[str, pd.DataFrame]
        Step name to evaluation table.
    elapsed : dict[str, pd.DataFrame]
        Step name to timing table with an ``elapsed_seconds`` column.
    errors : pd.DataFrame
        One row per failed step call (``dataset``, ``step``, ``combination``,
        ``error``).
    info : dict[str, Any]
        Run metadata: ``arguments`` (step to parameter names),
        ``alternatives``, ``datasets``, ``timestamp`` and ``software_versions``.
    outputs : dict[tuple[str, str, str], Any]
        Intermediate outputs keyed by (dataset, step, combination); only
        filled in debug runs.
    """

    def __init__(
        self,
        evaluation: dict[str, pd.DataFrame] | None = None,
        elapsed: dict[str, pd.DataFrame] | None = None,
        errors: pd.DataFrame | None = None,
        info: dict[str, Any] | None = None,
        outputs: dict[tuple[str, str, str], Any] | None = None,
    ) -> None:
        self.evaluation = evaluation or {}
        self.elapsed = elapsed or {}
        self.errors = (
            errors
            if errors is not None
            else pd.DataFrame(columns=["dataset", "step", "combination", "error"])
        )
        self.info = info or {}
        self.outputs = outputs or {}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dataset_tables(
        cls,
        evaluation: Mapping[str, Mapping[str, pd.DataFrame]],
        elapsed: Mapping[str, Mapping[str, pd.DataFrame]],
        errors: Sequence[dict[str, Any]],
        aggregations: Mapping[str, Callable[[Mapping[str, pd.DataFrame]], pd.DataFrame] | None],
        info: dict[str, Any],
        outputs: dict[tuple[str, str, str], Any] | None = None,
    ) -> PipelineResults:
        """Aggregate per-dataset tables.

        Parameters
        ----------
        evaluation, elapsed : Mapping[str, Mapping[str, pd.DataFrame]]
            Step name to {dataset name: table}.
        errors : Sequence[dict[str, Any]]
            Error records.
        aggregations : Mapping[str, Callable | None]
            Step name to aggregation function (None for the default).
        info : dict[str, Any]
            Run metadata.
        """
        aggregated: dict[str, pd.DataFrame] = {}
        for step, tables in evaluation.items():
            aggregate = aggregations.get(step) or default_aggregation
            result = aggregate(dict(tables))
            if not isinstance(result, pd.DataFrame):
                raise ValidationError(
                    f"Aggregation of step '{step}' must return a DataFrame, "
                    f"got {type(result).__name__}",
                    field="aggregation",
                )
            aggregated[step] = result

        timing = {step: default_aggregation(dict(tables)) for step, tables in elapsed.items()}
        error_frame = pd.DataFrame(
            list(errors), columns=["dataset", "step", "combination", "error"]
        )
        return cls(aggregated, timing, error_frame, info, outputs)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def steps(self) -> list[str]:
        return list(self.info.get("arguments", {}).keys())

    @property
    def datasets(self) -> list[str]:
        return list(self.info.get("datasets", []))

    def parameter_columns(self, step: str) -> list[str]:
        """Parameter columns keying the tables of ``step``."""
        arguments: dict[str, list[str]] = self.info.get("arguments", {})
        if step not in arguments:
            raise ValidationError(f"Unknown step '{step}'", field="step")
        names: list[str] = []
        for name, params in arguments.items():
            names.extend(params)
            if name == step:
                break
        return names

    def get_evaluation(self, step: str) -> pd.DataFrame:
        if step not in self.evaluation:
            raise ValidationError(
                f"No evaluation for step '{step}'. Evaluated steps: {list(self.evaluation)}",
                field="step",
            )
        return self.evaluation[step]

    def metric_columns(self, step: str) -> list[str]:
        table = self.get_evaluation(step)
        excluded = set(_KEY_COLUMNS) | set(self.parameter_columns(step))
        return [c for c in table.columns if c not in excluded]

    def summarize(
        self,
        step: str,
        metric: str | Sequence[str] | None = None,
        by: Sequence[str] | None = None,
        agg: str = "mean",
    ) -> pd.DataFrame:
        """Aggregate a step's metrics across datasets.

        Parameters
        ----------
        step : str
            Evaluated step.
        metric : str | Sequence[str] | None
            Metric column(s). None uses every numeric metric.
        by : Sequence[str] | None
            Grouping columns. Defaults to ``combination`` plus any
            non-parameter key column present (e.g. ``threshold``).
        agg : str, default="mean"
            Pandas aggregation name.

        Returns
        -------
        pd.DataFrame
            One row per group.
        """
        table = self.get_evaluation(step)
        if metric is None:
            metrics = [
                c for c in self.metric_columns(step)
                if pd.api.types.is_numeric_dtype(table[c]) and c != "threshold"
            ]
        elif isinstance(metric, str):
            metrics = [metric]
        else:
            metrics = list(metric)
        missing = [m for m in metrics if m not in table.columns]
        if missing:
            raise ValidationError(f"Unknown metrics {missing} for step '{step}'", field="metric")

        if by is None:
            by = ["combination"] + (["threshold"] if "threshold" in table.columns else [])
        return (
            table.groupby(list(by), sort=False, dropna=False)[metrics]
            .agg(agg)
            .reset_index()
        )

    def total_elapsed(self) -> pd.DataFrame:
        """Total time of every full combination, summed over steps.

        Returns
        -------
        pd.DataFrame
            Columns ``dataset``, ``combination``, the parameters of the
            last step and its predecessors, and ``elapsed_seconds``.
        """
        steps = [s for s in self.steps if s in self.elapsed and not self.elapsed[s].empty]
        if not steps:
            return pd.DataFrame(columns=["dataset", "combination", "elapsed_seconds"])

        lookup: dict[tuple[str, str, tuple], float] = {}
        for step in steps:
            table = self.elapsed[step]
            keys = [p for p in self.parameter_columns(step) if p in table.columns]
            for row in table.to_dict("records"):
                key = combination_key(row, keys)
                lookup[(step, row["dataset"], key)] = row["elapsed_seconds"]

        last = self.steps[-1]
        if last not in self.elapsed:
            return pd.DataFrame(columns=["dataset", "combination", "elapsed_seconds"])
        final = self.elapsed[last]
        params_present = [p for p in self.parameter_columns(last) if p in final.columns]
        records = []
        for row in final.to_dict("records"):
            params = {p: row[p] for p in params_present}
            total = 0.0
            for step in steps:
                keys = [p for p in self.parameter_columns(step) if p in params]
                total += lookup.get((step, row["dataset"], combination_key(params, keys)), np.nan)
            records.append(
                {"dataset": row["dataset"], "combination": row["combination"],
                 **params, "elapsed_seconds": total}
            )
        columns = ["dataset", "combination", *params_present, "elapsed_seconds"]
        return _object_parameters(pd.DataFrame(records, columns=columns), params_present)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, prefix: str | Path) -> list[Path]:
        """Write all tables and run metadata next to ``prefix``.

        Files: ``<prefix>.evaluation.<step>.csv``, ``<prefix>.elapsed.<step>.csv``,
        ``<prefix>.errors.csv`` and ``<prefix>.info.json``.

        Returns
        -------
        list[Path]
            Paths of the written files.
        """
        prefix = Path(prefix)
        prefix.parent.mkdir(parents=True, exist_ok=True)
        written = []
        for step, table in self.evaluation.items():
            path = prefix.with_name(f"{prefix.name}.evaluation.{step}.csv")
            table.to_csv(path, index=False)
            written.append(path)
        for step, table in self.elapsed.items():
            path = prefix.with_name(f"{prefix.name}.elapsed.{step}.csv")
            table.to_csv(path, index=False)
            written.append(path)
        path = prefix.with_name(f"{prefix.name}.errors.csv")
        self.errors.to_csv(path, index=False)
        written.append(path)
        path = prefix.with_name(f"{prefix.name}.info.json")
        path.write_text(json.dumps(self.info, indent=2, default=str), encoding="utf-8")
        written.append(path)
        return written

    def __repr__(self) -> str:
        evaluated = ", ".join(f"{k} ({len(v)} rows)" for k, v in self.evaluation.items())
        return (
            f"PipelineResults(datasets={self.datasets}, evaluation=[{evaluated}], "
            f"errors={len(self.errors)})"
        )


def _object_parameters(table: pd.DataFrame, params: Sequence[str]) -> pd.DataFrame:
    """Hold parameter columns as objects so ``None`` alternatives survive."""
    for p in params:
        if p in table.columns:
            table[p] = pd.Series(list(table[p]), index=table.index, dtype=object)
    return table


def _restore_parameter_columns(table: pd.DataFrame, params: Sequence[str]) -> pd.DataFrame:
    for p in params:
        if p in table.columns:
            values = [
                None if (isinstance(v, float) and np.isnan(v)) else _parse_value(str(v))
                for v in table[p]
            ]
            table[p] = pd.Series(values, index=table.index, dtype=object)
    return table


def read_results(prefix: str | Path) -> PipelineResults:
    """Load results written by :meth:`PipelineResults.save`.

    Raises
    ------
    ResultsNotFoundError
        If ``<prefix>.info.json`` does not exist.
    """
    prefix = Path(prefix)
    info_path = prefix.with_name(f"{prefix.name}.info.json")
    if not info_path.exists():
        raise ResultsNotFoundError(str(prefix))
    info = json.loads(info_path.read_text(encoding="utf-8"))

    results = PipelineResults(info=info)
    for step in info.get("arguments", {}):
        params = results.parameter_columns(step)
        for kind, target in (("evaluation", results.evaluation), ("elapsed", results.elapsed)):
            path = prefix.with_name(f"{prefix.name}.{kind}.{step}.csv")
            if path.exists():
                header = pd.read_csv(path, nrows=0).columns
                # Text first, so "3" and "3.0" come back as the int and float they were
                table = pd.read_csv(
                    path, keep_default_na=False, na_values=[""],
                    dtype={p: str for p in params if p in header},
                )
                target[step] = _restore_parameter_columns(table, params)

    errors_path = prefix.with_name(f"{prefix.name}.errors.csv")
    if errors_path.exists():
        results.errors = pd.read_csv(errors_path)
    return results


def merge_results(*results: PipelineResults) -> PipelineResults:
    """Merge results of runs of the same pipeline with different alternatives.

    Parameter columns absent from a run are filled with the single value that
    run used for the parameter, or left missing when it is unknown. Rows
    duplicated across runs (same dataset and combination) keep the last
    occurrence.

    Raises
    ------
    ValidationError
        If fewer than one result is given or the runs have different steps.
    """
    if not results:
        raise ValidationError("Nothing to merge", field="results")
    steps = results[0].steps
    for r in results[1:]:
        if r.steps != steps:
            raise ValidationError(
                f"Cannot merge results of different pipelines: {steps} vs {r.steps}",
                field="results",
            )

    arguments: dict[str, list[str]] = {}
    for step in steps:
        names: list[str] = []
        for r in results:
            for p in r.info["arguments"].get(step, []):
                if p not in names:
                    names.append(p)
        arguments[step] = names

    def combine(kind: str) -> dict[str, pd.DataFrame]:
        merged: dict[str, pd.DataFrame] = {}
        keys: list[str] = []
        for step in steps:
            # Labels of a step span the parameters of all steps up to it
            keys = keys + arguments[step]
            frames = []
            for r in results:
                table = getattr(r, kind).get(step)
                if table is None:
                    continue
                table = table.copy()
                alternatives = r.info.get("alternatives", {})
                for p in keys:
                    if p not in table.columns:
                        values = alternatives.get(p)
                        table[p] = values[0] if isinstance(values, list) and len(values) == 1 else None
                frames.append(_object_parameters(table, keys))
            if not frames:
                continue
            table = pd.concat(frames, ignore_index=True, sort=False)
            table["combination"] = [
                combination_label(row, keys) for row in table[keys].to_dict("records")
            ]
            subset = ["dataset", "combination"] + (["threshold"] if "threshold" in table.columns else [])
            merged[step] = table.drop_duplicates(subset=subset, keep="last").reset_index(drop=True)
        return merged

    alternatives: dict[str, list[Any]] = {}
    for r in results:
        for p, values in r.info.get("alternatives", {}).items():
            current = alternatives.setdefault(p, [])
            for v in values if isinstance(values, list) else [values]:
                if v not in current:
                    current.append(v)

    datasets: list[str] = []
    for r in results:
        datasets.extend(d for d in r.datasets if d not in datasets)

    info = {
        "arguments": arguments,
        "alternatives": alternatives,
        "datasets": datasets,
        "timestamp": datetime.now().isoformat(),
        "merged_from": [r.info.get("timestamp") for r in results],
        "software_versions": results[-1].info.get("software_versions", {}),
    }
    errors = pd.concat([r.errors for r in results], ignore_index=True)
    return PipelineResults(combine("evaluation"), combine("elapsed"), errors, info)
