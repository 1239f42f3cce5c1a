"""Tests for result persistence, merging and summaries."""

import pandas as pd
import pytest

from pipecomp.core import ResultsNotFoundError, ValidationError
from pipecomp.pipeline import PipelineResults, merge_results, read_results, run_pipeline

ALTERNATIVES = {"a": [0, 1], "b": [1, 2, 3]}


@pytest.fixture
def toy_results(toy_pipeline, toy_datasets):
    return run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline)


class TestQueries:
    """Test result introspection."""

    def test_steps_and_parameters(self, toy_results):
        assert toy_results.steps == ["add", "mul"]
        assert toy_results.parameter_columns("add") == ["a"]
        assert toy_results.parameter_columns("mul") == ["a", "b"]
        assert toy_results.metric_columns("mul") == ["value"]

    def test_unknown_step(self, toy_results):
        with pytest.raises(ValidationError, match="Unknown step"):
            toy_results.parameter_columns("nope")
        with pytest.raises(ValidationError, match="No evaluation"):
            toy_results.get_evaluation("nope")

    def test_summarize_means_over_datasets(self, toy_results):
        summary = toy_results.summarize("mul", "value")
        row = summary[summary["combination"] == "a=0; b=2"]
        # (1 + 0) * 2 and (2 + 0) * 2
        assert row["value"].tolist() == [3.0]
        assert len(summary) == 6

    def test_summarize_by_parameter(self, toy_results):
        summary = toy_results.summarize("mul", "value", by=["b"], agg="max")
        assert summary.set_index("b")["value"].to_dict() == {1: 3, 2: 6, 3: 9}

    def test_summarize_unknown_metric(self, toy_results):
        with pytest.raises(ValidationError, match="Unknown metrics"):
            toy_results.summarize("mul", "F1")

    def test_total_elapsed(self, toy_results):
        total = toy_results.total_elapsed()
        assert list(total.columns) == ["dataset", "combination", "a", "b", "elapsed_seconds"]
        assert len(total) == 12
        assert total["elapsed_seconds"].notna().all()

    def test_repr(self, toy_results):
        assert "mul (12 rows)" in repr(toy_results)


class TestPersistence:
    """Test saving and reading result files."""

    def test_round_trip(self, toy_results, tmp_path):
        toy_results.save(tmp_path / "toy")
        loaded = read_results(tmp_path / "toy")
        assert loaded.steps == ["add", "mul"]
        assert loaded.datasets == ["one", "two"]
        pd.testing.assert_frame_equal(
            loaded.evaluation["mul"], toy_results.evaluation["mul"], check_dtype=False
        )
        assert len(loaded.elapsed["add"]) == 4

    def test_parameter_values_restored(self, tmp_path, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, {"a": [0], "b": [1]}, toy_pipeline)
        res.evaluation["mul"]["b"] = ["auto", None]
        res.save(tmp_path / "toy")
        loaded = read_results(tmp_path / "toy")
        assert loaded.evaluation["mul"]["b"].tolist() == ["auto", None]
        assert loaded.evaluation["mul"]["a"].tolist() == [0, 0]

    def test_missing_results(self, tmp_path):
        with pytest.raises(ResultsNotFoundError):
            read_results(tmp_path / "absent")

    def test_save_creates_directories(self, toy_results, tmp_path):
        written = toy_results.save(tmp_path / "nested" / "dir" / "toy")
        assert all(p.exists() for p in written)


class TestMerge:
    """Test merging runs with different alternatives."""

    def test_merge_adds_combinations(self, toy_pipeline, toy_datasets):
        first = run_pipeline(toy_datasets, {"a": [0], "b": [1, 2]}, toy_pipeline)
        second = run_pipeline(toy_datasets, {"a": [1], "b": [2, 3]}, toy_pipeline)
        merged = merge_results(first, second)
        assert len(merged.evaluation["mul"]) == 8
        assert merged.info["alternatives"] == {"a": [0, 1], "b": [1, 2, 3]}

    def test_merge_deduplicates(self, toy_results):
        merged = merge_results(toy_results, toy_results)
        assert len(merged.evaluation["mul"]) == 12
        assert len(merged.evaluation["add"]) == 4

    def test_merge_fills_missing_parameter(self, toy_pipeline, toy_datasets):
        first = run_pipeline(toy_datasets, {"a": [0], "b": [1]}, toy_pipeline)
        first.info["arguments"] = {"add": [], "mul": ["b"]}
        first.evaluation["mul"] = first.evaluation["mul"].drop(columns="a")
        second = run_pipeline(toy_datasets, {"a": [1], "b": [1]}, toy_pipeline)
        merged = merge_results(first, second)
        table = merged.evaluation["mul"]
        assert sorted(table["a"].tolist()) == [0, 0, 1, 1]
        assert set(table["combination"]) == {"a=0; b=1", "a=1; b=1"}

    def test_merge_different_pipelines(self, toy_results):
        other = PipelineResults(info={"arguments": {"x": []}})
        with pytest.raises(ValidationError, match="different pipelines"):
            merge_results(toy_results, other)

    def test_merge_nothing(self):
        with pytest.raises(ValidationError):
            merge_results()
