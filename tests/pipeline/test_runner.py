"""Tests for the pipeline runner."""

import numpy as np
import pandas as pd
import polars as pl
import pytest

from pipecomp.core import MissingParameterError, StepExecutionError, ValidationError
from pipecomp.pipeline import (
    PipelineDefinition,
    PipelineStep,
    build_comb_matrix,
    evaluation_to_frame,
    read_results,
    run_pipeline,
)

ALTERNATIVES = {"a": [0, 1], "b": [1, 2, 3]}


class TestRunPipeline:
    """Test grid execution on the toy pipeline."""

    def test_all_combinations_evaluated(self, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline)
        table = res.evaluation["mul"]
        assert len(table) == 12
        row = table[(table["dataset"] == "two") & (table["a"] == 1) & (table["b"] == 3)]
        assert row["value"].tolist() == [9]
        assert row["combination"].tolist() == ["a=1; b=3"]

    def test_intermediate_step_keyed_by_its_own_parameters(self, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline)
        table = res.evaluation["add"]
        assert len(table) == 4
        assert "b" not in table.columns
        assert sorted(table["sum"].tolist()) == [1, 2, 2, 3]

    def test_shared_prefixes_computed_once(self, toy_pipeline, toy_datasets, call_log):
        run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline)
        adds = [c for c in call_log if c[0] == "add"]
        muls = [c for c in call_log if c[0] == "mul"]
        assert len(adds) == 4
        assert len(muls) == 12

    def test_defaults_fill_missing_alternatives(self, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, {"b": [2]}, toy_pipeline)
        table = res.evaluation["mul"]
        assert table["a"].tolist() == [0, 0]
        assert table["value"].tolist() == [2, 4]

    def test_sequence_of_datasets(self, toy_pipeline):
        res = run_pipeline([5], {"a": 1, "b": 2}, toy_pipeline)
        assert res.datasets == ["dataset_0"]
        assert res.evaluation["mul"]["value"].tolist() == [12]

    def test_missing_parameter(self, toy_datasets):
        pipeline = PipelineDefinition([PipelineStep("add", lambda x, a: x + a)])
        with pytest.raises(MissingParameterError):
            run_pipeline(toy_datasets, {}, pipeline)

    def test_no_datasets(self, toy_pipeline):
        with pytest.raises(ValidationError, match="No datasets"):
            run_pipeline({}, ALTERNATIVES, toy_pipeline)

    def test_invalid_threads(self, toy_pipeline, toy_datasets):
        with pytest.raises(ValidationError, match="n_threads"):
            run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, n_threads=0)

    def test_save_end_results_needs_prefix(self, toy_pipeline, toy_datasets):
        with pytest.raises(ValidationError, match="output_prefix"):
            run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, save_end_results=True)

    def test_info(self, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, random_seed=3)
        assert res.info["arguments"] == {"add": ["a"], "mul": ["b"]}
        assert res.info["alternatives"] == {"a": [0, 1], "b": [1, 2, 3]}
        assert res.info["n_combinations"] == 6
        assert res.info["description"] == "toy arithmetic"
        assert "numpy" in res.info["software_versions"]

    def test_elapsed_recorded_per_step(self, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline)
        assert len(res.elapsed["add"]) == 4
        assert len(res.elapsed["mul"]) == 12
        assert (res.elapsed["mul"]["elapsed_seconds"] >= 0).all()

    def test_debug_keeps_outputs(self, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, debug=True)
        assert res.outputs[("one", "add", "a=1")] == 2
        assert res.outputs[("two", "mul", "a=0; b=3")] == 6

    def test_custom_aggregation(self, toy_pipeline, toy_datasets):
        def count_rows(tables):
            return pd.DataFrame({"dataset": list(tables), "rows": [len(t) for t in tables.values()]})

        toy_pipeline.set_aggregation("mul", count_rows)
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline)
        assert res.evaluation["mul"].to_dict("list") == {"dataset": ["one", "two"], "rows": [6, 6]}
        assert len(res.evaluation["add"]) == 4

    def test_aggregation_must_return_frame(self, toy_pipeline, toy_datasets):
        toy_pipeline.set_aggregation("mul", lambda tables: len(tables))
        with pytest.raises(ValidationError, match="must return a DataFrame"):
            run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline)

    def test_threads_give_same_tables(self, toy_pipeline, toy_datasets):
        serial = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, n_threads=1)
        threaded = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, n_threads=2)
        pd.testing.assert_frame_equal(serial.evaluation["mul"], threaded.evaluation["mul"])

    def test_writes_output_files(self, toy_pipeline, toy_datasets, tmp_path):
        run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, output_prefix=tmp_path / "run")
        assert (tmp_path / "run.evaluation.mul.csv").exists()
        assert (tmp_path / "run.elapsed.add.csv").exists()
        assert (tmp_path / "run.info.json").exists()

    def test_save_end_results(self, toy_pipeline, toy_datasets, tmp_path):
        run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline,
                     output_prefix=tmp_path / "run", save_end_results=True)
        assert (tmp_path / "run_end_results").is_dir()
        assert any((tmp_path / "run_end_results").iterdir())


class TestCombinationRestriction:
    """Test runs restricted to some combinations."""

    def test_comb_matrix_rows(self, toy_pipeline, toy_datasets, call_log):
        matrix = build_comb_matrix(ALTERNATIVES)
        comb = matrix[matrix["a"] == 1]
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, comb=comb)
        assert set(res.evaluation["mul"]["a"]) == {1}
        assert len(res.evaluation["mul"]) == 6
        assert len([c for c in call_log if c[0] == "add"]) == 2

    def test_comb_array(self, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline, comb=np.array([[0, 2]]))
        assert res.evaluation["mul"]["value"].tolist() == [3, 6]

    def test_comb_dicts(self, toy_pipeline, toy_datasets):
        res = run_pipeline(toy_datasets, ALTERNATIVES, toy_pipeline,
                           comb=[{"a": 1, "b": 2}, {"a": 0, "b": 1}])
        assert len(res.evaluation["mul"]) == 4


class TestErrors:
    """Test handling of failing steps."""

    @staticmethod
    def _failing_pipeline(calls=None):
        def fragile(x, a):
            if calls is not None:
                calls.append(a)
            if a == 1:
                raise ValueError("a=1 not supported")
            return x + a

        def mul(x, b=1):
            return x * b

        return PipelineDefinition([
            PipelineStep("fragile", fragile),
            PipelineStep("mul", mul, evaluation=lambda y: {"value": y}),
        ])

    def test_skip_errors_records_failures(self, toy_datasets):
        res = run_pipeline(toy_datasets, ALTERNATIVES, self._failing_pipeline())
        assert len(res.errors) == 2
        assert set(res.errors["step"]) == {"fragile"}
        assert res.errors["combination"].tolist() == ["a=1", "a=1"]
        assert "ValueError" in res.errors["error"].iloc[0]
        assert set(res.evaluation["mul"]["a"]) == {0}
        assert len(res.evaluation["mul"]) == 6

    def test_failed_prefix_runs_once(self):
        calls = []
        res = run_pipeline({"one": 1}, ALTERNATIVES, self._failing_pipeline(calls))
        assert calls == [0, 1]
        assert len(res.errors) == 1
        assert len(res.elapsed["mul"]) == 3

    def test_raise_without_skip_errors(self, toy_datasets):
        with pytest.raises(StepExecutionError) as exc_info:
            run_pipeline(toy_datasets, ALTERNATIVES, self._failing_pipeline(), skip_errors=False)
        assert exc_info.value.step == "fragile"
        assert isinstance(exc_info.value.original, ValueError)

    def test_constraint_violation_is_a_step_error(self, toy_datasets):
        pipeline = PipelineDefinition([
            PipelineStep("add", lambda x, a: x + a, evaluation=lambda y: {"v": y},
                         parameter_constraints={"a": {"min": 0}}),
        ])
        res = run_pipeline(toy_datasets, {"a": [-1, 1]}, pipeline)
        assert len(res.errors) == 2
        assert res.evaluation["add"]["a"].tolist() == [1, 1]


class TestRandomState:
    """Test reproducibility of random steps."""

    @staticmethod
    def _random_pipeline():
        def jitter(x, scale=1.0, random_state=None):
            return x + scale * random_state.normal()

        return PipelineDefinition([
            PipelineStep("jitter", jitter, evaluation=lambda y: {"value": y}),
        ])

    def test_seeded_runs_are_reproducible(self, toy_datasets):
        pipeline = self._random_pipeline()
        alternatives = {"scale": [1.0, 2.0]}
        first = run_pipeline(toy_datasets, alternatives, pipeline, random_seed=5)
        second = run_pipeline(toy_datasets, alternatives, pipeline, random_seed=5, n_threads=2)
        pd.testing.assert_frame_equal(first.evaluation["jitter"], second.evaluation["jitter"])

    def test_seed_changes_values(self, toy_datasets):
        pipeline = self._random_pipeline()
        first = run_pipeline(toy_datasets, {}, pipeline, random_seed=5)
        second = run_pipeline(toy_datasets, {}, pipeline, random_seed=6)
        assert not np.allclose(first.evaluation["jitter"]["value"],
                               second.evaluation["jitter"]["value"])


class TestEvaluationToFrame:
    """Test normalization of evaluation outputs."""

    def test_dict(self):
        assert evaluation_to_frame({"x": 1}).to_dict("records") == [{"x": 1}]

    def test_list_of_dicts(self):
        assert len(evaluation_to_frame([{"x": 1}, {"x": 2}])) == 2

    def test_polars(self):
        frame = evaluation_to_frame(pl.DataFrame({"x": [1, 2]}))
        assert isinstance(frame, pd.DataFrame)
        assert frame["x"].tolist() == [1, 2]

    def test_number(self):
        assert evaluation_to_frame(0.5)["value"].tolist() == [0.5]

    def test_invalid(self):
        with pytest.raises(ValidationError, match="Evaluation must return"):
            evaluation_to_frame("bad")


class TestCombinationIdentity:
    """Test that combinations are told apart by their values."""

    @staticmethod
    def _scale_pipeline():
        return PipelineDefinition([
            PipelineStep("scale", lambda x, s: x * s, evaluation=lambda y: {"value": y}),
        ])

    def test_close_floats_are_separate_combinations(self):
        res = run_pipeline({"one": 1.0}, {"s": [0.1234561, 0.1234564]}, self._scale_pipeline())
        table = res.evaluation["scale"]
        assert len(table) == 2
        assert table["value"].tolist() == [0.1234561, 0.1234564]
        assert table["combination"].nunique() == 2

    def test_values_with_the_same_label_are_rejected(self):
        with pytest.raises(ValidationError, match="same label"):
            run_pipeline({"one": 1.0}, {"s": [1, "1"]}, self._scale_pipeline())

    @staticmethod
    def _pick_pipeline():
        def pick(x, k=None):
            return x if k is None else x * k

        return PipelineDefinition([
            PipelineStep("pick", pick, evaluation=lambda y: {"value": y}),
        ])

    def test_none_alternative_kept_in_tables(self, toy_datasets):
        res = run_pipeline(toy_datasets, {"k": [None, 3]}, self._pick_pipeline())
        assert res.evaluation["pick"]["k"].tolist() == [None, 3, None, 3]
        assert res.elapsed["pick"]["k"].tolist() == [None, 3, None, 3]
        total = res.total_elapsed()
        assert total["elapsed_seconds"].notna().all()
        assert total["k"].tolist() == [None, 3, None, 3]

    def test_none_alternative_timing_after_reading(self, toy_datasets, tmp_path):
        run_pipeline(toy_datasets, {"k": [None, 3]}, self._pick_pipeline(),
                     output_prefix=tmp_path / "run")
        total = read_results(tmp_path / "run").total_elapsed()
        assert total["elapsed_seconds"].notna().all()
        assert total["k"].tolist() == [None, 3, None, 3]
        assert [type(k) for k in total["k"]] == [type(None), int, type(None), int]

    def test_clashing_evaluation_columns_are_renamed(self, toy_datasets):
        pipeline = PipelineDefinition([
            PipelineStep("add", lambda x, a: x + a,
                         evaluation=lambda y: {"a": y, "combination": "x", "sum": y}),
        ])
        with pytest.warns(UserWarning, match="eval_"):
            res = run_pipeline(toy_datasets, {"a": [1]}, pipeline)
        table = res.evaluation["add"]
        assert table["a"].tolist() == [1, 1]
        assert table["eval_a"].tolist() == [2, 3]
        assert table["eval_combination"].tolist() == ["x", "x"]
        assert table["combination"].tolist() == ["a=1", "a=1"]
