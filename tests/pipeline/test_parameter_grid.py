"""Tests for combination enumeration and labels."""

import numpy as np
import pandas as pd
import pytest

from pipecomp.core import ValidationError
from pipecomp.pipeline.parameter_grid import (
    ParameterGrid,
    build_comb_matrix,
    combination_key,
    combination_label,
    parse_combination_label,
    restrict_combinations,
)


class TestParameterGrid:
    """Test ParameterGrid strategies."""

    def test_grid_order_last_parameter_fastest(self):
        grid = ParameterGrid({"a": [1, 2], "b": ["x", "y", "z"]})
        combos = grid.generate_combinations()
        assert len(combos) == 6
        assert combos[0] == {"a": 1, "b": "x"}
        assert combos[1] == {"a": 1, "b": "y"}
        assert combos[3] == {"a": 2, "b": "x"}

    def test_scalar_is_single_value(self):
        grid = ParameterGrid({"a": [1, 2], "b": 5})
        assert grid.get_n_combinations() == 2
        assert all(c["b"] == 5 for c in grid.generate_combinations())

    def test_discrete_and_continuous_ranges(self):
        grid = ParameterGrid({"k": (1, 3), "alpha": (0.0, 1.0)}, continuous_params=["alpha"])
        values = grid.expanded_values(n_bins=5)
        assert values["k"] == [1, 2, 3]
        assert values["alpha"] == pytest.approx([0.0, 0.25, 0.5, 0.75, 1.0])
        assert grid.get_n_combinations(n_bins=5) == 15

    def test_random_strategy_is_seeded(self):
        grid = ParameterGrid({"a": [1, 2, 3], "x": (0.0, 1.0)}, continuous_params=["x"])
        first = grid.generate_combinations(strategy="random", n_samples=10, random_seed=3)
        second = grid.generate_combinations(strategy="random", n_samples=10, random_seed=3)
        assert first == second
        assert all(0.0 <= c["x"] <= 1.0 for c in first)

    def test_random_choice_keeps_none(self):
        grid = ParameterGrid({"a": [None]})
        combos = grid.generate_combinations(strategy="random", n_samples=3, random_seed=0)
        assert all(c["a"] is None for c in combos)

    def test_unknown_strategy(self):
        with pytest.raises(ValidationError, match="Unknown strategy"):
            ParameterGrid({"a": [1]}).generate_combinations(strategy="bayes")

    def test_validate_parameter_space(self):
        grid = ParameterGrid({"a": [], "b": [1, 1], "c": (3, 1)})
        messages = grid.validate_parameter_space()
        assert any("empty" in m for m in messages)
        assert any("duplicate" in m for m in messages)
        assert any("min_val > max_val" in m for m in messages)


class TestRestriction:
    """Test restricting the grid to selected combinations."""

    alternatives = {"a": [0, 1], "b": ["x", "y", "z"]}

    def test_comb_matrix(self):
        matrix = build_comb_matrix(self.alternatives)
        assert list(matrix.columns) == ["a", "b"]
        assert matrix.shape == (6, 2)
        assert matrix.iloc[-1].tolist() == [1, 2]

    def test_restrict_by_dataframe(self):
        matrix = build_comb_matrix(self.alternatives)
        subset = matrix[matrix["b"] == 1]
        combos = restrict_combinations(self.alternatives, subset)
        assert combos == [{"a": 0, "b": "y"}, {"a": 1, "b": "y"}]

    def test_restrict_by_array(self):
        combos = restrict_combinations(self.alternatives, np.array([[1, 2]]))
        assert combos == [{"a": 1, "b": "z"}]

    def test_restrict_by_dicts(self):
        combos = restrict_combinations(self.alternatives, [{"a": 1, "b": "x"}])
        assert combos == [{"a": 1, "b": "x"}]

    def test_dict_may_omit_single_valued_parameters(self):
        combos = restrict_combinations({"a": [0], "b": ["x", "y"]}, [{"b": "y"}])
        assert combos == [{"a": 0, "b": "y"}]

    def test_index_out_of_range(self):
        with pytest.raises(ValidationError, match="out of range"):
            restrict_combinations(self.alternatives, np.array([[0, 3]]))

    def test_value_not_among_alternatives(self):
        with pytest.raises(ValidationError, match="not among"):
            restrict_combinations(self.alternatives, [{"a": 5, "b": "x"}])

    def test_missing_matrix_column(self):
        with pytest.raises(ValidationError, match="lacks columns"):
            restrict_combinations(self.alternatives, pd.DataFrame({"a": [0]}))

    def test_wrong_array_shape(self):
        with pytest.raises(ValidationError, match="shape"):
            restrict_combinations(self.alternatives, np.array([0, 1]))


class TestLabels:
    """Test combination labels."""

    def test_label_format(self):
        assert combination_label({"a": 1, "b": "x", "c": 0.5}) == "a=1; b=x; c=0.5"

    def test_label_subset_of_keys(self):
        assert combination_label({"a": 1, "b": "x"}, ["b"]) == "b=x"
        assert combination_label({"a": 1}, []) == ""

    def test_parse_label(self):
        parsed = parse_combination_label("a=1; b=x; c=0.5; d=None; e=True")
        assert parsed == {"a": 1, "b": "x", "c": 0.5, "d": None, "e": True}

    def test_parse_empty_label(self):
        assert parse_combination_label("") == {}

    def test_parse_malformed_label(self):
        with pytest.raises(ValidationError, match="Malformed"):
            parse_combination_label("a=1; b")

    def test_close_floats_keep_distinct_labels(self):
        first = combination_label({"s": 0.1234561})
        second = combination_label({"s": 0.1234564})
        assert first != second
        assert parse_combination_label(first) == {"s": 0.1234561}

    def test_numpy_float_label(self):
        assert combination_label({"s": np.float64(0.25)}) == "s=0.25"


class TestCombinationKey:
    """Test typed combination identities."""

    def test_types_are_distinguished(self):
        keys = {combination_key({"a": v}, ["a"]) for v in (1, 1.0, "1", True)}
        assert len(keys) == 4

    def test_numpy_scalars_match_python_values(self):
        assert combination_key({"a": np.int64(3)}, ["a"]) == combination_key({"a": 3}, ["a"])

    def test_missing_values_share_a_key(self):
        assert combination_key({"a": None}, ["a"]) == combination_key({"a": float("nan")}, ["a"])

    def test_restricted_to_keys(self):
        assert combination_key({"a": 1, "b": 2}, ["a"]) == combination_key({"a": 1, "b": 5}, ["a"])
