"""Tests for the CountDataset container."""

import numpy as np
import polars as pl
import pytest

from pipecomp.core import CountDataset, ValidationError


def _obs(n):
    return pl.DataFrame({
        "sample_id": [f"S{i}" for i in range(n)],
        "group": ["A"] * (n // 2) + ["B"] * (n - n // 2),
    })


def _var(m):
    return pl.DataFrame({"gene_id": [f"g{j}" for j in range(m)]})


class TestValidation:
    """Test construction checks."""

    def test_shape_mismatch_obs(self):
        with pytest.raises(ValidationError, match="obs has"):
            CountDataset(counts=np.ones((4, 3)), obs=_obs(5), var=_var(3))

    def test_shape_mismatch_var(self):
        with pytest.raises(ValidationError, match="var has"):
            CountDataset(counts=np.ones((4, 3)), obs=_obs(4), var=_var(2))

    def test_negative_counts(self):
        counts = np.ones((4, 3))
        counts[0, 0] = -1
        with pytest.raises(ValidationError, match="non-negative"):
            CountDataset(counts=counts, obs=_obs(4), var=_var(3))

    def test_missing_feature_id_column(self):
        with pytest.raises(ValidationError, match="Feature id column"):
            CountDataset(counts=np.ones((4, 3)), obs=_obs(4), var=pl.DataFrame({"x": [1, 2, 3]}))

    def test_one_dimensional_covariate_becomes_column(self):
        ds = CountDataset(counts=np.ones((4, 3)), obs=_obs(4), var=_var(3), covariates=np.arange(4))
        assert ds.covariates.shape == (4, 1)
        assert ds.n_covariates == 1

    def test_empty_covariates_are_cleared(self):
        ds = CountDataset(counts=np.ones((4, 3)), obs=_obs(4), var=_var(3),
                          covariates=np.empty((4, 0)))
        assert ds.covariates is None


class TestTransformations:
    """Test derived matrices."""

    def test_log_cpm(self, tiny_counts):
        y = tiny_counts.log_cpm(prior_count=0.5)
        lib = tiny_counts.library_sizes()
        expected = np.log2((100 + 0.5) / (lib[0] + 1.0) * 1e6)
        assert y.shape == (4, 5)
        assert y[0, 0] == pytest.approx(expected)

    def test_design_matrix(self, tiny_counts):
        design, names = tiny_counts.design_matrix()
        assert names == ["intercept", "groupB"]
        np.testing.assert_array_equal(design[:, 1], [0, 0, 1, 1])

    def test_design_matrix_reference_and_covariates(self, tiny_counts):
        ds = tiny_counts.with_covariates(np.array([0.1, 0.2, 0.3, 0.5]))
        design, names = ds.design_matrix(reference="B")
        assert names == ["intercept", "groupA", "sv1"]
        np.testing.assert_array_equal(design[:, 1], [1, 1, 0, 0])

    def test_unknown_reference(self, tiny_counts):
        with pytest.raises(ValidationError):
            tiny_counts.design_matrix(reference="C")

    def test_unknown_group_column(self, tiny_counts):
        with pytest.raises(ValidationError, match="Group column"):
            tiny_counts.groups("condition")


class TestSubsetting:
    """Test gene subsetting and truth propagation."""

    def test_subset_with_mask(self, tiny_counts):
        sub = tiny_counts.subset_features(np.array([True, False, True, False, True]))
        assert sub.n_features == 3
        assert sub.feature_ids.tolist() == ["g1", "g3", "g5"]

    def test_subset_with_indices(self, tiny_counts):
        sub = tiny_counts.subset_features(np.array([0, 4]))
        assert sub.feature_ids.tolist() == ["g1", "g5"]

    def test_truth_survives_subsetting(self, tiny_counts):
        sub = tiny_counts.subset_features(np.array([0, 4]))
        truth = sub.truth()
        assert truth.height == 5
        assert truth.filter(pl.col("is_de"))["gene_id"].to_list() == ["g3"]

    def test_no_truth(self):
        ds = CountDataset(counts=np.ones((4, 3)), obs=_obs(4), var=_var(3))
        assert not ds.has_truth
        with pytest.raises(ValidationError, match="ground truth"):
            ds.truth()

    def test_copy_is_independent(self, tiny_counts):
        copy = tiny_counts.copy()
        copy.counts[0, 0] = 0
        copy.log_operation("noop", {})
        assert tiny_counts.counts[0, 0] == 100
        assert len(tiny_counts.history) == 0

    def test_with_covariates_none_clears(self, tiny_counts):
        ds = tiny_counts.with_covariates(np.ones((4, 1)))
        assert ds.with_covariates(None).covariates is None
