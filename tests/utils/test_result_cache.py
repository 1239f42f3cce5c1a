"""Tests for the on-disk result cache."""

import numpy as np
import pytest

from pipecomp.utils import ResultCache


@pytest.fixture
def cache(tmp_path):
    return ResultCache(tmp_path / "cache")


class TestResultCache:
    """Test storing and retrieving step outputs."""

    def test_set_and_get(self, cache):
        params = {"a": 1, "b": "x"}
        path = cache.set("one", "mul", params, np.arange(3))
        assert path.exists()
        assert cache.has("one", "mul", params)
        np.testing.assert_array_equal(cache.get("one", "mul", params), np.arange(3))

    def test_miss(self, cache):
        assert cache.get("one", "mul", {"a": 1}) is None
        assert not cache.has("one", "mul", {"a": 1})

    def test_key_ignores_parameter_order(self, cache):
        assert cache.get_cache_key("d", "s", {"a": 1, "b": 2}) == cache.get_cache_key(
            "d", "s", {"b": 2, "a": 1}
        )
        assert cache.get_cache_key("d", "s", {"a": 1}) != cache.get_cache_key("e", "s", {"a": 1})

    def test_clear_by_step(self, cache):
        cache.set("one", "add", {"a": 1}, 1)
        cache.set("one", "mul", {"a": 1}, 2)
        assert cache.clear("add") == 1
        assert cache.has("one", "mul", {"a": 1})
        assert cache.clear() == 1

    def test_cache_info(self, cache):
        cache.set("one", "mul", {"a": 1}, 1)
        cache.set("two", "mul", {"a": 1}, 1)
        info = cache.get_cache_info()
        assert info["total_files"] == 2
        assert info["step_counts"] == {"mul": 2}
        assert info["total_size_bytes"] > 0

    def test_prune_by_size(self, cache):
        for i in range(3):
            cache.set(f"d{i}", "mul", {}, np.zeros(1000))
        assert cache.prune_by_size(0) == 3
        assert cache.get_cache_info()["total_files"] == 0
