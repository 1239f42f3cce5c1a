"""On-disk cache for pipeline step outputs."""

from __future__ import annotations

import hashlib
import json
import pickle
from pathlib import Path
from typing import Any

__all__ = ["ResultCache"]


class ResultCache:
    """Pickle store for step outputs keyed by dataset, step and parameters."""

    def __init__(self, cache_dir: Path | str = Path("pipecomp_results/cache")) -> None:
        self._cache_dir = Path(cache_dir)
        self._cache_dir.mkdir(parents=True, exist_ok=True)

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def get_cache_key(self, dataset: str, step: str, params: dict) -> str:
        sorted_params = json.dumps(params, sort_keys=True, default=str)
        hash_input = f"{dataset}:{step}:{sorted_params}"
        return hashlib.md5(hash_input.encode()).hexdigest()

    def _path(self, dataset: str, step: str, params: dict) -> Path:
        return self._cache_dir / f"{step}_{self.get_cache_key(dataset, step, params)}.pkl"

    def get(self, dataset: str, step: str, params: dict) -> Any | None:
        cache_file = self._path(dataset, step, params)
        if not cache_file.exists():
            return None
        with cache_file.open("rb") as f:
            return pickle.load(f)["output"]

    def set(self, dataset: str, step: str, params: dict, output: Any) -> Path:
        cache_file = self._path(dataset, step, params)
        payload = {"dataset": dataset, "step": step, "params": params, "output": output}
        cache_file.write_bytes(pickle.dumps(payload))
        return cache_file

    def has(self, dataset: str, step: str, params: dict) -> bool:
        return self._path(dataset, step, params).exists()

    def clear(self, step: str | None = None) -> int:
        pattern = "*.pkl" if step is None else f"{step}_*.pkl"
        removed = 0
        for f in self._cache_dir.glob(pattern):
            f.unlink(missing_ok=True)
            removed += 1
        return removed

    def get_cache_info(self) -> dict:
        cache_files = list(self._cache_dir.glob("*.pkl"))
        total_size = sum(f.stat().st_size for f in cache_files)
        step_counts: dict[str, int] = {}
        for f in cache_files:
            name = f.stem.rsplit("_", 1)[0]
            step_counts[name] = step_counts.get(name, 0) + 1
        return {
            "cache_dir": str(self._cache_dir),
            "total_files": len(cache_files),
            "total_size_bytes": total_size,
            "total_size_mb": total_size / (1024 * 1024),
            "step_counts": step_counts,
        }

    def prune_by_size(self, max_size_mb: float) -> int:
        cache_files = sorted(self._cache_dir.glob("*.pkl"), key=lambda f: f.stat().st_mtime)
        total_size = sum(f.stat().st_size for f in cache_files)
        max_bytes = max_size_mb * 1024 * 1024
        removed = 0
        for f in cache_files:
            if total_size <= max_bytes:
                break
            size = f.stat().st_size
            f.unlink(missing_ok=True)
            total_size -= size
            removed += 1
        return removed
