"""
Parameter grid system for enumerating pipeline parameter alternatives.
"""

import itertools
import numpy as np
import pandas as pd
from typing import Dict, List, Any, Optional, Union, Tuple, Sequence

from pipecomp.core.exceptions import ValidationError


class ParameterGrid:
    """
    Manages parameter combinations for systematic exploration.

    Supports two generation strategies:
    - Grid search: Exhaustive combination of all parameter values
    - Random search: Random sampling of parameter combinations

    Grid combinations are produced in parameter order, with the last parameter
    varying fastest, so combinations sharing their leading parameter values
    are contiguous.
    """

    def __init__(
        self,
        param_dict: Dict[str, Union[List[Any], Tuple[float, float]]],
        continuous_params: Optional[List[str]] = None
    ):
        """
        Initialize parameter grid.

        Args:
            param_dict: Dictionary of parameter_name -> parameter_values or (min, max) range
            continuous_params: List of parameters that are continuous (for range specifications)
        """
        self.param_dict = dict(param_dict)
        self.continuous_params = continuous_params or []
        self.combinations = []

    def generate_combinations(
        self,
        strategy: str = 'grid',
        n_samples: int = 100,
        n_bins: int = 10,
        random_seed: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Generate parameter combinations.

        Args:
            strategy: 'grid' or 'random'
            n_samples: Number of samples for the random strategy
            n_bins: Number of bins for discretizing continuous ranges in grid search
            random_seed: Seed for the random strategy

        Returns:
            List of parameter dictionaries
        """
        if strategy == 'grid':
            return self._generate_grid_combinations(n_bins)
        elif strategy == 'random':
            return self._generate_random_combinations(n_samples, random_seed)
        else:
            raise ValidationError(f"Unknown strategy: {strategy}", field="strategy")

    def expanded_values(self, n_bins: int = 10) -> Dict[str, List[Any]]:
        """Explicit value list of every parameter, with ranges expanded."""
        param_lists = {}

        for param_name, param_values in self.param_dict.items():
            if isinstance(param_values, tuple) and len(param_values) == 2:
                # Continuous range
                min_val, max_val = param_values
                if param_name in self.continuous_params:
                    param_lists[param_name] = np.linspace(min_val, max_val, n_bins).tolist()
                else:
                    # Discrete range
                    param_lists[param_name] = list(range(int(min_val), int(max_val) + 1))
            elif isinstance(param_values, (list, tuple)):
                param_lists[param_name] = list(param_values)
            else:
                # Scalar: a single fixed value
                param_lists[param_name] = [param_values]

        return param_lists

    def _generate_grid_combinations(self, n_bins: int = 10) -> List[Dict[str, Any]]:
        """Generate exhaustive grid search combinations."""

        param_lists = self.expanded_values(n_bins)

        keys = list(param_lists.keys())
        values = list(param_lists.values())

        combinations = []
        for combination in itertools.product(*values):
            combinations.append(dict(zip(keys, combination)))

        self.combinations = combinations
        return combinations

    def _generate_random_combinations(
        self,
        n_samples: int = 100,
        random_seed: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Generate random parameter combinations."""

        rng = np.random.default_rng(random_seed)
        combinations = []

        for _ in range(n_samples):
            param_dict = {}

            for param_name, param_values in self.param_dict.items():
                if isinstance(param_values, tuple) and len(param_values) == 2:
                    # Continuous range
                    min_val, max_val = param_values
                    if param_name in self.continuous_params:
                        param_dict[param_name] = float(rng.uniform(min_val, max_val))
                    else:
                        # Discrete range
                        param_dict[param_name] = int(rng.integers(int(min_val), int(max_val) + 1))
                elif isinstance(param_values, (list, tuple)):
                    # Random choice from list; index to keep None and mixed types intact
                    param_dict[param_name] = param_values[int(rng.integers(len(param_values)))]
                else:
                    param_dict[param_name] = param_values

            combinations.append(param_dict)

        self.combinations = combinations
        return combinations

    def get_n_combinations(self, n_bins: int = 10) -> int:
        """Get number of combinations the grid strategy would generate."""
        total = 1
        for values in self.expanded_values(n_bins).values():
            total *= len(values)
        return total

    def validate_parameter_space(self) -> List[str]:
        """
        Validate parameter space for common issues.

        Returns:
            List of validation warnings
        """
        warnings_list = []

        for param_name, param_values in self.param_dict.items():
            if isinstance(param_values, tuple) and len(param_values) == 2:
                min_val, max_val = param_values
                if min_val > max_val:
                    warnings_list.append(f"Parameter {param_name}: min_val > max_val")
                elif min_val == max_val:
                    warnings_list.append(f"Parameter {param_name}: min_val == max_val (fixed value)")
            elif isinstance(param_values, list):
                if len(param_values) == 0:
                    warnings_list.append(f"Parameter {param_name}: empty value list")
                elif len(set(map(repr, param_values))) != len(param_values):
                    warnings_list.append(f"Parameter {param_name}: duplicate values")

        return warnings_list


def build_comb_matrix(alternatives: Dict[str, Sequence[Any]]) -> pd.DataFrame:
    """
    Build the matrix of all combinations as indices into the alternatives.

    Args:
        alternatives: Dictionary of parameter_name -> list of values

    Returns:
        DataFrame with one column per parameter and one row per combination,
        holding 0-based indices into each parameter's alternatives.
    """
    keys = list(alternatives.keys())
    ranges = [range(len(alternatives[k])) for k in keys]
    return pd.DataFrame(list(itertools.product(*ranges)), columns=keys)


def restrict_combinations(
    alternatives: Dict[str, Sequence[Any]],
    comb: Union[pd.DataFrame, np.ndarray, List[Dict[str, Any]]]
) -> List[Dict[str, Any]]:
    """
    Select a subset of combinations.

    Args:
        alternatives: Dictionary of parameter_name -> list of values
        comb: Either an index matrix (DataFrame with parameter columns, or an
            array with columns in parameter order) of 0-based indices into the
            alternatives, or a list of parameter dictionaries whose values must
            be among the alternatives.

    Returns:
        List of parameter dictionaries, in the order given by ``comb``
    """
    keys = list(alternatives.keys())

    if isinstance(comb, list) and (not comb or isinstance(comb[0], dict)):
        result = []
        for row in comb:
            unknown = set(row) - set(keys)
            if unknown:
                raise ValidationError(
                    f"Combination names unknown parameters {sorted(unknown)}", field="comb"
                )
            params = {}
            for key in keys:
                if key not in row:
                    if len(alternatives[key]) != 1:
                        raise ValidationError(
                            f"Combination {row} does not specify '{key}'", field="comb"
                        )
                    params[key] = alternatives[key][0]
                elif row[key] not in list(alternatives[key]):
                    raise ValidationError(
                        f"Value {row[key]!r} of '{key}' is not among its alternatives",
                        field="comb",
                    )
                else:
                    params[key] = row[key]
            result.append(params)
        return result

    if isinstance(comb, pd.DataFrame):
        missing = [k for k in keys if k not in comb.columns]
        if missing:
            raise ValidationError(f"comb matrix lacks columns {missing}", field="comb")
        matrix = comb[keys].to_numpy()
    else:
        matrix = np.asarray(comb)
        if matrix.ndim != 2 or matrix.shape[1] != len(keys):
            raise ValidationError(
                f"comb matrix must have shape (n, {len(keys)}), got {matrix.shape}",
                field="comb",
            )

    result = []
    for row in matrix:
        params = {}
        for key, idx in zip(keys, row):
            idx = int(idx)
            if not 0 <= idx < len(alternatives[key]):
                raise ValidationError(
                    f"Index {idx} out of range for '{key}' "
                    f"({len(alternatives[key])} alternatives)",
                    field="comb",
                )
            params[key] = alternatives[key][idx]
        result.append(params)
    return result


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        # repr round-trips: distinct floats give distinct labels
        return repr(float(value))
    return str(value)


def _key_value(value: Any) -> Tuple[str, str]:
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        value = None
    return type(value).__name__, repr(value)


def combination_key(params: Dict[str, Any], keys: Sequence[str]) -> Tuple[Tuple[str, str], ...]:
    """
    Hashable identity of a combination restricted to ``keys``.

    Unlike :func:`combination_label`, values of different types never
    collide (``1``, ``1.0`` and ``"1"`` give three keys). Missing values
    (``None`` and NaN) share one key.
    """
    return tuple(_key_value(params[k]) for k in keys)


def combination_label(params: Dict[str, Any], keys: Optional[Sequence[str]] = None) -> str:
    """Human-readable label of a combination, e.g. ``"sva_method=svd; n_sv=auto"``."""
    keys = list(params.keys()) if keys is None else keys
    return "; ".join(f"{k}={_format_value(params[k])}" for k in keys)


def _parse_value(text: str) -> Any:
    if text == "None":
        return None
    if text in ("True", "False"):
        return text == "True"
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def parse_combination_label(label: str) -> Dict[str, Any]:
    """
    Inverse of :func:`combination_label` for scalar values.

    String values containing ``"; "`` cannot be told apart from the separator;
    read parameter columns of result tables instead where that matters.
    """
    params = {}
    if not label:
        return params
    for part in label.split(";"):
        key, sep, value = part.strip().partition("=")
        if not sep:
            raise ValidationError(f"Malformed combination label part: {part!r}", field="label")
        params[key.strip()] = _parse_value(value.strip())
    return params
