"""Pipeline definitions.

A pipeline is an ordered list of steps. Each step is a function taking the
output of the previous step as its first positional argument and any number of
keyword parameters; the names of those parameters are read from the function
signature. Benchmarking a pipeline means running every combination of
parameter alternatives and evaluating the output of some of the steps.

Examples
--------
>>> from pipecomp.pipeline import PipelineDefinition, PipelineStep
>>> def scale(x, factor=2):
...     return x * factor
>>> def shift(x, offset):
...     return x + offset
>>> pipeline = PipelineDefinition(
...     [PipelineStep("scale", scale), PipelineStep("shift", shift,
...                                                 evaluation=lambda y: {"value": y})],
...     default_arguments={"offset": 0},
... )
>>> pipeline.arguments()
{'scale': ['factor'], 'shift': ['offset']}
"""

from __future__ import annotations

import inspect
import warnings
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from pipecomp.core.exceptions import (
    MissingParameterError,
    PipelineDefinitionError,
    ValidationError,
)

EvaluationFunction = Callable[[Any], Any]
AggregationFunction = Callable[[dict], Any]

# Keyword injected by the runner; never a benchmarked parameter
RANDOM_STATE_ARG = "random_state"


def _signature_parameters(name: str, function: Callable[..., Any]) -> tuple[list[str], dict[str, Any]]:
    """Split a step function signature into parameter names and defaults.

    The first positional parameter receives the step input and is not a
    pipeline parameter.
    """
    try:
        sig = inspect.signature(function)
    except (TypeError, ValueError) as e:
        raise PipelineDefinitionError(
            f"Cannot inspect signature of step '{name}': {e}"
        ) from e

    params = list(sig.parameters.values())
    positional = (
        inspect.Parameter.POSITIONAL_ONLY,
        inspect.Parameter.POSITIONAL_OR_KEYWORD,
    )
    if not params or params[0].kind not in positional:
        raise PipelineDefinitionError(
            f"Step '{name}' must accept its input as first positional argument"
        )

    names: list[str] = []
    defaults: dict[str, Any] = {}
    for p in params[1:]:
        if p.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if p.name == RANDOM_STATE_ARG:
            continue
        if p.kind == inspect.Parameter.POSITIONAL_ONLY:
            raise PipelineDefinitionError(
                f"Parameter '{p.name}' of step '{name}' must be passable by keyword"
            )
        names.append(p.name)
        if p.default is not inspect.Parameter.empty:
            defaults[p.name] = p.default
    return names, defaults


@dataclass
class PipelineStep:
    """A single step of a pipeline.

    Attributes
    ----------
    name : str
        Unique step name.
    function : Callable
        ``function(x, **params)`` returning the step output. A
        ``random_state`` keyword, when present, receives a
        ``numpy.random.Generator`` from the runner and is not a parameter.
    evaluation : Callable | None
        Applied to the step output; returns a dict of metrics, a list of
        dicts, or a pandas DataFrame.
    aggregation : Callable | None
        Combines the per-dataset evaluation tables of this step. Defaults to
        concatenation.
    description : str | None
        Free text shown in the pipeline representation.
    parameter_constraints : dict[str, dict[str, Any]]
        Per-parameter constraints with keys ``type``, ``range``, ``choices``,
        ``min`` and ``max``.
    """

    name: str
    function: Callable[..., Any]
    evaluation: EvaluationFunction | None = None
    aggregation: AggregationFunction | None = None
    description: str | None = None
    parameter_constraints: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        if not callable(self.function):
            raise PipelineDefinitionError(f"Step '{self.name}' function must be callable")
        self.parameters, self.signature_defaults = _signature_parameters(
            self.name, self.function
        )
        self.accepts_random_state = RANDOM_STATE_ARG in inspect.signature(self.function).parameters
        unknown = set(self.parameter_constraints) - set(self.parameters)
        if unknown:
            raise PipelineDefinitionError(
                f"Constraints of step '{self.name}' name unknown parameters {sorted(unknown)}"
            )

    def validate_parameters(self, parameters: Mapping[str, Any]) -> bool:
        """
        Validate parameters against constraints.

        Returns
        -------
        bool
            True if parameters are valid.

        Raises
        ------
        ValidationError
            If a parameter violates its constraint.
        """
        for param_name, param_value in parameters.items():
            if param_name in self.parameter_constraints:
                constraint = self.parameter_constraints[param_name]
                self._validate_single_constraint(param_name, param_value, constraint)
        return True

    def _validate_single_constraint(self, name: str, value: Any, constraint: dict[str, Any]):
        """Validate a single parameter against constraints."""

        if 'type' in constraint:
            expected_type = constraint['type']
            if not isinstance(value, expected_type):
                raise ValidationError(
                    f"Parameter {name} must be of type {expected_type}, got {type(value)}",
                    field=name,
                )

        if 'choices' in constraint:
            if value not in constraint['choices']:
                raise ValidationError(
                    f"Parameter {name}={value} not in choices {constraint['choices']}",
                    field=name,
                )

        # Numeric bounds only apply to numeric values (e.g. n_sv may be "auto")
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return

        if 'range' in constraint:
            min_val, max_val = constraint['range']
            if not (min_val <= value <= max_val):
                raise ValidationError(
                    f"Parameter {name}={value} out of range [{min_val}, {max_val}]",
                    field=name,
                )

        if 'min' in constraint and value < constraint['min']:
            raise ValidationError(
                f"Parameter {name}={value} below minimum {constraint['min']}", field=name
            )

        if 'max' in constraint and value > constraint['max']:
            raise ValidationError(
                f"Parameter {name}={value} above maximum {constraint['max']}", field=name
            )

    def run(self, x: Any, parameters: Mapping[str, Any], random_state: Any = None) -> Any:
        kwargs = {k: parameters[k] for k in self.parameters if k in parameters}
        if self.accepts_random_state:
            kwargs[RANDOM_STATE_ARG] = random_state
        return self.function(x, **kwargs)


class PipelineDefinition:
    """Ordered set of steps with evaluation and default arguments.

    Parameters
    ----------
    steps : Sequence[PipelineStep] | Mapping[str, Callable]
        Steps in execution order. A mapping of name to function creates
        steps without evaluation.
    initiation : Callable | None
        Applied to each dataset before the first step (e.g. loading it from
        a path). Defaults to identity.
    default_arguments : Mapping[str, Any] | None
        Default values overriding the function signature defaults.
    description : str | None
        Free text description of the pipeline.
    copy_inputs : bool, default=True
        Deep-copy step inputs before each call. Disable only when every step
        function returns a new object instead of modifying its input.

    Raises
    ------
    PipelineDefinitionError
        If step names or parameter names are duplicated, or if a default
        argument names no parameter.
    """

    def __init__(
        self,
        steps: Sequence[PipelineStep] | Mapping[str, Callable[..., Any]],
        initiation: Callable[[Any], Any] | None = None,
        default_arguments: Mapping[str, Any] | None = None,
        description: str | None = None,
        copy_inputs: bool = True,
    ) -> None:
        if isinstance(steps, Mapping):
            steps = [PipelineStep(name, fn) for name, fn in steps.items()]
        self._steps: list[PipelineStep] = list(steps)
        if not self._steps:
            raise PipelineDefinitionError("A pipeline needs at least one step")
        self.initiation = initiation
        self._explicit_defaults: dict[str, Any] = dict(default_arguments or {})
        self.description = description
        self.copy_inputs = copy_inputs
        self._validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        seen_steps: set[str] = set()
        owner: dict[str, str] = {}
        for step in self._steps:
            if not isinstance(step, PipelineStep):
                raise PipelineDefinitionError(
                    f"Expected PipelineStep, got {type(step).__name__}"
                )
            if step.name in seen_steps:
                raise PipelineDefinitionError(f"Duplicated step name '{step.name}'")
            seen_steps.add(step.name)
            for param in step.parameters:
                if param in owner:
                    raise PipelineDefinitionError(
                        f"Parameter '{param}' is used by both steps "
                        f"'{owner[param]}' and '{step.name}'"
                    )
                owner[param] = step.name

        unknown = set(self._explicit_defaults) - set(owner)
        if unknown:
            raise PipelineDefinitionError(
                f"Default arguments name unknown parameters {sorted(unknown)}"
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def steps(self) -> list[PipelineStep]:
        return list(self._steps)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self._steps]

    def get_step(self, name: str) -> PipelineStep:
        for step in self._steps:
            if step.name == name:
                return step
        raise PipelineDefinitionError(
            f"Unknown step '{name}'. Available steps: {self.step_names}"
        )

    def arguments(self) -> dict[str, list[str]]:
        """Parameter names of each step, in step order."""
        return {s.name: list(s.parameters) for s in self._steps}

    def all_arguments(self) -> list[str]:
        """All parameter names, ordered by step."""
        return [p for s in self._steps for p in s.parameters]

    def step_of(self, parameter: str) -> str:
        for step in self._steps:
            if parameter in step.parameters:
                return step.name
        raise PipelineDefinitionError(f"Parameter '{parameter}' belongs to no step")

    def parameters_up_to(self, step_name: str) -> list[str]:
        """Parameters of all steps up to and including ``step_name``."""
        names: list[str] = []
        for step in self._steps:
            names.extend(step.parameters)
            if step.name == step_name:
                return names
        raise PipelineDefinitionError(f"Unknown step '{step_name}'")

    @property
    def default_arguments(self) -> dict[str, Any]:
        defaults: dict[str, Any] = {}
        for step in self._steps:
            defaults.update(step.signature_defaults)
        defaults.update(self._explicit_defaults)
        return defaults

    def evaluated_steps(self) -> list[str]:
        return [s.name for s in self._steps if s.evaluation is not None]

    # ------------------------------------------------------------------
    # Modification
    # ------------------------------------------------------------------

    def add_step(self, step: PipelineStep, after: str | None = None) -> None:
        """Insert a step after the named step, or first when ``after`` is None."""
        if after is None:
            position = 0
        else:
            position = self.step_names.index(self.get_step(after).name) + 1
        previous = list(self._steps)
        self._steps.insert(position, step)
        try:
            self._validate()
        except PipelineDefinitionError:
            self._steps = previous
            raise

    def remove_step(self, name: str) -> PipelineStep:
        step = self.get_step(name)
        if len(self._steps) == 1:
            raise PipelineDefinitionError("Cannot remove the only step of a pipeline")
        self._steps.remove(step)
        for param in step.parameters:
            self._explicit_defaults.pop(param, None)
        return step

    def set_evaluation(self, step: str, evaluation: EvaluationFunction | None) -> None:
        self.get_step(step).evaluation = evaluation

    def set_aggregation(self, step: str, aggregation: AggregationFunction | None) -> None:
        self.get_step(step).aggregation = aggregation

    def set_default(self, parameter: str, value: Any) -> None:
        self.step_of(parameter)
        self._explicit_defaults[parameter] = value

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def initiate(self, dataset: Any) -> Any:
        if self.initiation is None:
            return dataset
        return self.initiation(dataset)

    def resolve_parameters(self, alternatives: Mapping[str, Any] | None) -> dict[str, Any]:
        """
        Complete the alternatives with default arguments.

        Parameters
        ----------
        alternatives : Mapping[str, Any] | None
            Parameter name to list of values (or a scalar, or a (min, max)
            range tuple).

        Returns
        -------
        dict[str, Any]
            Every pipeline parameter, in step order, mapped to its
            alternatives.

        Raises
        ------
        MissingParameterError
            If a parameter has neither alternatives nor a default value.
        """
        alternatives = dict(alternatives or {})
        known = set(self.all_arguments())
        unknown = [k for k in alternatives if k not in known]
        if unknown:
            warnings.warn(
                f"Alternatives {unknown} are not parameters of the pipeline and are ignored"
            )

        defaults = self.default_arguments
        resolved: dict[str, Any] = {}
        for step in self._steps:
            for param in step.parameters:
                if param in alternatives:
                    values = alternatives[param]
                    if isinstance(values, tuple) and len(values) == 2:
                        resolved[param] = values
                    elif isinstance(values, (list, tuple)):
                        if len(values) == 0:
                            raise ValidationError(
                                f"Empty alternatives for parameter '{param}'", field=param
                            )
                        resolved[param] = list(values)
                    else:
                        resolved[param] = [values]
                elif param in defaults:
                    resolved[param] = [defaults[param]]
                else:
                    raise MissingParameterError(param, step.name)
        return resolved

    def validate_parameters(self, step: str, parameters: Mapping[str, Any]) -> bool:
        s = self.get_step(step)
        return s.validate_parameters({k: v for k, v in parameters.items() if k in s.parameters})

    def __len__(self) -> int:
        return len(self._steps)

    def __repr__(self) -> str:
        lines = ["PipelineDefinition"]
        if self.description:
            lines.append(self.description)
        lines.append("Steps:")
        for step in self._steps:
            params = ", ".join(step.parameters)
            marker = " *" if step.evaluation is not None else ""
            lines.append(f"  - {step.name}({params}){marker}")
            if step.description:
                lines.append(f"      {step.description}")
        lines.append("(* = step output is evaluated)")
        return "\n".join(lines)
