"""Exception hierarchy for pipecomp."""

from __future__ import annotations

from typing import Any


class PipeCompError(Exception):
    """Base class for exceptions in pipecomp."""
    pass


class ValidationError(PipeCompError):
    """Raised when an argument has an invalid value.

    Attributes
    ----------
    field : str | None
        Name of the offending argument, if known.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class PipelineDefinitionError(PipeCompError):
    """Raised when a pipeline definition is malformed."""
    pass


class MissingParameterError(PipelineDefinitionError):
    """Raised when a step parameter has neither alternatives nor a default."""

    def __init__(self, parameter: str, step: str | None = None) -> None:
        where = f" (step '{step}')" if step else ""
        super().__init__(
            f"Parameter '{parameter}'{where} has no alternatives and no default value"
        )
        self.parameter = parameter
        self.step = step


class StepExecutionError(PipeCompError):
    """Raised when a pipeline step fails and errors are not skipped."""

    def __init__(
        self,
        step: str,
        dataset: str,
        parameters: dict[str, Any],
        original: BaseException,
    ) -> None:
        super().__init__(
            f"Step '{step}' failed on dataset '{dataset}' with parameters "
            f"{parameters}: {original}"
        )
        self.step = step
        self.dataset = dataset
        self.parameters = parameters
        self.original = original


class ResultsNotFoundError(PipeCompError):
    """Raised when saved pipeline results cannot be found."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No pipeline results found at '{path}'")
        self.path = path
