"""Core data structures and exceptions."""

from .exceptions import (
    MissingParameterError,
    PipeCompError,
    PipelineDefinitionError,
    ResultsNotFoundError,
    StepExecutionError,
    ValidationError,
)
from .structures import CountDataset, ProvenanceLog

__all__ = [
    "CountDataset",
    "ProvenanceLog",
    "PipeCompError",
    "ValidationError",
    "PipelineDefinitionError",
    "MissingParameterError",
    "StepExecutionError",
    "ResultsNotFoundError",
]
