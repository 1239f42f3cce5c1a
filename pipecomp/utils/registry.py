"""Method registry for pipeline step implementations.

Each pipeline step (e.g. ``"filtering"``, ``"sva"``, ``"dea"``) exposes a
method parameter whose alternatives are the names registered here. Step
wrappers look implementations up by ``(step, name)`` so that new methods can
be benchmarked without touching the wrapper.
"""

from collections import defaultdict
from collections.abc import Callable
from typing import Any, TypeVar

__all__ = [
    # Registry storage access
    "_AVAILABLE_METHODS",
    # Decorators
    "register_method",
    # Query functions
    "get_method",
    "list_methods",
    "list_steps",
    "has_method",
    "clear_methods",
    # Utility functions
    "get_registry_info",
]

# =============================================================================
# Type Variables
# =============================================================================

F = TypeVar("F", bound=Callable[..., Any])

# =============================================================================
# Registry Storage
# =============================================================================

_AVAILABLE_METHODS: dict[str, dict[str, Callable[..., Any]]] = defaultdict(dict)

# Method metadata storage
_METHOD_METADATA: dict[tuple[str, str], dict[str, Any]] = defaultdict(dict)


# =============================================================================
# Decorator Functions
# =============================================================================


def register_method(step: str, name: str) -> Callable[[F], F]:
    """Decorator to register an implementation of a pipeline step.

    Parameters
    ----------
    step : str
        Step the method belongs to.
    name : str
        Method identifier, used as a parameter alternative. If a method with
        this name already exists for the step, it will be overwritten.

    Returns
    -------
    Callable[[F], F]
        Decorator function that registers the callable and returns it unchanged.

    Raises
    ------
    TypeError
        If the decorated object is not callable.

    Examples
    --------
    >>> from pipecomp.utils.registry import register_method, get_method
    >>>
    >>> @register_method("dea", "my_test")
    ... def my_test(dataset, group_col="group", reference=None):
    ...     ...
    >>>
    >>> assert get_method("dea", "my_test") is my_test
    """
    def decorator(func: F) -> F:
        if not callable(func):
            raise TypeError(
                f"@register_method can only be used on callables, "
                f"got {type(func).__name__}"
            )
        _AVAILABLE_METHODS[step][name] = func
        _METHOD_METADATA[(step, name)]["qualname"] = getattr(
            func, "__qualname__", repr(func)
        )
        _METHOD_METADATA[(step, name)]["doc"] = (func.__doc__ or "").strip().split("\n")[0]
        return func

    return decorator


# =============================================================================
# Query Functions
# =============================================================================


def get_method(step: str, name: str) -> Callable[..., Any] | None:
    """Get a registered method by step and name.

    Parameters
    ----------
    step : str
        Step the method belongs to.
    name : str
        Name of the method.

    Returns
    -------
    Callable | None
        The registered callable, or None if not found.
    """
    return _AVAILABLE_METHODS.get(step, {}).get(name)


def list_methods(step: str) -> list[str]:
    """List registered method names for a step.

    Returns
    -------
    list[str]
        Sorted list of method names, empty if the step is unknown.
    """
    return sorted(_AVAILABLE_METHODS.get(step, {}).keys())


def list_steps() -> list[str]:
    """List steps that have at least one registered method."""
    return sorted(step for step, methods in _AVAILABLE_METHODS.items() if methods)


def has_method(step: str, name: str) -> bool:
    """Check if a method is registered for a step."""
    return name in _AVAILABLE_METHODS.get(step, {})


def clear_methods(step: str | None = None) -> None:
    """Clear registered methods.

    Parameters
    ----------
    step : str | None
        Only clear methods of this step. None clears everything.
    """
    if step is None:
        _AVAILABLE_METHODS.clear()
        _METHOD_METADATA.clear()
        return
    _AVAILABLE_METHODS.pop(step, None)
    for key in [k for k in _METHOD_METADATA if k[0] == step]:
        del _METHOD_METADATA[key]


# =============================================================================
# Utility Functions
# =============================================================================


def get_registry_info() -> dict[str, Any]:
    """Get a summary of the registry contents.

    Returns
    -------
    dict[str, Any]
        Dictionary with per-step method names, their one-line descriptions
        and the total count.

    Examples
    --------
    >>> info = get_registry_info()
    >>> print(info["steps"]["dea"])
    """
    steps = {step: list_methods(step) for step in list_steps()}
    return {
        "steps": steps,
        "descriptions": {
            f"{step}.{name}": meta.get("doc", "")
            for (step, name), meta in _METHOD_METADATA.items()
        },
        "total": sum(len(v) for v in steps.values()),
    }
