"""
Result envelope for typed stage outcomes.

Stages of a pipeline run return ``Ok[T]`` on success or ``Err[T]`` carrying a
``ReleaseError`` on failure. The scheduler is the only consumer that decides
whether an ``Err`` is retried, promoted to fatal, or cleaned up after, so no
stage ever has to swallow an exception to keep the run going.

Manifesto:
    - **Explicit over Implicit:** Callers see failure in the return type
    - **No hidden control flow:** Expected failures are values, not raises

Examples:
    >>> Ok(3).unwrap()
    3
    >>> Err(ValueError("x")).is_err()
    True

    Pattern matching::

        match publisher.publish(spec, artifact):
            case Ok(outcome):
                ...
            case Err(error):
                ...

Tags:
    result, error-handling, release-spine
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the value. Safe for Ok."""
        return self.value

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed result containing an error."""

    error: Exception

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the error. Use only when you're sure it's Ok."""
        raise self.error

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Type alias for Result
Result = Ok[T] | Err[T]


__all__ = ["Err", "Ok", "Result"]
