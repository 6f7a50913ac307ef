"""Core primitives shared by every release-spine module.

- :mod:`release_spine.core.errors`: typed error taxonomy
- :mod:`release_spine.core.result`: ``Ok`` / ``Err`` stage outcomes
- :mod:`release_spine.core.logging`: structlog configuration
- :mod:`release_spine.core.secrets`: secret resolution and scoped credentials
- :mod:`release_spine.core.settings`: process settings
"""

from release_spine.core.errors import ErrorCategory, ReleaseError
from release_spine.core.result import Err, Ok, Result

__all__ = ["Err", "ErrorCategory", "Ok", "ReleaseError", "Result"]
