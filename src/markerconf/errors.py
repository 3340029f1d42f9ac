"""
Exception taxonomy and Fatal-severity logging.

Every error raised by the framework derives from MarkerConfError and from the
builtin exception a Python caller would expect, so ``except AttributeError``
around a member lookup keeps working.
"""

import logging
from types import ModuleType
from typing import Any, Optional

from markerconf.config import get_framework_config


class MarkerConfError(Exception):
    """Base class for all markerconf errors."""


class MissingMemberError(MarkerConfError, AttributeError):
    """A field, property or indexer lookup found nothing."""

    kind_label = "Member"

    def __init__(self, owner: Any, name: str, detail: Optional[str] = None):
        self.owner = owner
        self.member_name = name
        message = f"{self.kind_label} '{name}' not found on {describe_owner(owner)}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MissingMethodError(MissingMemberError):
    """No method (or no overload matching the requested signature) was found."""

    kind_label = "Method"


class ArgumentError(MarkerConfError, ValueError):
    """Invalid construction, signature mismatch or value conversion failure."""


class InvalidOperationError(MarkerConfError, RuntimeError):
    """Operation not valid for the element's current state or kind."""


class ParameterCountError(MarkerConfError, TypeError):
    """Too few or too many arguments for a method invocation."""


def describe_owner(owner: Any) -> str:
    """Readable dotted name for a class or module owner."""
    if isinstance(owner, ModuleType):
        return owner.__name__
    if isinstance(owner, type):
        return f"{owner.__module__}.{owner.__qualname__}"
    return repr(owner)


def log_fatal(logger: logging.Logger, exc: BaseException, message: Optional[str] = None) -> None:
    """Log at CRITICAL; raise ``exc`` as well when running in strict mode.

    Production hosts keep running after a Fatal condition, development builds
    surface it immediately.
    """
    text = f"{message}: {exc}" if message else str(exc)
    if get_framework_config().strict:
        logger.critical(text)
        raise exc
    logger.critical(text, exc_info=exc)
