"""
Helpers for logging exceptions raised while talking to the backend.

Transport failures can surface wrapped in exception groups (splice tasks,
anyio task groups inside the HTTP client), so the helpers look through
``.exceptions`` before deciding what happened.
"""

import logging
from typing import Optional, Type, TypeVar

E = TypeVar("E", bound=BaseException)


def _safe_str(obj) -> str:
    """Convert an object to a string without ever raising."""
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _sub_exceptions(exception) -> list:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def find_exception_in_exception_groups(
    exception: BaseException, target_type: Type[E]
) -> Optional[E]:
    """
    Recursively search an exception and its sub-exceptions for one of the
    target type.

    Returns:
        The first exception matching the target type, or None if not found
    """
    if isinstance(exception, target_type):
        return exception
    for sub_exc in _sub_exceptions(exception):
        found = find_exception_in_exception_groups(sub_exc, target_type)
        if found is not None:
            return found
    return None


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, listing each sub-exception separately for exception groups.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]", "[WebSocket]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    sub_exceptions = _sub_exceptions(exception)
    if not sub_exceptions:
        logger.log(
            level, f"{prefix} Exception: {_safe_str(exception)}", exc_info=exception
        )
        return

    logger.log(
        level,
        f"{prefix} Exception with {len(sub_exceptions)} sub-exceptions: "
        f"{_safe_str(exception)}",
    )
    for i, sub_exc in enumerate(sub_exceptions):
        logger.log(
            level,
            f"{prefix} Sub-exception {i + 1}: {type(sub_exc).__name__}: "
            f"{_safe_str(sub_exc)}",
            exc_info=sub_exc,
        )


def format_exception_message(exception: Optional[BaseException]) -> str:
    """Short one-line description of an exception, including sub-exceptions."""
    if exception is None:
        return "None"
    sub_exceptions = _sub_exceptions(exception)
    if not sub_exceptions:
        return _safe_str(exception) or type(exception).__name__
    joined = "; ".join(
        f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}" for sub_exc in sub_exceptions
    )
    return f"{_safe_str(exception)} (Sub-exceptions: {joined})"
