"""
Exception logging helpers that never raise themselves.

Streaming responses run inside task groups, so a backend failure can surface
as an exception group; these helpers unpack the sub-exceptions for the logs.
"""

import logging


def _safe_str(obj) -> str:
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


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, one line per sub-exception for exception groups.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]", "[API]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        message = _safe_str(exception)
        sub_exceptions = _sub_exceptions(exception)
        if not sub_exceptions:
            logger.log(
                level,
                f"{prefix} Exception: {message}",
                exc_info=exception if exception is not None else False,
            )
            return

        logger.log(
            level,
            f"{prefix} Exception with {len(sub_exceptions)} sub-exceptions: {message}",
        )
        for i, sub_exc in enumerate(sub_exceptions):
            logger.log(
                level,
                f"{prefix} Sub-exception {i + 1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                exc_info=sub_exc,
            )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception logging failed")
        except Exception:
            pass


def format_exception_message(exception: BaseException) -> str:
    """Single-line description of an exception, sub-exceptions included."""
    if exception is None:
        return "None"
    main_str = _safe_str(exception)
    sub_exceptions = _sub_exceptions(exception)
    if not sub_exceptions:
        return main_str
    joined = "; ".join(
        f"{type(sub_exc).__name__}: {_safe_str(sub_exc)}" for sub_exc in sub_exceptions
    )
    return f"{main_str} (Sub-exceptions: {joined})"
