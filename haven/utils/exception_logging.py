"""
Helpers for turning forward and relay failures into log lines and response bodies.

Both helpers tolerate broken exception objects and exception groups, since they
run on the error path of a request and must never raise themselves.
"""

import logging


def _safe_str(obj) -> str:
    """
    Convert an object to string, falling back to repr and then to the type name.

    Args:
        obj: The object to convert

    Returns:
        A string representation of the object
    """
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


def format_exception_message(exception: Exception) -> str:
    """
    Render an exception as the text body of an error response.

    An exception with an empty message is rendered by its type name so that
    the client never receives an empty 500 body. Exception groups list their
    sub-exceptions.

    Args:
        exception: The exception to format

    Returns:
        A non-empty description of the exception
    """
    if exception is None:
        return "None"

    message = _safe_str(exception)
    if not message:
        message = type(exception).__name__

    sub_exceptions = _sub_exceptions(exception)
    if not sub_exceptions:
        return message

    parts = []
    for sub_exc in sub_exceptions:
        sub_message = _safe_str(sub_exc) or type(sub_exc).__name__
        parts.append(f"{type(sub_exc).__name__}: {sub_message}")
    return f"{message} (Sub-exceptions: {'; '.join(parts)})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, including each sub-exception of an exception group.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Forward]", "[Relay]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        sub_exceptions = _sub_exceptions(exception)
        if sub_exceptions:
            logger.log(
                level,
                f"{prefix} Exception with {len(sub_exceptions)} sub-exceptions: {_safe_str(exception)}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                logger.log(
                    level,
                    f"{prefix} Sub-exception {i + 1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
                    exc_info=sub_exc,
                )
        else:
            logger.log(
                level,
                f"{prefix} Exception: {format_exception_message(exception)}",
                exc_info=exception if exception is not None else False,
            )
    except Exception:
        # Last resort, logging must not break the error response
        try:
            logger.log(logging.ERROR, f"{prefix} Exception (logging failed)")
        except Exception:
            pass
