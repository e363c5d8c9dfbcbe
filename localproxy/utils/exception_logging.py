"""
Helpers for logging and describing exceptions, including the exception groups
raised by ``asyncio.TaskGroup`` and ``asyncio.gather`` based code paths.
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
    Log an exception, expanding each member of an exception group on its own line.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Forward]", "[Tunnel]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    sub_exceptions = _sub_exceptions(exception)
    if not sub_exceptions:
        logger.log(
            level,
            f"{prefix} Exception: {_safe_str(exception)}",
            exc_info=exception if level >= logging.ERROR else None,
        )
        return

    logger.log(
        level,
        f"{prefix} Exception with {len(sub_exceptions)} sub-exceptions: {_safe_str(exception)}",
    )
    for i, sub_exc in enumerate(sub_exceptions):
        logger.log(
            level,
            f"{prefix} Sub-exception {i+1}: {type(sub_exc).__name__}: {_safe_str(sub_exc)}",
            exc_info=sub_exc if level >= logging.ERROR else None,
        )


def format_exception_message(exception: BaseException) -> str:
    """
    Describe an exception in one line, suitable for a transaction ``error`` field.

    Exceptions with an empty message are described by their type name, so that
    e.g. a bare ``httpx.ReadTimeout()`` still produces something readable.
    """
    if exception is None:
        return "None"
    sub_exceptions = _sub_exceptions(exception)
    if sub_exceptions:
        inner = "; ".join(format_exception_message(e) for e in sub_exceptions)
        return f"{_safe_str(exception)} ({inner})"
    message = _safe_str(exception)
    return message or type(exception).__name__
