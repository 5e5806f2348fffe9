from __future__ import annotations

# Errors raised for malformed input never succeed on a second attempt.
_PERMANENT_ERROR_TYPES: tuple[type[BaseException], ...] = (ValueError, TypeError, LookupError)


def is_retryable(exc: BaseException) -> bool:
    """Classify a job failure.

    An exception exposing a ``retryable`` attribute decides for itself;
    input and lookup errors are permanent; anything else is transient.
    """
    flag = getattr(exc, "retryable", None)
    if flag is not None:
        return bool(flag)
    if isinstance(exc, _PERMANENT_ERROR_TYPES):
        return False
    return True


def error_message(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__
