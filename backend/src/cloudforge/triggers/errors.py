"""Error types and normalization for cloud code handlers.

Whatever a handler fails with (a string, an exception, a structured
CloudError, a JSON-ish dict, or nothing at all) is converted here into
a NormalizedError. That is the only error shape that leaves the
invocation pipeline.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

FALLBACK_MESSAGE = "Script failed."


class ErrorCode(IntEnum):
    """Stable numeric codes surfaced to callers.

    Values match the Parse error codes clients already branch on.
    """

    INTERNAL_SERVER_ERROR = 1
    TIMEOUT = 124
    SCRIPT_FAILED = 141
    VALIDATION_ERROR = 142


@dataclass(frozen=True)
class NormalizedError:
    """A failure reduced to a (code, message) pair.

    Attributes:
        code: Numeric error code (see ErrorCode)
        message: Free-text message for the caller
    """

    code: int
    message: str

    def __post_init__(self) -> None:
        # Store plain ints so ErrorCode members compare and serialize cleanly
        object.__setattr__(self, "code", int(self.code))

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "error": self.message}


class CloudError(Exception):
    """Domain error raised by handlers to fail with an explicit code.

    Example:
        async def before_save(ctx):
            if not ctx.object.get("title"):
                raise CloudError(ErrorCode.VALIDATION_ERROR, "title is required")
    """

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = int(code)
        self.message = message

    def to_normalized(self) -> NormalizedError:
        return NormalizedError(code=self.code, message=self.message)


class HandlerShapeError(ValueError):
    """Raised at registration time when a handler cannot be normalized."""


def _explicit_pair(raised: Any) -> NormalizedError | None:
    """Extract an explicit (code, message) pair if the value carries one."""
    if isinstance(raised, NormalizedError):
        return raised

    if isinstance(raised, dict):
        code = raised.get("code")
        message = raised.get("message", raised.get("error"))
    else:
        code = getattr(raised, "code", None)
        message = getattr(raised, "message", None)

    # bool is an int subclass but never a meaningful error code
    if isinstance(code, int) and not isinstance(code, bool) and isinstance(message, str):
        return NormalizedError(code=int(code), message=message)
    return None


def normalize_error(raised: Any = None) -> NormalizedError:
    """Canonicalize a handler failure.

    Rules, checked in order:
    1. Values carrying an explicit code and message pass through unchanged.
    2. Exceptions with a message become SCRIPT_FAILED with that message.
    3. Non-empty strings become SCRIPT_FAILED with that text.
    4. Anything else (including None) becomes SCRIPT_FAILED with a
       fixed fallback message.
    """
    explicit = _explicit_pair(raised)
    if explicit is not None:
        return explicit

    if isinstance(raised, BaseException):
        message = str(raised)
        if message:
            return NormalizedError(code=ErrorCode.SCRIPT_FAILED, message=message)
        return NormalizedError(code=ErrorCode.SCRIPT_FAILED, message=FALLBACK_MESSAGE)

    if isinstance(raised, str) and raised:
        return NormalizedError(code=ErrorCode.SCRIPT_FAILED, message=raised)

    return NormalizedError(code=ErrorCode.SCRIPT_FAILED, message=FALLBACK_MESSAGE)


def timeout_error(timeout_ms: int) -> NormalizedError:
    return NormalizedError(
        code=ErrorCode.TIMEOUT,
        message=f"Script timed out after {timeout_ms} ms.",
    )


def validation_error(message: str = "Validation failed.") -> NormalizedError:
    return NormalizedError(code=ErrorCode.VALIDATION_ERROR, message=message)
