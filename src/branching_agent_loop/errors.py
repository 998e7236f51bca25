from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    CONTEXT_OVERFLOW = "context_overflow"
    FATAL = "fatal"


# Bump when a pattern is added or removed; tests/fixtures pins each version.
ERROR_PATTERNS_VERSION = 1

_CONTEXT_OVERFLOW_STATUSES = {413}

_CONTEXT_OVERFLOW_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"prompt is too long",
        r"input is too long",
        r"exceeds? the context window",
        r"maximum context length",
        r"context[ _]length[ _]exceeded",
        r"context window (?:is )?(?:full|exceeded)",
        r"too many (?:input )?tokens",
        r"request too large",
        r"reduce the length of the messages",
    )
)

_RETRYABLE_STATUSES = {408, 425, 429, 500, 502, 503, 504, 529}

_RETRYABLE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"overloaded",
        r"rate[ _-]?limit",
        r"too many requests",
        r"service unavailable",
        r"temporarily unavailable",
        r"internal server error",
        r"bad gateway",
        r"gateway time-?out",
        r"timed? ?out",
        r"connection (?:error|reset|refused|aborted)",
        r"fetch failed",
        r"server disconnected",
        r"\b(?:429|500|502|503|504|529)\b",
    )
)

_RETRY_HINT_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"retry (?:again )?(?:after|in) (\d+(?:\.\d+)?) ?(ms|milliseconds?|s|sec|seconds?)\b",
        r"\"retryDelay\"\s*:\s*\"(\d+(?:\.\d+)?)(s|ms)\"",
        r"try again in (\d+(?:\.\d+)?) ?(ms|s|seconds?)\b",
    )
)


def classify_error(message: str, status: int | None = None) -> ErrorKind:
    """Map raw error text and an optional HTTP status to an ``ErrorKind``.

    Overflow is checked first: providers report oversized prompts with 400 or
    413 and wording that would otherwise look fatal.
    """
    text = message or ""
    if status in _CONTEXT_OVERFLOW_STATUSES:
        return ErrorKind.CONTEXT_OVERFLOW
    if any(p.search(text) for p in _CONTEXT_OVERFLOW_PATTERNS):
        return ErrorKind.CONTEXT_OVERFLOW
    if status in _RETRYABLE_STATUSES:
        return ErrorKind.RETRYABLE
    if any(p.search(text) for p in _RETRYABLE_PATTERNS):
        return ErrorKind.RETRYABLE
    return ErrorKind.FATAL


def retry_delay_hint(message: str = "", headers: Mapping[str, Any] | None = None) -> float | None:
    """Return a server-supplied retry delay in seconds, if one can be found."""
    if headers:
        lowered = {str(k).lower(): v for k, v in headers.items()}
        raw_ms = lowered.get("retry-after-ms")
        if raw_ms is not None:
            try:
                return max(0.0, float(raw_ms) / 1000.0)
            except (TypeError, ValueError):
                pass
        raw = lowered.get("retry-after")
        if raw is not None:
            try:
                return max(0.0, float(raw))
            except (TypeError, ValueError):
                pass

    for pattern in _RETRY_HINT_PATTERNS:
        match = pattern.search(message or "")
        if match:
            value = float(match.group(1))
            unit = match.group(2).lower()
            if unit.startswith("ms") or unit.startswith("milli"):
                value /= 1000.0
            return value
    return None


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str
    status: int | None = None
    retry_after: float | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "status": self.status,
            "retry_after": self.retry_after,
        }


def describe_exception(exc: BaseException) -> ErrorInfo:
    """Classify an exception raised by a provider SDK or by the loop itself."""
    if isinstance(exc, ModelTurnError):
        return ErrorInfo(exc.kind, str(exc), exc.status, exc.retry_after)

    status = getattr(exc, "status_code", None)
    if not isinstance(status, int):
        status = None
    message = str(exc) or type(exc).__name__

    headers = None
    response = getattr(exc, "response", None)
    if response is not None:
        headers = getattr(response, "headers", None)
    retry_after = retry_delay_hint(message, headers)

    return ErrorInfo(classify_error(message, status), message, status, retry_after)


class AgentLoopError(Exception):
    pass


class ToolValidationError(AgentLoopError):
    def __init__(self, tool_name: str, errors: list[str]):
        self.tool_name = tool_name
        self.errors = list(errors)
        joined = "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(f'Validation failed for tool "{tool_name}":\n{joined}')


class ModelTurnError(AgentLoopError):
    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, *, status: int | None = None, retry_after: float | None = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after
        # The assistant message that reported the error, when the model produced one.
        self.assistant_message: dict | None = None

    @staticmethod
    def from_text(message: str, *, status: int | None = None) -> "ModelTurnError":
        """Build the matching subclass for an error reported inside a model response."""
        kind = classify_error(message, status)
        retry_after = retry_delay_hint(message)
        if kind is ErrorKind.CONTEXT_OVERFLOW:
            return ContextOverflowError(message, status=status)
        if kind is ErrorKind.RETRYABLE:
            return RetryableTransportError(message, status=status, retry_after=retry_after)
        return FatalModelError(message, status=status)


class RetryableTransportError(ModelTurnError):
    kind = ErrorKind.RETRYABLE


class ContextOverflowError(ModelTurnError):
    kind = ErrorKind.CONTEXT_OVERFLOW


class FatalModelError(ModelTurnError):
    kind = ErrorKind.FATAL


class AgentAbortedError(AgentLoopError):
    def __init__(self, reason: str = "aborted"):
        super().__init__(reason)
        self.reason = reason


class ChannelClosedError(AgentLoopError):
    pass


class SessionBusyError(AgentLoopError):
    pass


class UnknownEntryError(AgentLoopError):
    pass


class AgentBusyError(AgentLoopError):
    pass


_TURN_ERROR_TYPES: dict[ErrorKind, type[ModelTurnError]] = {
    ErrorKind.RETRYABLE: RetryableTransportError,
    ErrorKind.CONTEXT_OVERFLOW: ContextOverflowError,
    ErrorKind.FATAL: FatalModelError,
}


def to_turn_error(exc: BaseException) -> ModelTurnError:
    """Wrap a provider exception in the ``ModelTurnError`` subclass matching its kind."""
    if isinstance(exc, ModelTurnError):
        return exc
    info = describe_exception(exc)
    return _TURN_ERROR_TYPES[info.kind](info.message, status=info.status, retry_after=info.retry_after)
