"""
User-facing error messages and error classification.

Turns failures from the coordinator, the sandbox or the model provider into
something a chat user can read, and decides how loudly each one is logged
and whether a retry is worth it.
"""

import asyncio
import logging
import re
from typing import List, Pattern, Tuple, Union

from agent.errors import ClawboxError

ErrorLike = Union[BaseException, str]

DEFAULT_MESSAGE = "Something went wrong. I'll try to help anyway!"

# Messages for our own error kinds, checked before text patterns
_KIND_MESSAGES = {
    "transport_timeout": "That task took too long to complete. Please try with a smaller request.",
    "aborted": "The request was cancelled before it finished.",
    "worker_fault": "Something went wrong while processing. Let me try again.",
    "capacity": "I'm handling too many requests right now. Please try again in a moment.",
    "validation": "That request couldn't be processed. Please rephrase and try again.",
}

_ERROR_PATTERNS: List[Tuple[Pattern, str]] = [
    # Network errors
    (re.compile(r"ECONNREFUSED|Connection refused"), "I'm having trouble connecting to a service. Please try again in a moment."),
    (re.compile(r"ETIMEDOUT"), "That took too long to complete. Let me try a simpler approach."),
    (re.compile(r"ENOTFOUND|Name or service not known"), "I couldn't reach a required service. Please check your internet connection."),
    (re.compile(r"ECONNRESET|Connection reset"), "The connection was interrupted. Please try again."),
    (re.compile(r"EAI_AGAIN|Temporary failure in name resolution"), "There was a temporary network issue. Please try again."),
    # Rate limiting
    (re.compile(r"rate.?limit", re.I), "I need to slow down a bit. Please try again in a few seconds."),
    (re.compile(r"too many requests|\b429\b", re.I), "I'm being rate limited. Please wait a moment and try again."),
    # Context/token limits
    (re.compile(r"context.?length", re.I), "That conversation got too long. Let me summarize and continue."),
    (re.compile(r"maximum.?context", re.I), "We've hit the context limit. I'll need to start fresh or summarize."),
    (re.compile(r"token.?limit", re.I), "The response was too long. Let me give you a shorter version."),
    # Authentication
    (re.compile(r"invalid.?api.?key", re.I), "There's a configuration issue with the API. Please contact the admin."),
    (re.compile(r"unauthorized|\b401\b", re.I), "There's an authentication issue. Please contact the admin."),
    (re.compile(r"\b403\b|forbidden", re.I), "I don't have permission to do that. Please contact the admin."),
    # Model errors
    (re.compile(r"model.?not.?found", re.I), "The AI model isn't available right now. Trying an alternative..."),
    (re.compile(r"model.?unavailable", re.I), "The AI model is temporarily unavailable. Please try again later."),
    (re.compile(r"overloaded", re.I), "The AI service is busy right now. Please try again in a moment."),
    # Sandbox errors
    (re.compile(r"timed out after|container.?timeout", re.I), "That task took too long to complete. Please try with a smaller request."),
    (re.compile(r"container.?exited", re.I), "Something went wrong while processing. Let me try again."),
    # Tool errors
    (re.compile(r"tool.?call.?limit", re.I), "I hit my limit for operations. Please narrow the scope or ask for a specific subtask."),
    (re.compile(r"bash.?timeout|PROCESS TIMED OUT", re.I), "A command took too long to run. Please try a simpler operation."),
    # Generic server errors
    (re.compile(r"\b500\b"), "The server encountered an error. Please try again."),
    (re.compile(r"\b502\b"), "There's a temporary server issue. Please try again in a moment."),
    (re.compile(r"\b503\b"), "The service is temporarily unavailable. Please try again later."),
    (re.compile(r"\b504\b"), "The request timed out. Please try again."),
    # Memory/resource errors
    (re.compile(r"out of memory|memory.?limit", re.I), "That task needed more memory than available. Please try with less data."),
]

_TRANSIENT_PATTERNS: List[Pattern] = [
    re.compile(r"ECONNREFUSED|ETIMEDOUT|ECONNRESET|EAI_AGAIN|Connection (refused|reset)"),
    re.compile(r"rate.?limit", re.I),
    re.compile(r"\b(429|502|503|504)\b"),
    re.compile(r"overloaded", re.I),
]

_TRANSIENT_KINDS = frozenset({"transport_timeout", "capacity"})


def _message_of(error: ErrorLike) -> str:
    return error if isinstance(error, str) else str(error)


def classify_error(error: BaseException) -> str:
    """Stable short label for an exception, used as a metric label."""
    if isinstance(error, ClawboxError):
        return error.kind
    if isinstance(error, asyncio.CancelledError):
        return "aborted"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "transport_timeout"
    if isinstance(error, ConnectionError):
        return "connection"
    return "internal"


def humanize_error(error: ErrorLike) -> str:
    """Convert a technical error to a message fit for a chat user."""
    kind = getattr(error, "kind", None)
    if kind in _KIND_MESSAGES:
        return _KIND_MESSAGES[kind]
    message = _message_of(error)
    for pattern, friendly in _ERROR_PATTERNS:
        if pattern.search(message):
            return friendly
    return DEFAULT_MESSAGE


def is_transient_error(error: ErrorLike) -> bool:
    """Whether a retry has a reasonable chance of succeeding."""
    if getattr(error, "kind", None) in _TRANSIENT_KINDS:
        return True
    message = _message_of(error)
    return any(p.search(message) for p in _TRANSIENT_PATTERNS)


def error_severity(error: ErrorLike) -> str:
    """``"error"``, ``"warning"`` or ``"info"``."""
    if is_transient_error(error):
        return "warning"
    message = _message_of(error)
    if re.search(r"invalid.?api.?key|unauthorized", message, re.I):
        return "error"
    # User-caused issues (context too long etc.)
    if re.search(r"context.?length|token.?limit", message, re.I):
        return "info"
    if getattr(error, "kind", None) == "aborted":
        return "info"
    return "error"


def log_level_for(error: ErrorLike) -> int:
    return {
        "warning": logging.WARNING,
        "info": logging.INFO,
    }.get(error_severity(error), logging.ERROR)
