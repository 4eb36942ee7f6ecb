"""
Error classification shared by every agent.

Classification order:
1. Structured ErrorCode carried by RouteAgentsError (or set by a collaborator)
2. Well-known exception types (TimeoutError, ConnectionError, MemoryError, ...)
3. Keyword heuristics on the message, for errors that carry no structure
"""
import asyncio
from typing import Optional

from route_agents.errors import ErrorCode
from route_agents.models.agent import ErrorAnalysis


_NETWORK = ErrorAnalysis(
    severity="medium",
    category="network",
    recommendations=["Check network connectivity", "Verify API endpoints", "Retry with backoff"],
    auto_recoverable=True,
)
_RATE_LIMIT = ErrorAnalysis(
    severity="medium",
    category="rate-limit",
    recommendations=["Back off before retrying", "Queue requests", "Check API limits"],
    auto_recoverable=True,
)
_AUTHENTICATION = ErrorAnalysis(
    severity="high",
    category="authentication",
    recommendations=["Check API credentials", "Refresh auth tokens", "Verify permissions"],
    auto_recoverable=False,
)
_SYSTEM = ErrorAnalysis(
    severity="critical",
    category="system",
    recommendations=["Restart agent", "Check system resources", "Review memory usage"],
    auto_recoverable=False,
)
_CANCELLED = ErrorAnalysis(
    severity="low",
    category="cancelled",
    recommendations=["No action required"],
    auto_recoverable=False,
)
_CAPACITY = ErrorAnalysis(
    severity="medium",
    category="capacity",
    recommendations=["Route to another agent", "Increase max_concurrent_tasks"],
    auto_recoverable=False,
)
_UNAVAILABLE = ErrorAnalysis(
    severity="medium",
    category="availability",
    recommendations=["Route to a fallback agent", "Wait for the circuit breaker to reset"],
    auto_recoverable=False,
)
_SECURITY = ErrorAnalysis(
    severity="high",
    category="security",
    recommendations=["Review security event log", "Block offending source"],
    auto_recoverable=False,
)
_INVALID_INPUT = ErrorAnalysis(
    severity="low",
    category="validation",
    recommendations=["Fix the request payload", "Check the sender's message contract"],
    auto_recoverable=False,
)
_UNKNOWN = ErrorAnalysis(
    severity="low",
    category="unknown",
    recommendations=["Log error for analysis", "Monitor frequency"],
    auto_recoverable=True,
)

_BY_CODE = {
    ErrorCode.NETWORK: _NETWORK,
    ErrorCode.TIMEOUT: _NETWORK,
    ErrorCode.RATE_LIMITED: _RATE_LIMIT,
    ErrorCode.UNAUTHORIZED: _AUTHENTICATION,
    ErrorCode.FORBIDDEN: _AUTHENTICATION,
    ErrorCode.OUT_OF_MEMORY: _SYSTEM,
    ErrorCode.FATAL: _SYSTEM,
    ErrorCode.CANCELLED: _CANCELLED,
    ErrorCode.CAPACITY: _CAPACITY,
    ErrorCode.UNAVAILABLE: _UNAVAILABLE,
    ErrorCode.SECURITY: _SECURITY,
    ErrorCode.INVALID_INPUT: _INVALID_INPUT,
}

_KEYWORDS = (
    (("econnrefused", "timeout", "timed out", "network"), _NETWORK),
    (("rate limit", "429", "too many requests"), _RATE_LIMIT),
    (("unauthorized", "401", "403", "forbidden"), _AUTHENTICATION),
    (("out of memory", "segfault", "fatal"), _SYSTEM),
)


def error_code_of(error: BaseException) -> Optional[ErrorCode]:
    """Structured code of an error, if it has one."""
    code = getattr(error, "code", None)
    if isinstance(code, ErrorCode):
        return code
    if isinstance(code, str):
        try:
            return ErrorCode(code)
        except ValueError:
            return None

    if isinstance(error, asyncio.CancelledError):
        return ErrorCode.CANCELLED
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorCode.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCode.NETWORK
    if isinstance(error, MemoryError):
        return ErrorCode.OUT_OF_MEMORY
    if isinstance(error, PermissionError):
        return ErrorCode.FORBIDDEN
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorCode.INVALID_INPUT
    return None


def analyze_error(error: BaseException) -> ErrorAnalysis:
    """
    Classify an error into severity, category and recoverability.

    Returns a fresh ErrorAnalysis so callers may enrich it.
    """
    code = error_code_of(error)
    if code is not None:
        return _BY_CODE[code].model_copy(deep=True)

    message = str(error).lower()
    for keywords, analysis in _KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return analysis.model_copy(deep=True)

    return _UNKNOWN.model_copy(deep=True)
