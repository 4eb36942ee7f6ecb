"""
Exception hierarchy for the agent runtime, the coordinator and consensus.

Errors raised by collaborators may carry a structured ErrorCode; the error
classifier prefers the code over keyword matching on the message text.
"""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    OUT_OF_MEMORY = "out_of_memory"
    FATAL = "fatal"
    CANCELLED = "cancelled"
    CAPACITY = "capacity"
    UNAVAILABLE = "unavailable"
    SECURITY = "security"
    INVALID_INPUT = "invalid_input"


class RouteAgentsError(Exception):
    """Base class for every error raised by this package."""

    code: Optional[ErrorCode] = None

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


# ============================================================================
# AGENT ERRORS
# ============================================================================

class AgentUnavailableError(RouteAgentsError):
    """Agent refuses work: circuit breaker open or agent offline."""

    code = ErrorCode.UNAVAILABLE


class AgentCapacityError(RouteAgentsError):
    """Agent is already running max_concurrent_tasks tasks."""

    code = ErrorCode.CAPACITY


class AgentTimeoutError(RouteAgentsError):
    code = ErrorCode.TIMEOUT


class TaskCancelledError(RouteAgentsError):
    code = ErrorCode.CANCELLED


class RequestTimeoutError(RouteAgentsError):
    """An inter-agent request got no EXECUTION_RESULT in time."""

    code = ErrorCode.TIMEOUT


class AgentStoppedError(RouteAgentsError):
    """Queued work discarded because the agent is stopping."""

    code = ErrorCode.CANCELLED


# ============================================================================
# COORDINATOR ERRORS
# ============================================================================

class CoordinatorError(RouteAgentsError):
    pass


class RegistrationError(CoordinatorError):
    pass


class RoutingError(CoordinatorError):
    pass


class NoFallbackAvailableError(RoutingError):
    pass


class DeliveryFailedError(RoutingError):
    pass


class CoordinatorShuttingDownError(CoordinatorError):
    code = ErrorCode.CANCELLED


# ============================================================================
# CONSENSUS ERRORS
# ============================================================================

class ConsensusError(CoordinatorError):
    """Base class for consensus failures (kept apart from routing errors)."""

    reason = "error"


class NoConsensusParticipantsError(ConsensusError):
    reason = "no_participants"


class NoConsensusResponsesError(ConsensusError):
    reason = "no_responses"


class InsufficientQuorumError(ConsensusError):
    reason = "insufficient_quorum"

    def __init__(self, received: int, required: int, participants: int):
        super().__init__(
            f"Insufficient consensus responses: {received}/{required} required "
            f"({participants} participants)"
        )
        self.received = received
        self.required = required
        self.participants = participants
