"""
Communication protocols for agent-to-agent (A2A) interactions.

This module defines the message envelope every agent uses to talk to the
coordinator and to other agents, plus the identity/capability descriptors
the coordinator indexes agents by.
"""
import time
import uuid
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


COORDINATOR_ADDRESS = "coordinator"
BROADCAST_ADDRESS = "broadcast"


class MessageType(str, Enum):
    # Data sharing
    MARKET_DATA = "MARKET_DATA"
    ROUTE_PROPOSAL = "ROUTE_PROPOSAL"
    RISK_ASSESSMENT = "RISK_ASSESSMENT"

    # Coordination
    REQUEST_ANALYSIS = "REQUEST_ANALYSIS"
    CONSENSUS_REQUEST = "CONSENSUS_REQUEST"
    CONSENSUS_RESPONSE = "CONSENSUS_RESPONSE"
    DECISION_MADE = "DECISION_MADE"

    # Execution
    EXECUTE_ROUTE = "EXECUTE_ROUTE"
    EXECUTION_RESULT = "EXECUTION_RESULT"

    # Monitoring
    PERFORMANCE_REPORT = "PERFORMANCE_REPORT"
    ERROR_REPORT = "ERROR_REPORT"


class MessagePriority(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    CRITICAL = 3


class AgentStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    ACTIVE = "ACTIVE"
    BUSY = "BUSY"
    ERROR = "ERROR"
    OFFLINE = "OFFLINE"


class AgentRole(str, Enum):
    PRIMARY = "primary"
    BACKUP = "backup"
    SPECIALIZED = "specialized"
    MONITOR = "monitor"


class AgentType(str, Enum):
    ROUTE_DISCOVERY = "route-discovery"
    RISK_ASSESSMENT = "risk-assessment"
    MARKET_INTELLIGENCE = "market-intelligence"
    EXECUTION_STRATEGY = "execution-strategy"
    SECURITY = "security"
    PERFORMANCE_MONITOR = "performance-monitor"


class Capability(str, Enum):
    """Declared capabilities. Only the first five map onto routing flags."""

    ANALYZE = "analyze"
    DISCOVER = "discover"
    ASSESS = "assess"
    EXECUTE = "execute"
    MONITOR = "monitor"
    ALERT = "alert"
    MITIGATE = "mitigate"
    SIGNAL = "signal"
    FORECAST = "forecast"


class AgentMessage(BaseModel):
    """
    Standard envelope for agent-to-agent communication.

    Messages are immutable; routers that redirect a message on fallback
    produce a copy through `redirect()`.

    Attributes:
        id: Unique message identifier
        sender: Originating agent id (serialized as "from")
        to: Agent id, "coordinator" or "broadcast"
        type: Message type
        payload: Opaque, type-specific content
        timestamp: Creation time (epoch seconds)
        priority: Queue priority at the receiving agent
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex}", description="Message identifier")
    sender: str = Field(..., alias="from", description="Originating agent id")
    to: str = Field(..., description="Target agent id, 'coordinator' or 'broadcast'")
    type: MessageType = Field(..., description="Message type")
    payload: Any = Field(default=None, description="Type-specific content")
    timestamp: float = Field(default_factory=time.time, description="Creation time in epoch seconds")
    priority: MessagePriority = Field(default=MessagePriority.MEDIUM)

    def redirect(self, to: str) -> "AgentMessage":
        """Copy of this message addressed to another recipient."""
        return self.model_copy(update={"to": to})

    @property
    def is_broadcast(self) -> bool:
        return self.to == BROADCAST_ADDRESS

    @property
    def is_for_coordinator(self) -> bool:
        return self.to == COORDINATOR_ADDRESS

    @classmethod
    def reply(
        cls,
        sender: str,
        to: str,
        request_id: str,
        result: Any = None,
        error: Optional[str] = None,
        priority: MessagePriority = MessagePriority.MEDIUM
    ) -> "AgentMessage":
        """Helper to create an EXECUTION_RESULT reply bound to a request id."""
        return cls(
            sender=sender,
            to=to,
            type=MessageType.EXECUTION_RESULT,
            payload=reply_payload(request_id, result=result, error=error),
            priority=priority
        )


def reply_payload(request_id: str, result: Any = None, error: Optional[str] = None) -> Dict[str, Any]:
    """EXECUTION_RESULT payload answering the request with the given id."""
    payload: Dict[str, Any] = {"request_id": request_id, "status": "error" if error else "success"}
    if error:
        payload["error"] = error
    else:
        payload["result"] = result
    return payload


_FLAG_BY_CAPABILITY = {
    Capability.ANALYZE: "can_analyze_market",
    Capability.DISCOVER: "can_discover_routes",
    Capability.ASSESS: "can_assess_risk",
    Capability.EXECUTE: "can_execute_transactions",
    Capability.MONITOR: "can_monitor_performance",
}


class AgentCapabilities(BaseModel):
    """
    Typed capability flags, built once per agent and never mutated.

    The coordinator routes on these flags only; declared capability
    strings are kept on AgentConfig for the consistency check.
    """
    model_config = ConfigDict(frozen=True)

    can_analyze_market: bool = False
    can_discover_routes: bool = False
    can_assess_risk: bool = False
    can_execute_transactions: bool = False
    can_monitor_performance: bool = False
    supported_networks: Tuple[str, ...] = ()
    supported_protocols: Tuple[str, ...] = ()

    @classmethod
    def from_declared(
        cls,
        capabilities: Iterable[Capability],
        networks: Iterable[str] = ("all",),
        protocols: Iterable[str] = ("all",)
    ) -> "AgentCapabilities":
        flags = {
            _FLAG_BY_CAPABILITY[capability]: True
            for capability in capabilities
            if capability in _FLAG_BY_CAPABILITY
        }
        return cls(
            supported_networks=tuple(networks),
            supported_protocols=tuple(protocols),
            **flags
        )

    def implied_capabilities(self) -> List[Capability]:
        """Capabilities these flags correspond to, in declaration order."""
        return [
            capability
            for capability, flag in _FLAG_BY_CAPABILITY.items()
            if getattr(self, flag)
        ]

    def shares_any_flag(self, other: "AgentCapabilities") -> bool:
        """True if both descriptors enable at least one common routing flag."""
        return any(
            getattr(self, flag) and getattr(other, flag)
            for flag in _FLAG_BY_CAPABILITY.values()
        )


class AgentConfig(BaseModel):
    """Identity and limits of a single agent."""

    id: str = Field(..., min_length=1, description="Unique agent identifier")
    name: str = Field(..., description="Human readable name")
    version: str = Field(default="1.0.0")
    capabilities: List[Capability] = Field(default_factory=list, description="Declared capabilities")
    dependencies: List[str] = Field(default_factory=list, description="Agent ids this agent depends on")
    max_concurrent_tasks: int = Field(default=10, ge=1, le=1000)
    timeout: float = Field(default=30.0, gt=0, description="Per message/task timeout in seconds")

    @field_validator("capabilities")
    @classmethod
    def _dedupe_capabilities(cls, value: List[Capability]) -> List[Capability]:
        return list(dict.fromkeys(value))
