"""
Pydantic models for data validation and structured outputs.

This module centralizes all data contracts used across the application:
- Agent protocols (message envelope, identity, capabilities)
- Agent runtime state (metrics, errors, health)
- Route decision domain and consensus contracts
- Coordinator reports
"""
from route_agents.models.protocols import (
    BROADCAST_ADDRESS,
    COORDINATOR_ADDRESS,
    AgentCapabilities,
    AgentConfig,
    AgentMessage,
    AgentRole,
    AgentStatus,
    AgentType,
    Capability,
    MessagePriority,
    MessageType,
    reply_payload,
)
from route_agents.models.agent import (
    AgentErrorRecord,
    AgentMetrics,
    ErrorAnalysis,
    HealthReport,
    TaskContext,
)
from route_agents.models.schemas import (
    CRITERIA_FIELDS,
    ConflictLevel,
    ConsensusDecision,
    ConsensusRequest,
    ConsensusResponse,
    DecisionCriteria,
    DecisionScore,
    ExecutionStrategy,
    ExecutionTiming,
    GasStrategy,
    MarketSnapshot,
    MevProtection,
    PerformanceData,
    ResolutionMethod,
    RiskAssessment,
    RiskFactors,
    RouteAnalysis,
    RouteProposal,
    RouteStep,
    ScoreBreakdown,
    UserFocus,
    UserPreferenceWeights,
)
from route_agents.models.reports import AgentStatistics, SystemHealth, TelemetryReport

__all__ = [
    # Agent Protocols
    "BROADCAST_ADDRESS",
    "COORDINATOR_ADDRESS",
    "AgentCapabilities",
    "AgentConfig",
    "AgentMessage",
    "AgentRole",
    "AgentStatus",
    "AgentType",
    "Capability",
    "MessagePriority",
    "MessageType",
    "reply_payload",

    # Agent Runtime
    "AgentErrorRecord",
    "AgentMetrics",
    "ErrorAnalysis",
    "HealthReport",
    "TaskContext",

    # Route Domain
    "RouteStep",
    "RouteProposal",
    "RiskFactors",
    "RiskAssessment",
    "ExecutionTiming",
    "ExecutionStrategy",
    "GasStrategy",
    "MevProtection",
    "PerformanceData",
    "MarketSnapshot",

    # Decision & Consensus
    "CRITERIA_FIELDS",
    "DecisionCriteria",
    "ScoreBreakdown",
    "DecisionScore",
    "UserFocus",
    "UserPreferenceWeights",
    "ConsensusRequest",
    "ConsensusResponse",
    "RouteAnalysis",
    "ConflictLevel",
    "ResolutionMethod",
    "ConsensusDecision",

    # Reports
    "SystemHealth",
    "AgentStatistics",
    "TelemetryReport",
]
