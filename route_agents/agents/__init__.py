"""
Multi-agent system components.

This package contains the agent runtime (BaseAgent), the shared behaviour of
the domain agents, the six specialized agents and the coordinator.
"""
from route_agents.models.protocols import AgentMessage
from route_agents.agents.base_agent import BaseAgent
from route_agents.agents.specialist import SpecialistAgent
from route_agents.agents.route_discovery import RouteDiscoveryAgent
from route_agents.agents.risk_assessment import RiskAssessmentAgent
from route_agents.agents.market_intelligence import MarketIntelligenceAgent
from route_agents.agents.execution_strategy import ExecutionStrategyAgent
from route_agents.agents.security import SecurityAgent
from route_agents.agents.performance_monitor import PerformanceMonitorAgent
from route_agents.agents.coordinator import AgentCoordinator, AgentRegistration, FunctionRouter

__all__ = [
    "AgentMessage",
    "BaseAgent",
    "SpecialistAgent",

    # Specialized agents
    "RouteDiscoveryAgent",
    "RiskAssessmentAgent",
    "MarketIntelligenceAgent",
    "ExecutionStrategyAgent",
    "SecurityAgent",
    "PerformanceMonitorAgent",

    # Coordination
    "AgentCoordinator",
    "AgentRegistration",
    "FunctionRouter",
]
