"""
Dashboard-ready reports produced by the coordinator.
"""
import time
from typing import Dict, List

from pydantic import BaseModel, Field

from route_agents.models.protocols import AgentRole, AgentStatus, AgentType


class SystemHealth(BaseModel):
    """Aggregated health of every registered agent."""
    healthy: bool
    total_agents: int = 0
    active_agents: int = 0
    unhealthy_agents: List[str] = Field(default_factory=list)
    failed_agents: List[str] = Field(default_factory=list, description="Agents in ERROR status")
    issues: List[str] = Field(default_factory=list, description="'<agent_id>: <issue>' entries")
    timestamp: float = Field(default_factory=time.time)
    uptime: float = Field(default=0.0, description="Seconds since the coordinator was created")


class AgentStatistics(BaseModel):
    id: str
    type: AgentType
    role: AgentRole
    status: AgentStatus
    tasks_completed: int
    tasks_in_progress: int
    success_rate: float
    average_response_time: float
    failure_count: int
    healthy: bool


class TelemetryReport(BaseModel):
    timestamp: float = Field(default_factory=time.time)
    system_uptime: float = 0.0
    messages_processed: int = 0
    messages_by_type: Dict[str, int] = Field(default_factory=dict)
    routing_errors: int = 0
    agent_failures: Dict[str, int] = Field(default_factory=dict)
    consensus_requests: int = 0
    consensus_success_rate: float = 1.0
    consensus_failures: Dict[str, int] = Field(
        default_factory=dict,
        description="Consensus failures by reason, counted apart from routing errors"
    )
    agent_stats: List[AgentStatistics] = Field(default_factory=list)
    system_health: str = ""

    @property
    def active_agent_count(self) -> int:
        return sum(1 for stats in self.agent_stats if stats.status == AgentStatus.ACTIVE)
