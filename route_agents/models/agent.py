"""
Runtime state exposed by agents: metrics snapshots, error records,
error classification results and health reports.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Severity = Literal["low", "medium", "high", "critical"]


class AgentErrorRecord(BaseModel):
    """Entry of an agent's bounded error history."""
    timestamp: float = Field(default_factory=time.time)
    error: str = Field(..., description="Error message")
    error_type: str = Field(default="Exception", description="Exception class name")
    context: Dict[str, Any] = Field(default_factory=dict)
    severity: Severity = "low"


class AgentMetrics(BaseModel):
    """
    Read-only snapshot of an agent's counters.

    Returned by BaseAgent.get_metrics() as a copy; mutating it has no effect
    on the agent.
    """
    tasks_completed: int = Field(default=0, ge=0)
    tasks_in_progress: int = Field(default=0, ge=0)
    average_response_time: float = Field(default=0.0, ge=0, description="Seconds")
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    last_activity: float = Field(default_factory=time.time)
    errors: List[AgentErrorRecord] = Field(default_factory=list)


class ErrorAnalysis(BaseModel):
    severity: Severity
    category: str
    recommendations: List[str] = Field(default_factory=list)
    auto_recoverable: bool


class HealthReport(BaseModel):
    """Diagnostic produced by BaseAgent.health_check()."""
    agent_id: str
    healthy: bool
    status: str
    issues: List[str] = Field(default_factory=list)
    metrics: AgentMetrics
    circuit_breaker: Dict[str, Any] = Field(default_factory=dict)
    checked_at: float = Field(default_factory=time.time)


@dataclass
class TaskContext:
    """
    Registry entry for a task running inside an agent.

    Created when execute_task registers the task and removed exactly once
    when it settles.
    """
    id: str
    task: Dict[str, Any]
    start_time: float = field(default_factory=time.monotonic)
    retry_count: int = 0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    runner: Optional["asyncio.Task[Any]"] = None

    def cancel(self) -> None:
        self.cancel_event.set()
        if self.runner is not None and not self.runner.done():
            self.runner.cancel()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time
