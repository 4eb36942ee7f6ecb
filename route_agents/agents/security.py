"""
Security agent.

Receives status and error events relayed by the coordinator, keeps a bounded
event log and correlates it against threat patterns. A matched pattern is
reported to the coordinator as an ERROR_REPORT.

It also layers threat categories on top of the base error classification.
"""
import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from route_agents.agents.specialist import SpecialistAgent
from route_agents.models.agent import AgentErrorRecord, ErrorAnalysis, Severity
from route_agents.models.protocols import (
    COORDINATOR_ADDRESS,
    AgentStatus,
    AgentType,
    Capability,
    MessagePriority,
    MessageType,
)

SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class ThreatCategory(str, Enum):
    AUTHENTICATION_FAILURE = "authentication_failure"
    RATE_LIMIT_ABUSE = "rate_limit_abuse"
    NETWORK_ANOMALY = "network_anomaly"
    AGENT_INSTABILITY = "agent_instability"
    CONSENSUS_MANIPULATION = "consensus_manipulation"
    ORACLE_MANIPULATION = "oracle_manipulation"
    MEV_ATTACK = "mev_attack"


@dataclass
class SecurityEvent:
    agent_id: str
    kind: str
    category: str
    severity: Severity
    message: str = ""
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: f"sec_{uuid.uuid4().hex[:12]}")


@dataclass(frozen=True)
class ThreatPattern:
    id: str
    name: str
    category: ThreatCategory
    severity: Severity
    window: float
    threshold: int
    matches: Callable[[SecurityEvent], bool]


@dataclass
class SecurityThreat:
    pattern_id: str
    name: str
    category: ThreatCategory
    severity: Severity
    agents: List[str]
    event_count: int
    detected_at: float = field(default_factory=time.time)


def default_threat_patterns() -> List[ThreatPattern]:
    return [
        ThreatPattern(
            id="auth-brute-force",
            name="Authentication Brute Force",
            category=ThreatCategory.AUTHENTICATION_FAILURE,
            severity="critical",
            window=300.0,
            threshold=3,
            matches=lambda event: event.category == "authentication",
        ),
        ThreatPattern(
            id="rate-limit-abuse",
            name="Rate Limit Abuse",
            category=ThreatCategory.RATE_LIMIT_ABUSE,
            severity="high",
            window=60.0,
            threshold=5,
            matches=lambda event: event.category == "rate-limit",
        ),
        ThreatPattern(
            id="network-anomaly",
            name="Network Anomaly",
            category=ThreatCategory.NETWORK_ANOMALY,
            severity="medium",
            window=60.0,
            threshold=5,
            matches=lambda event: event.category == "network",
        ),
        ThreatPattern(
            id="agent-crash-loop",
            name="Agent Crash Loop",
            category=ThreatCategory.AGENT_INSTABILITY,
            severity="high",
            window=600.0,
            threshold=3,
            matches=lambda event: event.kind == "status_change" and event.category == AgentStatus.ERROR.value,
        ),
    ]


# keyword -> threat category for errors that mention an attack vector
_THREAT_KEYWORDS = (
    (("invalid signature", "replay"), ThreatCategory.CONSENSUS_MANIPULATION),
    (("oracle", "price manipulation"), ThreatCategory.ORACLE_MANIPULATION),
    (("sandwich", "front-run", "frontrun"), ThreatCategory.MEV_ATTACK),
)


class SecurityAgent(SpecialistAgent):
    agent_type = AgentType.SECURITY
    default_id = "security-agent"
    display_name = "System Security Monitor"
    declared_capabilities = (Capability.ASSESS, Capability.MONITOR, Capability.ALERT, Capability.MITIGATE)
    emphasis = {"security": 2.5}
    default_max_concurrent_tasks = 20
    default_timeout = 10.0

    def __init__(
        self,
        config=None,
        threat_patterns: Optional[List[ThreatPattern]] = None,
        max_events: int = 1000,
        auth_failure_threshold: int = 3,
        **kwargs: Any
    ):
        super().__init__(config, **kwargs)
        self.threat_patterns = threat_patterns if threat_patterns is not None else default_threat_patterns()
        self.auth_failure_threshold = auth_failure_threshold
        self.security_events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self.active_threats: Dict[str, SecurityThreat] = {}

    async def receive_security_event(self, agent_id: str, kind: str, data: Any) -> List[SecurityThreat]:
        """
        Record a relayed event and evaluate threat patterns.

        Args:
            agent_id: Agent the event originated from
            kind: "error" (data is an AgentErrorRecord) or "status_change" (data is an AgentStatus)
            data: Event data

        Returns:
            Threats newly detected by this event
        """
        if isinstance(data, AgentErrorRecord):
            event = SecurityEvent(
                agent_id=agent_id,
                kind=kind,
                category=str(data.context.get("category", "unknown")),
                severity=data.severity,
                message=data.error,
            )
        else:
            status = data.value if isinstance(data, AgentStatus) else str(data)
            event = SecurityEvent(
                agent_id=agent_id,
                kind=kind,
                category=status,
                severity="medium" if status == AgentStatus.ERROR.value else "low",
            )

        self.security_events.append(event)
        return await self._evaluate_threat_patterns()

    def _recent(self, window: float) -> List[SecurityEvent]:
        cutoff = time.time() - window
        return [event for event in self.security_events if event.timestamp >= cutoff]

    async def _evaluate_threat_patterns(self) -> List[SecurityThreat]:
        detected = []
        now = time.time()
        for pattern in self.threat_patterns:
            previous = self.active_threats.get(pattern.id)
            if previous is not None and now - previous.detected_at < pattern.window:
                continue

            matching = [event for event in self._recent(pattern.window) if pattern.matches(event)]
            if len(matching) < pattern.threshold:
                continue

            threat = SecurityThreat(
                pattern_id=pattern.id,
                name=pattern.name,
                category=pattern.category,
                severity=pattern.severity,
                agents=sorted({event.agent_id for event in matching}),
                event_count=len(matching),
            )
            self.active_threats[pattern.id] = threat
            detected.append(threat)

            self.logger.warning(
                "threat_detected",
                pattern=pattern.id,
                severity=pattern.severity,
                agents=threat.agents,
                events=threat.event_count
            )
            await self.send_message(
                COORDINATOR_ADDRESS,
                MessageType.ERROR_REPORT,
                {
                    "error": f"Threat detected: {pattern.name}",
                    "context": {
                        "pattern_id": pattern.id,
                        "category": pattern.category.value,
                        "severity": pattern.severity,
                        "agents": threat.agents,
                        "event_count": threat.event_count,
                    },
                },
                priority=MessagePriority.CRITICAL if pattern.severity == "critical" else MessagePriority.HIGH,
            )
        return detected

    def analyze_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorAnalysis:
        analysis = super().analyze_error(error, context)
        message = str(error).lower()

        threat: Optional[ThreatCategory] = None
        recommendations: List[str] = []
        if analysis.category == "authentication":
            recent = sum(1 for event in self._recent(300.0) if event.category == "authentication")
            if recent >= self.auth_failure_threshold:
                threat = ThreatCategory.AUTHENTICATION_FAILURE
                recommendations = ["Rotate API keys", "Review access logs for compromise"]
        elif analysis.category == "rate-limit":
            recent = sum(1 for event in self._recent(60.0) if event.category == "rate-limit")
            if recent >= 5:
                threat = ThreatCategory.RATE_LIMIT_ABUSE
                recommendations = ["Review request patterns for abuse"]

        for keywords, category in _THREAT_KEYWORDS:
            if any(keyword in message for keyword in keywords):
                threat = category
                recommendations = ["Audit affected routes and participants", "Escalate for manual review"]
                break

        if threat is None:
            return analysis

        severity = analysis.severity if SEVERITY_RANK[analysis.severity] >= SEVERITY_RANK["high"] else "high"
        return ErrorAnalysis(
            severity=severity,
            category=f"security:{threat.value}",
            recommendations=analysis.recommendations + recommendations,
            auto_recoverable=False,
        )

    async def analyze(self, analysis_type, payload, cancel_event: asyncio.Event):
        if analysis_type == "threat-analysis":
            return {
                "active_threats": [
                    {
                        "pattern_id": threat.pattern_id,
                        "name": threat.name,
                        "severity": threat.severity,
                        "agents": threat.agents,
                        "detected_at": threat.detected_at,
                    }
                    for threat in self.active_threats.values()
                ],
                "events_logged": len(self.security_events),
            }
        return await super().analyze(analysis_type, payload, cancel_event)
