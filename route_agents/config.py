"""
Centralized configuration management using Pydantic Settings.

This module provides type-safe, validated configuration for the agent runtime
and the coordinator. All environment variables are loaded and validated here.

Nested sections use a double underscore in environment variables, e.g.:
    COORDINATOR__CONSENSUS__QUORUM_RATIO=0.75
    AGENT__RETRY__MAX_RETRIES=5
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetryPolicy(BaseModel):
    """Exponential backoff policy shared by the message and task paths."""

    max_retries: int = Field(default=3, ge=0, le=10, description="Retries after the first attempt")
    initial_delay: float = Field(default=1.0, ge=0, description="First backoff delay in seconds")
    max_delay: float = Field(default=30.0, ge=0, description="Backoff ceiling in seconds")
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Multiplier applied per attempt")

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given zero-based attempt."""
        return min(self.initial_delay * self.backoff_factor ** attempt, self.max_delay)


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds for a single agent."""

    max_failures: int = Field(default=5, ge=1, description="Consecutive failures before opening")
    reset_time: float = Field(
        default=60.0,
        gt=0,
        description="Seconds after the last failure before the breaker closes again"
    )


class AgentDefaults(BaseModel):
    """Defaults applied to every agent unless its AgentConfig overrides them."""

    max_concurrent_tasks: int = Field(default=10, ge=1, le=1000)
    timeout: float = Field(default=30.0, gt=0, description="Per message/task timeout in seconds")
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for inter-agent request/response round trips"
    )
    max_error_history: int = Field(default=1000, ge=1, description="Size of the error ring buffer")
    critical_shutdown_delay: float = Field(
        default=5.0,
        ge=0,
        description="Delay before an agent stops itself after a critical error"
    )
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)


class DeliveryRetryPolicy(BaseModel):
    """Coordinator-level delivery retries: min(backoff * 2**attempt, max_backoff)."""

    max_retries: int = Field(default=3, ge=0, le=10)
    backoff: float = Field(default=1.0, ge=0, description="Base backoff in seconds")
    max_backoff: float = Field(default=10.0, ge=0, description="Backoff ceiling in seconds")


class LoadBalancingConfig(BaseModel):
    enabled: bool = True
    max_tasks_per_agent: int = Field(default=10, ge=1)
    health_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Minimum success rate for an agent to receive work"
    )


class TelemetryConfig(BaseModel):
    enabled: bool = True
    reporting_interval: float = Field(default=300.0, gt=0, description="Seconds between reports")


class ConsensusPolicy(BaseModel):
    """
    Quorum policy for consensus rounds.

    Strict by default: fewer than ceil(participants * quorum_ratio) valid
    responses fails the round with InsufficientQuorumError.

    allow_partial_quorum accepts any non-empty response set (the decision is
    flagged quorum_met=False). allow_synthetic_fallback additionally fabricates
    a single clearly flagged response when nothing arrived at all; it exists
    for demos and tests and is never enabled implicitly.
    """

    timeout: float = Field(default=30.0, gt=0, description="Global consensus deadline in seconds")
    quorum_ratio: float = Field(default=0.6, gt=0.0, le=1.0)
    allow_partial_quorum: bool = False
    allow_synthetic_fallback: bool = False


class DecisionCriteriaDefaults(BaseModel):
    cost: float = 0.35
    time: float = 0.25
    security: float = 0.20
    reliability: float = 0.15
    slippage: float = 0.05


class CoordinatorConfig(BaseModel):
    """Coordinator configuration (capacity, consensus, routing, monitoring)."""

    max_agents: int = Field(default=20, ge=1)
    consensus: ConsensusPolicy = Field(default_factory=ConsensusPolicy)
    decision_criteria: DecisionCriteriaDefaults = Field(default_factory=DecisionCriteriaDefaults)
    health_check_interval: float = Field(default=60.0, gt=0, description="Seconds between health sweeps")
    retry: DeliveryRetryPolicy = Field(default_factory=DeliveryRetryPolicy)
    load_balancing: LoadBalancingConfig = Field(default_factory=LoadBalancingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    max_fallback_hops: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of fallback rewrites for one message"
    )
    broadcast_fanout: int = Field(default=5, ge=1, description="Recipients of a broadcast message")
    capability_fanout: int = Field(default=3, ge=1, description="Recipients of a capability broadcast")
    recovery_failure_threshold: int = Field(
        default=3,
        ge=0,
        description="Failure count above which an unhealthy agent is restarted"
    )
    restart_pause: float = Field(default=1.0, ge=0, description="Pause between stop and start on restart")


class Settings(BaseSettings):
    """
    Application configuration with validation.

    All settings are loaded from environment variables (.env file).
    Pydantic validates types and provides defaults.
    """

    app_name: str = Field(
        default="crosschain_route_agents",
        description="Application name for tracing"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    # Langfuse Observability (tracing is disabled when keys are absent)
    langfuse_public_key: Optional[str] = Field(default=None, description="Langfuse public key")
    langfuse_secret_key: Optional[str] = Field(default=None, description="Langfuse secret key")
    langfuse_host: str = Field(
        default="https://cloud.langfuse.com",
        description="Langfuse host URL"
    )

    agent: AgentDefaults = Field(default_factory=AgentDefaults)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields from .env that aren't defined here
    )

    @property
    def tracing_enabled(self) -> bool:
        return bool(self.langfuse_public_key and self.langfuse_secret_key)


# Global settings instance (loaded once)
settings = Settings()
