"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="escalation-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/complaints",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Policy ==========
    sla_policy_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to the priority -> duration SLA policy YAML file"
    )

    # ========== Escalation Engine ==========
    escalation_tick_interval: int = Field(
        default=60,
        description="Seconds between escalation ticks (0 disables the scheduler)",
        ge=0
    )
    escalation_worker_pool_size: int = Field(
        default=8,
        description="Max concurrent rule fetches / ticket executions within one tick",
        ge=1,
        le=64
    )
    manager_role: str = Field(
        default="manager",
        description="Role notified by notify_manager actions without an explicit target"
    )

    # ========== Notifications ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook URL of the notification gateway (email/push/WhatsApp)"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for notification gateway calls",
        ge=0.1,
        le=30
    )
    notification_queue_size: int = Field(
        default=1000,
        description="Max pending notification requests held by the dispatcher",
        ge=1
    )
    default_notification_channel: str = Field(
        default="email",
        description="Channel used when an action does not name one"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("default_notification_channel")
    @classmethod
    def validate_channel(cls, v: str) -> str:
        """Ensure the default channel is a known delivery channel."""
        if v not in VALID_NOTIFICATION_CHANNELS:
            raise ValueError(f"default_notification_channel must be one of {VALID_NOTIFICATION_CHANNELS}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

SYSTEM_ACTOR = "system"


class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    ESCALATED = "escalated"


class Priority(str, Enum):
    """Ticket priority levels, lowest first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActionType(str, Enum):
    """Escalation rule action kinds."""
    NOTIFY_MANAGER = "notify_manager"
    NOTIFY_ASSIGNEE = "notify_assignee"
    BUMP_PRIORITY = "bump_priority"
    FLAG_REVIEW = "flag_review"
    ESCALATE_TO_ROLE = "escalate_to_role"


class NotificationChannel(str, Enum):
    """Delivery channels understood by the notification gateway."""
    EMAIL = "email"
    PUSH = "push"
    WHATSAPP = "whatsapp"
    IN_APP = "in_app"


class RecipientType(str, Enum):
    """Kinds of notification recipients."""
    ROLE = "role"
    USER = "user"
    UNIT = "unit"


class DeliveryStatus(str, Enum):
    """Notification delivery states (owned by the dispatcher)."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class EscalationType(str, Enum):
    """Origin of an escalation log entry."""
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class ExecutionStatus(str, Enum):
    """Outcome of a rule firing."""
    SUCCESS = "success"
    PARTIAL = "partial"


class ActionOutcome(str, Enum):
    """Outcome of a single action within a firing."""
    APPLIED = "applied"
    SKIPPED = "skipped"


class SLAState(str, Enum):
    """SLA status states."""
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"
    MET = "met"


# ========== Lists for validation ==========

PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]
VALID_PRIORITIES = [p.value for p in PRIORITY_ORDER]
VALID_NOTIFICATION_CHANNELS = [c.value for c in NotificationChannel]

# Statuses the engine evaluates; resolved/closed tickets stop SLA tracking.
EVALUABLE_STATUSES = [TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.ESCALATED]


# Global settings instance
settings = get_settings()
