"""
Escalation Infrastructure Layer
===============================

Infrastructure layer for the escalation module.

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Concrete repository and unit-of-work implementations
- External: SLA policy file, notification delivery and the tick scheduler

This layer implements the interfaces defined in the application layer.
"""

from src.escalation.infrastructure.models import (
    TicketModel,
    EscalationRuleModel,
    EscalationLogModel,
)
from src.escalation.infrastructure.repositories import (
    SQLAlchemyTicketRepository,
    SQLAlchemyEscalationLogRepository,
    SQLAlchemyRuleRepository,
    SQLAlchemyUnitOfWork,
    unit_of_work_factory,
)
from src.escalation.infrastructure.external import (
    SLAPolicyManager,
    CircuitBreaker,
    CircuitState,
    WebhookNotificationClient,
    QueuedNotificationDispatcher,
    EscalationScheduler,
)

__all__ = [
    # Models
    "TicketModel",
    "EscalationRuleModel",
    "EscalationLogModel",
    # Repositories
    "SQLAlchemyTicketRepository",
    "SQLAlchemyEscalationLogRepository",
    "SQLAlchemyRuleRepository",
    "SQLAlchemyUnitOfWork",
    "unit_of_work_factory",
    # External services
    "SLAPolicyManager",
    "CircuitBreaker",
    "CircuitState",
    "WebhookNotificationClient",
    "QueuedNotificationDispatcher",
    "EscalationScheduler",
]
