"""
Escalation Application Layer
============================

Application layer for the ticket lifecycle and escalation engine.

Contains:
- Services: staff-facing lifecycle operations and audit queries
- Evaluator / Executor / Engine: the periodic escalation pass
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.escalation.application.dto import (
    TransitionRequest,
    RespondRequest,
    AssignRequest,
    ReviewFlagRequest,
    PriorityChangeRequest,
    TicketResponse,
    EscalationLogResponse,
    EscalationHistoryResponse,
    EscalationLogListResponse,
    EscalationStatsResponse,
    TickResponse,
    RuleExecutionRequest,
    RuleExecutionResponse,
)
from src.escalation.application.services import (
    IClock,
    SystemClock,
    ITicketRepository,
    IEscalationLogRepository,
    IRuleRepository,
    IUnitOfWork,
    UnitOfWorkFactory,
    INotificationDispatcher,
    ISLAPolicyProvider,
    KeyedLock,
    TicketView,
    TicketLifecycleService,
    EscalationStats,
    EscalationQueryService,
)
from src.escalation.application.evaluator import (
    FiringLedger,
    EngineState,
    EvaluationContext,
    RuleMatch,
    EvaluationReport,
    RuleEvaluator,
)
from src.escalation.application.executor import (
    FiringStatus,
    FiringPlan,
    ExecutionOutcome,
    EscalationExecutor,
)
from src.escalation.application.engine import TickResult, EscalationEngine, RuleExecutionService

__all__ = [
    # DTOs
    "TransitionRequest",
    "RespondRequest",
    "AssignRequest",
    "ReviewFlagRequest",
    "PriorityChangeRequest",
    "TicketResponse",
    "EscalationLogResponse",
    "EscalationHistoryResponse",
    "EscalationLogListResponse",
    "EscalationStatsResponse",
    "TickResponse",
    "RuleExecutionRequest",
    "RuleExecutionResponse",
    # Collaborator Interfaces
    "IClock",
    "SystemClock",
    "ITicketRepository",
    "IEscalationLogRepository",
    "IRuleRepository",
    "IUnitOfWork",
    "UnitOfWorkFactory",
    "INotificationDispatcher",
    "ISLAPolicyProvider",
    # Services
    "KeyedLock",
    "TicketView",
    "TicketLifecycleService",
    "EscalationStats",
    "EscalationQueryService",
    # Engine
    "FiringLedger",
    "EngineState",
    "EvaluationContext",
    "RuleMatch",
    "EvaluationReport",
    "RuleEvaluator",
    "FiringStatus",
    "FiringPlan",
    "ExecutionOutcome",
    "EscalationExecutor",
    "TickResult",
    "EscalationEngine",
    "RuleExecutionService",
]
