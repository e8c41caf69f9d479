"""
Escalation Controllers (API Routes)
===================================

FastAPI routes for the ticket lifecycle and escalation engine.

Controllers are thin - they delegate to application services. Domain
exceptions are mapped to HTTP status codes by the handlers registered in
``src.shared.api.middleware``.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from src.escalation.application import (
    TicketLifecycleService,
    EscalationQueryService,
    EscalationEngine,
    RuleExecutionService,
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
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/escalation", tags=["Escalation"])


# ========== Example payloads for Swagger ==========

TICKET_RESPONSE_EXAMPLE = {
    "id": "5d0f3c1e-8a53-4a5b-9c55-4b8f2f7f4a10",
    "ticket_number": "TCK-000123",
    "title": "Water supply interrupted",
    "priority": "high",
    "status": "escalated",
    "unit_id": "unit-water",
    "assignee_id": None,
    "sentiment_score": 2.0,
    "review_flag": False,
    "flag_reason": None,
    "created_at": "2024-01-15T10:00:00Z",
    "updated_at": "2024-01-15T14:01:00Z",
    "last_escalated_at": "2024-01-15T14:01:00Z",
    "version": 2,
    "sla_deadline": "2024-01-15T14:00:00Z",
    "sla_state": "breached",
    "sla_remaining_seconds": 0.0
}

TICK_RESPONSE_EXAMPLE = {
    "tick_id": "9f2c4e1a7b3d",
    "started_at": "2024-01-15T14:01:00Z",
    "finished_at": "2024-01-15T14:01:00Z",
    "rules_evaluated": 3,
    "rules_failed": 0,
    "matches": 1,
    "fired": 1,
    "skipped_duplicates": 0,
    "conflicts": 0,
    "invalid_transitions": 0,
    "notifications_enqueued": 1,
    "notifications_failed": 0,
    "skipped": False,
    "aborted": False
}


# ========== Dependencies ==========

def get_lifecycle_service(request: Request) -> TicketLifecycleService:
    """Lifecycle service wired in the application lifespan."""
    return request.app.state.lifecycle_service


def get_query_service(request: Request) -> EscalationQueryService:
    return request.app.state.query_service


def get_engine(request: Request) -> EscalationEngine:
    return request.app.state.escalation_engine


def get_rule_execution_service(request: Request) -> RuleExecutionService:
    return request.app.state.rule_execution_service


async def _ticket_response(service: TicketLifecycleService, ticket_id: str) -> TicketResponse:
    view = await service.get_ticket(ticket_id)
    return TicketResponse.from_domain(
        view.ticket, view.sla_state, view.sla_remaining_seconds,
        response_deadline=view.response_deadline,
        response_sla_state=view.response_sla_state,
    )


# ========== Ticket lifecycle ==========

@router.get(
    "/tickets/{ticket_id}",
    response_model=TicketResponse,
    summary="Get ticket with SLA state",
    responses={
        200: {"content": {"application/json": {"example": TICKET_RESPONSE_EXAMPLE}}},
        404: {"description": "Ticket not found"},
    }
)
async def get_ticket(
    ticket_id: str,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    return await _ticket_response(service, ticket_id)


@router.post(
    "/tickets/{ticket_id}/transition",
    response_model=TicketResponse,
    summary="Manual status transition",
    description="""
    Staff-initiated transition: acknowledge (`in_progress`), escalate,
    resolve or close.

    **Allowed transitions**:
    - `open` → `in_progress` | `escalated` | `resolved`
    - `in_progress` → `escalated` | `resolved`
    - `escalated` → `in_progress` | `resolved`
    - `resolved` → `closed`

    Anything else answers **409**. A concurrent change of the same ticket
    also answers **409**; reload and retry.
    """,
    responses={409: {"description": "Invalid transition or concurrent modification"}}
)
async def transition_ticket(
    ticket_id: str,
    body: TransitionRequest,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    await service.manual_transition(
        ticket_id, body.target_status, body.actor_id, body.reason, unit_id=body.unit_id
    )
    return await _ticket_response(service, ticket_id)


@router.post("/tickets/{ticket_id}/respond", response_model=TicketResponse, summary="Record a staff response")
async def respond_to_ticket(
    ticket_id: str,
    body: RespondRequest,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    await service.record_response(ticket_id, body.actor_id, body.message)
    return await _ticket_response(service, ticket_id)


@router.post("/tickets/{ticket_id}/assign", response_model=TicketResponse, summary="Assign to a unit or staff member")
async def assign_ticket(
    ticket_id: str,
    body: AssignRequest,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    await service.assign(ticket_id, body.actor_id, unit_id=body.unit_id, assignee_id=body.assignee_id)
    return await _ticket_response(service, ticket_id)


@router.post("/tickets/{ticket_id}/flag", response_model=TicketResponse, summary="Set or clear the review flag")
async def flag_ticket(
    ticket_id: str,
    body: ReviewFlagRequest,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    await service.set_review_flag(ticket_id, body.actor_id, body.flagged, body.reason)
    return await _ticket_response(service, ticket_id)


@router.post("/tickets/{ticket_id}/priority", response_model=TicketResponse, summary="Change priority")
async def change_ticket_priority(
    ticket_id: str,
    body: PriorityChangeRequest,
    service: TicketLifecycleService = Depends(get_lifecycle_service)
):
    await service.change_priority(ticket_id, body.actor_id, body.priority)
    return await _ticket_response(service, ticket_id)


# ========== Audit trail ==========

@router.get(
    "/tickets/{ticket_id}/history",
    response_model=EscalationHistoryResponse,
    summary="Escalation history of a ticket"
)
async def get_escalation_history(
    ticket_id: str,
    service: EscalationQueryService = Depends(get_query_service)
):
    entries = await service.get_escalation_history(ticket_id)
    return EscalationHistoryResponse(
        ticket_id=ticket_id,
        entries=[EscalationLogResponse.from_domain(e) for e in entries]
    )


@router.get(
    "/logs",
    response_model=EscalationLogListResponse,
    summary="Escalation log range query",
    description="Entries with `start <= created_at < end`, oldest first, for reporting."
)
async def get_escalation_logs(
    start: Optional[datetime] = Query(None, description="Inclusive lower bound (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="Exclusive upper bound (ISO 8601)"),
    rule_id: Optional[str] = Query(None),
    ticket_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: EscalationQueryService = Depends(get_query_service)
):
    entries = await service.get_escalation_logs(
        start=start, end=end, rule_id=rule_id, ticket_id=ticket_id, limit=limit, offset=offset
    )
    return EscalationLogListResponse(
        entries=[EscalationLogResponse.from_domain(e) for e in entries],
        count=len(entries),
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=EscalationStatsResponse, summary="Escalation statistics")
async def get_escalation_stats(
    days: int = Query(30, ge=1, le=365),
    service: EscalationQueryService = Depends(get_query_service)
):
    stats = await service.get_escalation_stats(days)
    return EscalationStatsResponse(**asdict(stats))


# ========== Engine ==========

@router.post(
    "/engine/tick",
    response_model=TickResponse,
    summary="Run one evaluation tick now",
    description="Runs a tick on demand. If a tick is already running the response reports `skipped: true`.",
    responses={200: {"content": {"application/json": {"example": TICK_RESPONSE_EXAMPLE}}}}
)
async def run_tick(engine: EscalationEngine = Depends(get_engine)):
    result = await engine.run_tick()
    return TickResponse.from_result(result)


@router.post(
    "/rules/{rule_id}/execute",
    response_model=RuleExecutionResponse,
    summary="Run one rule against a ticket now",
    description="""
    Applies the actions of an active rule to the ticket without checking its
    trigger conditions. The run is audited as a manual escalation by `actor_id`.

    - **404**: unknown or inactive rule, or unknown ticket
    - **409**: an action needs a transition the ticket cannot make, or the
      ticket changed concurrently
    - **422**: the ticket is resolved or closed, or the rule is malformed
    """,
    responses={
        404: {"description": "Rule or ticket not found"},
        409: {"description": "Invalid transition or concurrent modification"},
    }
)
async def execute_rule(
    rule_id: str,
    body: RuleExecutionRequest,
    service: RuleExecutionService = Depends(get_rule_execution_service)
):
    outcome = await service.execute_rule(rule_id, body.ticket_id, body.actor_id)
    return RuleExecutionResponse.from_outcome(outcome)
