"""
Escalation Engine - Main Application
====================================

Ticket lifecycle and escalation service for the complaint management
system.

Modules:
- Escalation: ticket state machine, SLA deadlines, escalation rules,
  periodic evaluation and notification requests

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, evaluation engine and DTOs
- Domain: Entities, value objects and the state machine
- Infrastructure: Database, SLA policy file, notification gateway, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

# Configuration
from src.config import settings

# Infrastructure
from src.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker,
)

# Escalation module
from src.escalation.application import (
    KeyedLock,
    TicketLifecycleService,
    EscalationQueryService,
    RuleEvaluator,
    EscalationExecutor,
    EscalationEngine,
    RuleExecutionService,
    SystemClock,
)
from src.escalation.infrastructure import (
    SLAPolicyManager,
    WebhookNotificationClient,
    QueuedNotificationDispatcher,
    EscalationScheduler,
    unit_of_work_factory,
)
from src.escalation.interfaces import escalation_router

# Shared
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)
from src.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)

# Global service instances
policy_manager = None
dispatcher = None
escalation_scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load the SLA policy and watch it for changes
    4. Start the notification dispatcher
    5. Wire services and the escalation engine
    6. Start the escalation scheduler

    SHUTDOWN:
    1. Stop the scheduler (cancels an in-flight tick)
    2. Drain and stop the notification dispatcher
    3. Stop the policy watcher
    4. Close database connections
    """
    global policy_manager, dispatcher, escalation_scheduler

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Escalation Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use migrations in production).
    # Without a database the server still starts; ticks abort until it is back.
    try:
        await create_tables()
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    logger.info("Loading SLA policy")
    policy_manager = SLAPolicyManager()
    policy_manager.load(settings.sla_policy_path)
    policy_manager.start_watching()

    dispatcher = QueuedNotificationDispatcher(WebhookNotificationClient())
    await dispatcher.start()

    uow_factory = unit_of_work_factory(get_session_maker())
    clock = SystemClock()
    # Shared by staff actions and the engine so both serialize on the same ticket.
    locks = KeyedLock()

    executor = EscalationExecutor(uow_factory, policy_manager, dispatcher, clock)
    engine = EscalationEngine(
        evaluator=RuleEvaluator(uow_factory, settings.escalation_worker_pool_size),
        executor=executor,
        clock=clock,
        locks=locks,
    )

    app.state.settings = settings
    app.state.lifecycle_service = TicketLifecycleService(
        uow_factory, policy_manager, clock=clock, locks=locks, dispatcher=dispatcher
    )
    app.state.query_service = EscalationQueryService(uow_factory, clock)
    app.state.escalation_engine = engine
    app.state.rule_execution_service = RuleExecutionService(uow_factory, executor, locks)

    escalation_scheduler = EscalationScheduler(settings.escalation_tick_interval)
    await escalation_scheduler.start(engine.run_tick)

    logger.info("Escalation Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Escalation Service")

    await escalation_scheduler.stop()
    await dispatcher.stop()
    policy_manager.stop_watching()
    await close_database()

    logger.info("Escalation Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Escalation Engine API",
    description="""
    ## Ticket Lifecycle & Escalation Engine

    Tracks SLA deadlines, evaluates escalation rules on a fixed tick and
    dispatches notification requests when thresholds are crossed.

    ---

    ### Endpoints (`/escalation`)
    - `GET /tickets/{id}` - ticket with SLA state
    - `POST /tickets/{id}/transition | respond | assign | flag | priority` - staff actions
    - `GET /tickets/{id}/history` - escalation history
    - `GET /logs` - escalation log range query
    - `GET /stats` - escalation statistics
    - `POST /engine/tick` - run one evaluation tick now

    ### Ticket states
    `open` → `in_progress` → `resolved` → `closed`, with `escalated`
    reachable from `open` / `in_progress`. Only staff resolve or close.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
register_exception_handlers(app)

# === Include Module Routers ===
app.include_router(escalation_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "sla_policy": "loaded",
                        "escalation_scheduler": "running",
                        "tick_in_progress": False,
                        "ticks_completed": 12,
                        "pending_notifications": 0
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns scheduler, engine and dispatcher state.
    """
    engine = getattr(request.app.state, "escalation_engine", None)
    checks = {
        "sla_policy": "loaded" if policy_manager else "not_loaded",
        "escalation_scheduler": "running" if escalation_scheduler and escalation_scheduler.is_running else "stopped",
        "tick_in_progress": engine.is_running if engine else False,
        "ticks_completed": engine.state.ticks_completed if engine else 0,
        "pending_notifications": dispatcher.pending if dispatcher else 0,
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Escalation Engine",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "escalation": {
                "prefix": "/escalation",
                "endpoints": [
                    "GET /escalation/tickets/{id} - Ticket with SLA state",
                    "POST /escalation/tickets/{id}/transition - Manual transition",
                    "POST /escalation/tickets/{id}/respond - Record staff response",
                    "POST /escalation/tickets/{id}/assign - Assign unit / staff",
                    "POST /escalation/tickets/{id}/flag - Review flag",
                    "POST /escalation/tickets/{id}/priority - Change priority",
                    "GET /escalation/tickets/{id}/history - Escalation history",
                    "GET /escalation/logs - Escalation log range query",
                    "GET /escalation/stats - Escalation statistics",
                    "POST /escalation/engine/tick - Run one tick"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
