"""
Escalation External Service Integrations
========================================

External services for the escalation engine:
- YAML SLA policy file with watchdog hot reload
- Notification gateway webhook (httpx) behind a circuit breaker
- In-process notification queue and delivery worker
- APScheduler driver for evaluation ticks
"""

import asyncio
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.config import DeliveryStatus, settings
from src.core import ConfigurationException, NotificationEnqueueException
from src.escalation.application.services import INotificationDispatcher, ISLAPolicyProvider
from src.escalation.domain import NotificationRequest, SLAPolicy
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== SLA policy ==========

class PolicyFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA policy file changes."""

    def __init__(self, policy_manager: "SLAPolicyManager", policy_path: Path):
        self.policy_manager = policy_manager
        self.policy_path = policy_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.policy_path.resolve():
            logger.info("SLA policy file changed", extra={"path": event.src_path})
            self.policy_manager.reload()


class SLAPolicyManager(ISLAPolicyProvider):
    """
    Thread-safe SLA policy holder with hot-reload support.

    The watchdog observer reloads from its own thread; readers always see
    either the old or the new policy, never a half-parsed one. A reload
    that fails keeps the previous policy.
    """

    def __init__(self):
        self._policy: Optional[SLAPolicy] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLAPolicy:
        """
        Initial policy load.

        Raises:
            ConfigurationException: the file exists but is not a valid policy
        """
        self._path = Path(path)
        policy = self._load_from_file(self._path)
        with self._lock:
            self._policy = policy
        return policy

    def _load_from_file(self, path: Path) -> SLAPolicy:
        if not path.exists():
            logger.warning("SLA policy file not found, using defaults", extra={"path": str(path)})
            return SLAPolicy()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return SLAPolicy(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(f"Invalid SLA policy file {path}", {"error": str(e)}) from e

    def reload(self) -> bool:
        """Reload the policy from file; keeps the current one on failure."""
        if self._path is None:
            return False

        try:
            policy = self._load_from_file(self._path)
        except (ConfigurationException, OSError) as e:
            logger.error("Failed to reload SLA policy, keeping previous", extra={"error": str(e)})
            return False

        with self._lock:
            self._policy = policy
        logger.info("SLA policy reloaded")
        return True

    def start_watching(self) -> None:
        """Start watching the policy file; skipped when it does not exist."""
        if self._path is None:
            raise RuntimeError("Policy not loaded. Call load() first.")

        if not self._path.exists():
            logger.info("SLA policy file doesn't exist, skipping file watch", extra={"path": str(self._path)})
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                PolicyFileHandler(self, self._path),
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching SLA policy file", extra={"path": str(self._path)})
        except OSError as e:
            # inotify is unavailable in some containers
            logger.warning("File watching not available, using static policy", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_policy(self) -> SLAPolicy:
        with self._lock:
            if self._policy is None:
                raise RuntimeError("SLA policy not loaded")
            return self._policy


# ========== Notification delivery ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class WebhookNotificationClient:
    """
    Notification gateway client with circuit breaker and retry logic.

    The gateway fans requests out to email / push / WhatsApp; this client
    only POSTs the request payload.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self._timeout = timeout_seconds or settings.notification_timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def send(self, request: NotificationRequest) -> DeliveryStatus:
        """
        Deliver one request.

        Returns:
            SENT on a 2xx answer, SKIPPED when no gateway is configured,
            FAILED after the retries are exhausted or while the circuit is open
        """
        if not self._webhook_url:
            logger.debug("Notification webhook not configured, skipping", extra={"notification_id": request.id})
            return DeliveryStatus.SKIPPED

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping notification",
                extra={"notification_id": request.id, "ticket_id": request.ticket_id}
            )
            return DeliveryStatus.FAILED

        payload = request.to_payload()
        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=payload)
            except httpx.InvalidURL as e:
                # A bad gateway URL will not fix itself between retries.
                logger.error(
                    "Notification webhook URL is invalid",
                    extra={"error": str(e), "ticket_id": request.ticket_id}
                )
                self._circuit_breaker.record_failure()
                return DeliveryStatus.FAILED
            except httpx.HTTPError as e:
                logger.error(
                    "Notification delivery failed",
                    extra={"error": str(e), "attempt": attempt + 1, "ticket_id": request.ticket_id}
                )
            else:
                if response.is_success:
                    self._circuit_breaker.record_success()
                    return DeliveryStatus.SENT
                logger.warning(
                    "Notification gateway returned an error",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._backoff_base * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return DeliveryStatus.FAILED

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class QueuedNotificationDispatcher(INotificationDispatcher):
    """
    Bounded in-process queue drained by a background delivery worker.

    ``enqueue`` never waits: a full queue is reported to the caller, which
    drops the request.
    """

    def __init__(self, client: WebhookNotificationClient, max_size: Optional[int] = None):
        self._client = client
        self._queue: asyncio.Queue[NotificationRequest] = asyncio.Queue(
            maxsize=max_size or settings.notification_queue_size
        )
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, request: NotificationRequest) -> None:
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull as e:
            raise NotificationEnqueueException(
                "Notification queue is full",
                {"notification_id": request.id, "ticket_id": request.ticket_id, "queue_size": self._queue.maxsize}
            ) from e

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
            logger.info("Notification dispatcher started")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Give queued requests a moment to go out, then stop the worker."""
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Notification queue not drained before shutdown", extra={"pending": self.pending})

        self._worker.cancel()
        await asyncio.gather(self._worker, return_exceptions=True)
        self._worker = None
        await self._client.close()
        logger.info("Notification dispatcher stopped")

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self.deliver(request)
            except Exception:
                # The worker outlives any single bad delivery.
                request.delivery_status = DeliveryStatus.FAILED
                logger.exception(
                    "Notification delivery crashed",
                    extra={"notification_id": request.id, "ticket_id": request.ticket_id}
                )
            finally:
                self._queue.task_done()

    async def deliver(self, request: NotificationRequest) -> NotificationRequest:
        status = await self._client.send(request)
        request.delivery_status = status
        if status == DeliveryStatus.SENT:
            request.delivered_at = datetime.now(timezone.utc)
        logger.info(
            "Notification processed",
            extra={
                "notification_id": request.id,
                "ticket_id": request.ticket_id,
                "recipient": request.recipient,
                "channel": request.channel.value,
                "delivery_status": status.value,
            }
        )
        return request


# ========== Scheduling ==========

class EscalationScheduler:
    """
    Wrapper for APScheduler driving evaluation ticks.

    ``max_instances=1`` plus ``coalesce`` mean a tick that is still running
    when the next is due is skipped, never queued.
    """

    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.escalation_tick_interval
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job: Optional[Callable[[], Awaitable[object]]] = None
        self._current: Optional[asyncio.Task] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[object]]) -> None:
        """Start the scheduler with the given tick coroutine function."""
        if self._running:
            logger.warning("Escalation scheduler already running")
            return
        if self.interval_seconds <= 0:
            logger.info("Escalation scheduler disabled")
            return

        self._job = job_func
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self._run_job,
            "interval",
            seconds=self.interval_seconds,
            id="escalation_tick",
            name="Escalation Tick",
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info("Escalation scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def _run_job(self) -> None:
        self._current = asyncio.current_task()
        try:
            await self._job()
        finally:
            self._current = None

    async def stop(self) -> None:
        """Stop the scheduler, cancelling a tick that is mid-flight."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        current = self._current
        if current is not None and not current.done():
            current.cancel()
            await asyncio.gather(current, return_exceptions=True)
            logger.info("In-flight escalation tick cancelled")

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
