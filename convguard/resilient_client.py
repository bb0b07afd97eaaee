"""
Resilient wrapper around a remote completion client.

Adds a timeout, the circuit breaker, API health metrics, a per-request log
and an orchestrator-driven retry loop. This is the only component that
performs network I/O. Retry waits are asyncio suspension points.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .api_client import CompletionClient, CompletionResult, ToolSpec
from .circuit_breaker import CircuitBreaker
from .classifier import ErrorCategory
from .config import GuardConfig
from .errors import CircuitOpenError, CompletionTimeoutError
from .recovery import RecoveryOrchestrator, RecoverySignal
from .validator import IntegrityValidator

logger = logging.getLogger(__name__)

# Failures in these categories count against the circuit breaker
BREAKER_CATEGORIES = frozenset(
    {ErrorCategory.NETWORK_ERROR, ErrorCategory.SERVICE_UNAVAILABLE, ErrorCategory.UNKNOWN}
)

# Oldest request records are evicted beyond this many
MAX_TRACKED_REQUESTS = 1000


class ApiHealthMonitor:
    """Success and failure tracking for the remote API."""

    def __init__(
        self,
        window: int = 50,
        unhealthy_after: int = 5,
        recent_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.unhealthy_after = unhealthy_after
        self.recent_seconds = recent_seconds
        self._clock = clock
        self.failure_count = 0
        self.success_count = 0
        self.total_failures = 0
        self.last_success: float | None = None
        self.last_failure: float | None = None
        self._response_times: deque[float] = deque(maxlen=window)

    def record_success(self, response_time: float) -> None:
        self.success_count += 1
        self.last_success = self._clock()
        self._response_times.append(response_time)
        self.failure_count = 0

    def record_failure(self, error: BaseException) -> None:
        self.failure_count += 1
        self.total_failures += 1
        self.last_failure = self._clock()
        logger.warning("Completion API failure recorded: %s", type(error).__name__)

    @property
    def healthy(self) -> bool:
        if self.failure_count == 0:
            return True
        if self.failure_count >= self.unhealthy_after:
            return False
        return (
            self.last_success is not None
            and self._clock() - self.last_success < self.recent_seconds
        )

    @property
    def average_response_time(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)

    @property
    def success_percentage(self) -> float:
        total = self.success_count + self.total_failures
        if total == 0:
            return 100.0
        return round(self.success_count / total * 100, 2)

    def status(self) -> dict[str, Any]:
        """Snapshot for monitoring."""
        recent_failures = (
            self.last_failure is not None
            and self.failure_count > 0
            and self._clock() - self.last_failure < self.recent_seconds
        )
        return {
            "healthy": self.healthy,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
            "average_response_time": self.average_response_time,
            "success_percentage": self.success_percentage,
            "recent_failures": recent_failures,
        }


@dataclass
class RequestRecord:
    """One logical request and its attempts."""

    request_id: str
    conversation_id: str
    message_count: int
    started_at: float
    attempts: list[dict[str, Any]] = field(default_factory=list)
    completed_at: float | None = None
    response_time: float | None = None
    success: bool = False
    response_length: int | None = None


class RequestLog:
    """In-process log of recent requests for debugging, capped at max_records."""

    def __init__(
        self, max_records: int = MAX_TRACKED_REQUESTS, clock: Callable[[], float] = time.time
    ) -> None:
        self.max_records = max_records
        self._clock = clock
        self._requests: OrderedDict[str, RequestRecord] = OrderedDict()

    def log_request(self, request_id: str, conversation_id: str, message_count: int) -> None:
        self._requests[request_id] = RequestRecord(
            request_id=request_id,
            conversation_id=conversation_id,
            message_count=message_count,
            started_at=self._clock(),
        )
        while len(self._requests) > self.max_records:
            self._requests.popitem(last=False)

    def log_error(self, request_id: str, error: BaseException, attempt: int) -> None:
        record = self._requests.get(request_id)
        if record is None:
            return
        record.attempts.append(
            {
                "attempt": attempt,
                "error_class": type(error).__name__,
                "error_message": str(error),
                "timestamp": self._clock(),
            }
        )

    def log_success(self, request_id: str, response_time: float, result: CompletionResult) -> None:
        record = self._requests.get(request_id)
        if record is None:
            return
        record.completed_at = self._clock()
        record.response_time = response_time
        record.success = True
        record.response_length = len(result.text)

    def get(self, request_id: str) -> RequestRecord | None:
        return self._requests.get(request_id)

    def cleanup(self, max_age_seconds: float = 3600.0) -> int:
        """Drop records older than max_age_seconds."""
        cutoff = self._clock() - max_age_seconds
        stale = [rid for rid, rec in self._requests.items() if rec.started_at < cutoff]
        for rid in stale:
            del self._requests[rid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._requests)


@dataclass
class CompletionOutcome:
    """Either a completion result or a recovery signal, never both."""

    result: CompletionResult | None = None
    signal: RecoverySignal | None = None
    request_id: str = ""
    attempts: int = 0

    def __post_init__(self) -> None:
        if (self.result is None) == (self.signal is None):
            raise ValueError("CompletionOutcome needs exactly one of result or signal")

    @property
    def ok(self) -> bool:
        return self.result is not None


class ResilientCompletionClient:
    """
    Completion calls with timeout, breaker, health metrics and retries.

    Example:
        resilient = ResilientCompletionClient(client, breaker, orchestrator)
        outcome = await resilient.complete(conversation_id, owner_id, messages)
        if outcome.ok:
            ...
        else:
            handle(outcome.signal)
    """

    def __init__(
        self,
        client: CompletionClient,
        breaker: CircuitBreaker,
        orchestrator: RecoveryOrchestrator,
        config: GuardConfig | None = None,
        validator: IntegrityValidator | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        request_log: RequestLog | None = None,
    ) -> None:
        """
        Initialize resilient client.

        Args:
            client: Underlying remote completion client
            breaker: Circuit breaker of the remote dependency
            orchestrator: Recovery orchestrator deciding retries
            config: Configuration (request timeout)
            validator: When given, wire messages are validated before sending.
                Its id policy is aligned with the client's when the client declares one
            sleep: Coroutine used for backoff waits
            clock: Monotonic clock for response times
            request_log: Log of recent requests, bounded by default
        """
        self.client = client
        self.breaker = breaker
        self.orchestrator = orchestrator
        self.config = config or GuardConfig()
        self.validator = validator
        if validator is not None and client.id_policy is not None:
            if validator.id_policy is not client.id_policy:
                logger.info(
                    "Validator id policy %s replaced by client policy %s",
                    validator.id_policy.name,
                    client.id_policy.name,
                )
                validator.id_policy = client.id_policy
        self.health = ApiHealthMonitor()
        self.request_log = request_log if request_log is not None else RequestLog()
        self._sleep = sleep
        self._clock = clock

    async def complete(
        self,
        conversation_id: str,
        owner_id: str,
        messages: Sequence[dict[str, Any]],
        tools: Sequence[ToolSpec] = (),
        original_message: str | None = None,
    ) -> CompletionOutcome:
        """
        Call the remote API, absorbing retryable failures.

        Args:
            conversation_id: Conversation the messages belong to
            owner_id: Owner of the conversation
            messages: Wire messages to send
            tools: Tool catalog
            original_message: User message to replay on retry

        Returns:
            CompletionOutcome with a result, or the first non-retry signal
        """
        request_id = f"req_{uuid.uuid4().hex[:16]}"
        self.request_log.log_request(request_id, conversation_id, len(messages))

        if not self.health.healthy:
            logger.warning("API health check failed, but proceeding with request")

        if self.validator is not None:
            report = self.validator.validate_wire(messages)
            if not report.valid:
                error = report.first.to_error()
                logger.warning(
                    "Refusing to send invalid history for %s: %s", conversation_id, error
                )
                signal = self.orchestrator.recover(
                    error, conversation_id, owner_id, original_message
                )
                return CompletionOutcome(signal=signal, request_id=request_id)

        attempt = 0
        while True:
            attempt += 1

            if not self.breaker.allow_request():
                error: BaseException = CircuitOpenError(
                    self.breaker.name, self.breaker.next_attempt_time()
                )
                logger.error("Service unavailable (circuit breaker open): %s", error)
                self.request_log.log_error(request_id, error, attempt)
                signal = self.orchestrator.recover(
                    error, conversation_id, owner_id, original_message
                )
            else:
                logger.info(
                    "Completion call attempt %d for conversation %s", attempt, conversation_id
                )
                started = self._clock()
                try:
                    result = await self._call(messages, tools)
                except Exception as e:
                    error = e
                else:
                    elapsed = self._clock() - started
                    self.breaker.record_success()
                    self.health.record_success(elapsed)
                    self.request_log.log_success(request_id, elapsed, result)
                    self.orchestrator.complete(conversation_id)
                    return CompletionOutcome(result=result, request_id=request_id, attempts=attempt)

                self.health.record_failure(error)
                self.request_log.log_error(request_id, error, attempt)
                classification = self.orchestrator.classifier.classify(error)
                if classification.category in BREAKER_CATEGORIES:
                    self.breaker.record_failure(type(error).__name__, str(error))
                signal = self.orchestrator.recover(
                    error, conversation_id, owner_id, original_message
                )

            if not signal.should_retry:
                return CompletionOutcome(signal=signal, request_id=request_id, attempts=attempt)

            if signal.delay_seconds:
                logger.info(
                    "%s; waiting %.2fs before retry %d",
                    signal.category.value if signal.category else "error",
                    signal.delay_seconds,
                    attempt + 1,
                )
                await self._sleep(signal.delay_seconds)

    async def _call(
        self, messages: Sequence[dict[str, Any]], tools: Sequence[ToolSpec]
    ) -> CompletionResult:
        timeout = self.config.retry.request_timeout
        try:
            return await asyncio.wait_for(self.client.complete(messages, tools), timeout)
        except asyncio.TimeoutError:
            raise CompletionTimeoutError(timeout) from None

    async def perform_health_check(self) -> dict[str, Any]:
        """Send a minimal request and record its outcome."""
        started = self._clock()
        try:
            await self._call([{"role": "user", "content": "ping"}], ())
        except Exception as e:
            self.health.record_failure(e)
            logger.error("Health check failed: %s - %s", type(e).__name__, e)
            return {"healthy": False, "error": type(e).__name__, "message": str(e)}

        elapsed = self._clock() - started
        self.health.record_success(elapsed)
        logger.info("Health check passed (%.2fs)", elapsed)
        return {"healthy": True, "response_time": elapsed}

    def health_status(self) -> dict[str, Any]:
        """API health, breaker state and request log size."""
        return {
            "api_health": self.health.status(),
            "circuit_breaker": self.breaker.get_metrics().to_dict(),
            "tracked_requests": len(self.request_log),
        }


__all__ = [
    "ApiHealthMonitor",
    "BREAKER_CATEGORIES",
    "CompletionOutcome",
    "MAX_TRACKED_REQUESTS",
    "RequestLog",
    "RequestRecord",
    "ResilientCompletionClient",
]
