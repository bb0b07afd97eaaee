"""
Recovery orchestration for failed completion calls.

Given any raised failure, the orchestrator classifies it, charges the attempt
against the conversation's per-category budget and returns a RecoverySignal.
Callers branch only on the signal's action and recoverable flag; the
user_message is for display.
"""

from __future__ import annotations

import logging
import math
import random
import time
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .branching import BranchManager
from .circuit_breaker import CircuitBreaker
from .classifier import ErrorCategory, ErrorClassification, ErrorClassifier
from .config import GuardConfig
from .errors import BranchError, RepairError, StoreError
from .repair import SequenceRepairer
from .turn_store import TurnStore
from .types import RecoveryContext

logger = logging.getLogger(__name__)

GIVE_UP_MESSAGE = (
    "Unable to recover from this error after multiple attempts. "
    "Please try again later or contact support."
)
FRESH_BRANCH_MESSAGE = (
    "Started a fresh conversation to resolve technical issues. Continuing with your request..."
)


class RecoveryAction(str, Enum):
    """What the caller should do next."""

    BACKOFF_RETRY = "backoff_retry"
    RETRY = "retry"
    RETRY_SAME_CONVERSATION = "retry_same_conversation"
    RETRY_NEW_CONVERSATION = "retry_new_conversation"
    START_NEW_CONVERSATION = "start_new_conversation"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REAUTHENTICATE = "reauthenticate"
    CORRECT_INPUT = "correct_input"
    GIVE_UP = "give_up"
    FAIL = "fail"


@dataclass
class RecoverySignal:
    """Standardized outcome of a recovery decision."""

    strategy: str
    action: RecoveryAction
    recoverable: bool
    user_message: str
    retry_payload: str | None = None
    new_conversation: str | None = None
    delay_seconds: float | None = None
    category: ErrorCategory | None = None
    attempt: int = 0
    retry_after: float | None = None
    actions_taken: list[str] = field(default_factory=list)

    @property
    def should_retry(self) -> bool:
        """True for signals the resilient client absorbs by retrying."""
        return self.action in (RecoveryAction.BACKOFF_RETRY, RecoveryAction.RETRY)

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting unset optional fields."""
        data: dict[str, Any] = {
            "strategy": self.strategy,
            "action": self.action.value,
            "recoverable": self.recoverable,
            "user_message": self.user_message,
        }
        optional = {
            "retry_payload": self.retry_payload,
            "new_conversation": self.new_conversation,
            "delay_seconds": self.delay_seconds,
            "category": self.category.value if self.category else None,
            "retry_after": self.retry_after,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.actions_taken:
            data["actions_taken"] = list(self.actions_taken)
        return data


class RecoveryOrchestrator:
    """
    Policy engine selecting backoff, repair, branching or failure.

    Attempt counts live in a RecoveryContext persisted through the store, so
    a recovery interrupted by a restart resumes with the same budget. Without
    a conversation id, counts are kept in process.

    Example:
        orchestrator = RecoveryOrchestrator(store, classifier, repairer, branches, breaker)
        signal = orchestrator.recover(error, conversation_id, owner_id, "hello")
        if signal.action == RecoveryAction.RETRY_NEW_CONVERSATION:
            conversation_id = signal.new_conversation
    """

    def __init__(
        self,
        store: TurnStore,
        classifier: ErrorClassifier,
        repairer: SequenceRepairer,
        branches: BranchManager,
        breaker: CircuitBreaker,
        config: GuardConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            store: Turn store for recovery contexts
            classifier: Error classifier
            repairer: Sequence repairer for structural errors
            branches: Branch manager for escalation
            breaker: Circuit breaker of the remote dependency
            config: Configuration (attempt budgets, backoff, context lifetime)
            rng: Random source for backoff jitter
            clock: Wall-clock time source in seconds
        """
        self.store = store
        self.classifier = classifier
        self.repairer = repairer
        self.branches = branches
        self.breaker = breaker
        self.config = config or GuardConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._unscoped_attempts: Counter[str] = Counter()
        self._attempt_totals: Counter[str] = Counter()

    def recover(
        self,
        error: BaseException | str | Mapping[str, Any],
        conversation_id: str | None = None,
        owner_id: str = "",
        original_message: str | None = None,
    ) -> RecoverySignal:
        """
        Decide how to recover from an error.

        Never raises for recoverable situations; every input yields a signal.

        Args:
            error: The failure (exception, message, or mapping with "message")
            conversation_id: Conversation the failed call belonged to
            owner_id: Owner of the conversation
            original_message: User message to replay on retry

        Returns:
            RecoverySignal
        """
        classification = self.classifier.classify(error)
        category = classification.category
        attempt_index = self._charge_attempt(category, conversation_id, owner_id)
        attempt = attempt_index + 1
        budget = self.config.max_attempts_for(category.value)

        logger.info(
            "Recovering from %s error (attempt %d/%d)", category.value, attempt, budget
        )

        if attempt > budget:
            signal = self._max_attempts_exceeded(classification, conversation_id, original_message)
        elif category == ErrorCategory.RATE_LIMIT:
            delay = self.rate_limit_delay(attempt_index)
            signal = RecoverySignal(
                strategy=classification.strategy.value,
                action=RecoveryAction.BACKOFF_RETRY,
                recoverable=True,
                user_message=f"Rate limit reached. Retrying in {delay:g} seconds...",
                retry_payload=original_message,
                delay_seconds=delay,
            )
        elif category == ErrorCategory.CONVERSATION_STRUCTURE:
            signal = self._repair_then_branch(conversation_id, original_message)
        elif category == ErrorCategory.SERVICE_UNAVAILABLE:
            signal = self._gate_on_breaker(classification, original_message)
        elif category == ErrorCategory.AUTH_ERROR:
            logger.warning("User intervention required for %s error", category.value)
            signal = RecoverySignal(
                strategy=classification.strategy.value,
                action=RecoveryAction.REAUTHENTICATE,
                recoverable=False,
                user_message="Authentication failed. Please sign in again to continue.",
            )
        elif category == ErrorCategory.VALIDATION_ERROR:
            signal = RecoverySignal(
                strategy=classification.strategy.value,
                action=RecoveryAction.CORRECT_INPUT,
                recoverable=False,
                user_message=f"Please check your input and try again. {classification.message}",
                retry_payload=original_message,
            )
        else:
            delay = self.simple_backoff_delay(attempt_index)
            if category == ErrorCategory.UNKNOWN:
                logger.error(
                    "Unknown error encountered: %s - %s",
                    classification.error_type,
                    classification.message,
                )
                user_message = f"An unexpected error occurred. Retrying in {delay:g} seconds..."
            else:
                user_message = f"Connection issue detected. Retrying in {delay:g} seconds..."
            signal = RecoverySignal(
                strategy=classification.strategy.value,
                action=RecoveryAction.BACKOFF_RETRY,
                recoverable=True,
                user_message=user_message,
                retry_payload=original_message,
                delay_seconds=delay,
            )

        signal.category = category
        signal.attempt = attempt
        return signal

    def complete(self, conversation_id: str) -> int:
        """
        Discard recovery bookkeeping after a successful call.

        Returns:
            Number of recovery contexts deleted
        """
        return self.store.delete_recovery_contexts(conversation_id)

    def rate_limit_delay(self, attempt_index: int) -> float:
        """Jittered exponential delay for rate limits, capped and rounded to 0.01 s."""
        retry = self.config.retry
        jitter = self._rng.uniform(retry.jitter_min, retry.jitter_max)
        delay = retry.rate_limit_base_delay * (2**attempt_index) * (1 + jitter)
        return round(min(delay, retry.rate_limit_max_delay), 2)

    def simple_backoff_delay(self, attempt_index: int) -> float:
        """Capped exponential delay for network and unknown errors."""
        return float(min(2**attempt_index, self.config.retry.simple_backoff_max_delay))

    def preserve_context(
        self,
        owner_id: str,
        conversation_id: str,
        additional: Mapping[str, Any] | None = None,
    ) -> RecoveryContext:
        """Store extra data alongside the attempt counts of a recovery."""
        context = self._load_context(owner_id, conversation_id)
        context.data.update(dict(additional or {}))
        self.store.save_recovery_context(context)
        return context

    def restore_context(self, owner_id: str, conversation_id: str) -> dict[str, Any]:
        """Data of the latest unexpired recovery context, or an empty dict."""
        context = self.store.get_recovery_context(owner_id, conversation_id, now=self._clock())
        if context is None:
            return {}
        return {**context.data, "attempts": dict(context.attempts)}

    def statistics(self) -> dict[str, Any]:
        """Attempt counts and circuit breaker status for monitoring."""
        return {
            "total_attempts": sum(self._attempt_totals.values()),
            "attempts_by_category": dict(self._attempt_totals),
            "circuit_breaker": self.breaker.get_metrics().to_dict(),
            "active_recoveries": self.store.count_active_recovery_contexts(now=self._clock()),
        }

    def _charge_attempt(
        self, category: ErrorCategory, conversation_id: str | None, owner_id: str
    ) -> int:
        """Increment the attempt count for a category and return the previous count."""
        self._attempt_totals[category.value] += 1
        if conversation_id is None:
            previous = self._unscoped_attempts[category.value]
            self._unscoped_attempts[category.value] += 1
            return previous

        context = self._load_context(owner_id, conversation_id)
        previous = context.attempts.get(category.value, 0)
        context.attempts[category.value] = previous + 1
        self.store.save_recovery_context(context)
        return previous

    def _load_context(self, owner_id: str, conversation_id: str) -> RecoveryContext:
        now = self._clock()
        context = self.store.get_recovery_context(owner_id, conversation_id, now=now)
        if context is None:
            context = RecoveryContext(
                owner_id=owner_id,
                conversation_id=conversation_id,
                expires_at=now + self.config.retry.recovery_context_ttl_seconds,
                created_at=now,
            )
        return context

    def _repair_then_branch(
        self, conversation_id: str | None, original_message: str | None
    ) -> RecoverySignal:
        if conversation_id is None:
            return self._no_conversation_context()

        logger.info("Attempting conversation repair for %s", conversation_id)
        try:
            report = self.repairer.repair(conversation_id)
        except (RepairError, StoreError) as e:
            logger.error("Conversation repair failed: %s", e)
            return self._branch(conversation_id, original_message, "repair failure")

        turns = self.store.list_turns(conversation_id)
        if not self.repairer.validator.validate(turns).valid:
            return self._branch(conversation_id, original_message, "unrepairable structure")

        actions = []
        if report.removed_orphans or report.removed_malformed:
            actions.append(
                f"cleaned_{len(report.removed_orphans) + len(report.removed_malformed)}"
                "_orphaned_turns"
            )
        if report.truncated:
            actions.append(f"truncated_{len(report.truncated)}_turns")
        return RecoverySignal(
            strategy="repair_and_retry",
            action=RecoveryAction.RETRY_SAME_CONVERSATION,
            recoverable=True,
            user_message=(
                "Fixed conversation issues. Retrying your request..."
                if report.changed
                else "Conversation validated. Retrying your request..."
            ),
            retry_payload=original_message,
            actions_taken=actions,
        )

    def _branch(
        self, conversation_id: str, original_message: str | None, reason: str
    ) -> RecoverySignal:
        try:
            branch = self.branches.create_recovery_branch(conversation_id, reason)
        except (BranchError, StoreError) as e:
            logger.error("Failed to create recovery branch for %s: %s", conversation_id, e)
            return RecoverySignal(
                strategy="fresh_conversation_recovery",
                action=RecoveryAction.FAIL,
                recoverable=False,
                user_message=(
                    "Unable to recover from this error. "
                    "Please refresh the page or contact support."
                ),
            )

        return RecoverySignal(
            strategy="fresh_conversation_recovery",
            action=RecoveryAction.RETRY_NEW_CONVERSATION,
            recoverable=True,
            user_message=FRESH_BRANCH_MESSAGE,
            retry_payload=original_message,
            new_conversation=branch.id,
            actions_taken=[f"created_recovery_branch_{branch.id}"],
        )

    def _gate_on_breaker(
        self, classification: ErrorClassification, original_message: str | None
    ) -> RecoverySignal:
        if self.breaker.is_open:
            wait = self.breaker.seconds_until_retry()
            minutes = max(1, math.ceil(wait / 60))
            logger.warning(
                "Circuit breaker %s is open, service likely unavailable", self.breaker.name
            )
            return RecoverySignal(
                strategy=classification.strategy.value,
                action=RecoveryAction.SERVICE_UNAVAILABLE,
                recoverable=False,
                user_message=(
                    "Service is temporarily unavailable. "
                    f"Please try again in {minutes} minute(s)."
                ),
                delay_seconds=wait,
                retry_after=self.breaker.next_attempt_time(),
            )

        return RecoverySignal(
            strategy=classification.strategy.value,
            action=RecoveryAction.RETRY,
            recoverable=True,
            user_message="Service experiencing issues. Retrying with protective measures...",
            retry_payload=original_message,
        )

    def _max_attempts_exceeded(
        self,
        classification: ErrorClassification,
        conversation_id: str | None,
        original_message: str | None,
    ) -> RecoverySignal:
        category = classification.category
        logger.error("Max recovery attempts exceeded for %s", category.value)

        if category == ErrorCategory.CONVERSATION_STRUCTURE:
            if conversation_id is None:
                return self._no_conversation_context()
            return self._branch(
                conversation_id, original_message, "max conversation repair attempts"
            )

        return RecoverySignal(
            strategy="max_attempts_exceeded",
            action=RecoveryAction.GIVE_UP,
            recoverable=False,
            user_message=GIVE_UP_MESSAGE,
        )

    @staticmethod
    def _no_conversation_context() -> RecoverySignal:
        return RecoverySignal(
            strategy="no_conversation_context",
            action=RecoveryAction.START_NEW_CONVERSATION,
            recoverable=True,
            user_message="Starting a new conversation...",
        )


__all__ = [
    "FRESH_BRANCH_MESSAGE",
    "GIVE_UP_MESSAGE",
    "RecoveryAction",
    "RecoveryOrchestrator",
    "RecoverySignal",
]
