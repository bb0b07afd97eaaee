"""
convguard: integrity and recovery for tool-calling LLM conversations.

Keeps a multi-turn conversation structurally valid, repairs corruption,
snapshots and branches conversations, and recovers from remote API failures
behind a circuit breaker.
"""

from .api_client import (
    AnthropicCompletionClient,
    CompletionClient,
    CompletionResult,
    ToolSpec,
)
from .branching import BranchManager, MergeStrategy
from .checkpoints import CheckpointManager
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .classifier import (
    DEFAULT_TABLE,
    ClassificationRule,
    ClassificationTable,
    ErrorCategory,
    ErrorClassification,
    ErrorClassifier,
)
from .config import GuardConfig
from .errors import (
    BranchError,
    CheckpointError,
    CircuitOpenError,
    CompletionTimeoutError,
    ConvGuardError,
    ConversationNotFoundError,
    IntegrityError,
    RepairError,
    StoreError,
)
from .health import ConversationHealthMonitor, HealthMetrics, SweepSummary
from .locks import ConversationLocks
from .recovery import RecoveryAction, RecoveryOrchestrator, RecoverySignal
from .repair import RepairReport, SequenceRepairer
from .resilient_client import CompletionOutcome, ResilientCompletionClient
from .session import ConversationSession, SendResult
from .tool_ids import ANTHROPIC_ID_POLICY, OPENAI_ID_POLICY, ToolIdPolicy, get_id_policy
from .turn_store import InMemoryTurnStore, SQLiteTurnStore, TurnStore, create_store
from .types import (
    Checkpoint,
    Conversation,
    ConversationStatus,
    LifecycleState,
    RecoveryContext,
    Role,
    ToolInvocation,
    Turn,
)
from .validator import IntegrityValidator, ValidationMode, ValidationReport, longest_valid_prefix

__version__ = "0.1.0"

__all__ = [
    "ANTHROPIC_ID_POLICY",
    "AnthropicCompletionClient",
    "BranchError",
    "BranchManager",
    "Checkpoint",
    "CheckpointError",
    "CheckpointManager",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "ClassificationRule",
    "ClassificationTable",
    "CompletionClient",
    "CompletionOutcome",
    "CompletionResult",
    "CompletionTimeoutError",
    "ConvGuardError",
    "Conversation",
    "ConversationHealthMonitor",
    "ConversationLocks",
    "ConversationNotFoundError",
    "ConversationSession",
    "ConversationStatus",
    "DEFAULT_TABLE",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorClassifier",
    "GuardConfig",
    "HealthMetrics",
    "InMemoryTurnStore",
    "IntegrityError",
    "IntegrityValidator",
    "LifecycleState",
    "MergeStrategy",
    "OPENAI_ID_POLICY",
    "RecoveryAction",
    "RecoveryContext",
    "RecoveryOrchestrator",
    "RecoverySignal",
    "RepairError",
    "RepairReport",
    "ResilientCompletionClient",
    "Role",
    "SQLiteTurnStore",
    "SendResult",
    "SequenceRepairer",
    "StoreError",
    "SweepSummary",
    "ToolIdPolicy",
    "ToolInvocation",
    "ToolSpec",
    "Turn",
    "TurnStore",
    "ValidationMode",
    "ValidationReport",
    "create_store",
    "get_id_policy",
    "longest_valid_prefix",
]
