"""
aceflow - adaptive execution and checkpoint recovery.

Runs long, flaky operations (deploys, sandbox bring-ups, test suites) under
complexity-aware timeouts with progressive retry, and snapshots/restores
project state around them.

Features:
- Complexity scoring from static project artifacts
- Dynamic timeout scaling based on complexity and attempt number
- Progressive retry strategy with transient/fatal classification
- Whole process-tree termination on timeout
- Checksummed checkpoints with transactional restore
- Performance ledger with success-rate health
"""

__version__ = "0.1.0"

from .checkpoint import CheckpointManager
from .complexity import ProjectDescriptor, score
from .config import CheckpointConfig, RecoveryConfig, TimeoutPolicy, load_config
from .executor import CancelToken, RetryExecutor
from .ledger import InMemoryLedger, JsonlLedger, PerformanceLedger
from .models import Checkpoint, CheckpointTrigger, ComplexityProfile, OperationRecord, RetentionPolicy
from .operations import CallableOperation, ClassificationHints, CommandOperation
from .timeouts import backoff_delay, compute_timeout

__all__ = [
    "CheckpointManager",
    "ProjectDescriptor",
    "score",
    "CheckpointConfig",
    "RecoveryConfig",
    "TimeoutPolicy",
    "load_config",
    "CancelToken",
    "RetryExecutor",
    "InMemoryLedger",
    "JsonlLedger",
    "PerformanceLedger",
    "Checkpoint",
    "CheckpointTrigger",
    "ComplexityProfile",
    "OperationRecord",
    "RetentionPolicy",
    "CallableOperation",
    "ClassificationHints",
    "CommandOperation",
    "backoff_delay",
    "compute_timeout",
    "__version__",
]
