"""
ADLAB INFRASTRUCTURE SYSTEM
Core infrastructure and utilities

This package contains:
- storage: SQLite persistence for experiments, variants and daily metrics
- scheduler: Background analytics sweeps
- error_handling: Error taxonomy, retry and circuit breaker
- locking: Per-key locks
- creative_storage: Creative assets and signed URLs
"""

# Note: storage and scheduler are imported directly to avoid circular import issues

from .error_handling import (
    AdlabError, ValidationError, NotConnectedError, InvalidTransitionError,
    RemoteError, RemoteTransientError, RemotePolicyError,
    BuildFailure, SyncFailure, SyncInProgressError,
    CircuitBreaker, RetryHandler, classify_remote_error,
)
from .locking import KeyedLock

__all__ = [
    'AdlabError', 'ValidationError', 'NotConnectedError', 'InvalidTransitionError',
    'RemoteError', 'RemoteTransientError', 'RemotePolicyError',
    'BuildFailure', 'SyncFailure', 'SyncInProgressError',
    'CircuitBreaker', 'RetryHandler', 'classify_remote_error',
    'KeyedLock',
]
