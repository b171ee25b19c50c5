"""Core workflow engine components.

Only dependency-free modules are re-exported here; the storage layer imports
``flowengine.core.logging`` so the managers are imported by their full path.
"""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    NodeExecutionError,
    NodeTimeoutError,
    NodeCancelledError,
    NodeRegistryError,
    ExecutionStateError,
    NothingToRetryError,
    StorageError,
    ResourceNotFoundError,
    EngineSystemError,
)
from .logging import setup_logging, get_logger
from .error_recovery import RetryConfig, with_retry, health_checker

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "NodeCancelledError",
    "NodeRegistryError",
    "ExecutionStateError",
    "NothingToRetryError",
    "StorageError",
    "ResourceNotFoundError",
    "EngineSystemError",
    "setup_logging",
    "get_logger",
    "RetryConfig",
    "with_retry",
    "health_checker",
]
