"""Data models for the workflow engine."""

from .core import (
    ExecutionStatus,
    NodeStatus,
    ErrorCause,
    SkipReason,
    ExecutionMode,
    NodeSpec,
    Edge,
    WorkflowSettings,
    WorkflowDefinition,
    ValidationResult,
    NodeExecutionRecord,
    ExecutionRecord,
    ExecutionFingerprint,
    ExecutionLogEntry,
)

__all__ = [
    "ExecutionStatus",
    "NodeStatus",
    "ErrorCause",
    "SkipReason",
    "ExecutionMode",
    "NodeSpec",
    "Edge",
    "WorkflowSettings",
    "WorkflowDefinition",
    "ValidationResult",
    "NodeExecutionRecord",
    "ExecutionRecord",
    "ExecutionFingerprint",
    "ExecutionLogEntry",
]
