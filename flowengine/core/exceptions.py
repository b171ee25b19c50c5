"""Exception hierarchy for the workflow execution engine.

Every engine error carries a stable ``error_code`` for API clients, a
``details`` mapping describing the failure and a ``context`` mapping naming
the objects involved (execution, node, table, ...). Keyword arguments that a
subclass does not consume are added to the context when they are not None.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from ..models.core import utcnow


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STATE = "state"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    default_code: Optional[str] = None
    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.EXECUTION
    recoverable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        retry_after: Optional[int] = None,
        **context
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code or self.__class__.__name__
        self.details = dict(details or {})
        if recoverable is not None:
            self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = {key: value for key, value in context.items() if value is not None}
        self.timestamp = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Flat representation for structured logs."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow definition cannot be turned into a runnable graph.

    ``kind`` is the code of the first blocking issue (``CYCLE``,
    ``DANGLING_EDGE``, ``DUPLICATE_NODE_ID``, ...).
    """

    default_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        kind: str = "INVALID_WORKFLOW",
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        warnings: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.kind = kind
        self.validation_errors = validation_errors or []
        self.warnings = warnings or []
        self.add_details(kind=kind)
        if self.validation_errors:
            self.add_details(validation_errors=self.validation_errors)
        if self.warnings:
            self.add_details(warnings=self.warnings)


class NodeExecutionError(WorkflowEngineError):
    """Raised inside the runner when a node handler fails."""

    severity = ErrorSeverity.HIGH
    recoverable = True


class NodeTimeoutError(NodeExecutionError):
    """Raised when a node exceeds its timeout. Never retried."""

    default_code = "NODE_TIMEOUT"
    recoverable = False

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        if timeout is not None:
            self.add_details(timeout=timeout)


class NodeCancelledError(NodeExecutionError):
    """Raised when a node observes a cancellation request. Never retried."""

    default_code = "NODE_CANCELLED"
    severity = ErrorSeverity.LOW
    recoverable = False


class NodeRegistryError(WorkflowEngineError):
    """Raised when node handler registry operations fail."""

    category = ErrorCategory.CONFIGURATION


class ExecutionStateError(WorkflowEngineError):
    """Raised when an operation is not allowed in the execution's current state."""

    category = ErrorCategory.STATE

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if current_status:
            self.add_details(current_status=current_status)


class NothingToRetryError(ExecutionStateError):
    """Raised when retry-failed finds no FAILED or failure-skipped node."""

    default_code = "NOTHING_TO_RETRY"


class StorageError(WorkflowEngineError):
    """Raised when a database operation fails. Retried by the storage layer."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("retry_after", 3)
        super().__init__(message, **kwargs)


class ResourceNotFoundError(StorageError):
    """Raised when a workflow or execution does not exist."""

    default_code = "NOT_FOUND"
    severity = ErrorSeverity.LOW
    recoverable = False

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("retry_after", None)
        super().__init__(message, **kwargs)


class EngineSystemError(WorkflowEngineError):
    """Raised when the engine itself fails, e.g. persisting a status transition.

    Distinct from node failures so operators can tell a broken automation
    apart from a broken engine.
    """

    default_code = "SYSTEM_ERROR"
    severity = ErrorSeverity.CRITICAL
    category = ErrorCategory.SYSTEM


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }


def http_status_for_error(error: WorkflowEngineError) -> int:
    """Map an engine error onto the HTTP status code the API answers with."""
    if isinstance(error, GraphValidationError):
        return 400
    if isinstance(error, ResourceNotFoundError):
        return 404
    if isinstance(error, ExecutionStateError):
        return 409
    if isinstance(error, StorageError):
        # Database unavailable or locked; the client may retry after retry_after
        return 503
    return 500
