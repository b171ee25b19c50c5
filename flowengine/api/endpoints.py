"""FastAPI REST endpoints for the workflow engine."""

from typing import Any, Dict, List, Optional, Union
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import Field

from ..core.coordinator import ExecutionCoordinator
from ..core.exceptions import (
    ResourceNotFoundError,
    WorkflowEngineError,
    create_error_response,
    http_status_for_error
)
from ..core.logging import get_logger
from ..core.node_registry import NodeHandlerRegistry
from ..core.replay_manager import ReplayManager
from ..core.status_tracker import StatusTracker
from ..core.workflow_manager import WorkflowManager
from ..models.core import (
    CamelModel,
    ExecutionFingerprint,
    ExecutionPage,
    ExecutionRecord,
    ExecutionStats,
    ExecutionStatus,
    LogPage,
    NodeTestResult,
    SavedWorkflow,
    ValidationIssue,
    ValidationResult,
    WorkflowDefinition,
    WorkflowSummary,
    utcnow
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Set by the application factory on startup
_workflow_manager: Optional[WorkflowManager] = None
_coordinator: Optional[ExecutionCoordinator] = None
_tracker: Optional[StatusTracker] = None
_replay_manager: Optional[ReplayManager] = None
_registry: Optional[NodeHandlerRegistry] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    coordinator: ExecutionCoordinator,
    tracker: StatusTracker,
    replay_manager: ReplayManager,
    registry: NodeHandlerRegistry
):
    """Initialize the global dependencies."""
    global _workflow_manager, _coordinator, _tracker, _replay_manager, _registry
    _workflow_manager = workflow_manager
    _coordinator = coordinator
    _tracker = tracker
    _replay_manager = replay_manager
    _registry = registry


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_workflow_manager() -> WorkflowManager:
    return _require(_workflow_manager, "Workflow manager")


def get_coordinator() -> ExecutionCoordinator:
    return _require(_coordinator, "Execution coordinator")


def get_tracker() -> StatusTracker:
    return _require(_tracker, "Status tracker")


def get_replay_manager() -> ReplayManager:
    return _require(_replay_manager, "Replay manager")


def get_registry() -> NodeHandlerRegistry:
    return _require(_registry, "Node registry")


def _engine_error(e: WorkflowEngineError, action: str) -> HTTPException:
    status_code = http_status_for_error(e)
    if status_code >= 500:
        logger.error(f"Workflow engine error while {action}: {e.message}")
    else:
        logger.warning(f"Request rejected while {action}: {e.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(e))


def _unexpected_error(e: Exception, action: str) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {str(e)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(e)},
            "timestamp": utcnow().isoformat()
        }
    )


# Request/Response models

class CreateWorkflowResponse(CamelModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Unique identifier of the created workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[ValidationIssue] = Field(default_factory=list, description="Validation warnings")


class DeleteResponse(CamelModel):
    message: str
    deleted: bool = True


class CreateExecutionRequest(CamelModel):
    """Request model for initiating an execution."""
    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Data exposed as $trigger")
    start: bool = Field(False, description="Queue the execution immediately")


class ExecutionAcceptedResponse(CamelModel):
    """Identifier and status of an execution that was created or queued."""
    execution_id: str
    status: ExecutionStatus


class ReplayRequest(CamelModel):
    node_id: Optional[str] = Field(None, description="Replay from this node; whole run when unset")
    start: bool = Field(True, description="Queue the new execution immediately")


class RetryRequest(CamelModel):
    start: bool = Field(True, description="Queue the new execution immediately")


class CancelRequest(CamelModel):
    reason: Optional[str] = Field(None, description="Reason stored on the execution")


class CancelResponse(CamelModel):
    execution_id: str
    cancelled: bool
    status: ExecutionStatus


class TestNodeRequest(CamelModel):
    """Request model for running one node in isolation."""
    node_type: str = Field(..., description="Registered node type")
    config: Dict[str, Any] = Field(default_factory=dict)
    inputs: Optional[Union[List[Any], Dict[str, Any]]] = None
    credentials: Dict[str, str] = Field(default_factory=dict)


# Workflows

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow"
)
async def create_workflow(
    definition: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    """
    Validate and store a workflow definition.

    Returns the new identifier and any validation warnings.
    """
    try:
        validation = workflow_manager.validate_workflow(definition)
        saved = workflow_manager.create_workflow(definition)
        return CreateWorkflowResponse(
            workflow_id=saved.id,
            message=f"Workflow '{definition.name}' created successfully",
            validation_warnings=validation.warnings
        )
    except WorkflowEngineError as e:
        raise _engine_error(e, "creating workflow")
    except Exception as e:
        raise _unexpected_error(e, "creating the workflow")


@router.get("/workflows", response_model=List[WorkflowSummary], summary="List workflows")
async def list_workflows(
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[WorkflowSummary]:
    try:
        return workflow_manager.list_workflows()
    except WorkflowEngineError as e:
        raise _engine_error(e, "listing workflows")


@router.post("/workflows/validate", response_model=ValidationResult, summary="Validate a workflow")
async def validate_workflow(
    definition: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    """Validate a definition without storing it; always answers 200 with the issues found."""
    return workflow_manager.validate_workflow(definition)


@router.get("/workflows/{workflow_id}", response_model=SavedWorkflow, summary="Get a workflow")
async def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> SavedWorkflow:
    try:
        return workflow_manager.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "retrieving workflow")


@router.put("/workflows/{workflow_id}", response_model=SavedWorkflow, summary="Update a workflow")
async def update_workflow(
    workflow_id: str,
    definition: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> SavedWorkflow:
    try:
        return workflow_manager.update_workflow(workflow_id, definition)
    except WorkflowEngineError as e:
        raise _engine_error(e, "updating workflow")


@router.delete("/workflows/{workflow_id}", response_model=DeleteResponse, summary="Delete a workflow")
async def delete_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> DeleteResponse:
    try:
        deleted = workflow_manager.delete_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "deleting workflow")
    if not deleted:
        raise _engine_error(
            ResourceNotFoundError(f"Workflow with ID '{workflow_id}' not found",
                                  resource="workflow", resource_id=workflow_id),
            "deleting workflow"
        )
    return DeleteResponse(message=f"Workflow {workflow_id} deleted")


# Executions

@router.post(
    "/workflows/{workflow_id}/executions",
    response_model=ExecutionAcceptedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Initiate an execution",
    description="Snapshot the saved workflow into a PENDING execution; optionally queue it right away"
)
async def create_execution(
    workflow_id: str,
    request: Optional[CreateExecutionRequest] = None,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    coordinator: ExecutionCoordinator = Depends(get_coordinator)
) -> ExecutionAcceptedResponse:
    request = request or CreateExecutionRequest()
    try:
        definition = workflow_manager.get_definition(workflow_id)
        record = coordinator.initiate(workflow_id, definition, request.trigger_data)
        current_status = record.status
        if request.start:
            current_status = coordinator.start(record.id).status
        logger.info(f"Initiated execution {record.id} for workflow {workflow_id}")
        return ExecutionAcceptedResponse(execution_id=record.id, status=current_status)
    except WorkflowEngineError as e:
        raise _engine_error(e, "initiating execution")
    except Exception as e:
        raise _unexpected_error(e, "initiating the execution")


@router.get("/workflows/{workflow_id}/executions", response_model=ExecutionPage, summary="Execution history")
async def list_workflow_executions(
    workflow_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[ExecutionStatus] = Query(None, alias="status"),
    tracker: StatusTracker = Depends(get_tracker)
) -> ExecutionPage:
    try:
        return tracker.list_executions(workflow_id, status_filter, page, limit)
    except WorkflowEngineError as e:
        raise _engine_error(e, "listing executions")


@router.get("/workflows/{workflow_id}/executions/stats", response_model=ExecutionStats,
            summary="Execution statistics")
async def get_workflow_execution_stats(
    workflow_id: str,
    tracker: StatusTracker = Depends(get_tracker)
) -> ExecutionStats:
    try:
        return tracker.stats(workflow_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "computing execution statistics")


@router.get("/workflows/{workflow_id}/executions/latest", response_model=ExecutionRecord,
            summary="Most recent execution")
async def get_latest_execution(
    workflow_id: str,
    tracker: StatusTracker = Depends(get_tracker)
) -> ExecutionRecord:
    try:
        record = tracker.latest(workflow_id)
        if record is None:
            raise ResourceNotFoundError(f"Workflow '{workflow_id}' has no executions",
                                        resource="execution", resource_id=workflow_id)
        return record
    except WorkflowEngineError as e:
        raise _engine_error(e, "retrieving latest execution")


@router.post("/executions/{execution_id}/start", response_model=ExecutionAcceptedResponse,
             summary="Start a PENDING execution")
async def start_execution(
    execution_id: str,
    coordinator: ExecutionCoordinator = Depends(get_coordinator)
) -> ExecutionAcceptedResponse:
    try:
        fingerprint = coordinator.start(execution_id)
        return ExecutionAcceptedResponse(execution_id=execution_id, status=fingerprint.status)
    except WorkflowEngineError as e:
        raise _engine_error(e, "starting execution")
    except Exception as e:
        raise _unexpected_error(e, "starting the execution")


@router.get("/executions/{execution_id}", response_model=ExecutionRecord, summary="Full execution record")
async def get_execution(
    execution_id: str,
    tracker: StatusTracker = Depends(get_tracker)
) -> ExecutionRecord:
    try:
        return tracker.get(execution_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "retrieving execution")


@router.get(
    "/executions/{execution_id}/status",
    response_model=ExecutionFingerprint,
    summary="Execution fingerprint",
    description="Cheap status read; fetch the full record only when updatedAt changed"
)
async def get_execution_status(
    execution_id: str,
    tracker: StatusTracker = Depends(get_tracker)
) -> ExecutionFingerprint:
    try:
        return tracker.fingerprint(execution_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "reading execution status")


@router.get("/executions/{execution_id}/logs", response_model=LogPage, summary="Execution logs")
async def get_execution_logs(
    execution_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    node_id: Optional[str] = Query(None, alias="nodeId"),
    tracker: StatusTracker = Depends(get_tracker)
) -> LogPage:
    try:
        return tracker.get_logs(execution_id, page=page, limit=limit, node_id=node_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "reading execution logs")


@router.get("/executions/{execution_id}/nodes/{node_id}/logs", response_model=LogPage, summary="Node logs")
async def get_node_logs(
    execution_id: str,
    node_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    tracker: StatusTracker = Depends(get_tracker)
) -> LogPage:
    try:
        return tracker.get_logs(execution_id, page=page, limit=limit, node_id=node_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "reading node logs")


@router.post("/executions/{execution_id}/cancel", response_model=CancelResponse, summary="Cancel an execution")
async def cancel_execution(
    execution_id: str,
    request: Optional[CancelRequest] = None,
    coordinator: ExecutionCoordinator = Depends(get_coordinator),
    tracker: StatusTracker = Depends(get_tracker)
) -> CancelResponse:
    request = request or CancelRequest()
    try:
        tracker.fingerprint(execution_id)
        cancelled = coordinator.cancel(execution_id, request.reason)
        return CancelResponse(
            execution_id=execution_id,
            cancelled=cancelled,
            status=tracker.fingerprint(execution_id).status
        )
    except WorkflowEngineError as e:
        raise _engine_error(e, "cancelling execution")


@router.delete("/executions/{execution_id}", response_model=DeleteResponse, summary="Delete an execution")
async def delete_execution(
    execution_id: str,
    tracker: StatusTracker = Depends(get_tracker)
) -> DeleteResponse:
    try:
        deleted = tracker.delete(execution_id)
        if not deleted:
            raise ResourceNotFoundError(f"Execution '{execution_id}' not found",
                                        resource="execution", resource_id=execution_id)
        return DeleteResponse(message=f"Execution {execution_id} deleted")
    except WorkflowEngineError as e:
        raise _engine_error(e, "deleting execution")


@router.post("/executions/{execution_id}/replay", response_model=ExecutionAcceptedResponse,
             status_code=status.HTTP_201_CREATED, summary="Replay an execution")
async def replay_execution(
    execution_id: str,
    request: Optional[ReplayRequest] = None,
    replay_manager: ReplayManager = Depends(get_replay_manager)
) -> ExecutionAcceptedResponse:
    """Re-run a finished execution, fully or from ``nodeId`` onwards."""
    request = request or ReplayRequest()
    try:
        record = replay_manager.replay(execution_id, request.node_id, start=request.start)
        return ExecutionAcceptedResponse(execution_id=record.id, status=record.status)
    except WorkflowEngineError as e:
        raise _engine_error(e, "replaying execution")
    except Exception as e:
        raise _unexpected_error(e, "replaying the execution")


@router.post("/executions/{execution_id}/retry-failed", response_model=ExecutionAcceptedResponse,
             status_code=status.HTTP_201_CREATED, summary="Retry failed nodes")
async def retry_failed_execution(
    execution_id: str,
    request: Optional[RetryRequest] = None,
    replay_manager: ReplayManager = Depends(get_replay_manager)
) -> ExecutionAcceptedResponse:
    request = request or RetryRequest()
    try:
        record = replay_manager.retry_failed_execution(execution_id, start=request.start)
        return ExecutionAcceptedResponse(execution_id=record.id, status=record.status)
    except WorkflowEngineError as e:
        raise _engine_error(e, "retrying execution")
    except Exception as e:
        raise _unexpected_error(e, "retrying the execution")


# Nodes

@router.post("/nodes/test", response_model=NodeTestResult, summary="Run one node in isolation")
async def test_node(
    request: TestNodeRequest,
    coordinator: ExecutionCoordinator = Depends(get_coordinator)
) -> NodeTestResult:
    """Handler failures are reported in the body (``success: false``), not as HTTP errors."""
    try:
        return coordinator.test_node(request.node_type, request.config, request.inputs, request.credentials)
    except WorkflowEngineError as e:
        raise _engine_error(e, "testing node")


@router.get("/node-types", summary="Registered node types")
async def list_node_types(
    registry: NodeHandlerRegistry = Depends(get_registry)
) -> List[Dict[str, Any]]:
    try:
        return registry.list_node_types()
    except WorkflowEngineError as e:
        raise _engine_error(e, "listing node types")
