"""Workflow Manager for saved workflow definitions."""

import uuid
from typing import Iterable, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    SavedWorkflow,
    ValidationResult,
    WorkflowDefinition,
    WorkflowSummary,
    utcnow
)
from ..storage.database import get_db
from ..storage.models import WorkflowModel
from .exceptions import GraphValidationError, ResourceNotFoundError, StorageError
from .logging import get_logger
from .node_registry import NodeHandlerRegistry
from .workflow_graph import WorkflowGraph

logger = get_logger(__name__)


class WorkflowManager:
    """Manages workflow definitions, validation, and storage."""

    def __init__(self, registry: Optional[NodeHandlerRegistry] = None, db_session: Optional[Session] = None):
        """Initialize WorkflowManager.

        Args:
            registry: When given, node types are checked against registered handlers
            db_session: Optional database session
        """
        self.registry = registry
        self._db_session = db_session

    def _get_db_session(self) -> Session:
        """Get database session, creating one if not provided."""
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _close(self, db: Session):
        if not self._db_session:
            db.close()

    def _known_node_types(self) -> Optional[Iterable[str]]:
        return self.registry.known_node_types() if self.registry else None

    def validate_workflow(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a workflow definition without storing it.

        Args:
            definition: The workflow definition to validate

        Returns:
            ValidationResult: Errors and warnings
        """
        logger.debug(f"Validating workflow: {definition.name}")
        result = WorkflowGraph.validate(definition, self._known_node_types())
        logger.debug(f"Workflow validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")
        return result

    def _ensure_valid(self, definition: WorkflowDefinition, workflow_id: Optional[str] = None):
        result = self.validate_workflow(definition)
        if not result.is_valid:
            first = result.errors[0]
            error_msg = f"Workflow validation failed: {'; '.join(issue.message for issue in result.errors)}"
            logger.error(error_msg)
            raise GraphValidationError(
                error_msg,
                kind=first.code,
                validation_errors=[issue.model_dump() for issue in result.errors],
                warnings=[issue.model_dump() for issue in result.warnings],
                workflow_id=workflow_id
            )
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(w.message for w in result.warnings)}")

    def create_workflow(self, definition: WorkflowDefinition) -> SavedWorkflow:
        """
        Validate and store a new workflow.

        Raises:
            GraphValidationError: If validation fails
            StorageError: If the storage operation fails
        """
        logger.info(f"Creating new workflow: {definition.name}")
        self._ensure_valid(definition)

        workflow_id = str(uuid.uuid4())
        now = utcnow()
        db = self._get_db_session()
        try:
            model = WorkflowModel(
                id=workflow_id,
                name=definition.name,
                description=definition.description,
                definition=definition.to_storage(),
                created_at=now,
                updated_at=now
            )
            db.add(model)
            db.commit()
            logger.info(f"Successfully created workflow '{definition.name}' with ID: {workflow_id}")
            return self._to_saved(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while creating workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create", table="workflows")
        finally:
            self._close(db)

    def get_workflow(self, workflow_id: str) -> SavedWorkflow:
        """
        Retrieve a saved workflow by its ID.

        Raises:
            ResourceNotFoundError: If the workflow does not exist
            StorageError: If the storage operation fails
        """
        logger.debug(f"Retrieving workflow with ID: {workflow_id}")
        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise ResourceNotFoundError(f"Workflow with ID '{workflow_id}' not found",
                                            resource="workflow", resource_id=workflow_id)
            return self._to_saved(model)
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get", table="workflows")
        finally:
            self._close(db)

    def get_definition(self, workflow_id: str) -> WorkflowDefinition:
        return self.get_workflow(workflow_id).definition

    def update_workflow(self, workflow_id: str, definition: WorkflowDefinition) -> SavedWorkflow:
        """
        Replace the definition of a saved workflow.

        Running executions keep the snapshot they were initiated with.
        """
        logger.info(f"Updating workflow {workflow_id}")
        self._ensure_valid(definition, workflow_id)

        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                raise ResourceNotFoundError(f"Workflow with ID '{workflow_id}' not found",
                                            resource="workflow", resource_id=workflow_id)
            model.name = definition.name
            model.description = definition.description
            model.definition = definition.to_storage()
            model.updated_at = utcnow()
            db.commit()
            logger.info(f"Successfully updated workflow {workflow_id}")
            return self._to_saved(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while updating workflow: {str(e)}")
            raise StorageError(f"Failed to update workflow: {str(e)}", operation="update", table="workflows")
        finally:
            self._close(db)

    def list_workflows(self) -> List[WorkflowSummary]:
        """List saved workflows, newest first."""
        logger.debug("Listing all workflows")
        db = self._get_db_session()
        try:
            models = db.query(WorkflowModel).order_by(WorkflowModel.created_at.desc()).all()
            summaries = []
            for model in models:
                definition = model.definition or {}
                summaries.append(WorkflowSummary(
                    id=model.id,
                    name=model.name,
                    description=model.description or "",
                    node_count=len(definition.get("nodes", [])),
                    edge_count=len(definition.get("edges", [])),
                    created_at=model.created_at,
                    updated_at=model.updated_at or model.created_at
                ))
            logger.debug(f"Retrieved {len(summaries)} workflow summaries")
            return summaries
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list", table="workflows")
        finally:
            self._close(db)

    def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a workflow by its ID.

        Execution history is kept; it carries its own definition snapshot.

        Returns:
            bool: True if deleted, False if not found
        """
        logger.info(f"Deleting workflow with ID: {workflow_id}")
        db = self._get_db_session()
        try:
            model = db.get(WorkflowModel, workflow_id)
            if model is None:
                logger.warning(f"Workflow with ID '{workflow_id}' not found for deletion")
                return False
            db.delete(model)
            db.commit()
            logger.info(f"Successfully deleted workflow with ID: {workflow_id}")
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while deleting workflow: {str(e)}")
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete", table="workflows")
        finally:
            self._close(db)

    @staticmethod
    def _to_saved(model: WorkflowModel) -> SavedWorkflow:
        return SavedWorkflow(
            id=model.id,
            definition=WorkflowDefinition.model_validate(model.definition),
            created_at=model.created_at,
            updated_at=model.updated_at or model.created_at
        )
