"""SQLAlchemy database models for the workflow engine."""

from sqlalchemy import (
    Column, String, DateTime, Text, JSON, Integer, Float, Boolean, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from .database import Base
from ..models.core import utcnow


class WorkflowModel(Base):
    """Database model for saved workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    definition = Column(JSON, nullable=False)  # Complete WorkflowDefinition
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "executions"

    id = Column(String, primary_key=True)
    # Not a foreign key: executions outlive their saved workflow and local runs have none
    workflow_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    mode = Column(String, nullable=False, default="RUN")
    parent_execution_id = Column(String)
    from_node_id = Column(String)
    scope = Column(JSON)
    definition = Column(JSON, nullable=False)  # Snapshot taken at initiate
    trigger_data = Column(JSON)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    duration = Column(Float)
    final_result = Column(JSON)
    errors = Column(JSON)
    primary_error = Column(JSON)
    metrics = Column(JSON)
    cancel_reason = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    node_executions = relationship(
        "NodeExecutionModel",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="NodeExecutionModel.position"
    )
    logs = relationship("ExecutionLogModel", back_populates="execution", cascade="all, delete-orphan")


class NodeExecutionModel(Base):
    """Database model for the outcome of one node inside one execution."""
    __tablename__ = "node_executions"
    __table_args__ = (UniqueConstraint("execution_id", "node_id", name="uq_node_execution"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("executions.id"), nullable=False)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    position = Column(Integer, nullable=False, default=0)  # Definition order
    status = Column(String, nullable=False)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    duration = Column(Float)
    inputs = Column(JSON)
    outputs = Column(JSON)
    error = Column(JSON)
    attempts = Column(Integer, default=0)
    skip_reason = Column(String)
    reused = Column(Boolean, default=False)

    execution = relationship("ExecutionModel", back_populates="node_executions")


class ExecutionLogModel(Base):
    """Database model for execution log lines."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sequence = Column(Integer, nullable=False, index=True)
    execution_id = Column(String, ForeignKey("executions.id"), nullable=False)
    node_id = Column(String)
    level = Column(String, nullable=False)  # DEBUG, INFO, WARN, ERROR
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=utcnow)

    execution = relationship("ExecutionModel", back_populates="logs")


class NodeTypeModel(Base):
    """Database model for registered node handlers."""
    __tablename__ = "node_types"

    type = Column(String, primary_key=True)
    description = Column(Text)
    handler_module = Column(String, nullable=False)  # Module path where handler is defined
    handler_name = Column(String, nullable=False)    # Handler name within the module
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
