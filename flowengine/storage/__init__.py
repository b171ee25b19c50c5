"""Database models and storage layer."""

from .database import (
    Base, SessionLocal, configure_database, get_database_engine, reset_database_engine,
    get_db, create_tables, drop_tables
)
from .models import (
    WorkflowModel, ExecutionModel, NodeExecutionModel, ExecutionLogModel, NodeTypeModel
)

__all__ = [
    "Base",
    "SessionLocal",
    "configure_database",
    "get_database_engine",
    "reset_database_engine",
    "get_db",
    "create_tables",
    "drop_tables",
    "WorkflowModel",
    "ExecutionModel",
    "NodeExecutionModel",
    "ExecutionLogModel",
    "NodeTypeModel",
]
