"""Database migrations and history maintenance."""

from datetime import timedelta
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .database import get_database_engine, get_db
from .models import ExecutionModel
from ..models.core import utcnow, ExecutionStatus
from ..core.exceptions import StorageError
from ..core.logging import get_logger

logger = get_logger(__name__)

TERMINAL_STATUSES = [
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
]


def create_indexes_for_execution_queries():
    """Create database indexes for history listings, polling and log pages."""
    engine = get_database_engine()
    try:
        with engine.connect() as connection:
            # History listing per workflow, newest first
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_executions_workflow_created
                ON executions(workflow_id, created_at DESC)
            """))

            # Status filter and retention cleanup
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_executions_status_end
                ON executions(status, end_time)
            """))

            # Log pages for one execution in emission order
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_execution_logs_execution_sequence
                ON execution_logs(execution_id, sequence)
            """))

            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_execution_logs_node
                ON execution_logs(execution_id, node_id, sequence)
            """))

            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_node_executions_execution
                ON node_executions(execution_id, position)
            """))

            connection.commit()
            logger.info("Created database indexes for execution queries")

    except SQLAlchemyError as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise StorageError(f"Failed to create indexes: {str(e)}", operation="create_indexes")


def optimize_database():
    """Apply SQLite pragmas for concurrent readers."""
    engine = get_database_engine()
    if engine.url.get_backend_name() != "sqlite" or engine.url.database in (None, "", ":memory:"):
        return
    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA cache_size=10000"))
            connection.execute(text("PRAGMA optimize"))
            connection.commit()
            logger.info("Applied SQLite optimizations")
    except SQLAlchemyError as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise StorageError(f"Failed to optimize database: {str(e)}", operation="optimize")


def run_migrations():
    """Run all migrations."""
    logger.info("Starting database migrations")
    create_indexes_for_execution_queries()
    optimize_database()
    logger.info("Database migrations completed successfully")


def cleanup_old_executions(retention_days: int) -> int:
    """Delete finished executions older than ``retention_days``.

    Returns:
        Number of executions removed
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    db = next(get_db())
    try:
        old_runs = db.query(ExecutionModel).filter(
            ExecutionModel.status.in_(TERMINAL_STATUSES),
            ExecutionModel.end_time < cutoff
        ).all()
        for run in old_runs:
            db.delete(run)
        db.commit()
        logger.info(f"Removed {len(old_runs)} executions finished before {cutoff.isoformat()}")
        return len(old_runs)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to clean up executions: {str(e)}")
        raise StorageError(f"Failed to clean up executions: {str(e)}", operation="cleanup", table="executions")
    finally:
        db.close()
