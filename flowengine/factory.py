"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from .config import AppConfig, get_config, validate_config
from .core.coordinator import ExecutionCoordinator
from .core.error_recovery import health_checker
from .core.logging import setup_logging
from .core.node_registry import NodeHandlerRegistry
from .core.replay_manager import ReplayManager
from .core.status_tracker import StatusTracker
from .core.workflow_manager import WorkflowManager
from .models.core import utcnow
from .nodes.builtin import register_builtin_nodes
from .storage.database import configure_database, create_tables, get_db
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.registry: Optional[NodeHandlerRegistry] = None
        self.tracker: Optional[StatusTracker] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.coordinator: Optional[ExecutionCoordinator] = None
        self.replay_manager: Optional[ReplayManager] = None
        self.logger = None


app_state = ApplicationState()


def setup_health_checks(coordinator: ExecutionCoordinator, registry: NodeHandlerRegistry, logger) -> None:
    """Register the component health checks."""

    def check_database():
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return {"message": "Database connection successful"}

    def check_coordinator():
        return {
            "message": "Execution coordinator operational",
            "active_executions": len(coordinator.active_executions())
        }

    def check_node_registry():
        return {
            "message": "Node registry operational",
            "registered_node_types": len(registry.known_node_types())
        }

    health_checker.clear()
    timeout = app_state.config.health_check_timeout if app_state.config else 5.0
    health_checker.register_check("database", check_database, timeout=timeout)
    health_checker.register_check("coordinator", check_coordinator, timeout=timeout)
    health_checker.register_check("node_registry", check_node_registry, timeout=timeout)
    logger.info("Health checks registered")


def initialize_database(config: AppConfig, logger) -> None:
    """Configure the engine, create tables, run migrations and prune old history."""
    configure_database(config.database_url, **config.get_database_options())
    create_tables()
    logger.info("Database tables created")

    from .storage.migrations import run_migrations, cleanup_old_executions
    try:
        run_migrations()
        logger.info("Database migrations completed")
    except Exception as e:
        # Indexes and pragmas are optional
        logger.warning(f"Database migrations failed: {str(e)}")

    if config.enable_historical_data_cleanup:
        removed = cleanup_old_executions(config.historical_data_retention_days)
        if removed:
            logger.info(f"Removed {removed} executions older than {config.historical_data_retention_days} days")


def initialize_core_components(config: AppConfig, logger) -> tuple:
    """Build the engine components and register the built-in node handlers."""
    registry = NodeHandlerRegistry()
    tracker = StatusTracker(
        logs_default_page_size=config.logs_default_page_size,
        logs_max_page_size=config.logs_max_page_size
    )
    recovered = tracker.recover_interrupted()
    if recovered:
        logger.warning(f"Marked {len(recovered)} interrupted executions as failed")

    register_builtin_nodes(registry)
    workflow_manager = WorkflowManager(registry)
    coordinator = ExecutionCoordinator.from_config(config, tracker, registry)
    replay_manager = ReplayManager(coordinator, tracker)
    logger.info("Core components initialized")
    return registry, tracker, workflow_manager, coordinator, replay_manager


def graceful_shutdown(coordinator: Optional[ExecutionCoordinator], logger) -> None:
    logger.info("Shutting down workflow engine")
    if coordinator is None:
        return
    try:
        coordinator.shutdown()
    except Exception as e:
        logger.error(f"Error during coordinator shutdown: {str(e)}")


def create_lifespan_handler(config: AppConfig):
    """Create the application lifespan handler for ``config``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        coordinator = None
        try:
            initialize_database(config, logger)
            registry, tracker, workflow_manager, coordinator, replay_manager = \
                initialize_core_components(config, logger)

            app_state.config = config
            app_state.registry = registry
            app_state.tracker = tracker
            app_state.workflow_manager = workflow_manager
            app_state.coordinator = coordinator
            app_state.replay_manager = replay_manager
            app_state.logger = logger

            init_dependencies(
                workflow_manager=workflow_manager,
                coordinator=coordinator,
                tracker=tracker,
                replay_manager=replay_manager,
                registry=registry
            )
            setup_health_checks(coordinator, registry, logger)
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            graceful_shutdown(coordinator, logger)
            raise

        try:
            yield
        finally:
            graceful_shutdown(coordinator, logger)

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Workflow execution engine: bounded, observable and resumable runs of node graphs",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    from .core.middleware import (
        ErrorHandlingMiddleware,
        RequestLoggingMiddleware,
        PerformanceMonitoringMiddleware
    )
    app.add_middleware(ErrorHandlingMiddleware)
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        results = await health_checker.run_all_checks()
        status_code = 200 if results["overall_status"] == "healthy" else 503
        return JSONResponse(
            status_code=status_code,
            content={"service": service, "version": config.app_version, **results}
        )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check for container orchestration; only critical components count."""
        results = {}
        for check_name in ("database", "coordinator"):
            if check_name in health_checker.checks:
                results[check_name] = await health_checker.run_check(check_name)

        ready = bool(results) and all(result.get("status") == "healthy" for result in results.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"ready": ready, "checks": results, "timestamp": utcnow().isoformat()}
        )

    @app.get("/health/live")
    async def liveness_check():
        return {"alive": True, "timestamp": utcnow().isoformat()}


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
