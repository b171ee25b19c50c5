"""Application startup script and CLI interface."""

import sys
import json
import argparse
import asyncio

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.exceptions import WorkflowEngineError
from .core.logging import get_logger, setup_logging
from .models.core import ExecutionStatus, WorkflowDefinition


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Workflow Execution Engine - bounded, observable and resumable workflow runs"
    )

    parser.add_argument("--host", help="Host to bind the server to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind the server to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a dotenv configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--max-concurrent-executions",
        type=int,
        help="Maximum number of executions scheduled at once"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the workflow engine server")
    run_parser.add_argument("--workers", type=int, default=1, help="Number of worker processes (default: 1)")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("migrate", help="Create query indexes and apply pragmas")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")
    cleanup_parser = db_subparsers.add_parser("cleanup", help="Delete finished executions older than N days")
    cleanup_parser.add_argument("--days", type=int, help="Retention in days (default: configured retention)")

    health_parser = subparsers.add_parser("health", help="Run health checks")
    health_parser.add_argument("--detailed", action="store_true", help="Run detailed health checks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    execute_parser = subparsers.add_parser("execute", help="Run a workflow definition file locally")
    execute_parser.add_argument("file", help="Path to a workflow definition JSON file")
    execute_parser.add_argument("--trigger", help="Trigger data as a JSON object")
    execute_parser.add_argument("--timeout", type=float, help="Seconds to wait for the run to finish")

    return parser


PRESETS = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}

# Flags whose argparse destination is the AppConfig field of the same name
OVERRIDABLE_FIELDS = (
    "host",
    "port",
    "reload",
    "database_url",
    "log_level",
    "log_file",
    "debug",
    "max_concurrent_executions",
)


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Start from a preset (or the environment) and apply the command line flags on top."""
    config = PRESETS[args.env]() if args.env else load_config(args.config)

    overrides = {
        field: getattr(args, field)
        for field in OVERRIDABLE_FIELDS
        if getattr(args, field, None)
    }
    if not overrides:
        return config
    return AppConfig.model_validate({**config.model_dump(), **overrides})


def run_server(config: AppConfig, workers: int = 1):
    """Run the workflow engine server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()
    if workers > 1:
        # Worker processes rebuild the app from the environment
        uvicorn.run("flowengine.main:app", workers=workers, **uvicorn_config)
    else:
        uvicorn.run(create_app(config), **uvicorn_config)


def run_database_command(command: str, config: AppConfig, days=None):
    """Run one of the ``db`` subcommands against the configured database."""
    from .storage.database import configure_database, create_tables, drop_tables
    from .storage.migrations import run_migrations, cleanup_old_executions

    logger = get_logger(__name__)
    configure_database(config.database_url, **config.get_database_options())

    if command == "cleanup":
        retention = days if days is not None else config.historical_data_retention_days
        removed = cleanup_old_executions(retention)
        print(f"Removed {removed} executions older than {retention} days")
        return

    steps = {
        "init": [create_tables],
        "migrate": [create_tables, run_migrations],
        "reset": [drop_tables, create_tables, run_migrations],
    }[command]
    for step in steps:
        logger.info(f"db {command}: {step.__name__}")
        step()
    logger.info(f"db {command} completed")


def _start_components(config: AppConfig):
    from .factory import initialize_database, initialize_core_components

    logger = get_logger(__name__)
    initialize_database(config, logger)
    return initialize_core_components(config, logger)


async def run_health_check(config: AppConfig, detailed: bool = False):
    """Run health checks."""
    from .core.error_recovery import health_checker
    from .factory import setup_health_checks

    logger = get_logger(__name__)

    if not detailed:
        logger.info("Running basic health check...")
        print(f"Service: {config.app_name}")
        print("Status: Running")
        print(f"Version: {config.app_version}")
        return

    logger.info("Running detailed health checks...")
    registry, _, _, coordinator, _ = _start_components(config)
    try:
        setup_health_checks(coordinator, registry, logger)
        results = await health_checker.run_all_checks()
    finally:
        coordinator.shutdown()

    print(f"Overall Status: {results['overall_status']}")
    print(f"Timestamp: {results['timestamp']}")
    for check_name, result in results.get('checks', {}).items():
        status = result.get('status', 'unknown')
        message = result.get('message', 'No message')
        print(f"  {check_name}: {status} - {message}")

    if results['overall_status'] != 'healthy':
        sys.exit(1)


def execute_workflow_file(config: AppConfig, path: str, trigger=None, timeout=None) -> int:
    """Run a definition file with the built-in nodes and print the final record.

    Returns the process exit code: 0 when the run completed.
    """
    with open(path, encoding="utf-8") as fh:
        definition = WorkflowDefinition.model_validate(json.load(fh))
    trigger_data = json.loads(trigger) if trigger else {}

    _, _, _, coordinator, _ = _start_components(config)
    try:
        record = coordinator.execute("local", definition, trigger_data, timeout=timeout)
    finally:
        coordinator.shutdown()

    print(record.model_dump_json(by_alias=True, indent=2))
    return 0 if record.status == ExecutionStatus.COMPLETED else 1


SHOWN_SETTINGS = (
    "app_name", "app_version", "debug", "host", "port", "database_url", "log_level",
    "max_concurrent_executions", "default_max_concurrency", "node_timeout",
    "execution_timeout", "node_max_retries",
)


def show_configuration(config: AppConfig):
    print("Current Configuration:")
    values = config.model_dump(mode="json")
    for name in SHOWN_SETTINGS:
        print(f"  {name}: {values[name]}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)
        validate_config(config)

        if args.command in ("db", "health", "execute"):
            setup_logging(level=config.log_level.value, log_file=config.log_file,
                          structured=config.structured_logging)

        if args.command == "run" or args.command is None:
            run_server(config, getattr(args, 'workers', 1))

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config, getattr(args, 'days', None))
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "health":
            asyncio.run(run_health_check(config, args.detailed))

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "execute":
            sys.exit(execute_workflow_file(config, args.file, args.trigger, args.timeout))

        else:
            parser.print_help()

    except (OSError, ValueError, WorkflowEngineError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
