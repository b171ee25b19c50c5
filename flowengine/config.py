"""Configuration management for the workflow execution engine.

Every ``AppConfig`` field can be set from the environment as
``FLOWENGINE_<FIELD_NAME>``; list fields take comma separated values.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


ENV_PREFIX = "FLOWENGINE_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application
    app_name: str = Field(default="Workflow Execution Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database
    database_url: str = Field(default="sqlite:///./flowengine.db", description="Database connection URL")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")
    database_pool_size: int = Field(default=5, ge=1, description="Database connection pool size")
    database_max_overflow: int = Field(default=10, ge=0, description="Database connection pool overflow")

    # Scheduling
    max_concurrent_executions: int = Field(
        default=10, ge=1, description="Executions whose scheduling loops may run at once"
    )
    default_max_concurrency: int = Field(
        default=2, ge=1, description="Nodes in flight per execution when the workflow settings do not say"
    )
    execution_timeout: float = Field(default=300, gt=0, description="Default execution timeout in seconds")
    node_timeout: float = Field(default=60.0, gt=0, description="Default node timeout in seconds")
    node_max_retries: int = Field(default=0, ge=0, description="Handler retries after a node exception")
    node_retry_delay: float = Field(default=0.5, ge=0, description="Base delay in seconds between handler retries")
    scheduler_poll_interval: float = Field(
        default=0.05, gt=0, description="Seconds the scheduling loop waits before re-checking cancellation"
    )

    # Execution log stream
    logs_default_page_size: int = Field(default=200, ge=1, description="Default page size for execution logs")
    logs_max_page_size: int = Field(default=1000, ge=1, description="Maximum page size for execution logs")

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10 * 1024 * 1024, ge=1, description="Log file size in bytes before rotation")
    log_backup_count: int = Field(default=5, ge=0, description="Rotated log files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log lines")

    # Health and monitoring
    health_check_timeout: float = Field(default=5.0, gt=0, description="Health check timeout in seconds")
    slow_request_threshold: float = Field(default=5.0, gt=0, description="Slow request threshold in seconds")
    enable_performance_monitoring: bool = Field(default=True, description="Enable the timing middleware")

    # CORS
    cors_origins: List[str] = Field(default=["*"], description="CORS allowed origins")
    cors_methods: List[str] = Field(default=["GET", "POST", "PUT", "DELETE"], description="CORS allowed methods")

    # History
    enable_historical_data_cleanup: bool = Field(default=True, description="Prune old executions on startup")
    historical_data_retention_days: int = Field(default=30, ge=1, description="Days of execution history to keep")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split('://')[0].lower().split('+')[0]
        supported = [db_type.value for db_type in DatabaseType]
        if scheme not in supported:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported}")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def normalise_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(self.database_url.split('://')[0].lower().split('+')[0])

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    def get_database_connect_args(self) -> Dict[str, Any]:
        """SQLite connections are shared with the scheduler and handler threads."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_database_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``configure_database``."""
        return {
            "echo": self.database_echo,
            "connect_args": self.get_database_connect_args(),
            "pool_size": self.database_pool_size,
            "max_overflow": self.database_max_overflow,
        }

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from FLOWENGINE_* environment variables.

        Unset variables keep the field default; values are converted and
        validated by the model itself.
        """
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if getattr(field.annotation, "__origin__", None) in (list, List):
                values[name] = [item.strip() for item in raw.split(',') if item.strip()]
            else:
                values[name] = raw
        return cls(**values)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load a dotenv file (``config_file``, else ``.env`` when present) and build the configuration."""
    global _config
    from dotenv import load_dotenv

    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def _ensure_directory(path: str, purpose: str, errors: List[str]) -> None:
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            errors.append(f"Cannot create {purpose} directory {directory}: {e}")


def validate_config(config: AppConfig) -> None:
    """Checks that need the filesystem or more than one field."""
    errors: List[str] = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        _ensure_directory(config.database_url.split(":///", 1)[-1], "database", errors)
    if config.log_file:
        _ensure_directory(config.log_file, "log", errors)

    if config.logs_default_page_size > config.logs_max_page_size:
        errors.append("Default log page size cannot exceed the maximum log page size")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True
    )


def get_production_config() -> AppConfig:
    return AppConfig(
        log_level=LogLevel.INFO,
        structured_logging=True,
        cors_origins=[]
    )


def get_testing_config() -> AppConfig:
    """In-memory database, short timeouts and no history pruning."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_executions=4,
        execution_timeout=30,
        node_timeout=10.0,
        node_retry_delay=0.01,
        enable_historical_data_cleanup=False
    )
