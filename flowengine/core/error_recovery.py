"""Retry policies for storage writes and handler attempts, plus component health checks."""

import asyncio
import random
import time
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Optional, Type

from .exceptions import StorageError, WorkflowEngineError
from .logging import ErrorRecoveryLogger, get_logger
from ..models.core import utcnow


logger = get_logger(__name__)


class RetryConfig:
    """Exponential backoff with optional jitter.

    ``with_retry`` uses the whole policy for storage writes. The node runner
    only asks it for delays, since a handler's exceptions are retried
    whatever their type.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Iterable[Type[Exception]]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or (StorageError,))

    @classmethod
    def for_storage(cls) -> "RetryConfig":
        """Short, bounded backoff for database commits."""
        return cls(max_attempts=3, base_delay=0.1, max_delay=1.0, retryable_exceptions=(StorageError,))

    @classmethod
    def for_node(cls, retries: int, delay: float) -> "RetryConfig":
        """Policy for a node allowed ``retries`` extra attempts after the first."""
        return cls(max_attempts=retries + 1, base_delay=delay, max_delay=30.0,
                   retryable_exceptions=(Exception,))

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(exception, WorkflowEngineError) and not exception.recoverable:
            return False
        return isinstance(exception, self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Delay to sleep after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Retry the decorated call according to ``config``."""
    policy = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        recovery_logger = ErrorRecoveryLogger(func.__name__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    if not policy.should_retry(e, attempt):
                        if attempt > 1:
                            recovery_logger.log_recovery_failure(func.__name__, e, attempt)
                        raise
                    recovery_logger.log_recovery_attempt(func.__name__, e, attempt, policy.max_attempts)
                    time.sleep(policy.get_delay(attempt))
                    attempt += 1
                    continue
                if attempt > 1:
                    recovery_logger.log_recovery_success(func.__name__, attempt)
                return result

        return wrapper

    return decorator


class HealthChecker:
    """Named component checks run by the health endpoints and the ``health`` command.

    A check returns a message string or a dict merged into its result. Plain
    functions run in a worker thread so that the timeout applies to them too.
    """

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        self.checks[name] = {"func": check_func, "timeout": timeout}
        logger.info(f"Registered health check: {name}")

    def clear(self):
        self.checks.clear()
        self.last_results.clear()

    def _record(self, name: str, status: str, message: str, started: float, **extra) -> Dict[str, Any]:
        result = {
            "status": status,
            "message": message,
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
            "timestamp": utcnow().isoformat(),
            **extra
        }
        self.last_results[name] = result
        return result

    async def run_check(self, name: str) -> Dict[str, Any]:
        check = self.checks.get(name)
        if check is None:
            return {"status": "error", "message": f"Health check '{name}' not found",
                    "timestamp": utcnow().isoformat()}

        func, timeout = check["func"], check["timeout"]
        started = time.monotonic()
        try:
            if asyncio.iscoroutinefunction(func):
                outcome = await asyncio.wait_for(func(), timeout=timeout)
            else:
                outcome = await asyncio.wait_for(asyncio.to_thread(func), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Health check '{name}' timed out after {timeout}s")
            return self._record(name, "timeout", f"Health check timed out after {timeout}s", started)
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {str(e)}")
            return self._record(name, "unhealthy", str(e), started, error_type=type(e).__name__)

        if isinstance(outcome, dict):
            details = dict(outcome)
            return self._record(name, "healthy", details.pop("message", "Check passed"), started, **details)
        return self._record(name, "healthy", outcome if isinstance(outcome, str) else "Check passed", started)

    async def run_all_checks(self) -> Dict[str, Any]:
        results = {name: await self.run_check(name) for name in list(self.checks)}
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": utcnow().isoformat()
        }


health_checker = HealthChecker()
