"""Node Runner: invokes one node handler under a timeout and cancellation context."""

import inspect
import threading
import time
from concurrent.futures import Future, wait
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic_core import to_jsonable_python

from ..models.core import (
    ErrorCause, NodeError, NodeExecutionRecord, NodeLogLevel, NodeLogLine, NodeSpec,
    NodeStatus, NodeTestResult, utcnow
)
from .error_recovery import RetryConfig
from .exceptions import NodeCancelledError, NodeTimeoutError
from .input_resolver import ResolvedInput
from .logging import get_logger

logger = get_logger(__name__)

LogSink = Callable[[str, NodeLogLevel, str], None]


class CancellationToken:
    """Cancellation signal shared by every node context of one execution.

    The first ``cancel`` wins and fixes the cause: ``CANCELLED`` for an
    external request, ``TIMEOUT`` when the execution deadline expired.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._cause: Optional[ErrorCause] = None
        self._reason: Optional[str] = None

    def cancel(self, cause: ErrorCause = ErrorCause.CANCELLED, reason: Optional[str] = None) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._cause = cause
            self._reason = reason
            self._event.set()
            return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> Optional[ErrorCause]:
        return self._cause

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to ``timeout`` seconds; True when cancelled."""
        return self._event.wait(timeout)


class NodeContext:
    """Everything a handler may need besides its input value.

    Handlers log through ``context.info(...)`` and friends; long running
    handlers should poll ``context.is_cancelled`` or call
    ``context.check_cancelled()``.
    """

    def __init__(
        self,
        node: NodeSpec,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        credentials: Optional[Dict[str, str]] = None,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        retries: int = 0,
        retry_delay: float = 0.5,
        upstream_outputs: Optional[Dict[str, Any]] = None,
        log_sink: Optional[LogSink] = None
    ):
        self.node = node
        self.node_id = node.id
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.config = config if config is not None else dict(node.config)
        self.credentials = credentials if credentials is not None else dict(node.credentials)
        self.token = token or CancellationToken()
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.upstream_outputs = upstream_outputs or {}
        self.logs: List[NodeLogLine] = []
        self._log_sink = log_sink
        self._closed = False
        self._lock = threading.Lock()

    def log(self, level: NodeLogLevel, message: str):
        line = NodeLogLine(level=level, message=str(message))
        with self._lock:
            if self._closed:
                logger.debug(f"Dropping late log line from node {self.node_id}: {message}")
                return
            self.logs.append(line)
            sink = self._log_sink
        if sink is not None:
            sink(self.node_id, level, line.message)

    def debug(self, message: str):
        self.log(NodeLogLevel.DEBUG, message)

    def info(self, message: str):
        self.log(NodeLogLevel.INFO, message)

    def warn(self, message: str):
        self.log(NodeLogLevel.WARN, message)

    def error(self, message: str):
        self.log(NodeLogLevel.ERROR, message)

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled

    def check_cancelled(self):
        """Raise if the execution was cancelled or timed out."""
        if not self.token.is_cancelled:
            return
        if self.token.cause == ErrorCause.TIMEOUT:
            raise NodeTimeoutError(f"Node '{self.node_id}' stopped: execution timed out",
                                   node_id=self.node_id, execution_id=self.execution_id)
        raise NodeCancelledError(f"Node '{self.node_id}' cancelled",
                                 node_id=self.node_id, execution_id=self.execution_id)

    def close(self):
        """Stop accepting log lines; abandoned handler threads may still call ``log``."""
        with self._lock:
            self._closed = True


class NodeRunner:
    """Runs each node handler call on its own daemon thread.

    The caller's thread waits in ``poll_interval`` slices so it observes the
    node deadline and the cancellation token promptly. The deadline starts
    with the handler thread, and the caller bounds concurrency. A handler
    thread cannot be killed: on timeout or cancellation it is abandoned and
    its eventual result is discarded.
    """

    def __init__(self, default_timeout: Optional[float] = 60.0, poll_interval: float = 0.05):
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self._threads: Set[threading.Thread] = set()
        self._lock = threading.Lock()
        logger.info(f"NodeRunner initialized with default_timeout={default_timeout}")

    @property
    def running_handlers(self) -> int:
        """Handler threads still alive, abandoned ones included."""
        with self._lock:
            self._threads = {thread for thread in self._threads if thread.is_alive()}
            return len(self._threads)

    def run(self, ctx: NodeContext, handler: Optional[Callable], resolved_input: ResolvedInput) -> NodeExecutionRecord:
        """Invoke ``handler`` and normalise the outcome into a terminal record."""
        node = ctx.node
        start_time = utcnow()
        started = time.monotonic()
        inputs = to_jsonable_python(resolved_input.value, fallback=str)

        def finish(status: NodeStatus, attempts: int, outputs: Any = None,
                   error: Optional[NodeError] = None) -> NodeExecutionRecord:
            end_time = max(utcnow(), start_time)
            return NodeExecutionRecord(
                node_id=node.id,
                node_type=node.type,
                status=status,
                start_time=start_time,
                end_time=end_time,
                duration=round((time.monotonic() - started) * 1000, 3),
                inputs=inputs,
                outputs=outputs,
                error=error,
                attempts=attempts
            )

        if handler is None:
            message = f"No handler registered for node type '{node.type}'"
            ctx.error(message)
            return finish(NodeStatus.FAILED, 0, error=NodeError(message=message, cause=ErrorCause.UNKNOWN_NODE_TYPE))

        timeout = ctx.timeout if ctx.timeout is not None else self.default_timeout
        retry_config = RetryConfig.for_node(ctx.retries, ctx.retry_delay)
        attempt = 0

        while True:
            attempt += 1
            if ctx.is_cancelled:
                return finish(NodeStatus.FAILED, attempt - 1, error=self._cancel_error(ctx))
            try:
                output = self._invoke(ctx, handler, resolved_input.value, timeout)
                outputs = to_jsonable_python(output, fallback=str)
                ctx.debug(f"Node '{node.label}' completed on attempt {attempt}")
                return finish(NodeStatus.SUCCESS, attempt, outputs=outputs)

            except NodeTimeoutError as e:
                ctx.error(e.message)
                return finish(NodeStatus.FAILED, attempt, error=NodeError(message=e.message, cause=ErrorCause.TIMEOUT))

            except NodeCancelledError as e:
                ctx.warn(e.message)
                return finish(NodeStatus.FAILED, attempt, error=self._cancel_error(ctx, e.message))

            except Exception as e:
                message = str(e) or type(e).__name__
                if attempt <= ctx.retries:
                    delay = retry_config.get_delay(attempt)
                    ctx.warn(f"Attempt {attempt} failed: {message}; retrying in {delay:.2f}s")
                    if ctx.token.wait(delay):
                        return finish(NodeStatus.FAILED, attempt, error=self._cancel_error(ctx))
                    continue
                logger.warning(f"Node {node.id} failed after {attempt} attempt(s): {message}")
                ctx.error(f"Node '{node.label}' failed: {message}")
                return finish(NodeStatus.FAILED, attempt,
                              error=NodeError(message=message, cause=ErrorCause.NODE_EXCEPTION))

    def _start_handler(self, ctx: NodeContext, handler: Callable, value: Any) -> Future:
        future: Future = Future()
        kwargs = self._call_kwargs(handler, ctx)

        def target():
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = handler(value, **kwargs)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)

        thread = threading.Thread(target=target, name=f"node-handler-{ctx.node_id}", daemon=True)
        with self._lock:
            self._threads = {t for t in self._threads if t.is_alive()}
            self._threads.add(thread)
        thread.start()
        return future

    def _invoke(self, ctx: NodeContext, handler: Callable, value: Any, timeout: Optional[float]) -> Any:
        future = self._start_handler(ctx, handler, value)
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            slice_timeout = self.poll_interval
            if deadline is not None:
                slice_timeout = max(0.0, min(slice_timeout, deadline - time.monotonic()))
            done, _ = wait([future], timeout=slice_timeout)
            if done:
                return future.result()
            if ctx.is_cancelled:
                future.cancel()
                ctx.check_cancelled()
            if deadline is not None and time.monotonic() >= deadline:
                future.cancel()
                raise NodeTimeoutError(
                    f"Node '{ctx.node_id}' timed out after {timeout} seconds",
                    timeout=timeout, node_id=ctx.node_id, execution_id=ctx.execution_id
                )

    @staticmethod
    def _call_kwargs(handler: Callable, ctx: NodeContext) -> Dict[str, Any]:
        kwargs = {"config": ctx.config, "credentials": ctx.credentials, "context": ctx}
        try:
            params = inspect.signature(handler).parameters
        except (TypeError, ValueError):
            return kwargs
        if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in params.values()):
            return kwargs
        return {key: value for key, value in kwargs.items() if key in params}

    @staticmethod
    def _cancel_error(ctx: NodeContext, message: Optional[str] = None) -> NodeError:
        if ctx.token.cause == ErrorCause.TIMEOUT:
            return NodeError(message=message or f"Node '{ctx.node_id}' stopped: execution timed out",
                             cause=ErrorCause.TIMEOUT)
        return NodeError(message=message or f"Node '{ctx.node_id}' cancelled", cause=ErrorCause.CANCELLED)

    def test_node(self, ctx: NodeContext, handler: Optional[Callable], resolved_input: ResolvedInput) -> NodeTestResult:
        """Run one handler in isolation, outside any execution."""
        try:
            record = self.run(ctx, handler, resolved_input)
        finally:
            ctx.close()
        return NodeTestResult(
            success=record.status == NodeStatus.SUCCESS,
            status=record.status,
            output=record.outputs,
            logs=list(ctx.logs),
            error=record.error,
            duration=record.duration
        )

    def shutdown(self, wait_for_handlers: bool = False, timeout: float = 5.0):
        """Optionally wait for live handler threads; daemon threads never block exit."""
        if wait_for_handlers:
            deadline = time.monotonic() + timeout
            with self._lock:
                threads = list(self._threads)
            for thread in threads:
                thread.join(max(0.0, deadline - time.monotonic()))
        remaining = self.running_handlers
        if remaining:
            logger.warning(f"NodeRunner shutdown with {remaining} handler thread(s) still running")
        logger.info("NodeRunner shutdown completed")
