"""
Wrappers that pair operation start/end calls around a unit of work.

Each helper ends the span it started on every exit path and re-raises the
caller's exception unchanged.
"""

import functools
import inspect
import time
from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any, TypeVar

from .logging import StructuredLogger, get_structured_logger

T = TypeVar("T")


def _resolve(logger: StructuredLogger | None) -> StructuredLogger:
    return logger or get_structured_logger()


def _error_text(error: BaseException) -> str:
    try:
        text = str(error)
    except Exception:
        text = ""
    return text or type(error).__name__


def traced(
    name: str | None = None,
    *,
    category: str = "method",
    logger: StructuredLogger | None = None,
):
    """Wrap a sync or async callable in method entry/exit logging.

    Usable as ``traced()(func)`` or as a decorator. Arguments are logged
    redacted and truncated; a raised exception ends the span as failed.
    """

    def decorator(func: Callable) -> Callable:
        method_name = name or func.__qualname__

        def _params(args: tuple, kwargs: dict) -> dict[str, Any] | None:
            if not args and not kwargs:
                return None
            return {"args": list(args), **kwargs}

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            log = _resolve(logger)
            span_id = log.log_method_entry(method_name, _params(args, kwargs), category)
            try:
                result = await func(*args, **kwargs)
            except BaseException as e:
                log.end_operation(span_id, {"mcp.method.result": "error"}, error=_error_text(e))
                raise
            log.log_method_exit(method_name, result, category, span_id)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            log = _resolve(logger)
            span_id = log.log_method_entry(method_name, _params(args, kwargs), category)
            try:
                result = func(*args, **kwargs)
            except BaseException as e:
                log.end_operation(span_id, {"mcp.method.result": "error"}, error=_error_text(e))
                raise
            log.log_method_exit(method_name, result, category, span_id)
            return result

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator


@contextmanager
def operation(
    operation_name: str,
    attributes: Mapping[str, Any] | None = None,
    *,
    logger: StructuredLogger | None = None,
) -> Iterator[dict[str, Any]]:
    """Run a block inside an operation.

    Yields a dict the block may fill with result attributes; they are attached
    when the operation ends.
    """
    log = _resolve(logger)
    span_id = log.start_operation(operation_name, attributes)
    result_attributes: dict[str, Any] = {}
    try:
        yield result_attributes
    except BaseException as e:
        log.end_operation(span_id, {**result_attributes, "success": False}, error=_error_text(e))
        raise
    log.end_operation(span_id, result_attributes)


async def run_task(
    task_name: str,
    task: Callable[[], Awaitable[T]],
    context: Mapping[str, Any] | None = None,
    *,
    logger: StructuredLogger | None = None,
) -> T:
    """Await ``task`` inside an ``mcp.task.<name>`` operation."""
    with operation(f"mcp.task.{task_name}", context, logger=logger) as result:
        result["taskName"] = task_name
        return await task()


async def execute_tool(
    tool_name: str,
    args: Mapping[str, Any],
    execution: Callable[[], Awaitable[T]],
    *,
    logger: StructuredLogger | None = None,
) -> T:
    """Await a tool execution with start, completion and failure records on ``tools``."""
    log = _resolve(logger)
    span_id = log.start_operation(
        "mcp.tool.execution",
        {"mcp.tool.name": tool_name, "argumentCount": len(args)},
    )
    log.info({"message": f"Executing tool: {tool_name}", "toolName": tool_name, "args": dict(args)}, "tools")

    start = time.perf_counter()
    try:
        result = await execution()
    except Exception as e:
        duration_ms = (time.perf_counter() - start) * 1000
        log.end_operation(span_id, {"mcp.tool.name": tool_name, "success": False}, error=_error_text(e))
        log.error(
            {
                "message": f"Tool execution failed: {tool_name}",
                "toolName": tool_name,
                "durationMs": round(duration_ms, 3),
                "error": _error_text(e),
            },
            "tools",
        )
        raise
    except BaseException as e:
        log.end_operation(span_id, {"mcp.tool.name": tool_name, "success": False}, error=_error_text(e))
        raise

    duration_ms = (time.perf_counter() - start) * 1000
    log.end_operation(span_id, {"mcp.tool.name": tool_name, "resultType": type(result).__name__})
    log.info(
        {
            "message": f"Tool execution completed: {tool_name}",
            "toolName": tool_name,
            "durationMs": round(duration_ms, 3),
            "success": True,
        },
        "tools",
    )
    return result


async def execute_endpoint(
    endpoint: str,
    handler: Callable[[Any], Awaitable[T] | T],
    params: Any = None,
    *,
    request_id: str | int | None = None,
    logger: StructuredLogger | None = None,
) -> T:
    """Call an MCP endpoint handler between endpoint entry and operation end.

    Handler failures are logged with ``log_server_error`` and re-raised.
    """
    log = _resolve(logger)
    span_id = log.log_endpoint_entry(endpoint, request_id, params)
    try:
        result = handler(params)
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        log.log_server_error(e, f"endpoint:{endpoint}", {"requestId": request_id})
        log.end_operation(span_id, {"mcp.method.result": "error"}, error=_error_text(e))
        raise
    except BaseException as e:
        log.end_operation(span_id, {"mcp.method.result": "cancelled"}, error=_error_text(e))
        raise
    log.end_operation(
        span_id, {"mcp.method.result": "void" if result is None else "success"}
    )
    return result


async def measure_slow_operation(
    operation_name: str,
    func: Callable[[], Awaitable[T]],
    threshold_ms: float = 1000,
    *,
    logger: StructuredLogger | None = None,
) -> T:
    """Await ``func``; warn on ``performance`` if it takes longer than ``threshold_ms``."""
    log = _resolve(logger)
    start = time.perf_counter()
    try:
        result = await func()
    except Exception as e:
        log.error(
            {
                "message": f"Failed operation: {operation_name}",
                "operationName": operation_name,
                "durationMs": round((time.perf_counter() - start) * 1000, 3),
                "error": _error_text(e),
            },
            "performance",
        )
        raise

    duration_ms = (time.perf_counter() - start) * 1000
    if duration_ms > threshold_ms:
        log.warning(
            {
                "message": f"Slow operation detected: {operation_name}",
                "operationName": operation_name,
                "durationMs": round(duration_ms, 3),
                "thresholdMs": threshold_ms,
            },
            "performance",
        )
    return result


__all__ = [
    "execute_endpoint",
    "execute_tool",
    "measure_slow_operation",
    "operation",
    "run_task",
    "traced",
]
