"""
Request context and the worker pool that bounds /api/query by a deadline.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from contextvars import ContextVar, copy_context
from typing import Any, Callable, Optional

_LOGGER = logging.getLogger("runtime")

_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")

_QUERY_POOL: Optional[ThreadPoolExecutor] = None
_POOL_LOCK = threading.Lock()
_QUERY_WORKERS = max(2, int(os.getenv("QUERY_MAX_WORKERS", "8")))


def get_request_id() -> str:
    return _REQUEST_ID.get() or "-"


def set_request_id(request_id: Optional[str]) -> str:
    rid = (request_id or "").strip() or str(uuid.uuid4())
    _REQUEST_ID.set(rid)
    return rid


def clear_context() -> None:
    _REQUEST_ID.set("-")


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit one JSON log line tagged with the current request id."""
    payload = {"event": event, "request_id": get_request_id(), **fields}
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))


def _query_pool() -> ThreadPoolExecutor:
    global _QUERY_POOL
    with _POOL_LOCK:
        if _QUERY_POOL is None:
            _QUERY_POOL = ThreadPoolExecutor(max_workers=_QUERY_WORKERS, thread_name_prefix="query-worker")
        return _QUERY_POOL


def run_with_timeout(fn: Callable[[], Any], timeout_s: float) -> Any:
    """Run fn on the query pool with the caller's request id still set.

    Raises concurrent.futures.TimeoutError when the deadline passes. A worker
    that is already running keeps going; its result is dropped.
    """
    future = _query_pool().submit(copy_context().run, fn)
    try:
        return future.result(timeout=max(0.05, float(timeout_s)))
    except FuturesTimeoutError:
        future.cancel()
        raise


def shutdown_shared_executor(wait: bool = False) -> None:
    global _QUERY_POOL
    with _POOL_LOCK:
        pool, _QUERY_POOL = _QUERY_POOL, None
    if pool is not None:
        pool.shutdown(wait=wait, cancel_futures=True)
        _LOGGER.info("query_pool_shutdown")
