"""
Idempotency for write-type tool handlers.

Handlers that mutate state require the model to pass a ``meta`` object:

    {"meta": {"idempotency_key": "exp_B456_001", "request_id": "req_a1b2c3"}}

Both fields are validated before the handler runs. A repeated idempotency
key returns the result stored the first time, flagged as coming from cache,
and the handler is not called again.
"""

import asyncio
import functools
import inspect
import re
import threading
from datetime import UTC, datetime
from typing import Any

from toolflow.config.logging import get_logger
from toolflow.tools.models import ExecutionContext
from toolflow.tools.registry import ToolHandler

logger = get_logger(__name__)

IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[a-z_]+_[A-Z][0-9]{3,6}_[0-9]+$")
REQUEST_ID_PATTERN = re.compile(r"^req_[a-zA-Z0-9]{6,12}$")


class IdempotencyError(ValueError):
    """Raised when a write request carries missing or malformed idempotency metadata."""


class IdempotencyStore:
    """In-memory record of completed write requests, keyed by idempotency key."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, idempotency_key: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(idempotency_key)
            return dict(record) if record is not None else None

    def put(self, idempotency_key: str, request_id: str, result: Any) -> None:
        with self._lock:
            self._records[idempotency_key] = {
                "request_id": request_id,
                "result": result,
                "timestamp": datetime.now(UTC).isoformat(),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def validate_write_meta(parameters: dict[str, Any]) -> tuple[str, str]:
    """
    Extract and validate the idempotency metadata of a write request.

    Returns:
        (idempotency_key, request_id)

    Raises:
        IdempotencyError: If either field is missing or malformed
    """
    meta = parameters.get("meta")
    if not isinstance(meta, dict) or not meta.get("idempotency_key") or not meta.get("request_id"):
        raise IdempotencyError("Write operations require meta.idempotency_key and meta.request_id")

    idempotency_key = meta["idempotency_key"]
    request_id = meta["request_id"]
    if not isinstance(idempotency_key, str) or not IDEMPOTENCY_KEY_PATTERN.match(idempotency_key):
        raise IdempotencyError(
            f"idempotency_key must match pattern {IDEMPOTENCY_KEY_PATTERN.pattern}. "
            f"Received: {idempotency_key}"
        )
    if not isinstance(request_id, str) or not REQUEST_ID_PATTERN.match(request_id):
        raise IdempotencyError(
            f"request_id must match pattern {REQUEST_ID_PATTERN.pattern}. Received: {request_id}"
        )
    return idempotency_key, request_id


def _cached_response(record: dict[str, Any]) -> Any:
    result = record["result"]
    if not isinstance(result, dict):
        return result
    cached = dict(result)
    cached["meta"] = {
        **(result.get("meta") or {}),
        "from_cache": True,
        "idempotent_response": True,
        "original_timestamp": record["timestamp"],
    }
    return cached


def idempotent_write(store: IdempotencyStore):
    """
    Wrap a write-type handler with idempotency checks.

    Concurrent calls sharing an idempotency key are serialised so the wrapped
    handler runs at most once per key.

    Example:
        >>> store = IdempotencyStore()
        >>> @registry.handler("shipping-logistics", "tools/expediteShipment.expediteShipment")
        ... @idempotent_write(store)
        ... async def expedite_shipment(parameters, context):
        ...     ...
    """

    def decorator(func: ToolHandler) -> ToolHandler:
        key_locks: dict[str, asyncio.Lock] = {}

        @functools.wraps(func)
        async def wrapper(parameters: dict[str, Any], context: ExecutionContext) -> Any:
            idempotency_key, request_id = validate_write_meta(parameters)

            existing = store.get(idempotency_key)
            if existing is None:
                lock = key_locks.setdefault(idempotency_key, asyncio.Lock())
                async with lock:
                    existing = store.get(idempotency_key)
                    if existing is None:
                        result = func(parameters, context)
                        if inspect.isawaitable(result):
                            result = await result
                        store.put(idempotency_key, request_id, result)
                        # Later callers are answered from the store
                        key_locks.pop(idempotency_key, None)
                        return result

            logger.info(
                f"Idempotent replay for {func.__name__} "
                f"(key={idempotency_key}, original request={existing['request_id']})"
            )
            return _cached_response(existing)

        wrapper._key_locks = key_locks
        return wrapper

    return decorator
