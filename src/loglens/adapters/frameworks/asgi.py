"""ASGI adapter for the ingestion and query endpoints.

This adapter provides a framework-agnostic ASGI application that can be used
with any ASGI server (uvicorn, hypercorn, daphne) without requiring a web
framework as a dependency.

Endpoints:
    POST /events  Ingest one event object or a list of them.
    POST /query   Run a pipeline: {"pipeline": [...], "start": t0, "end": t1}.
    GET  /events  Read events, filtered by start, end, entity and level.
"""

import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any
from urllib.parse import parse_qs

from loglens.adapters.frameworks.query_params import (
    _parse_entity_param,
    _parse_float_param,
    _parse_float_value,
    _parse_level_param,
    _parse_time_range,
)
from loglens.core.encoding.ndjson import encode_events, encode_rows
from loglens.core.events import validate_event
from loglens.core.exceptions import (
    OperationTimeoutError,
    PipelineError,
    QueryCancelledError,
    TransientStorageError,
    ValidationError,
)
from loglens.core.ingestion import IngestionBuffer
from loglens.core.models import Event, TimeRange
from loglens.core.ports import EventStoragePort
from loglens.core.predicates import Condition
from loglens.core.query import QueryEngine

logger = logging.getLogger(__name__)

# ASGI type aliases
Scope = dict[str, Any]
Receive = Callable[[], Coroutine[Any, Any, dict[str, Any]]]
Send = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
ASGIApp = Callable[[Scope, Receive, Send], Coroutine[Any, Any, None]]

NDJSON = "application/x-ndjson"
JSON = "application/json"

DEFAULT_MAX_BODY_BYTES = 8 * 1024 * 1024


class _BodyTooLarge(Exception):
    pass


def _parse_query_params(scope: Scope) -> dict[str, list[str]]:
    """Parse query string from ASGI scope into parameter dictionary."""
    query_string = scope.get("query_string", b"").decode(errors="replace")
    return parse_qs(query_string)


async def _read_body(receive: Receive, limit: int) -> bytes:
    """Collect the request body from http.request messages."""
    chunks: list[bytes] = []
    size = 0
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > limit:
            raise _BodyTooLarge()
        chunks.append(chunk)
        if not message.get("more_body", False):
            break
    return b"".join(chunks)


async def _send_response(send: Send, status: int, content_type: str, body: str) -> None:
    """Send an HTTP response with headers and body."""
    headers = [(b"content-type", content_type.encode())]
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body.encode()})


async def _send_error(send: Send, status: int, message: str) -> None:
    await _send_response(send, status, JSON, json.dumps({"error": message}))


async def _handle_endpoint(
    send: Send,
    endpoint_func: Callable[[], Coroutine[Any, Any, str]],
    content_type: str,
    log_message: str,
) -> None:
    """Execute an endpoint function, mapping errors to HTTP statuses.

    Validation and pipeline errors become 400, timeouts 504, transient
    storage failures 503 and anything else a logged 500.
    """
    try:
        body = await endpoint_func()
    except (ValidationError, PipelineError) as e:
        await _send_error(send, 400, str(e))
    except _BodyTooLarge:
        await _send_error(send, 413, "Request body too large")
    except OperationTimeoutError as e:
        await _send_error(send, 504, str(e))
    except QueryCancelledError as e:
        await _send_error(send, 499, str(e))
    except TransientStorageError as e:
        await _send_error(send, 503, str(e))
    except Exception:
        logger.exception(log_message)
        await _send_error(send, 500, "Internal Server Error")
    else:
        await _send_response(send, 200, content_type, body)


def _decode_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"request body is not valid JSON: {e}") from e


def create_asgi_app(
    store: EventStoragePort,
    engine: QueryEngine | None = None,
    ingestion: IngestionBuffer | None = None,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
) -> ASGIApp:
    """Create an ASGI app exposing /events and /query.

    Args:
        store: Event store read by GET /events.
        engine: Query engine for POST /query. Built over store if omitted.
        ingestion: Ingestion boundary for POST /events. Built over store
            if omitted.
        max_body_bytes: Largest accepted request body.

    Returns:
        ASGI application callable.
    """
    engine = engine if engine is not None else QueryEngine(store)
    ingestion = ingestion if ingestion is not None else IngestionBuffer(store)

    async def ingest(receive: Receive) -> str:
        payload = _decode_json(await _read_body(receive, max_body_bytes))
        items = payload if isinstance(payload, list) else [payload]
        if not all(isinstance(item, dict) for item in items):
            raise ValidationError("events must be JSON objects")
        events = [Event.from_dict(item) for item in items]
        # A batch is all or nothing up to storage failures
        for event in events:
            validate_event(event, ingestion.max_event_bytes)
        for event in events:
            await ingestion.submit(event)
        return json.dumps({"accepted": len(events)})

    async def run_query(receive: Receive) -> str:
        payload = _decode_json(await _read_body(receive, max_body_bytes))
        if not isinstance(payload, dict):
            raise ValidationError("query body must be a JSON object")
        if "pipeline" not in payload:
            raise ValidationError("query body is missing 'pipeline'")
        try:
            time_range = TimeRange(payload["start"], payload["end"])
        except KeyError as e:
            raise ValidationError(f"query body is missing {e.args[0]!r}") from e
        timeout = _parse_float_value("timeout", payload.get("timeout"))
        rows = await engine.execute(payload["pipeline"], time_range, timeout=timeout)
        return encode_rows(rows)

    async def read_events(scope: Scope) -> str:
        params = _parse_query_params(scope)
        time_range = _parse_time_range(params)
        level = _parse_level_param(params)
        timeout = _parse_float_param(params, "timeout")
        predicate = Condition("level", ">=", level) if level is not None else None
        events = store.query(
            time_range,
            predicate,
            entity=_parse_entity_param(params),
            timeout=timeout,
        )
        return encode_events([event async for event in events])

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            return

        path = scope["path"]
        method = scope.get("method", "GET")

        if path == "/events" and method == "POST":
            await _handle_endpoint(
                send, lambda: ingest(receive), JSON, "Error ingesting events"
            )
        elif path == "/events" and method == "GET":
            await _handle_endpoint(
                send, lambda: read_events(scope), NDJSON, "Error reading events"
            )
        elif path == "/query" and method == "POST":
            await _handle_endpoint(
                send, lambda: run_query(receive), NDJSON, "Error running query"
            )
        elif path in ("/events", "/query"):
            await _send_response(send, 405, "text/plain", "Method Not Allowed")
        else:
            await _send_response(send, 404, "text/plain", "Not Found")

    return app
