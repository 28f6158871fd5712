"""Async HTTP transport for the discovery chat.

Uses aiohttp's AppRunner/TCPSite for non-blocking start/stop so the server
shares the event loop with the agent bus and tool calls.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from discovery.config import settings
from discovery.errors import (
    ConflictError,
    DiscoveryError,
    NotFoundError,
    OperationTimeoutError,
    ValidationError,
)

if TYPE_CHECKING:
    from discovery.session import DiscoverySession
    from discovery.store.store import DiscoveryStore

logger = logging.getLogger(__name__)

SESSION_KEY: web.AppKey[DiscoverySession] = web.AppKey("session")
STORE_KEY: web.AppKey[DiscoveryStore] = web.AppKey("store")

_STATUS_BY_ERROR: list[tuple[type[DiscoveryError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (OperationTimeoutError, 504),
]


def _status_for(exc: DiscoveryError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@web.middleware
async def _error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render discovery errors as JSON; never leak internal detail."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except DiscoveryError as exc:
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc.detail)
        else:
            logger.info(
                "%s %s rejected (%s): %s", request.method, request.path, exc.code, exc.detail
            )
        body: dict[str, Any] = {"error": exc.code, "message": exc.user_message()}
        if exc.fields and status == 400:
            body["fields"] = exc.fields
        return web.json_response(body, status=status)
    except Exception:
        logger.exception("%s %s crashed", request.method, request.path)
        return web.json_response(
            {"error": "internal_error", "message": DiscoveryError.public_message}, status=500
        )


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        msg = "Request body must be valid JSON"
        raise ValidationError(msg) from exc
    if not isinstance(payload, dict):
        msg = "Request body must be a JSON object"
        raise ValidationError(msg)
    return payload


def _required(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        msg = f"'{key}' is required"
        raise ValidationError(msg, fields={key: "required"})
    return value


# -- Handlers --------------------------------------------------------------------


async def _health(request: web.Request) -> web.Response:
    """GET /health — basic liveness check."""
    return web.json_response({"status": "ok"})


async def _create_chat(request: web.Request) -> web.Response:
    """POST /chats — new chat with its root branch; runs ``message`` if given."""
    session = request.app[SESSION_KEY]
    payload = await _json_body(request)
    owner_id = _required(payload, "owner_id")

    chat, root = await session.start_chat(owner_id)
    body: dict[str, Any] = {"chat": chat.to_dict(), "branch": root.to_dict()}
    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        response = await session.send(root.id, message)
        body["response"] = response.to_dict()
    return web.json_response(body, status=201)


async def _list_branches(request: web.Request) -> web.Response:
    """GET /chats/{chat_id}/branches"""
    session = request.app[SESSION_KEY]
    branches = await session.branches.list_branches(request.match_info["chat_id"])
    return web.json_response({"branches": [b.to_dict() for b in branches]})


async def _create_branch(request: web.Request) -> web.Response:
    """POST /chats/{chat_id}/branches — fork from ``parent_message_id``."""
    session = request.app[SESSION_KEY]
    payload = await _json_body(request)
    branch = await session.branches.create_branch(
        request.match_info["chat_id"],
        _required(payload, "parent_message_id"),
        _required(payload, "name"),
    )
    return web.json_response({"branch": branch.to_dict()}, status=201)


async def _branch_history(request: web.Request) -> web.Response:
    """GET /branches/{branch_id}/messages — resolved history, root first."""
    session = request.app[SESSION_KEY]
    messages = await session.branches.resolve_history(request.match_info["branch_id"])
    return web.json_response({"messages": [m.to_dict() for m in messages]})


async def _message_citations(request: web.Request) -> web.Response:
    """GET /messages/{message_id}/citations"""
    store = request.app[STORE_KEY]
    message_id = request.match_info["message_id"]
    if await store.get_message(message_id) is None:
        msg = f"Message not found: {message_id}"
        raise NotFoundError(msg)
    citations = await request.app[SESSION_KEY].citations.get_for_message(message_id)
    return web.json_response({"citations": [c.to_dict() for c in citations]})


async def _run_turn(request: web.Request) -> web.StreamResponse:
    """POST /branches/{branch_id}/turns — run one turn.

    With ``?stream=1`` the reply is NDJSON: ``{"delta": ...}`` lines while
    text is generated, then one ``{"response": ...}`` line.
    """
    session = request.app[SESSION_KEY]
    payload = await _json_body(request)
    branch_id = request.match_info["branch_id"]
    content = _required(payload, "content")

    if request.query.get("stream") not in ("1", "true"):
        response = await session.send(branch_id, content)
        return web.json_response(response.to_dict())

    stream = web.StreamResponse(headers={"Content-Type": "application/x-ndjson"})

    async def _write(line: dict[str, Any]) -> None:
        if not stream.prepared:
            await stream.prepare(request)
        await stream.write((json.dumps(line) + "\n").encode())

    async def _on_delta(text: str) -> None:
        await _write({"delta": text})

    turn = await session.submit(branch_id, content, on_text_delta=_on_delta)
    logger.info("Streaming turn %s on branch %s", turn.id, branch_id)
    response = await turn.result()
    await _write({"response": response.to_dict()})
    await stream.write_eof()
    return stream


def create_app(session: DiscoverySession, store: DiscoveryStore) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application(middlewares=[_error_middleware])
    app[SESSION_KEY] = session
    app[STORE_KEY] = store
    app.router.add_get("/health", _health)
    app.router.add_post("/chats", _create_chat)
    app.router.add_get("/chats/{chat_id}/branches", _list_branches)
    app.router.add_post("/chats/{chat_id}/branches", _create_branch)
    app.router.add_get("/branches/{branch_id}/messages", _branch_history)
    app.router.add_post("/branches/{branch_id}/turns", _run_turn)
    app.router.add_get("/messages/{message_id}/citations", _message_citations)
    return app


class WebServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(
        self,
        session: DiscoverySession,
        store: DiscoveryStore,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self._session = session
        self._store = store
        self.host = host or settings.web_host
        self.port = port or settings.web_port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        app = create_app(self._session, self._store)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Discovery server listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Discovery server stopped")
