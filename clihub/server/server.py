"""HTTP + streaming server for live CLI chats and session history.

Live requests stream as NDJSON (``POST /api/chat/stream``) or SSE
(``GET /api/chat/{request_id}/events``). History endpoints serve the
session repository. Errors are JSON ``{"error": ...}`` with 400 for bad
input or unsupported capabilities, 404 for unknown ids and 409 for a
busy session.

Usage:
    clihub --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from clihub.adapters.events import event_to_dict
from clihub.engine.chat_service import ChatService
from clihub.engine.config import EngineConfig
from clihub.engine.errors import (
    ClihubError,
    InvalidAttachmentError,
    RequestConflictError,
    RequestNotFoundError,
    SessionNotFoundError,
    UnknownProviderError,
    UnsupportedCapabilityError,
)
from clihub.engine.providers.base import Attachment
from clihub.shared.models.message import Message
from clihub.shared.services.transcripts.normalize import PRIVATE_KEY
from clihub.shared.services.transcripts.repository import SessionRepository
from clihub.shared.services.transcripts.sources import default_sources
from clihub.shared.services.transcripts.store import SessionStateStore, is_safe_id

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0

_TRUTHY = {"1", "true", "yes", "on"}
_OPTIONAL_STRING_FIELDS = ("provider", "cwd", "resume_id", "model", "permission_mode", "request_id")


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _error_for(exc: Exception) -> web.Response:
    """Map a core exception to its HTTP status."""
    if isinstance(exc, RequestConflictError):
        return web.json_response(
            {"error": str(exc), "active_request_id": exc.active_request_id},
            status=409,
        )
    if isinstance(exc, (RequestNotFoundError, SessionNotFoundError)):
        return _error(str(exc), 404)
    if isinstance(exc, (
        UnsupportedCapabilityError, InvalidAttachmentError, UnknownProviderError, ValueError,
    )):
        return _error(str(exc), 400)
    return _error(str(exc), 500)


def _message_json(message: Message) -> dict[str, Any]:
    data = message.to_dict()
    data["extra"] = {k: v for k, v in message.extra.items() if k != PRIVATE_KEY}
    return data


def _parse_attachments(raw: Any) -> list[Attachment]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("attachments must be a list")
    attachments = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"attachment {idx} must be an object")
        filename = str(item.get("filename") or f"image-{idx}")
        media_type = str(item.get("media_type") or "")
        if item.get("data") is not None:
            try:
                data = base64.b64decode(str(item["data"]), validate=True)
            except (binascii.Error, ValueError) as exc:
                raise InvalidAttachmentError(filename, f"invalid base64 data: {exc}") from exc
            attachments.append(Attachment(filename=filename, media_type=media_type, data=data))
        elif item.get("path"):
            attachments.append(Attachment(
                filename=filename, media_type=media_type, path=Path(str(item["path"])),
            ))
        else:
            raise InvalidAttachmentError(filename, "needs data or path")
    return attachments


class ClihubServer:
    """HTTP server wrapping ChatService and SessionRepository.

    Thin adapter: request lifecycle lives in ChatService and history in
    SessionRepository. This class only handles routing, streaming and
    error mapping.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        service: ChatService | None = None,
        repository: SessionRepository | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._host = host
        self._port = port
        self._service = service or ChatService(self._config)
        self._repository = repository or SessionRepository(
            default_sources(self._config),
            SessionStateStore(self._config.data_dir / "state" / "sessions.json"),
        )
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def service(self) -> ChatService:
        return self._service

    @property
    def repository(self) -> SessionRepository:
        return self._repository

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-clihub-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Live chat
        r.add_post("/api/chat", self._handle_chat)
        r.add_post("/api/chat/stream", self._handle_chat_stream)
        r.add_get("/api/chat/{request_id}/events", self._handle_chat_events)
        r.add_post("/api/abort/{request_id}", self._handle_abort)
        r.add_get("/api/processes/active", self._handle_active)
        # History
        r.add_get("/api/projects", self._handle_list_projects)
        r.add_get("/api/projects/{project_id}/sessions", self._handle_list_sessions)
        r.add_get("/api/projects/{project_id}/sessions/grouped", self._handle_grouped_sessions)
        r.add_get("/api/projects/{project_id}/sessions/{session_id}", self._handle_get_session)
        r.add_post("/api/projects/{project_id}/sessions/{session_id}/archive", self._handle_archive)
        r.add_delete("/api/projects/{project_id}/sessions/{session_id}", self._handle_delete_session)
        r.add_get("/api/search", self._handle_search)
        r.add_post("/api/discover", self._handle_discover)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("clihub server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("clihub server listening on %s:%d", self._host, actual_port)

        self._service.providers.validate()
        asyncio.create_task(self._discover_background())

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._service.shutdown()

    async def _discover_background(self) -> None:
        try:
            found = await asyncio.to_thread(self._repository.discover)
        except OSError as exc:
            logger.error("Initial session discovery failed: %s", exc)
            return
        logger.info("Initial session discovery found %d session(s)", found)

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Live chat handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "providers": self._service.providers.list_names(),
            "available_providers": self._service.providers.list_available(),
            "active_requests": self._service.registry.active_count(),
            "cache_url": self._config.cache_url,
        })

    async def _submit(self, request: web.Request) -> str:
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON body: {exc.msg}") from exc
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")
        project_id = body.get("project_id")
        session_id = body.get("session_id")
        if not isinstance(project_id, str) or not project_id:
            raise ValueError("project_id is required")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("session_id is required")
        content = body.get("content", body.get("message", ""))
        if not isinstance(content, str):
            raise ValueError("content must be a string")
        attachments = _parse_attachments(body.get("attachments"))
        if not content and not attachments:
            raise ValueError("content or attachments are required")
        allowed_tools = body.get("allowed_tools")
        if allowed_tools is not None and not (
            isinstance(allowed_tools, list) and all(isinstance(t, str) for t in allowed_tools)
        ):
            raise ValueError("allowed_tools must be a list of strings")
        options = {}
        for key in _OPTIONAL_STRING_FIELDS:
            value = body.get(key)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{key} must be a string")
            options[key] = value or None
        if options["request_id"] is not None and not is_safe_id(options["request_id"]):
            raise ValueError("request_id may only contain letters, digits and . _ @ + = -")
        return await self._service.submit_request(
            project_id,
            session_id,
            content,
            attachments,
            allowed_tools=allowed_tools,
            **options,
        )

    async def _handle_chat(self, request: web.Request) -> web.Response:
        try:
            request_id = await self._submit(request)
        except (ClihubError, ValueError) as exc:
            return _error_for(exc)
        return web.json_response({"request_id": request_id}, status=202)

    async def _handle_chat_stream(self, request: web.Request) -> web.StreamResponse:
        try:
            request_id = await self._submit(request)
        except (ClihubError, ValueError) as exc:
            return _error_for(exc)
        # subscribe before the next await so no event is missed
        subscription = self._service.subscribe(request_id)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "application/x-ndjson",
                "Cache-Control": "no-cache",
                "X-Request-Id": request_id,
            },
        )
        await response.prepare(request)
        async with subscription:
            try:
                async for event in subscription:
                    line = json.dumps(event_to_dict(event), ensure_ascii=False)
                    await response.write(f"{line}\n".encode())
            except ConnectionResetError:
                logger.info("NDJSON client went away request=%s", request_id)
        await response.write_eof()
        return response

    async def _handle_chat_events(self, request: web.Request) -> web.StreamResponse:
        request_id = request.match_info["request_id"]
        try:
            subscription = self._service.subscribe(request_id)
        except RequestNotFoundError as exc:
            return _error_for(exc)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)
        logger.info("SSE client connected req=%s request=%s", request.get("req_id", "unknown"), request_id)

        async with subscription:
            try:
                while True:
                    try:
                        event = await asyncio.wait_for(
                            subscription.__anext__(), timeout=SSE_KEEPALIVE_SECONDS,
                        )
                    except asyncio.TimeoutError:
                        await response.write(b": keepalive\n\n")
                        continue
                    except StopAsyncIteration:
                        break
                    payload = event_to_dict(event)
                    data = json.dumps(payload, ensure_ascii=False)
                    await response.write(f"event: {payload['event']}\ndata: {data}\n\n".encode())
            except ConnectionResetError:
                pass
            finally:
                logger.info("SSE client disconnected req=%s request=%s", request.get("req_id", "unknown"), request_id)
        return response

    async def _handle_abort(self, request: web.Request) -> web.Response:
        request_id = request.match_info["request_id"]
        if not self._service.abort(request_id):
            return web.json_response(
                {"success": False, "error": f"No active request {request_id}"}, status=404,
            )
        return web.json_response({"success": True, "request_id": request_id})

    async def _handle_active(self, request: web.Request) -> web.Response:
        requests = self._service.active_requests()
        return web.json_response({"count": len(requests), "requests": requests})

    # ── History handlers ──

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        projects = await asyncio.to_thread(self._repository.list_projects)
        return web.json_response({"projects": [p.to_dict() for p in projects]})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        include_archived = request.query.get("include_archived", "").lower() in _TRUTHY
        sessions = self._repository.list_sessions(project_id, include_archived=include_archived)
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_grouped_sessions(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        grouped = self._repository.group_by_recency(project_id)
        return web.json_response({
            "groups": [
                {"label": label, "sessions": [s.to_dict() for s in sessions]}
                for label, sessions in grouped.items()
            ],
        })

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        session_id = request.match_info["session_id"]
        try:
            session = self._repository.get_session(project_id, session_id)
            parsed = await asyncio.to_thread(
                self._repository.load_messages, project_id, session_id,
            )
        except SessionNotFoundError as exc:
            return _error_for(exc)
        except OSError as exc:
            return _error(f"Cannot read session: {exc}", 500)
        return web.json_response({
            "session": session.to_dict(),
            "messages": [_message_json(m) for m in parsed.messages],
            "warnings": parsed.warning_messages(),
        })

    async def _handle_archive(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        session_id = request.match_info["session_id"]
        archived = True
        if request.can_read_body:
            try:
                body = await request.json()
            except json.JSONDecodeError:
                return _error("Invalid JSON body", 400)
            if isinstance(body, dict) and "archived" in body:
                archived = bool(body["archived"])
        try:
            session = self._repository.set_archived(project_id, session_id, archived)
        except SessionNotFoundError as exc:
            return _error_for(exc)
        return web.json_response({"session": session.to_dict()})

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        session_id = request.match_info["session_id"]
        try:
            self._repository.delete_session(project_id, session_id)
        except SessionNotFoundError as exc:
            return _error_for(exc)
        return web.json_response({"status": "deleted"})

    async def _handle_search(self, request: web.Request) -> web.Response:
        query = request.query.get("q", "")
        try:
            limit = int(request.query.get("limit", "50"))
        except ValueError:
            return _error("limit must be an integer", 400)
        try:
            hits = await asyncio.to_thread(
                self._repository.search, query, request.query.get("project_id"), limit,
            )
        except ValueError as exc:
            return _error_for(exc)
        return web.json_response({"results": [h.to_dict() for h in hits]})

    async def _handle_discover(self, request: web.Request) -> web.Response:
        found = await asyncio.to_thread(self._repository.discover)
        return web.json_response({"new_sessions": found})
