"""
ACP Protocol Adapter

Normalizes the method-name dialects used by competing ACP clients onto one set
of canonical operations, gates everything behind ``initialize``, and relays the
output of each session turn back to the caller in the dialect it used.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from pydantic import BaseModel, ValidationError

from .errors import (
    ErrorProfile,
    JsonRpcError,
    JsonRpcErrorCode,
    build_error,
)
from .models import (
    CancelParams,
    CreateSessionParams,
    InitializeParams,
    JsonRpcRequest,
    ListSessionsParams,
    PromptParams,
    RequestId,
    SendMessageParams,
    create_message_id,
    make_error_response,
    make_notification,
    make_response,
)
from .process_bridge import ProcessBridge
from .tool_parser import ToolCallParser, render_fragments

logger = logging.getLogger(__name__)

MessageSink = Callable[[Dict[str, Any]], None]

PROTOCOL_VERSION = 1
SERVER_NAME = "qodo-acp-adapter"
SERVER_VERSION = "0.1.0"

SESSION_UPDATE = "session/update"
AGENT_PROGRESS = "agent/progress"
SHUTDOWN_WAIT = 5.0


class Operation(str, Enum):
    INITIALIZE = "initialize"
    CREATE_SESSION = "create-session"
    SEND_TURN = "send-turn"
    CANCEL_TURN = "cancel-turn"
    LIST_SESSIONS = "list-sessions"


class Delivery(str, Enum):
    """How a send-turn reports its result."""

    PROMPT = "prompt"  # response withheld until the turn ends
    MESSAGE = "message"  # immediate response, results as notifications


@dataclass(frozen=True)
class MethodRoute:
    operation: Operation
    params_model: Type[BaseModel]
    delivery: Optional[Delivery] = None


METHOD_ROUTES: Dict[str, MethodRoute] = {
    "initialize": MethodRoute(Operation.INITIALIZE, InitializeParams),
    "agent/initialize": MethodRoute(Operation.INITIALIZE, InitializeParams),
    "session/new": MethodRoute(Operation.CREATE_SESSION, CreateSessionParams),
    "createThread": MethodRoute(Operation.CREATE_SESSION, CreateSessionParams),
    "agent/createThread": MethodRoute(Operation.CREATE_SESSION, CreateSessionParams),
    "session/prompt": MethodRoute(Operation.SEND_TURN, PromptParams, Delivery.PROMPT),
    "prompt": MethodRoute(Operation.SEND_TURN, PromptParams, Delivery.PROMPT),
    "sendMessage": MethodRoute(Operation.SEND_TURN, SendMessageParams, Delivery.MESSAGE),
    "agent/sendMessage": MethodRoute(Operation.SEND_TURN, SendMessageParams, Delivery.MESSAGE),
    "cancel": MethodRoute(Operation.CANCEL_TURN, CancelParams),
    "session/cancel": MethodRoute(Operation.CANCEL_TURN, CancelParams),
    "stopGeneration": MethodRoute(Operation.CANCEL_TURN, CancelParams),
    "agent/stopGeneration": MethodRoute(Operation.CANCEL_TURN, CancelParams),
    "listThreads": MethodRoute(Operation.LIST_SESSIONS, ListSessionsParams),
    "agent/listThreads": MethodRoute(Operation.LIST_SESSIONS, ListSessionsParams),
}

# Returned by handlers that send their own response.
_DEFERRED = object()


def canonical_operation(method: str) -> Optional[Operation]:
    route = METHOD_ROUTES.get(method)
    return route.operation if route else None


class AcpAdapter:
    """Dispatch JSON-RPC messages onto the process bridge."""

    def __init__(
        self,
        bridge: ProcessBridge,
        send: MessageSink,
        *,
        parser: Optional[ToolCallParser] = None,
        error_profile: ErrorProfile = ErrorProfile.ACP_BASIC,
    ) -> None:
        self._bridge = bridge
        self._send = send
        self._parser = parser or ToolCallParser()
        self._error_profile = error_profile
        self._initialized = False
        self._client_capabilities: Optional[Dict[str, Any]] = None
        self._turns: Dict[str, asyncio.Task[None]] = {}
        self._handlers: Dict[
            Operation, Callable[[JsonRpcRequest, MethodRoute, Any], Awaitable[Any]]
        ] = {
            Operation.INITIALIZE: self._handle_initialize,
            Operation.CREATE_SESSION: self._handle_create_session,
            Operation.SEND_TURN: self._handle_send_turn,
            Operation.CANCEL_TURN: self._handle_cancel,
            Operation.LIST_SESSIONS: self._handle_list_sessions,
        }

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def bridge(self) -> ProcessBridge:
        return self._bridge

    # ----- inbound -----

    async def handle_line(self, line: str) -> None:
        """Handle one newline-delimited JSON-RPC message."""
        line = line.strip()
        if not line:
            return
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Dropping unparsable line", extra={"error": str(exc), "line": line[:200]})
            return
        if not isinstance(payload, dict):
            logger.warning("Dropping non-object message", extra={"line": line[:200]})
            return
        await self.handle_message(payload)

    async def handle_message(self, payload: Dict[str, Any]) -> None:
        request_id = payload.get("id")
        if not isinstance(request_id, (str, int)) or isinstance(request_id, bool):
            request_id = None

        if "method" not in payload and ("result" in payload or "error" in payload):
            logger.debug("Ignoring client response", extra={"id": request_id})
            return

        try:
            request = JsonRpcRequest.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Malformed JSON-RPC message", extra={"error": str(exc), "id": request_id})
            if request_id is not None:
                self._send_error(request_id, JsonRpcError.internal(exc))
            return

        logger.debug("Received message", extra={"method": request.method, "id": request.id})

        try:
            result = await self.dispatch(request)
        except JsonRpcError as exc:
            logger.info(
                "Request failed",
                extra={"method": request.method, "id": request.id, "code": exc.code, "error": exc.message},
            )
            self._reply_error(request, exc)
        except Exception as exc:
            logger.exception("Error handling message", extra={"method": request.method, "id": request.id})
            self._reply_error(request, JsonRpcError.internal(exc))
        else:
            if result is not _DEFERRED:
                self._reply(request, result)

    async def dispatch(self, request: JsonRpcRequest) -> Any:
        route = METHOD_ROUTES.get(request.method)
        if route is None:
            raise JsonRpcError.method_not_found(request.method)
        if route.operation is not Operation.INITIALIZE and not self._initialized:
            raise JsonRpcError.not_initialized()

        try:
            params = route.params_model.model_validate(request.params or {})
        except ValidationError as exc:
            raise JsonRpcError(JsonRpcErrorCode.INVALID_PARAMS, "Invalid params", str(exc)) from exc

        return await self._handlers[route.operation](request, route, params)

    # ----- outbound -----

    def _reply(self, request: JsonRpcRequest, result: Any) -> None:
        if request.is_notification:
            return
        self._send(make_response(request.id, result))

    def _reply_error(self, request: JsonRpcRequest, error: JsonRpcError) -> None:
        if request.is_notification:
            return
        self._send_error(request.id, error)

    def _send_error(self, request_id: Optional[RequestId], error: JsonRpcError) -> None:
        contract = build_error(error, self._error_profile)
        self._send(make_error_response(request_id, contract.to_dict()))

    def _notify(self, method: str, params: Dict[str, Any]) -> None:
        self._send(make_notification(method, params))

    # ----- handlers -----

    async def _handle_initialize(
        self, request: JsonRpcRequest, route: MethodRoute, params: InitializeParams
    ) -> Dict[str, Any]:
        self._client_capabilities = params.clientCapabilities or params.capabilities
        self._initialized = True
        logger.info("Adapter initialized", extra={"client_info": params.clientInfo})
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {
                "tools": True,
                "followLinks": False,
                "editOperations": True,
            },
            "agentCapabilities": {
                "promptCapabilities": {"image": True, "embeddedContext": True},
            },
            "authMethods": [
                {
                    "id": "qodo-login",
                    "name": "Log in with Qodo Command",
                    "description": "Run `qodo` in the terminal",
                }
            ],
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }

    async def _handle_create_session(
        self, request: JsonRpcRequest, route: MethodRoute, params: CreateSessionParams
    ) -> Dict[str, Any]:
        session_id = self._bridge.create_session(params.metadata)
        key = "sessionId" if request.method == "session/new" else "threadId"
        result: Dict[str, Any] = {key: session_id}
        if params.metadata is not None:
            result["metadata"] = params.metadata
        logger.info("Session created", extra={"session_id": session_id, "method": request.method})
        return result

    async def _handle_list_sessions(
        self, request: JsonRpcRequest, route: MethodRoute, params: ListSessionsParams
    ) -> Dict[str, Any]:
        return {"threads": self._bridge.list_sessions()}

    async def _handle_cancel(
        self, request: JsonRpcRequest, route: MethodRoute, params: CancelParams
    ) -> Dict[str, Any]:
        session = self._bridge.get_session(params.session_id)
        if session is None:
            logger.debug("Cancel for unknown session", extra={"session_id": params.session_id})
            return {"success": True}

        session.cancelled = True
        try:
            await self._bridge.stop_generation(session.id)
        except Exception as exc:
            logger.error("Failed to stop generation", extra={"session_id": session.id, "error": str(exc)})
            raise JsonRpcError.stop_generation_failed(exc) from exc
        return {"success": True}

    async def _handle_send_turn(
        self, request: JsonRpcRequest, route: MethodRoute, params: Any
    ) -> Any:
        session_id = params.session_id
        session = self._bridge.get_session(session_id)
        if session is None:
            raise JsonRpcError.session_not_found(session_id)

        running = self._turns.get(session.id)
        if session.is_active or (running is not None and not running.done()):
            raise JsonRpcError.turn_in_progress(session.id)

        session.cancelled = False
        text = params.text
        logger.info(
            "Starting turn",
            extra={"session_id": session.id, "method": request.method, "text_length": len(text)},
        )

        if route.delivery is Delivery.MESSAGE:
            message_id = create_message_id()
            self._reply(
                request,
                {"messageId": message_id, "role": "assistant", "content": [], "metadata": {}},
            )
            turn = self._run_message_turn(session.id, message_id, text)
        else:
            turn = self._run_prompt_turn(request, session.id, text)

        self._track_turn(session.id, asyncio.create_task(turn))
        return _DEFERRED

    def _track_turn(self, session_id: str, task: asyncio.Task[None]) -> None:
        self._turns[session_id] = task

        def _done(finished: asyncio.Task[None]) -> None:
            if self._turns.get(session_id) is finished:
                del self._turns[session_id]

        task.add_done_callback(_done)

    # ----- turns -----

    async def _run_prompt_turn(self, request: JsonRpcRequest, session_id: str, text: str) -> None:
        def send_chunk(chunk_text: str) -> None:
            self._notify(
                SESSION_UPDATE,
                {
                    "sessionId": session_id,
                    "update": {
                        "sessionUpdate": "agent_message_chunk",
                        "content": {"type": "text", "text": chunk_text},
                    },
                },
            )

        def on_progress(chunk: str) -> None:
            for rendered in render_fragments(self._parser.parse_chunk(chunk)):
                send_chunk(rendered)

        try:
            await self._bridge.send_message(session_id, text, on_progress)
            stop_reason = "end_turn"
        except Exception as exc:
            logger.error("Turn failed", extra={"session_id": session_id, "error": str(exc)})
            send_chunk(f"Error: {exc}")
            stop_reason = "error"

        logger.info("Turn finished", extra={"session_id": session_id, "stop_reason": stop_reason})
        self._reply(request, {"stopReason": stop_reason})

    async def _run_message_turn(self, session_id: str, message_id: str, text: str) -> None:
        def progress_params(**extra: Any) -> Dict[str, Any]:
            return {
                "sessionId": session_id,
                "threadId": session_id,
                "messageId": message_id,
                **extra,
            }

        def on_progress(chunk: str) -> None:
            for rendered in render_fragments(self._parser.parse_chunk(chunk)):
                self._notify(
                    AGENT_PROGRESS,
                    progress_params(delta={"content": [{"type": "text", "text": rendered}]}),
                )

        try:
            await self._bridge.send_message(session_id, text, on_progress)
        except Exception as exc:
            logger.error("Turn failed", extra={"session_id": session_id, "message_id": message_id, "error": str(exc)})
            self._notify(
                AGENT_PROGRESS,
                progress_params(metadata={"status": "error", "error": str(exc)}),
            )
            return

        logger.info("Turn finished", extra={"session_id": session_id, "message_id": message_id})
        self._notify(AGENT_PROGRESS, progress_params(metadata={"status": "complete"}))

    # ----- lifecycle -----

    async def shutdown(self) -> None:
        """Stop every running turn and release all sessions."""
        tasks = [task for task in self._turns.values() if not task.done()]
        logger.info("Shutting down adapter", extra={"running_turns": len(tasks)})

        await self._bridge.cleanup()

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=SHUTDOWN_WAIT)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._turns.clear()
