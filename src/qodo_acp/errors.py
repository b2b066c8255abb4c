"""Error codes, exceptions and error-profile normalisation for JSON-RPC payloads."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class JsonRpcErrorCode:
    """Numeric JSON-RPC error codes used by the adapter."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    SESSION_NOT_FOUND = -32001
    SERVER_NOT_INITIALIZED = -32002
    TURN_IN_PROGRESS = -32003


class BridgeError(RuntimeError):
    """Errors raised by the process bridge."""


class SessionNotFoundError(BridgeError):
    """Raised when an operation references an unknown session id."""

    def __init__(self, session_id: Optional[str]) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class TurnInProgressError(BridgeError):
    """Raised when a turn is started on a session that already has one running."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Turn already in progress for session: {session_id}")
        self.session_id = session_id


class ProcessSpawnError(BridgeError):
    """Raised when the external CLI could not be started."""


class ProcessExitError(BridgeError):
    """Raised when the external CLI exits non-zero without producing output."""

    def __init__(self, returncode: Optional[int], stderr: str) -> None:
        super().__init__(
            f"Qodo process exited with code {returncode}: {stderr or 'No error message'}"
        )
        self.returncode = returncode
        self.stderr = stderr


class JsonRpcError(Exception):
    """A protocol-level failure that maps directly onto a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def not_initialized(cls) -> "JsonRpcError":
        return cls(JsonRpcErrorCode.SERVER_NOT_INITIALIZED, "Server not initialized")

    @classmethod
    def method_not_found(cls, method: Any) -> "JsonRpcError":
        return cls(JsonRpcErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

    @classmethod
    def session_not_found(cls, session_id: Optional[str]) -> "JsonRpcError":
        return cls(
            JsonRpcErrorCode.SESSION_NOT_FOUND,
            "Session not found",
            {"sessionId": session_id},
        )

    @classmethod
    def turn_in_progress(cls, session_id: str) -> "JsonRpcError":
        return cls(
            JsonRpcErrorCode.TURN_IN_PROGRESS,
            "Turn already in progress",
            {"sessionId": session_id},
        )

    @classmethod
    def internal(cls, exc: BaseException) -> "JsonRpcError":
        return cls(JsonRpcErrorCode.INTERNAL_ERROR, "Internal error", _describe(exc))

    @classmethod
    def stop_generation_failed(cls, exc: BaseException) -> "JsonRpcError":
        return cls(
            JsonRpcErrorCode.INTERNAL_ERROR, "Failed to stop generation", _describe(exc)
        )


def _describe(exc: BaseException) -> Dict[str, Any]:
    return {"message": str(exc), "type": type(exc).__name__}


class ErrorProfile(str, Enum):
    """Supported shapes for the ``data`` member of error responses."""

    ACP_BASIC = "acp-basic"
    EXTENDED_JSON = "extended-json"


@dataclass(frozen=True)
class ErrorContract:
    """Normalized representation of a JSON-RPC error object."""

    code: int
    message: str
    data: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


def parse_error_profile(raw_profile: Optional[str]) -> ErrorProfile:
    """Parse an error profile string into the enum, validating supported values."""
    if not raw_profile:
        return ErrorProfile.ACP_BASIC
    try:
        return ErrorProfile(raw_profile)
    except ValueError as exc:
        supported = ", ".join(profile.value for profile in ErrorProfile)
        raise ValueError(
            f"Unsupported error profile '{raw_profile}'. Supported profiles: {supported}"
        ) from exc


def _normalize_data_for_profile(data: Optional[Any], profile: ErrorProfile) -> Optional[Any]:
    if data is None:
        return None

    if profile is ErrorProfile.ACP_BASIC:
        if isinstance(data, str):
            return data
        # Exception descriptions collapse to their message, the shape clients expect.
        if isinstance(data, dict) and set(data) == {"message", "type"}:
            return str(data["message"])
        try:
            return json.dumps(data, separators=(",", ":"))
        except (TypeError, ValueError):
            return str(data)

    return data


def build_error(error: JsonRpcError, profile: ErrorProfile) -> ErrorContract:
    """Construct an ErrorContract honoring the selected profile."""
    return ErrorContract(
        code=error.code,
        message=error.message,
        data=_normalize_data_for_profile(error.data, profile),
    )
