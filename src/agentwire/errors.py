from __future__ import annotations

from typing import Any, Dict, List, Optional


class AgentWireError(Exception):
    """Base class for every error raised by agentwire."""


class SpawnError(AgentWireError):
    """The agent subprocess could not be started."""


class TransportClosedError(AgentWireError, BrokenPipeError):
    """Write attempted after the agent exited or its input was closed."""


class SessionStateError(AgentWireError):
    """Operation is not valid in the session's current state."""


# --- Stream errors ----------------------------------------------------------------

class FrameError(AgentWireError):
    def __init__(self, message: str, data: Optional[str] = None) -> None:
        super().__init__(message)
        self.data = data
        # frames decoded from the same read before the error
        self.frames: List[Dict[str, Any]] = []


class FrameTooLargeError(FrameError):
    pass


class MalformedFrameError(FrameError):
    pass


class ProcessError(AgentWireError):
    def __init__(self, exit_code: Optional[int], stderr: str = "") -> None:
        message = f"Agent process exited with code {exit_code}"
        if stderr:
            message = f"{message}\nstderr: {stderr}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


# --- Control errors ---------------------------------------------------------------

class ControlError(AgentWireError):
    """The peer answered a control request with an error."""

    def __init__(self, message: str, subtype: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.subtype = subtype


class ControlTimeoutError(AgentWireError, TimeoutError):
    def __init__(self, request_id: str, subtype: str, timeout: float) -> None:
        super().__init__(f"Control request {subtype!r} ({request_id}) timed out after {timeout:g}s")
        self.request_id = request_id
        self.subtype = subtype
        self.timeout = timeout


# --- JSON-RPC error helpers (embedded servers) ------------------------------------

class RequestError(AgentWireError):
    def __init__(self, code: int, message: str, data: Optional[Any] = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data

    @staticmethod
    def invalid_request(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32600, "Invalid request", data)

    @staticmethod
    def method_not_found(method: str) -> "RequestError":
        return RequestError(-32601, "Method not found", {"method": method})

    @staticmethod
    def invalid_params(data: Optional[Any] = None) -> "RequestError":
        return RequestError(-32602, "Invalid params", data)

    @staticmethod
    def internal_error(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32603, "Internal error", data)

    def to_error_obj(self) -> dict:
        return {"code": self.code, "message": str(self), "data": self.data}
