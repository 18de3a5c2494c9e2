from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from .hooks import HookMatcher
from .meta import (
    DEFAULT_CLOSE_TIMEOUT,
    DEFAULT_COMMAND,
    DEFAULT_CONTROL_TIMEOUT,
    DEFAULT_INITIALIZE_TIMEOUT,
    DEFAULT_INTERRUPT_TIMEOUT,
    DEFAULT_MAX_FRAME_SIZE,
    DEFAULT_MESSAGE_BUFFER_SIZE,
    DEFAULT_STREAM_CLOSE_TIMEOUT,
)
from .schema import PermissionResult, ToolPermissionContext
from .servers import EmbeddedServer

CanUseTool = Callable[[str, Dict[str, Any], ToolPermissionContext], Awaitable[PermissionResult]]


@dataclass
class AgentDefinition:
    description: str
    prompt: str
    tools: Optional[List[str]] = None
    model: Optional[Literal["sonnet", "opus", "haiku", "inherit"]] = None

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"description": self.description, "prompt": self.prompt}
        if self.tools is not None:
            payload["tools"] = list(self.tools)
        if self.model is not None:
            payload["model"] = self.model
        return payload


@dataclass
class SessionOptions:
    command: Sequence[str] = DEFAULT_COMMAND
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    can_use_tool: Optional[CanUseTool] = None
    hooks: Dict[str, List[HookMatcher]] = field(default_factory=dict)
    mcp_servers: Dict[str, EmbeddedServer] = field(default_factory=dict)
    agents: Dict[str, AgentDefinition] = field(default_factory=dict)
    stderr: Optional[Callable[[str], None]] = None
    control_timeout: float = DEFAULT_CONTROL_TIMEOUT
    initialize_timeout: float = DEFAULT_INITIALIZE_TIMEOUT
    stream_close_timeout: float = DEFAULT_STREAM_CLOSE_TIMEOUT
    close_timeout: float = DEFAULT_CLOSE_TIMEOUT
    interrupt_timeout: float = DEFAULT_INTERRUPT_TIMEOUT
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE
    message_buffer_size: int = DEFAULT_MESSAGE_BUFFER_SIZE

    def __post_init__(self) -> None:
        if not self.command:
            raise ValueError("command must not be empty")
        for name in (
            "control_timeout",
            "initialize_timeout",
            "stream_close_timeout",
            "close_timeout",
            "interrupt_timeout",
            "max_frame_size",
            "message_buffer_size",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")
        for server_name, server in self.mcp_servers.items():
            if not isinstance(server, EmbeddedServer):
                raise ValueError(f"mcp_servers[{server_name!r}] is not an EmbeddedServer")

    @property
    def needs_initialize(self) -> bool:
        return bool(self.hooks or self.agents or self.mcp_servers)

    @property
    def holds_input_open(self) -> bool:
        """Input stays open until the first result only when hooks or embedded servers are registered."""
        return bool(self.hooks or self.mcp_servers)
