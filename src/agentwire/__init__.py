from .meta import (
    CONTROL_SUBTYPES,
    DEFAULT_COMMAND,
    FRAME_TYPES,
    HOOK_EVENTS,
)
from .errors import (
    AgentWireError,
    ControlError,
    ControlTimeoutError,
    FrameError,
    FrameTooLargeError,
    MalformedFrameError,
    ProcessError,
    RequestError,
    SessionStateError,
    SpawnError,
    TransportClosedError,
)
from .schema import (
    AssistantMessage,
    ControlRequest,
    ControlResponse,
    Frame,
    Message,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionRuleValue,
    PermissionUpdate,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolPermissionContext,
    ToolResultBlock,
    ToolUseBlock,
    UnknownFrame,
    UserMessage,
    make_user_message,
)
from .framing import FrameDecoder, FrameReader, parse_frame
from .transport import SubprocessTransport, Transport
from .hooks import HookContext, HookMatcher, HookOutput, HookRegistry
from .servers import EmbeddedServer, SdkTool, create_server, tool
from .options import AgentDefinition, SessionOptions
from .core import ControlConnection
from .session import AgentSession, SessionState, query

__version__ = "0.1.0"

__all__ = [
    # constants
    "CONTROL_SUBTYPES",
    "DEFAULT_COMMAND",
    "FRAME_TYPES",
    "HOOK_EVENTS",
    # errors
    "AgentWireError",
    "ControlError",
    "ControlTimeoutError",
    "FrameError",
    "FrameTooLargeError",
    "MalformedFrameError",
    "ProcessError",
    "RequestError",
    "SessionStateError",
    "SpawnError",
    "TransportClosedError",
    # types
    "AssistantMessage",
    "ControlRequest",
    "ControlResponse",
    "Frame",
    "Message",
    "PermissionResultAllow",
    "PermissionResultDeny",
    "PermissionRuleValue",
    "PermissionUpdate",
    "ResultMessage",
    "StreamEvent",
    "SystemMessage",
    "TextBlock",
    "ThinkingBlock",
    "ToolPermissionContext",
    "ToolResultBlock",
    "ToolUseBlock",
    "UnknownFrame",
    "UserMessage",
    "make_user_message",
    # framing & transport
    "FrameDecoder",
    "FrameReader",
    "parse_frame",
    "SubprocessTransport",
    "Transport",
    # hooks & servers
    "HookContext",
    "HookMatcher",
    "HookOutput",
    "HookRegistry",
    "EmbeddedServer",
    "SdkTool",
    "create_server",
    "tool",
    # core
    "AgentDefinition",
    "SessionOptions",
    "ControlConnection",
    "AgentSession",
    "SessionState",
    "query",
]
