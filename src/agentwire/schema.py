from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .meta import CONTROL_SUBTYPES, FRAME_TYPES

PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]


# --- Content blocks ---------------------------------------------------------------

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    is_error: Optional[bool] = None


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock, Dict[str, Any]]

_BLOCK_TYPES = {
    "text": TextBlock,
    "thinking": ThinkingBlock,
    "tool_use": ToolUseBlock,
    "tool_result": ToolResultBlock,
}


def _parse_blocks(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    blocks: List[Any] = []
    for raw in value:
        if isinstance(raw, dict) and raw.get("type") in _BLOCK_TYPES:
            blocks.append(_BLOCK_TYPES[raw["type"]].model_validate(raw))
        else:
            blocks.append(raw)
    return blocks


# --- Frames -----------------------------------------------------------------------

class _Frame(BaseModel):
    model_config = ConfigDict(extra="allow")


class UserMessageBody(_Frame):
    role: Literal["user"] = "user"
    content: Union[str, List[Any]]

    @field_validator("content", mode="before")
    @classmethod
    def _blocks(cls, value: Any) -> Any:
        return _parse_blocks(value)


class AssistantMessageBody(_Frame):
    role: Literal["assistant"] = "assistant"
    content: List[Any] = Field(default_factory=list)
    model: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def _blocks(cls, value: Any) -> Any:
        return _parse_blocks(value)


class UserMessage(_Frame):
    type: Literal["user"] = "user"
    message: UserMessageBody
    parent_tool_use_id: Optional[str] = None
    session_id: str = ""
    uuid: Optional[str] = None

    @property
    def content(self) -> Union[str, List[ContentBlock]]:
        return self.message.content


class AssistantMessage(_Frame):
    type: Literal["assistant"] = "assistant"
    message: AssistantMessageBody
    parent_tool_use_id: Optional[str] = None
    session_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def content(self) -> List[ContentBlock]:
        return self.message.content

    @property
    def model(self) -> Optional[str]:
        return self.message.model

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))


class SystemMessage(_Frame):
    type: Literal["system"] = "system"
    subtype: str

    @property
    def data(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"type", "subtype"})


class ResultMessage(_Frame):
    type: Literal["result"] = "result"
    subtype: str
    duration_ms: int = 0
    duration_api_ms: int = 0
    is_error: bool = False
    num_turns: int = 0
    session_id: str = ""
    total_cost_usd: Optional[float] = None
    usage: Optional[Dict[str, Any]] = None
    result: Optional[str] = None
    structured_output: Optional[Any] = None


class StreamEvent(_Frame):
    type: Literal["stream_event"] = "stream_event"
    uuid: str = ""
    session_id: str = ""
    event: Dict[str, Any] = Field(default_factory=dict)
    parent_tool_use_id: Optional[str] = None


class ControlRequest(_Frame):
    type: Literal["control_request"] = "control_request"
    request_id: str
    request: Dict[str, Any]

    @property
    def subtype(self) -> str:
        return str(self.request.get("subtype", ""))


class ControlResponseBody(_Frame):
    subtype: Literal["success", "error"]
    request_id: str
    response: Optional[Any] = None
    error: Optional[str] = None


class ControlResponse(_Frame):
    type: Literal["control_response"] = "control_response"
    response: ControlResponseBody

    @property
    def request_id(self) -> str:
        return self.response.request_id

    @property
    def is_error(self) -> bool:
        return self.response.subtype == "error"


class ControlCancelRequest(_Frame):
    type: Literal["control_cancel_request"] = "control_cancel_request"
    request_id: Optional[str] = None


class UnknownFrame(BaseModel):
    type: str
    payload: Dict[str, Any]


Message = Union[UserMessage, AssistantMessage, SystemMessage, ResultMessage, StreamEvent, UnknownFrame]
Frame = Union[Message, ControlRequest, ControlResponse, ControlCancelRequest]

FRAME_MODELS: Dict[str, type] = {
    FRAME_TYPES["user"]: UserMessage,
    FRAME_TYPES["assistant"]: AssistantMessage,
    FRAME_TYPES["system"]: SystemMessage,
    FRAME_TYPES["result"]: ResultMessage,
    FRAME_TYPES["stream_event"]: StreamEvent,
    FRAME_TYPES["control_request"]: ControlRequest,
    FRAME_TYPES["control_response"]: ControlResponse,
    FRAME_TYPES["control_cancel_request"]: ControlCancelRequest,
}


def make_user_message(
    content: Union[str, List[Dict[str, Any]]],
    session_id: str = "",
    parent_tool_use_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": parent_tool_use_id,
        "session_id": session_id,
    }


# --- Control request payloads -----------------------------------------------------

class _ControlPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class InitializeRequest(_ControlPayload):
    subtype: Literal["initialize"] = "initialize"
    hooks: Optional[Dict[str, List[Dict[str, Any]]]] = None
    agents: Optional[Dict[str, Dict[str, Any]]] = None
    sdk_mcp_servers: Optional[List[str]] = Field(default=None, alias="sdkMcpServers")


class CanUseToolRequest(_ControlPayload):
    subtype: Literal["can_use_tool"] = "can_use_tool"
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    permission_suggestions: Optional[List[Dict[str, Any]]] = None
    blocked_path: Optional[str] = None
    tool_use_id: Optional[str] = None


class HookCallbackRequest(_ControlPayload):
    subtype: Literal["hook_callback"] = "hook_callback"
    callback_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    tool_use_id: Optional[str] = None


class McpMessageRequest(_ControlPayload):
    subtype: Literal["mcp_message"] = "mcp_message"
    server_name: str
    message: Dict[str, Any]


class InterruptRequest(_ControlPayload):
    subtype: Literal["interrupt"] = "interrupt"


class SetPermissionModeRequest(_ControlPayload):
    subtype: Literal["set_permission_mode"] = "set_permission_mode"
    mode: PermissionMode


class SetModelRequest(_ControlPayload):
    subtype: Literal["set_model"] = "set_model"
    model: Optional[str] = None


class RewindFilesRequest(_ControlPayload):
    subtype: Literal["rewind_files"] = "rewind_files"
    user_message_id: str


class McpStatusRequest(_ControlPayload):
    subtype: Literal["mcp_status"] = "mcp_status"


class UnsupportedControlRequest(BaseModel):
    subtype: str
    payload: Dict[str, Any]


ControlRequestPayload = Union[
    InitializeRequest,
    CanUseToolRequest,
    HookCallbackRequest,
    McpMessageRequest,
    InterruptRequest,
    SetPermissionModeRequest,
    SetModelRequest,
    RewindFilesRequest,
    McpStatusRequest,
    UnsupportedControlRequest,
]

CONTROL_REQUEST_MODELS: Dict[str, type] = {
    CONTROL_SUBTYPES["initialize"]: InitializeRequest,
    CONTROL_SUBTYPES["can_use_tool"]: CanUseToolRequest,
    CONTROL_SUBTYPES["hook_callback"]: HookCallbackRequest,
    CONTROL_SUBTYPES["mcp_message"]: McpMessageRequest,
    CONTROL_SUBTYPES["interrupt"]: InterruptRequest,
    CONTROL_SUBTYPES["set_permission_mode"]: SetPermissionModeRequest,
    CONTROL_SUBTYPES["set_model"]: SetModelRequest,
    CONTROL_SUBTYPES["rewind_files"]: RewindFilesRequest,
    CONTROL_SUBTYPES["mcp_status"]: McpStatusRequest,
}


def parse_control_request(request: Dict[str, Any]) -> ControlRequestPayload:
    """Map a ``request`` body onto its payload model.

    Subtypes outside the known set come back as ``UnsupportedControlRequest``
    so the caller can reject them explicitly. A known subtype with a bad
    payload raises ``pydantic.ValidationError``.
    """
    subtype = str(request.get("subtype", ""))
    model = CONTROL_REQUEST_MODELS.get(subtype)
    if model is None:
        return UnsupportedControlRequest(subtype=subtype, payload=dict(request))
    return model.model_validate(request)


# --- Permissions ------------------------------------------------------------------

class PermissionRuleValue(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_name: str = Field(alias="toolName")
    rule_content: Optional[str] = Field(default=None, alias="ruleContent")


class PermissionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal[
        "addRules",
        "replaceRules",
        "removeRules",
        "setMode",
        "addDirectories",
        "removeDirectories",
    ]
    rules: Optional[List[PermissionRuleValue]] = None
    behavior: Optional[Literal["allow", "deny", "ask"]] = None
    mode: Optional[PermissionMode] = None
    directories: Optional[List[str]] = None
    destination: Optional[Literal["userSettings", "projectSettings", "localSettings", "session"]] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ToolPermissionContext(BaseModel):
    suggestions: List[Dict[str, Any]] = Field(default_factory=list)
    blocked_path: Optional[str] = None
    tool_use_id: Optional[str] = None


class PermissionResultAllow(BaseModel):
    behavior: Literal["allow"] = "allow"
    updated_input: Optional[Dict[str, Any]] = None
    updated_permissions: Optional[List[PermissionUpdate]] = None

    def to_wire(self, original_input: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "behavior": "allow",
            "updatedInput": self.updated_input if self.updated_input is not None else original_input,
        }
        if self.updated_permissions:
            payload["updatedPermissions"] = [update.to_wire() for update in self.updated_permissions]
        return payload


class PermissionResultDeny(BaseModel):
    behavior: Literal["deny"] = "deny"
    message: str = ""
    interrupt: bool = False

    def to_wire(self, original_input: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"behavior": "deny", "message": self.message}
        if self.interrupt:
            payload["interrupt"] = True
        return payload


PermissionResult = Union[PermissionResultAllow, PermissionResultDeny]
