from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import ControlError

logger = logging.getLogger(__name__)

# Python attribute name -> wire field name. ``continue`` and ``async`` are
# keywords, so the Python side carries a trailing underscore.
HOOK_OUTPUT_WIRE_NAMES: Dict[str, str] = {
    "continue_": "continue",
    "async_": "async",
    "async_timeout": "asyncTimeout",
    "suppress_output": "suppressOutput",
    "stop_reason": "stopReason",
    "decision": "decision",
    "system_message": "systemMessage",
    "reason": "reason",
    "hook_specific_output": "hookSpecificOutput",
}
HOOK_OUTPUT_PYTHON_NAMES: Dict[str, str] = {wire: name for name, wire in HOOK_OUTPUT_WIRE_NAMES.items()}


class HookOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    continue_: Optional[bool] = Field(default=None, alias=HOOK_OUTPUT_WIRE_NAMES["continue_"])
    async_: Optional[bool] = Field(default=None, alias=HOOK_OUTPUT_WIRE_NAMES["async_"])
    async_timeout: Optional[int] = Field(default=None, alias=HOOK_OUTPUT_WIRE_NAMES["async_timeout"])
    suppress_output: Optional[bool] = Field(default=None, alias=HOOK_OUTPUT_WIRE_NAMES["suppress_output"])
    stop_reason: Optional[str] = Field(default=None, alias=HOOK_OUTPUT_WIRE_NAMES["stop_reason"])
    decision: Optional[str] = Field(default=None, alias=HOOK_OUTPUT_WIRE_NAMES["decision"])
    system_message: Optional[str] = Field(default=None, alias=HOOK_OUTPUT_WIRE_NAMES["system_message"])
    reason: Optional[str] = Field(default=None, alias=HOOK_OUTPUT_WIRE_NAMES["reason"])
    hook_specific_output: Optional[Dict[str, Any]] = Field(
        default=None, alias=HOOK_OUTPUT_WIRE_NAMES["hook_specific_output"]
    )


def hook_output_to_wire(output: Union[HookOutput, Mapping[str, Any], None]) -> Dict[str, Any]:
    if output is None:
        return {}
    if isinstance(output, HookOutput):
        return output.model_dump(by_alias=True, exclude_none=True)
    return {HOOK_OUTPUT_WIRE_NAMES.get(key, key): value for key, value in output.items()}


def hook_output_from_wire(payload: Mapping[str, Any]) -> HookOutput:
    return HookOutput.model_validate(dict(payload))


@dataclass
class HookContext:
    callback_id: str
    tool_use_id: Optional[str] = None


HookResult = Union[HookOutput, Dict[str, Any], None]
HookCallback = Callable[[Dict[str, Any], Optional[str], HookContext], Awaitable[HookResult]]


@dataclass
class HookMatcher:
    """Callbacks for one hook event, optionally limited to tools matching ``matcher``."""

    matcher: Optional[str] = None
    hooks: List[HookCallback] = field(default_factory=list)
    timeout: Optional[float] = None


class HookRegistry:
    """
    Session-scoped arena of hook callbacks.

    Every callback gets an id (``hook_<n>``) when the registry is built.
    Those ids go to the agent inside the ``initialize`` request and come back
    on each ``hook_callback``. Nothing is removed while the session lives.
    """

    def __init__(self, hooks: Optional[Mapping[str, Sequence[HookMatcher]]] = None) -> None:
        self._callbacks: Dict[str, HookCallback] = {}
        self._config: Dict[str, List[Dict[str, Any]]] = {}
        for event, matchers in (hooks or {}).items():
            entries: List[Dict[str, Any]] = []
            for matcher in matchers:
                entry: Dict[str, Any] = {
                    "matcher": matcher.matcher,
                    "hookCallbackIds": [self._register(callback) for callback in matcher.hooks],
                }
                if matcher.timeout is not None:
                    entry["timeout"] = matcher.timeout
                entries.append(entry)
            if entries:
                self._config[event] = entries

    def _register(self, callback: HookCallback) -> str:
        callback_id = f"hook_{len(self._callbacks)}"
        self._callbacks[callback_id] = callback
        return callback_id

    def __len__(self) -> int:
        return len(self._callbacks)

    def __contains__(self, callback_id: object) -> bool:
        return callback_id in self._callbacks

    def wire_config(self) -> Optional[Dict[str, List[Dict[str, Any]]]]:
        return self._config or None

    def get(self, callback_id: str) -> HookCallback:
        try:
            return self._callbacks[callback_id]
        except KeyError:
            raise ControlError(f"No hook callback found for ID: {callback_id}") from None

    async def invoke(
        self,
        callback_id: str,
        input_data: Dict[str, Any],
        tool_use_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        callback = self.get(callback_id)
        logger.debug(f"Running hook callback {callback_id} (tool_use_id={tool_use_id})")
        result = await callback(input_data, tool_use_id, HookContext(callback_id, tool_use_id))
        return hook_output_to_wire(result)
