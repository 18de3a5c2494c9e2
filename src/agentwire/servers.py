"""
In-process tool servers exposed to the agent as if they were external MCP
servers. The agent sends JSON-RPC envelopes inside ``mcp_message`` control
requests; ``EmbeddedServer.handle_message`` answers them.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ValidationError

from .errors import RequestError
from .meta import MCP_PROTOCOL_VERSION

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Awaitable[Any]]
InputSchema = Union[Dict[str, Any], type]

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def _schema_from_mapping(params: Dict[str, Any]) -> Dict[str, Any]:
    properties = {name: {"type": _JSON_TYPES.get(kind, "string")} for name, kind in params.items()}
    return {"type": "object", "properties": properties, "required": list(params)}


@dataclass
class SdkTool:
    name: str
    description: str
    input_schema: InputSchema
    handler: ToolHandler

    @property
    def model(self) -> Optional[type]:
        schema = self.input_schema
        if inspect.isclass(schema) and issubclass(schema, BaseModel):
            return schema
        return None

    def json_schema(self) -> Dict[str, Any]:
        if self.model is not None:
            return self.model.model_json_schema()
        schema = self.input_schema
        if isinstance(schema, dict) and "type" in schema and isinstance(schema["type"], str):
            return schema
        if isinstance(schema, dict):
            return _schema_from_mapping(schema)
        raise TypeError(f"Unsupported input schema for tool {self.name!r}: {schema!r}")

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.json_schema()}


def tool(name: str, description: str, input_schema: InputSchema) -> Callable[[ToolHandler], SdkTool]:
    """Decorator turning an async handler into an ``SdkTool``."""

    def decorator(handler: ToolHandler) -> SdkTool:
        return SdkTool(name=name, description=description, input_schema=input_schema, handler=handler)

    return decorator


def _normalize_result(result: Any) -> Dict[str, Any]:
    if result is None:
        return {"content": []}
    if isinstance(result, str):
        return {"content": [{"type": "text", "text": result}]}
    if isinstance(result, BaseModel):
        result = result.model_dump(by_alias=True, exclude_none=True)
    if isinstance(result, dict) and "content" in result:
        return result
    raise TypeError(f"Tool returned unsupported result type: {type(result).__name__}")


class EmbeddedServer:
    def __init__(self, name: str, version: str = "1.0.0", tools: Optional[Sequence[SdkTool]] = None) -> None:
        self.name = name
        self.version = version
        self._tools: Dict[str, SdkTool] = {}
        for sdk_tool in tools or ():
            self.add_tool(sdk_tool)

    def add_tool(self, sdk_tool: SdkTool) -> None:
        if sdk_tool.name in self._tools:
            raise ValueError(f"Duplicate tool name {sdk_tool.name!r} on server {self.name!r}")
        self._tools[sdk_tool.name] = sdk_tool

    @property
    def tool_names(self) -> List[str]:
        return list(self._tools)

    async def list_tools(self) -> List[Dict[str, Any]]:
        return [sdk_tool.describe() for sdk_tool in self._tools.values()]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        sdk_tool = self._tools.get(name)
        if sdk_tool is None:
            raise RequestError.invalid_params({"details": f"Tool '{name}' not found"})
        args: Any = arguments or {}
        if sdk_tool.model is not None:
            try:
                args = sdk_tool.model.model_validate(args)
            except ValidationError as ve:
                raise RequestError.invalid_params(ve.errors(include_url=False)) from ve
        try:
            result = await sdk_tool.handler(args)
        except Exception as err:  # noqa: BLE001
            logger.warning(f"Tool {self.name}/{name} failed: {err}")
            return {"content": [{"type": "text", "text": str(err)}], "isError": True}
        return _normalize_result(result)

    async def handle_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        method = message.get("method")
        msg_id = message.get("id")
        params = message.get("params") or {}

        if method == "notifications/initialized":
            return {"jsonrpc": "2.0", "result": {}}

        try:
            if not isinstance(method, str):
                raise RequestError.invalid_request({"details": "Missing or non-string 'method'"})
            if method == "initialize":
                result: Any = {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": self.name, "version": self.version},
                }
            elif method == "tools/list":
                result = {"tools": await self.list_tools()}
            elif method == "tools/call":
                result = await self.call_tool(params.get("name", ""), params.get("arguments"))
            else:
                raise RequestError.method_not_found(method)
        except RequestError as re:
            return {"jsonrpc": "2.0", "id": msg_id, "error": re.to_error_obj()}
        except Exception as err:  # noqa: BLE001
            error = RequestError.internal_error({"details": str(err)})
            return {"jsonrpc": "2.0", "id": msg_id, "error": error.to_error_obj()}
        return {"jsonrpc": "2.0", "id": msg_id, "result": result}


def create_server(name: str, version: str = "1.0.0", tools: Optional[Sequence[SdkTool]] = None) -> EmbeddedServer:
    return EmbeddedServer(name, version, tools)
