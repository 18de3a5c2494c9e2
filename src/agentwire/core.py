from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, Mapping, Optional, Set, Union

from pydantic import ValidationError

from .errors import ControlError, ControlTimeoutError, ProcessError, TransportClosedError
from .framing import FrameReader
from .hooks import HookRegistry
from .meta import (
    DEFAULT_CLOSE_TIMEOUT,
    DEFAULT_CONTROL_TIMEOUT,
    DEFAULT_INITIALIZE_TIMEOUT,
    DEFAULT_MAX_FRAME_SIZE,
    DEFAULT_MESSAGE_BUFFER_SIZE,
    DEFAULT_STREAM_CLOSE_TIMEOUT,
)
from .options import AgentDefinition, CanUseTool
from .schema import (
    CanUseToolRequest,
    ControlCancelRequest,
    ControlRequest,
    ControlResponse,
    HookCallbackRequest,
    InitializeRequest,
    InterruptRequest,
    McpMessageRequest,
    McpStatusRequest,
    Message,
    PermissionMode,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    RewindFilesRequest,
    SetModelRequest,
    SetPermissionModeRequest,
    ToolPermissionContext,
    parse_control_request,
)
from .servers import EmbeddedServer
from .transport import Transport

logger = logging.getLogger(__name__)

JsonValue = Any


@dataclass(slots=True)
class _Pending:
    future: asyncio.Future[Any]
    subtype: str


@dataclass(slots=True)
class _StreamFailure:
    error: BaseException


_END = object()


class ControlConnection:
    """
    Control protocol endpoint over a ``Transport``.

    - One reader task drains agent output: control responses resolve pending
      futures by ``request_id``, control requests are each handled in their
      own task, and everything else lands in a bounded message queue
    - All writes go through a single lock so frames never interleave
    - A stream failure fails every pending request and terminates the
      message sequence with an error marker followed by an end marker
    """

    def __init__(
        self,
        transport: Transport,
        *,
        can_use_tool: Optional[CanUseTool] = None,
        hooks: Optional[Mapping[str, Any]] = None,
        mcp_servers: Optional[Mapping[str, EmbeddedServer]] = None,
        agents: Optional[Mapping[str, AgentDefinition]] = None,
        control_timeout: float = DEFAULT_CONTROL_TIMEOUT,
        initialize_timeout: float = DEFAULT_INITIALIZE_TIMEOUT,
        stream_close_timeout: float = DEFAULT_STREAM_CLOSE_TIMEOUT,
        exit_timeout: float = DEFAULT_CLOSE_TIMEOUT,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
        message_buffer_size: int = DEFAULT_MESSAGE_BUFFER_SIZE,
    ) -> None:
        self._transport = transport
        self._can_use_tool = can_use_tool
        self._hooks = hooks if isinstance(hooks, HookRegistry) else HookRegistry(hooks)
        self._mcp_servers: Dict[str, EmbeddedServer] = dict(mcp_servers or {})
        self._agents: Dict[str, AgentDefinition] = dict(agents or {})
        self._control_timeout = control_timeout
        self._initialize_timeout = initialize_timeout
        self._stream_close_timeout = stream_close_timeout
        self._exit_timeout = exit_timeout
        self._max_frame_size = max_frame_size

        self._next_request_id = 0
        self._pending: Dict[str, _Pending] = {}
        self._write_lock = asyncio.Lock()
        self._messages: asyncio.Queue[Any] = asyncio.Queue(maxsize=message_buffer_size)
        self._inflight: Set[asyncio.Task[None]] = set()
        self._first_result = asyncio.Event()
        self._read_task: Optional[asyncio.Task[None]] = None
        self._input_task: Optional[asyncio.Task[None]] = None
        self._input_open = True
        self._stream_ended = False
        self._end_queued = False
        self._exhausted = False
        self._closed = False
        self.initialize_result: Optional[Dict[str, Any]] = None

    # --- State ------------------------------------------------------------------

    @property
    def input_open(self) -> bool:
        return self._input_open and not self._closed and self._transport.input_open

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def result_received(self) -> bool:
        return self._first_result.is_set()

    @property
    def hooks(self) -> HookRegistry:
        return self._hooks

    @property
    def has_bidirectional_peers(self) -> bool:
        """Hooks or embedded servers may call back after the last user message."""
        return bool(self._hooks) or bool(self._mcp_servers)

    # --- Lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        tasks = [t for t in (self._input_task, self._read_task, *self._inflight) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._inflight.clear()
        self._fail_pending(TransportClosedError("Connection closed"))
        self._first_result.set()
        self._stream_ended = True
        if not self._end_queued:
            self._end_queued = True
            self._force_put(_END)

    def _force_put(self, item: Any) -> None:
        while True:
            try:
                self._messages.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._messages.get_nowait()

    # --- IO loops ---------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            async for frame in FrameReader(self._transport.reader, self._max_frame_size):
                if isinstance(frame, ControlResponse):
                    self._resolve(frame)
                elif isinstance(frame, ControlRequest):
                    task = asyncio.create_task(self._handle_control_request(frame))
                    self._inflight.add(task)
                    task.add_done_callback(self._inflight.discard)
                elif isinstance(frame, ControlCancelRequest):
                    logger.warning(f"Ignoring control_cancel_request for {frame.request_id}: not supported")
                else:
                    if isinstance(frame, ResultMessage):
                        self._first_result.set()
                    await self._messages.put(frame)
            await self._check_exit()
        except asyncio.CancelledError:
            raise
        except Exception as err:  # noqa: BLE001
            logger.error(f"Fatal error reading agent output: {err}")
            self._stream_ended = True
            self._fail_pending(err)
            self._first_result.set()
            await self._messages.put(_StreamFailure(err))
        else:
            self._fail_pending(TransportClosedError("Agent output closed"))
            self._first_result.set()
        self._stream_ended = True
        await self._messages.put(_END)
        self._end_queued = True

    async def _check_exit(self) -> None:
        code = await self._transport.wait(self._exit_timeout)
        if code not in (0, None) and not self._transport.terminated:
            raise ProcessError(code, self._transport.stderr_tail)

    def _fail_pending(self, cause: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for request_id, entry in pending.items():
            if entry.future.done():
                continue
            if isinstance(cause, TransportClosedError):
                error = cause
            else:
                error = TransportClosedError(f"Agent stream failed: {cause}")
                error.__cause__ = cause
            entry.future.set_exception(error)
            # consumed here so an abandoned request does not log "never retrieved"
            entry.future.exception()

    def _resolve(self, frame: ControlResponse) -> None:
        request_id = frame.request_id
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            logger.debug(f"Discarding control_response for unknown request {request_id}")
            return
        body = frame.response
        if body.subtype == "error":
            entry.future.set_exception(ControlError(body.error or "Unknown error", entry.subtype))
        else:
            entry.future.set_result(body.response)

    async def _send_obj(self, obj: Dict[str, Any]) -> None:
        line = json.dumps(obj, separators=(",", ":"))
        async with self._write_lock:
            if not self.input_open:
                raise TransportClosedError("Agent input is closed")
            await self._transport.write_line(line)

    # --- Inbound control requests -----------------------------------------------

    async def _handle_control_request(self, frame: ControlRequest) -> None:
        request_id = frame.request_id
        payload: Dict[str, Any] = {"request_id": request_id}
        try:
            result = await self._dispatch(parse_control_request(frame.request))
            payload.update(subtype="success", response=result)
        except ValidationError as ve:
            payload.update(subtype="error", error=f"Invalid {frame.subtype} request: {ve}")
        except Exception as err:  # noqa: BLE001
            logger.warning(f"Control request {frame.subtype} ({request_id}) failed: {err}")
            payload.update(subtype="error", error=str(err))
        try:
            await self._send_obj({"type": "control_response", "response": payload})
        except TransportClosedError:
            logger.warning(f"Dropped response to {frame.subtype} ({request_id}): agent input is closed")
        except Exception as err:  # noqa: BLE001
            logger.error(f"Failed to send response to {frame.subtype} ({request_id}): {err}")

    async def _dispatch(self, request: Any) -> Dict[str, Any]:
        if isinstance(request, CanUseToolRequest):
            return await self._on_can_use_tool(request)
        if isinstance(request, HookCallbackRequest):
            return await self._hooks.invoke(request.callback_id, request.input, request.tool_use_id)
        if isinstance(request, McpMessageRequest):
            return await self._on_mcp_message(request)
        raise ControlError(f"Unsupported control request subtype: {request.subtype}", request.subtype)

    async def _on_can_use_tool(self, request: CanUseToolRequest) -> Dict[str, Any]:
        if self._can_use_tool is None:
            raise ControlError("can_use_tool callback is not configured", request.subtype)
        context = ToolPermissionContext(
            suggestions=request.permission_suggestions or [],
            blocked_path=request.blocked_path,
            tool_use_id=request.tool_use_id,
        )
        result = await self._can_use_tool(request.tool_name, request.input, context)
        if not isinstance(result, (PermissionResultAllow, PermissionResultDeny)):
            raise TypeError(
                f"can_use_tool must return PermissionResultAllow or PermissionResultDeny, got {type(result).__name__}"
            )
        return result.to_wire(request.input)

    async def _on_mcp_message(self, request: McpMessageRequest) -> Dict[str, Any]:
        server = self._mcp_servers.get(request.server_name)
        if server is None:
            reply: Dict[str, Any] = {
                "jsonrpc": "2.0",
                "id": request.message.get("id"),
                "error": {"code": -32601, "message": f"Server '{request.server_name}' not found"},
            }
        else:
            reply = await server.handle_message(request.message)
        return {"mcp_response": reply}

    # --- Public API -------------------------------------------------------------

    async def send_control_request(
        self, request: Dict[str, Any], timeout: Optional[float] = None
    ) -> Optional[JsonValue]:
        subtype = str(request.get("subtype", ""))
        if self._stream_ended:
            raise TransportClosedError("Agent output closed")
        self._next_request_id += 1
        request_id = f"req_{self._next_request_id}_{os.urandom(4).hex()}"
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _Pending(fut, subtype)
        limit = self._control_timeout if timeout is None else timeout
        try:
            await self._send_obj({"type": "control_request", "request_id": request_id, "request": request})
            return await asyncio.wait_for(fut, limit)
        except asyncio.TimeoutError:
            raise ControlTimeoutError(request_id, subtype, limit) from None
        finally:
            self._pending.pop(request_id, None)

    async def write_message(self, message: Dict[str, Any]) -> None:
        await self._send_obj(message)

    async def initialize(self) -> Optional[Dict[str, Any]]:
        request = InitializeRequest(
            hooks=self._hooks.wire_config(),
            agents={name: agent.to_wire() for name, agent in self._agents.items()} or None,
            sdk_mcp_servers=list(self._mcp_servers) or None,
        )
        self.initialize_result = await self.send_control_request(
            request.model_dump(by_alias=True, exclude_none=True), self._initialize_timeout
        )
        return self.initialize_result

    async def interrupt(self, timeout: Optional[float] = None) -> None:
        await self.send_control_request(InterruptRequest().model_dump(), timeout)

    async def set_permission_mode(self, mode: PermissionMode) -> None:
        await self.send_control_request(SetPermissionModeRequest(mode=mode).model_dump())

    async def set_model(self, model: Optional[str] = None) -> None:
        await self.send_control_request(SetModelRequest(model=model).model_dump())

    async def rewind_files(self, user_message_id: str) -> None:
        await self.send_control_request(RewindFilesRequest(user_message_id=user_message_id).model_dump())

    async def mcp_status(self) -> Optional[Dict[str, Any]]:
        return await self.send_control_request(McpStatusRequest().model_dump())

    async def end_input(self) -> None:
        async with self._write_lock:
            self._input_open = False
            await self._transport.end_input()

    async def end_input_when_done(self) -> None:
        """Close agent input, first waiting for a result if the agent may still call back."""
        if self.has_bidirectional_peers and not self._first_result.is_set():
            try:
                await asyncio.wait_for(self._first_result.wait(), self._stream_close_timeout)
            except asyncio.TimeoutError:
                logger.debug(f"No result within {self._stream_close_timeout}s; closing input anyway")
        await self.end_input()

    async def stream_input(self, messages: AsyncIterable[Dict[str, Any]]) -> None:
        async for message in messages:
            await self.write_message(message)
        await self.end_input_when_done()

    def start_input(self, messages: Union[AsyncIterable[Dict[str, Any]], None] = None) -> asyncio.Task[None]:
        """Run ``stream_input`` (or just the close policy) in the background."""
        if messages is None:
            coro = self.end_input_when_done()
        else:
            coro = self.stream_input(messages)
        self._input_task = asyncio.create_task(coro)
        return self._input_task

    async def receive_messages(self) -> AsyncIterator[Message]:
        while not self._exhausted:
            item = await self._messages.get()
            if item is _END:
                self._exhausted = True
                return
            if isinstance(item, _StreamFailure):
                raise item.error
            yield item
