from __future__ import annotations

import enum
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional, Union

from .core import ControlConnection
from .errors import ControlTimeoutError, SessionStateError
from .options import SessionOptions
from .schema import Message, PermissionMode, ResultMessage, SystemMessage, make_user_message
from .transport import SubprocessTransport, Transport

logger = logging.getLogger(__name__)

Prompt = Union[str, AsyncIterable[Dict[str, Any]]]


class SessionState(str, enum.Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class AgentSession:
    """
    One conversation with an agent subprocess.

    Lifecycle: ``CREATED -> INITIALIZING -> ACTIVE -> CLOSING -> CLOSED``.
    ``connect`` spawns the agent and, when hooks, agents or embedded servers
    are configured, completes the ``initialize`` handshake before any user
    content is written. Mid-session commands need ``ACTIVE`` with input open.
    """

    def __init__(self, options: Optional[SessionOptions] = None, transport: Optional[Transport] = None) -> None:
        self._options = options or SessionOptions()
        self._transport = transport
        self._connection: Optional[ControlConnection] = None
        self._state = SessionState.CREATED
        self._session_id = ""

    async def __aenter__(self) -> "AgentSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --- State ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def input_open(self) -> bool:
        return self._connection is not None and self._connection.input_open

    @property
    def pending_requests(self) -> int:
        return self._connection.pending_count if self._connection else 0

    @property
    def result_received(self) -> bool:
        return self._connection is not None and self._connection.result_received

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def server_info(self) -> Optional[Dict[str, Any]]:
        return self._connection.initialize_result if self._connection else None

    def _require(self, *states: SessionState) -> ControlConnection:
        if self._state not in states or self._connection is None:
            expected = ", ".join(s.value for s in states)
            raise SessionStateError(f"Session is {self._state.value}; expected {expected}")
        return self._connection

    def _require_input(self) -> ControlConnection:
        conn = self._require(SessionState.ACTIVE)
        if not conn.input_open:
            raise SessionStateError("Agent input is closed")
        return conn

    # --- Lifecycle --------------------------------------------------------------

    async def connect(self) -> None:
        if self._state is not SessionState.CREATED:
            raise SessionStateError(f"Cannot connect a session that is {self._state.value}")
        opts = self._options
        self._state = SessionState.INITIALIZING
        if self._transport is None:
            self._transport = SubprocessTransport(opts.command, env=opts.env, cwd=opts.cwd, stderr=opts.stderr)
        try:
            await self._transport.start()
            self._connection = ControlConnection(
                self._transport,
                can_use_tool=opts.can_use_tool,
                hooks=opts.hooks,
                mcp_servers=opts.mcp_servers,
                agents=opts.agents,
                control_timeout=opts.control_timeout,
                initialize_timeout=opts.initialize_timeout,
                stream_close_timeout=opts.stream_close_timeout,
                exit_timeout=opts.close_timeout,
                max_frame_size=opts.max_frame_size,
                message_buffer_size=opts.message_buffer_size,
            )
            await self._connection.start()
            if opts.needs_initialize:
                await self._connection.initialize()
        except BaseException:
            await self.close()
            raise
        self._state = SessionState.ACTIVE

    async def close(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        self._state = SessionState.CLOSING
        try:
            if self._transport is not None:
                await self._transport.close(self._options.close_timeout)
        finally:
            if self._connection is not None:
                await self._connection.close()
            self._state = SessionState.CLOSED

    # --- Conversation -----------------------------------------------------------

    async def query(self, prompt: Prompt, session_id: Optional[str] = None) -> None:
        conn = self._require_input()
        marker = self._session_id if session_id is None else session_id
        if isinstance(prompt, str):
            await conn.write_message(make_user_message(prompt, marker))
            return
        async for message in _with_session_id(prompt, marker):
            await conn.write_message(message)

    async def end_input(self) -> None:
        """Stop sending input; waits for the first result when hooks or servers are registered."""
        conn = self._require(SessionState.ACTIVE)
        self._state = SessionState.CLOSING
        await conn.end_input_when_done()

    async def send_and_end_input(self, prompt: Prompt) -> None:
        """Send ``prompt`` and apply the close-input policy in the background.

        A string prompt is written before this returns. An async iterable is
        drained by a background task, so the caller can start reading
        messages right away.
        """
        conn = self._require_input()
        if isinstance(prompt, str):
            await self.query(prompt)
            conn.start_input()
        else:
            conn.start_input(_with_session_id(prompt, self._session_id))
        self._state = SessionState.CLOSING

    async def receive_messages(self) -> AsyncIterator[Message]:
        if self._connection is None:
            raise SessionStateError("Session is not connected")
        async for message in self._connection.receive_messages():
            self._track_session_id(message)
            yield message

    async def receive_response(self) -> AsyncIterator[Message]:
        async for message in self.receive_messages():
            yield message
            if isinstance(message, ResultMessage):
                return

    def _track_session_id(self, message: Message) -> None:
        if isinstance(message, ResultMessage) and message.session_id:
            self._session_id = message.session_id
        elif isinstance(message, SystemMessage) and message.subtype == "init":
            session_id = message.data.get("session_id")
            if isinstance(session_id, str) and session_id:
                self._session_id = session_id

    # --- Mid-session commands ---------------------------------------------------

    async def interrupt(self, timeout: Optional[float] = None) -> None:
        conn = self._require_input()
        limit = self._options.interrupt_timeout if timeout is None else timeout
        try:
            await conn.interrupt(limit)
        except ControlTimeoutError:
            logger.warning(f"Agent did not acknowledge interrupt within {limit}s; terminating")
            if self._transport is not None:
                await self._transport.terminate()
            raise

    async def set_permission_mode(self, mode: PermissionMode) -> None:
        await self._require_input().set_permission_mode(mode)

    async def set_model(self, model: Optional[str] = None) -> None:
        await self._require_input().set_model(model)

    async def rewind_files(self, user_message_id: str) -> None:
        await self._require_input().rewind_files(user_message_id)

    async def get_mcp_status(self) -> Optional[Dict[str, Any]]:
        return await self._require_input().mcp_status()


async def _with_session_id(
    messages: AsyncIterable[Dict[str, Any]], session_id: str
) -> AsyncIterator[Dict[str, Any]]:
    async for message in messages:
        if message.get("type") == "user" and "session_id" not in message:
            message = {**message, "session_id": session_id}
        yield message


async def query(
    prompt: Prompt,
    options: Optional[SessionOptions] = None,
    transport: Optional[Transport] = None,
) -> AsyncIterator[Message]:
    """
    One-shot turn: connect, send ``prompt``, yield every message, close.

    Input is closed as soon as the prompt is written unless hooks or embedded
    servers are registered, in which case it stays open until the first
    result (or ``stream_close_timeout``) so the agent can still call back.
    A ``can_use_tool`` callback without either raises ``ValueError``, since its
    answers could never reach the agent.
    """
    options = options or SessionOptions()
    if options.can_use_tool is not None and not options.holds_input_open:
        raise ValueError(
            "can_use_tool needs agent input to stay open after the prompt: "
            "use AgentSession, or register hooks or embedded servers"
        )
    session = AgentSession(options, transport)
    await session.connect()
    try:
        await session.send_and_end_input(prompt)
        async for message in session.receive_messages():
            yield message
    finally:
        await session.close()
