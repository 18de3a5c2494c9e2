import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from agentwire import Transport, TransportClosedError

FAKE_AGENT = os.path.join(os.path.dirname(__file__), "fake_agent.py")


class MemoryTransport(Transport):
    """In-memory agent pipe: tests feed agent output and inspect what the client wrote."""

    def __init__(self) -> None:
        self._reader = asyncio.StreamReader()
        self.written: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.lines: List[Dict[str, Any]] = []
        self.input_closed = asyncio.Event()
        self.exit_code: Optional[int] = 0
        self.started = False
        self._input_open = False
        self._terminated = False

    # Transport ------------------------------------------------------------------

    async def start(self) -> None:
        self.started = True
        self._input_open = True

    @property
    def reader(self) -> asyncio.StreamReader:
        return self._reader

    async def write_line(self, line: str) -> None:
        if not self._input_open:
            raise TransportClosedError("memory transport input closed")
        obj = json.loads(line)
        self.lines.append(obj)
        self.written.put_nowait(obj)

    async def end_input(self) -> None:
        self._input_open = False
        self.input_closed.set()

    @property
    def input_open(self) -> bool:
        return self._input_open

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        return self.exit_code

    async def terminate(self, grace: float = 2.0) -> Optional[int]:
        self._terminated = True
        self._input_open = False
        self.exit_code = -15
        self.feed_eof()
        return self.exit_code

    async def close(self, timeout: Optional[float] = None) -> Optional[int]:
        await self.end_input()
        self.feed_eof()
        return self.exit_code

    @property
    def terminated(self) -> bool:
        return self._terminated

    # Test helpers ---------------------------------------------------------------

    def send(self, obj: Dict[str, Any]) -> None:
        self.send_raw((json.dumps(obj) + "\n").encode("utf-8"))

    def send_raw(self, data: bytes) -> None:
        if not self._reader.at_eof():
            self._reader.feed_data(data)

    def feed_eof(self) -> None:
        if not self._reader.at_eof():
            self._reader.feed_eof()

    async def next_written(self, timeout: float = 2.0) -> Dict[str, Any]:
        return await asyncio.wait_for(self.written.get(), timeout)

    async def next_control_request(self, timeout: float = 2.0) -> Dict[str, Any]:
        while True:
            obj = await self.next_written(timeout)
            if obj.get("type") == "control_request":
                return obj

    def respond(self, request: Dict[str, Any], response: Optional[Dict[str, Any]] = None) -> None:
        self.send(
            {
                "type": "control_response",
                "response": {"subtype": "success", "request_id": request["request_id"], "response": response or {}},
            }
        )

    def respond_error(self, request: Dict[str, Any], error: str) -> None:
        self.send(
            {
                "type": "control_response",
                "response": {"subtype": "error", "request_id": request["request_id"], "error": error},
            }
        )


def assistant_frame(text: str) -> Dict[str, Any]:
    return {
        "type": "assistant",
        "message": {"role": "assistant", "model": "fake-model", "content": [{"type": "text", "text": text}]},
        "parent_tool_use_id": None,
    }


def result_frame(text: str = "done", session_id: str = "sess-1", num_turns: int = 1) -> Dict[str, Any]:
    return {
        "type": "result",
        "subtype": "success",
        "duration_ms": 10,
        "duration_api_ms": 8,
        "is_error": False,
        "num_turns": num_turns,
        "session_id": session_id,
        "total_cost_usd": 0.01,
        "usage": {"input_tokens": 3, "output_tokens": 5},
        "result": text,
    }


@pytest_asyncio.fixture
async def memory_transport():
    transport = MemoryTransport()
    await transport.start()
    yield transport
    transport.feed_eof()


@pytest.fixture
def frames():
    class _Frames:
        assistant = staticmethod(assistant_frame)
        result = staticmethod(result_frame)

    return _Frames


@pytest.fixture
def fake_agent():
    def command(scenario: str = "echo") -> List[str]:
        return [sys.executable, FAKE_AGENT, scenario]

    return command
