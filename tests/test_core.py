import asyncio
import logging
import re

import pytest

from agentwire import (
    AgentDefinition,
    AssistantMessage,
    ControlConnection,
    ControlError,
    ControlTimeoutError,
    HookMatcher,
    HookOutput,
    MalformedFrameError,
    PermissionResultAllow,
    PermissionResultDeny,
    ProcessError,
    ResultMessage,
    TransportClosedError,
    UnknownFrame,
    create_server,
    tool,
)


async def _connect(transport, **kwargs) -> ControlConnection:
    conn = ControlConnection(transport, **kwargs)
    await conn.start()
    return conn


async def _next(messages, timeout: float = 2.0):
    return await asyncio.wait_for(messages.__anext__(), timeout)


async def _drain(conn: ControlConnection, timeout: float = 2.0):
    async def collect():
        return [m async for m in conn.receive_messages()]

    return await asyncio.wait_for(collect(), timeout)


def _control_request(request_id: str, **request):
    return {"type": "control_request", "request_id": request_id, "request": request}


@tool("add", "Add two integers", {"a": int, "b": int})
async def add(args):
    return str(args["a"] + args["b"])


# ------------------------ Outbound requests ---------------------

@pytest.mark.asyncio
async def test_control_request_round_trip(memory_transport, frames):
    conn = await _connect(memory_transport)
    task = asyncio.create_task(conn.send_control_request({"subtype": "mcp_status"}))

    req = await memory_transport.next_control_request()
    assert req["request"] == {"subtype": "mcp_status"}
    assert re.fullmatch(r"req_1_[0-9a-f]{8}", req["request_id"])
    assert conn.pending_count == 1

    memory_transport.respond(req, {"mcpServers": []})
    assert await asyncio.wait_for(task, 2) == {"mcpServers": []}
    assert conn.pending_count == 0

    # a second answer for the same id is discarded, not queued as a message
    memory_transport.respond(req, {"mcpServers": ["late"]})
    memory_transport.send(frames.result())
    messages = conn.receive_messages()
    assert isinstance(await _next(messages), ResultMessage)
    await conn.close()


@pytest.mark.asyncio
async def test_responses_out_of_order(memory_transport):
    conn = await _connect(memory_transport)
    first = asyncio.create_task(conn.send_control_request({"subtype": "set_model", "model": "a"}))
    req1 = await memory_transport.next_control_request()
    second = asyncio.create_task(conn.send_control_request({"subtype": "set_model", "model": "b"}))
    req2 = await memory_transport.next_control_request()
    assert req1["request_id"] != req2["request_id"]

    memory_transport.respond(req2, {"model": "b"})
    memory_transport.respond(req1, {"model": "a"})
    assert await asyncio.wait_for(first, 2) == {"model": "a"}
    assert await asyncio.wait_for(second, 2) == {"model": "b"}
    await conn.close()


@pytest.mark.asyncio
async def test_error_response_raises_control_error(memory_transport):
    conn = await _connect(memory_transport)
    task = asyncio.create_task(conn.rewind_files("msg-1"))
    req = await memory_transport.next_control_request()
    assert req["request"] == {"subtype": "rewind_files", "user_message_id": "msg-1"}
    memory_transport.respond_error(req, "File checkpointing is not enabled")

    with pytest.raises(ControlError) as exc_info:
        await asyncio.wait_for(task, 2)
    assert exc_info.value.subtype == "rewind_files"
    assert "checkpointing" in exc_info.value.message
    await conn.close()


@pytest.mark.asyncio
async def test_timeout_is_local_to_one_request(memory_transport):
    conn = await _connect(memory_transport)
    slow = asyncio.create_task(conn.send_control_request({"subtype": "set_model", "model": "x"}, timeout=0.2))
    slow_req = await memory_transport.next_control_request()
    fast = asyncio.create_task(conn.send_control_request({"subtype": "mcp_status"}))
    fast_req = await memory_transport.next_control_request()

    with pytest.raises(ControlTimeoutError) as exc_info:
        await asyncio.wait_for(slow, 2)
    assert exc_info.value.request_id == slow_req["request_id"]
    assert exc_info.value.subtype == "set_model"
    assert conn.pending_count == 1

    # the late answer is dropped and the other request is unaffected
    memory_transport.respond(slow_req, {})
    memory_transport.respond(fast_req, {"ok": True})
    assert await asyncio.wait_for(fast, 2) == {"ok": True}
    assert conn.pending_count == 0
    await conn.close()


@pytest.mark.asyncio
async def test_initialize_sends_registrations(memory_transport):
    async def guard(input_data, tool_use_id, context):
        return None

    conn = await _connect(
        memory_transport,
        hooks={"PreToolUse": [HookMatcher(matcher="Bash", hooks=[guard])]},
        mcp_servers={"calc": create_server("calc", tools=[add])},
        agents={"reviewer": AgentDefinition(description="Reviews code", prompt="Be strict", tools=["Read"])},
    )
    task = asyncio.create_task(conn.initialize())
    req = await memory_transport.next_control_request()
    assert req["request"] == {
        "subtype": "initialize",
        "hooks": {"PreToolUse": [{"matcher": "Bash", "hookCallbackIds": ["hook_0"]}]},
        "agents": {"reviewer": {"description": "Reviews code", "prompt": "Be strict", "tools": ["Read"]}},
        "sdkMcpServers": ["calc"],
    }
    memory_transport.respond(req, {"commands": []})
    assert await asyncio.wait_for(task, 2) == {"commands": []}
    assert conn.initialize_result == {"commands": []}
    await conn.close()


# ------------------------ Inbound requests ----------------------

@pytest.mark.asyncio
async def test_can_use_tool_rewrites_input(memory_transport):
    seen = {}

    async def can_use_tool(tool_name, tool_input, context):
        seen.update(tool_name=tool_name, tool_use_id=context.tool_use_id)
        return PermissionResultAllow(updated_input={**tool_input, "command": "ls -la"})

    conn = await _connect(memory_transport, can_use_tool=can_use_tool)
    memory_transport.send(
        _control_request(
            "cli_1",
            subtype="can_use_tool",
            tool_name="Bash",
            input={"command": "ls"},
            permission_suggestions=[],
            tool_use_id="toolu_1",
        )
    )
    reply = await memory_transport.next_written()
    assert reply == {
        "type": "control_response",
        "response": {
            "request_id": "cli_1",
            "subtype": "success",
            "response": {"behavior": "allow", "updatedInput": {"command": "ls -la"}},
        },
    }
    assert seen == {"tool_name": "Bash", "tool_use_id": "toolu_1"}
    await conn.close()


@pytest.mark.asyncio
async def test_can_use_tool_deny_with_interrupt(memory_transport):
    async def can_use_tool(tool_name, tool_input, context):
        return PermissionResultDeny(message="not in this repo", interrupt=True)

    conn = await _connect(memory_transport, can_use_tool=can_use_tool)
    memory_transport.send(_control_request("cli_1", subtype="can_use_tool", tool_name="Write", input={}))
    reply = await memory_transport.next_written()
    assert reply["response"]["response"] == {"behavior": "deny", "message": "not in this repo", "interrupt": True}
    await conn.close()


@pytest.mark.asyncio
async def test_can_use_tool_without_callback_is_an_error(memory_transport):
    conn = await _connect(memory_transport)
    memory_transport.send(_control_request("cli_1", subtype="can_use_tool", tool_name="Write", input={}))
    reply = await memory_transport.next_written()
    assert reply["response"]["subtype"] == "error"
    assert reply["response"]["request_id"] == "cli_1"
    assert "not configured" in reply["response"]["error"]
    await conn.close()


@pytest.mark.asyncio
async def test_concurrent_requests_answered_by_id(memory_transport):
    async def can_use_tool(tool_name, tool_input, context):
        if tool_name == "Slow":
            await asyncio.sleep(0.2)
        return PermissionResultAllow(updated_input={"tool": tool_name})

    conn = await _connect(memory_transport, can_use_tool=can_use_tool)
    memory_transport.send(_control_request("cli_1", subtype="can_use_tool", tool_name="Slow", input={}))
    memory_transport.send(_control_request("cli_2", subtype="can_use_tool", tool_name="Fast", input={}))

    first = await memory_transport.next_written()
    second = await memory_transport.next_written()
    assert first["response"]["request_id"] == "cli_2"
    assert first["response"]["response"]["updatedInput"] == {"tool": "Fast"}
    assert second["response"]["request_id"] == "cli_1"
    assert second["response"]["response"]["updatedInput"] == {"tool": "Slow"}
    await conn.close()


@pytest.mark.asyncio
async def test_hook_callback_output_is_translated(memory_transport):
    calls = []

    async def stop_everything(input_data, tool_use_id, context):
        calls.append((input_data["tool_name"], tool_use_id, context.callback_id))
        return HookOutput(continue_=False, stop_reason="budget exhausted")

    conn = await _connect(memory_transport, hooks={"PreToolUse": [HookMatcher(hooks=[stop_everything])]})
    memory_transport.send(
        _control_request(
            "cli_1", subtype="hook_callback", callback_id="hook_0", input={"tool_name": "Bash"}, tool_use_id="t1"
        )
    )
    reply = await memory_transport.next_written()
    assert reply["response"]["subtype"] == "success"
    assert reply["response"]["response"] == {"continue": False, "stopReason": "budget exhausted"}
    assert calls == [("Bash", "t1", "hook_0")]

    memory_transport.send(_control_request("cli_2", subtype="hook_callback", callback_id="hook_9", input={}))
    reply = await memory_transport.next_written()
    assert reply["response"]["error"] == "No hook callback found for ID: hook_9"
    await conn.close()


@pytest.mark.asyncio
async def test_mcp_message_routed_to_server(memory_transport):
    conn = await _connect(memory_transport, mcp_servers={"calc": create_server("calc", tools=[add])})
    memory_transport.send(
        _control_request(
            "cli_1",
            subtype="mcp_message",
            server_name="calc",
            message={
                "jsonrpc": "2.0",
                "id": 7,
                "method": "tools/call",
                "params": {"name": "add", "arguments": {"a": 2, "b": 3}},
            },
        )
    )
    reply = await memory_transport.next_written()
    assert reply["response"]["response"] == {
        "mcp_response": {"jsonrpc": "2.0", "id": 7, "result": {"content": [{"type": "text", "text": "5"}]}}
    }

    memory_transport.send(
        _control_request(
            "cli_2",
            subtype="mcp_message",
            server_name="weather",
            message={"jsonrpc": "2.0", "id": 8, "method": "tools/list"},
        )
    )
    reply = await memory_transport.next_written()
    error = reply["response"]["response"]["mcp_response"]["error"]
    assert error == {"code": -32601, "message": "Server 'weather' not found"}
    await conn.close()


@pytest.mark.asyncio
async def test_unsupported_and_invalid_requests(memory_transport):
    conn = await _connect(memory_transport)
    memory_transport.send(_control_request("cli_1", subtype="teleport"))
    reply = await memory_transport.next_written()
    assert reply["response"] == {
        "request_id": "cli_1",
        "subtype": "error",
        "error": "Unsupported control request subtype: teleport",
    }

    memory_transport.send(_control_request("cli_2", subtype="hook_callback"))
    reply = await memory_transport.next_written()
    assert reply["response"]["error"].startswith("Invalid hook_callback request")
    await conn.close()


# ------------------------ Message stream ------------------------

@pytest.mark.asyncio
async def test_cancel_dropped_and_unknown_frames_pass_through(memory_transport, frames):
    conn = await _connect(memory_transport)
    memory_transport.send({"type": "control_cancel_request", "request_id": "cli_1"})
    memory_transport.send({"type": "keep_alive"})
    memory_transport.send(frames.assistant("hi"))
    memory_transport.send(frames.result())
    memory_transport.feed_eof()

    messages = await _drain(conn)
    assert [type(m) for m in messages] == [UnknownFrame, AssistantMessage, ResultMessage]
    assert messages[0].type == "keep_alive"
    assert conn.result_received
    await conn.close()


@pytest.mark.asyncio
async def test_eof_ends_stream_and_fails_pending(memory_transport, frames):
    conn = await _connect(memory_transport)
    task = asyncio.create_task(conn.send_control_request({"subtype": "mcp_status"}))
    await memory_transport.next_control_request()
    memory_transport.send(frames.assistant("partial"))
    memory_transport.feed_eof()

    messages = await _drain(conn)
    assert [m.text for m in messages] == ["partial"]
    with pytest.raises(TransportClosedError):
        await asyncio.wait_for(task, 2)
    with pytest.raises(TransportClosedError):
        await conn.send_control_request({"subtype": "mcp_status"})
    await conn.close()


@pytest.mark.asyncio
async def test_malformed_output_is_fatal(memory_transport, frames):
    conn = await _connect(memory_transport)
    task = asyncio.create_task(conn.send_control_request({"subtype": "mcp_status"}))
    await memory_transport.next_control_request()
    memory_transport.send(frames.assistant("about to break"))
    memory_transport.send_raw(b"this is not json\n")

    messages = conn.receive_messages()
    assert (await _next(messages)).text == "about to break"
    with pytest.raises(MalformedFrameError):
        await _next(messages)

    with pytest.raises(TransportClosedError) as exc_info:
        await asyncio.wait_for(task, 2)
    assert isinstance(exc_info.value.__cause__, MalformedFrameError)

    # after the error the sequence is simply over
    assert await _drain(conn) == []
    await conn.close()


@pytest.mark.asyncio
async def test_nonzero_exit_is_reported(memory_transport, frames):
    conn = await _connect(memory_transport)
    memory_transport.exit_code = 1
    memory_transport.send(frames.assistant("bye"))
    memory_transport.feed_eof()

    messages = conn.receive_messages()
    assert isinstance(await _next(messages), AssistantMessage)
    with pytest.raises(ProcessError) as exc_info:
        await _next(messages)
    assert exc_info.value.exit_code == 1
    await conn.close()


@pytest.mark.asyncio
async def test_forced_exit_is_not_an_error(memory_transport):
    conn = await _connect(memory_transport)
    await memory_transport.terminate()
    assert await _drain(conn) == []
    await conn.close()


@pytest.mark.asyncio
async def test_close_unblocks_consumer(memory_transport):
    conn = await _connect(memory_transport)
    consumer = asyncio.create_task(_drain(conn))
    await asyncio.sleep(0.05)
    assert not consumer.done()

    await conn.close()
    assert await asyncio.wait_for(consumer, 2) == []
    await conn.close()


@pytest.mark.asyncio
async def test_bounded_buffer_applies_backpressure(memory_transport, frames):
    conn = await _connect(memory_transport, message_buffer_size=1)
    task = asyncio.create_task(conn.send_control_request({"subtype": "mcp_status"}))
    req = await memory_transport.next_control_request()
    for text in ("a1", "a2", "a3"):
        memory_transport.send(frames.assistant(text))
    memory_transport.respond(req, {"ok": True})

    # the reader is parked on the full buffer, so the response is not seen yet
    await asyncio.sleep(0.1)
    assert not task.done()

    messages = conn.receive_messages()
    assert [(await _next(messages)).text for _ in range(3)] == ["a1", "a2", "a3"]
    assert await asyncio.wait_for(task, 2) == {"ok": True}
    await conn.close()


# ------------------------ Input close policy --------------------

@pytest.mark.asyncio
async def test_input_closed_immediately_without_callbacks(memory_transport):
    conn = await _connect(memory_transport)
    await asyncio.wait_for(conn.end_input_when_done(), 1)
    assert memory_transport.input_closed.is_set()
    assert not conn.input_open
    with pytest.raises(TransportClosedError):
        await conn.write_message({"type": "user"})
    await conn.close()


@pytest.mark.asyncio
async def test_input_held_open_until_result_with_hooks(memory_transport, frames):
    async def noop(input_data, tool_use_id, context):
        return None

    conn = await _connect(memory_transport, hooks={"Stop": [HookMatcher(hooks=[noop])]})
    closer = asyncio.create_task(conn.end_input_when_done())
    await asyncio.sleep(0.1)
    assert not memory_transport.input_closed.is_set()

    memory_transport.send(frames.result())
    await asyncio.wait_for(closer, 2)
    assert memory_transport.input_closed.is_set()
    await conn.close()


@pytest.mark.asyncio
async def test_stream_close_timeout_bounds_the_wait(memory_transport):
    conn = await _connect(
        memory_transport,
        mcp_servers={"calc": create_server("calc", tools=[add])},
        stream_close_timeout=0.1,
    )
    await asyncio.wait_for(conn.end_input_when_done(), 2)
    assert memory_transport.input_closed.is_set()
    await conn.close()


@pytest.mark.asyncio
async def test_stream_input_writes_then_closes(memory_transport):
    async def prompts():
        yield {"type": "user", "message": {"role": "user", "content": "one"}}
        yield {"type": "user", "message": {"role": "user", "content": "two"}}

    conn = await _connect(memory_transport)
    await asyncio.wait_for(conn.start_input(prompts()), 2)
    assert [line["message"]["content"] for line in memory_transport.lines] == ["one", "two"]
    assert memory_transport.input_closed.is_set()
    await conn.close()


@pytest.mark.asyncio
async def test_failed_response_write_is_logged(memory_transport, monkeypatch, caplog):
    async def broken_write(line):
        raise OSError("pipe exploded")

    monkeypatch.setattr(memory_transport, "write_line", broken_write)
    conn = await _connect(memory_transport)
    with caplog.at_level(logging.ERROR, logger="agentwire.core"):
        memory_transport.send(_control_request("cli_1", subtype="teleport"))
        for _ in range(100):
            if "pipe exploded" in caplog.text:
                break
            await asyncio.sleep(0.01)
    assert "Failed to send response to teleport (cli_1): pipe exploded" in caplog.text
    await conn.close()
