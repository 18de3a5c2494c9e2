import asyncio
import sys

from agentwire import (
    AgentSession,
    AssistantMessage,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    SessionOptions,
)


async def ask_user(tool_name, tool_input, context):
    answer = await asyncio.to_thread(input, f"Allow {tool_name} {tool_input}? [y/N] ")
    if answer.strip().lower() == "y":
        return PermissionResultAllow()
    return PermissionResultDeny(message="User declined")


async def main() -> None:
    async with AgentSession(SessionOptions(can_use_tool=ask_user)) as session:
        while True:
            try:
                prompt = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            if not prompt.strip():
                continue
            await session.query(prompt)
            async for message in session.receive_response():
                if isinstance(message, AssistantMessage) and message.text:
                    print(message.text)
                elif isinstance(message, ResultMessage):
                    print(f"[session {session.session_id}, turn {message.num_turns}]", file=sys.stderr)


if __name__ == "__main__":
    asyncio.run(main())
