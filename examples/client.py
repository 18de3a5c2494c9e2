import asyncio
import sys

from agentwire import (
    AssistantMessage,
    HookMatcher,
    HookOutput,
    ResultMessage,
    SessionOptions,
    create_server,
    query,
    tool,
)


@tool("add", "Add two numbers", {"a": float, "b": float})
async def add(args):
    return f"{args['a'] + args['b']}"


async def block_rm(input_data, tool_use_id, context):
    command = input_data.get("tool_input", {}).get("command", "")
    if "rm -rf" in command:
        return HookOutput(
            hook_specific_output={
                "hookEventName": "PreToolUse",
                "permissionDecision": "deny",
                "permissionDecisionReason": "destructive command",
            }
        )
    return None


async def main() -> None:
    options = SessionOptions(
        hooks={"PreToolUse": [HookMatcher(matcher="Bash", hooks=[block_rm])]},
        mcp_servers={"calc": create_server("calc", tools=[add])},
        stderr=lambda line: print(f"[agent] {line}", file=sys.stderr),
    )
    prompt = sys.argv[1] if len(sys.argv) > 1 else "Use the calc add tool to add 2 and 3"
    async for message in query(prompt, options):
        if isinstance(message, AssistantMessage):
            print(message.text)
        elif isinstance(message, ResultMessage):
            print(f"done in {message.num_turns} turns, cost ${message.total_cost_usd or 0:.4f}", file=sys.stderr)


if __name__ == "__main__":
    asyncio.run(main())
