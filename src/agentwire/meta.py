# Wire vocabulary of the agent control protocol.
FRAME_TYPES = {
    'user': 'user',
    'assistant': 'assistant',
    'system': 'system',
    'result': 'result',
    'stream_event': 'stream_event',
    'control_request': 'control_request',
    'control_response': 'control_response',
    'control_cancel_request': 'control_cancel_request',
}
CONTROL_SUBTYPES = {
    'initialize': 'initialize',
    'can_use_tool': 'can_use_tool',
    'hook_callback': 'hook_callback',
    'mcp_message': 'mcp_message',
    'interrupt': 'interrupt',
    'set_permission_mode': 'set_permission_mode',
    'set_model': 'set_model',
    'rewind_files': 'rewind_files',
    'mcp_status': 'mcp_status',
}
HOOK_EVENTS = (
    'PreToolUse',
    'PostToolUse',
    'PostToolUseFailure',
    'UserPromptSubmit',
    'Stop',
    'SubagentStart',
    'SubagentStop',
    'PreCompact',
    'Notification',
    'PermissionRequest',
)
MCP_PROTOCOL_VERSION = '2024-11-05'

DEFAULT_COMMAND = ('claude', '--output-format', 'stream-json', '--input-format', 'stream-json', '--verbose')
DEFAULT_MAX_FRAME_SIZE = 1024 * 1024
DEFAULT_CONTROL_TIMEOUT = 60.0
DEFAULT_INITIALIZE_TIMEOUT = 60.0
DEFAULT_STREAM_CLOSE_TIMEOUT = 60.0
DEFAULT_CLOSE_TIMEOUT = 5.0
DEFAULT_INTERRUPT_TIMEOUT = 10.0
DEFAULT_MESSAGE_BUFFER_SIZE = 100
