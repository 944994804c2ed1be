"""Tools package for Nexus."""

from nexus.tools.remote import (
    TIMEOUT_ERROR,
    RemoteExecutor,
    ToolExecutionResult,
    decode_output,
    is_blocked_command,
)
from nexus.tools.schema import REMOTE_TOOL_NAME, build_tool_schema

__all__ = [
    "REMOTE_TOOL_NAME",
    "TIMEOUT_ERROR",
    "RemoteExecutor",
    "ToolExecutionResult",
    "build_tool_schema",
    "decode_output",
    "is_blocked_command",
]
