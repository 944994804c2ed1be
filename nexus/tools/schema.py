"""Build the remote-command tool definition offered to the model."""

from nexus.llm import ToolDefinition
from nexus.machines import MachineDescriptor, MachineRegistry

REMOTE_TOOL_NAME = "execute_remote_command"


def _describe_machine(machine: MachineDescriptor) -> str:
    line = f"- {machine.name} (os: {machine.os})"
    if machine.notes:
        line += f": {machine.notes}"
    return line


def build_tool_schema(registry: MachineRegistry, command_timeout: float = 30.0) -> ToolDefinition | None:
    """Build the single remote-command tool from the current registry.

    Only enabled, non-Commander machines are offered. Returns None when
    none qualify, so the model is never given a tool it cannot use.
    """
    targets = registry.targetable()
    if not targets:
        return None

    description = "\n".join([
        "Execute a shell command on a named remote machine over ssh and return "
        "its stdout, stderr and exit code. Commands run non-interactively and "
        f"time out after {command_timeout:g} seconds.",
        "Available machines:",
        *(_describe_machine(machine) for machine in targets),
    ])
    return ToolDefinition(
        name=REMOTE_TOOL_NAME,
        description=description,
        parameters={
            "type": "object",
            "properties": {
                "machine_name": {
                    "type": "string",
                    "enum": [machine.name for machine in targets],
                    "description": "Name of the machine to run the command on",
                },
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
            },
            "required": ["machine_name", "command"],
        },
    )
