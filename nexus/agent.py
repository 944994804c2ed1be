"""Tool-use loop: stream a reply, run the remote commands it asks for, repeat."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from nexus.exceptions import StreamError
from nexus.instructions import InstructionLoader, render_system_prompt
from nexus.llm import (
    LLMProvider,
    Message,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)
from nexus.llm.stream import StreamEventParser, StreamResult
from nexus.logging import get_logger
from nexus.machines import MachineRegistry
from nexus.session import ConfigState, ConversationEntry, TurnUsage
from nexus.tools.remote import RemoteExecutor, ToolExecutionResult
from nexus.tools.schema import REMOTE_TOOL_NAME, build_tool_schema

log = get_logger(__name__)

MAX_TOOL_LOOPS = 5

EVENT_STREAM_DELTA = "stream-delta"
EVENT_TOOL_EXECUTING = "tool-executing"
EVENT_TOOL_COMPLETED = "tool-completed"
EVENT_TOOL_CONTINUE = "stream-tool-continue"

EventCallback = Callable[[str, dict[str, Any]], None]


class TurnState(str, Enum):
    """How a turn ended."""

    DONE = "done"
    ABORTED_LIMIT = "aborted_limit"


def tool_limit_warning(limit: int) -> str:
    return (
        f"[Warning: stopped after {limit} tool iterations. "
        "The model was still requesting commands; some were not run.]"
    )


@dataclass
class TurnResult:
    """Final answer plus the trace of every command run during the turn."""

    answer: str
    tool_executions: list[ToolExecutionResult] = field(default_factory=list)
    usage: TurnUsage = field(default_factory=TurnUsage)
    state: TurnState = TurnState.DONE
    iterations: int = 0


def build_request_messages(history: list[ConversationEntry]) -> list[Message]:
    """Convert history into API messages.

    Leading assistant entries (left behind by FIFO trimming) are dropped and
    consecutive same-role entries (left behind by a failed turn) are merged,
    so the request always starts with a user message and alternates.
    """
    messages: list[Message] = []
    for entry in history:
        if not messages and entry.role != "user":
            continue
        if messages and messages[-1].role == entry.role:
            previous = messages[-1]
            previous.content = f"{previous.content}\n\n{entry.text}"
            continue
        messages.append(Message(role=entry.role, content=entry.text))
    return messages


class Agent:
    """Drives one conversation turn against the model.

    The agent owns no conversation state: it reads a history snapshot,
    takes a machine/model snapshot from ``config_state`` at the start of
    every API call, and returns a :class:`TurnResult` for the caller to
    commit.
    """

    def __init__(
        self,
        provider: LLMProvider,
        config_state: ConfigState,
        executor: RemoteExecutor | None = None,
        instructions: InstructionLoader | None = None,
        max_tool_loops: int = MAX_TOOL_LOOPS,
        max_tokens: int | None = None,
    ):
        if max_tool_loops < 1:
            raise ValueError("max_tool_loops must be at least 1")
        self.provider = provider
        self.config_state = config_state
        self.executor = executor or RemoteExecutor()
        self.instructions = instructions or InstructionLoader()
        self.max_tool_loops = max_tool_loops
        self.max_tokens = max_tokens

    @staticmethod
    def _emit(callback: EventCallback | None, event: str, payload: dict[str, Any]) -> None:
        if callback is None:
            return
        try:
            callback(event, payload)
        except Exception as e:
            log.warning("Event callback failed", event=event, error=str(e))

    async def _snapshot(self) -> tuple[MachineRegistry, str]:
        async with self.config_state.locked():
            return self.config_state.machines.copy(), self.config_state.model_id

    async def _stream_call(
        self,
        messages: list[Message],
        model: str,
        system: str,
        tools: list[ToolDefinition] | None,
        callback: EventCallback | None,
    ) -> StreamResult:
        """Run one streaming API call through a fresh parser."""
        parser = StreamEventParser()
        log.info("Calling model", model=model, msg_count=len(messages), tools=len(tools or []))
        async for chunk in self.provider.stream(
            messages,
            model=model,
            system=system,
            tools=tools,
            max_tokens=self.max_tokens,
        ):
            for delta in parser.feed(chunk):
                self._emit(callback, EVENT_STREAM_DELTA, {"text": delta})

        result = parser.finish()
        if result.error:
            raise StreamError(f"Stream error: {result.error}")
        if result.malformed_lines:
            log.warning("Skipped malformed stream lines", count=result.malformed_lines)
        log.info(
            "Model call finished",
            stop_reason=result.stop_reason,
            tool_calls=len(result.tool_calls),
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
        )
        return result

    async def _execute_tool_call(
        self,
        call: ToolUseBlock,
        machines: MachineRegistry,
    ) -> ToolExecutionResult:
        machine_name = str(call.input.get("machine_name", "") or "")
        command = str(call.input.get("command", "") or "")

        def failed(stderr: str) -> ToolExecutionResult:
            return ToolExecutionResult(
                machine_name=machine_name,
                command=command,
                success=False,
                stderr=stderr,
            )

        if call.name != REMOTE_TOOL_NAME:
            return failed(f"Unknown tool: {call.name}")
        if not machines.has(machine_name):
            return failed(f"Unknown machine: {machine_name or '(none)'}")
        if not command.strip():
            return failed("Missing required argument: command")
        try:
            return await self.executor.execute(machines.get(machine_name), command)
        except Exception as e:
            log.error("Tool execution failed", tool=call.name, call_id=call.id, error=str(e))
            return failed(str(e))

    async def _handle_tool_calls(
        self,
        tool_calls: list[ToolUseBlock],
        machines: MachineRegistry,
        callback: EventCallback | None,
        executions: list[ToolExecutionResult],
    ) -> list[ToolResultBlock]:
        """Run tool calls one at a time, in the order the model issued them.

        Returns:
            One result block per call, in the same order
        """
        results: list[ToolResultBlock] = []
        for call in tool_calls:
            machine_name = str(call.input.get("machine_name", "") or "")
            command = str(call.input.get("command", "") or "")
            log.info("Executing tool", tool=call.name, call_id=call.id, machine=machine_name)
            self._emit(callback, EVENT_TOOL_EXECUTING, {
                "machine_name": machine_name,
                "command": command,
            })

            execution = await self._execute_tool_call(call, machines)
            executions.append(execution)

            self._emit(callback, EVENT_TOOL_COMPLETED, {
                "machine_name": machine_name,
                "command": command,
                "success": execution.success,
            })
            results.append(ToolResultBlock(
                tool_use_id=call.id,
                content=execution.to_tool_content(),
                is_error=not execution.success,
            ))
        return results

    async def run_turn(
        self,
        history: list[ConversationEntry],
        event_callback: EventCallback | None = None,
    ) -> TurnResult:
        """Run the tool loop until the model answers or the loop cap is hit.

        Args:
            history: Conversation snapshot ending with the new user message
            event_callback: Optional sink for live events

        Returns:
            TurnResult; usage covers every API call of the turn

        Raises:
            LLMError: transport or API failure; the turn is abandoned
        """
        messages = build_request_messages(history)
        usage = TurnUsage()
        executions: list[ToolExecutionResult] = []
        answer_parts: list[str] = []
        state = TurnState.DONE
        iteration = 0

        while iteration < self.max_tool_loops:
            iteration += 1
            if iteration > 1:
                self._emit(event_callback, EVENT_TOOL_CONTINUE, {"iteration": iteration})

            # Registry and model may change between calls.
            machines, model_id = await self._snapshot()
            tool = build_tool_schema(machines, self.executor.config.command_timeout)
            system = render_system_prompt(self.instructions, machines.list())

            result = await self._stream_call(
                messages,
                model=model_id,
                system=system,
                tools=[tool] if tool else None,
                callback=event_callback,
            )
            usage.add_call(result.usage)
            has_text = bool(result.text.strip())
            if has_text:
                answer_parts.append(result.text)

            blocks: list[Any] = []
            if has_text:
                blocks.append(TextBlock(text=result.text))
            blocks.extend(result.tool_calls)
            if blocks:
                messages.append(Message(role="assistant", content=blocks))

            if not result.wants_tools:
                break
            if iteration >= self.max_tool_loops:
                state = TurnState.ABORTED_LIMIT
                log.warning("Tool loop limit reached", limit=self.max_tool_loops, pending=len(result.tool_calls))
                break

            tool_results = await self._handle_tool_calls(
                result.tool_calls,
                machines,
                event_callback,
                executions,
            )
            messages.append(Message(role="user", content=list(tool_results)))

        answer = "\n\n".join(part.strip() for part in answer_parts if part.strip())
        if state == TurnState.ABORTED_LIMIT:
            answer = f"{answer}\n\n{tool_limit_warning(self.max_tool_loops)}".strip()

        return TurnResult(
            answer=answer,
            tool_executions=executions,
            usage=usage,
            state=state,
            iterations=iteration,
        )
