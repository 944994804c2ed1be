"""Command surface shared by the HTTP server and the CLI.

Every handler touches shared state only inside short ``locked()`` blocks
and never holds a lock across a model call or a subprocess.
"""

import asyncio
from pathlib import Path
from typing import Any

from nexus.agent import Agent, EventCallback, TurnResult
from nexus.config import Config, ModelConfig, get_config
from nexus.exceptions import (
    ConfigurationError,
    InvalidModelError,
    LLMAPIError,
    LLMError,
    NexusError,
    StateLockError,
)
from nexus.instructions import InstructionLoader
from nexus.llm import LLMProvider, get_provider
from nexus.logging import get_logger
from nexus.machines import MachineDescriptor, MachineRegistry
from nexus.pricing import describe_token_stats
from nexus.session import ConfigState, SessionState, TokenStats
from nexus.tools.remote import RemoteExecutor

log = get_logger(__name__)

EVENT_STREAM_START = "stream-start"
EVENT_STREAM_END = "stream-end"
EVENT_STREAM_ERROR = "stream-error"


def describe_error(error: BaseException) -> str:
    """Plain, labelled text for a user-visible error."""
    if isinstance(error, ConfigurationError):
        return f"Configuration error: {error}"
    if isinstance(error, LLMAPIError):
        return f"API error: {error}"
    if isinstance(error, LLMError):
        return f"LLM error: {error}"
    if isinstance(error, StateLockError):
        return f"Internal error: {error}"
    return f"Error: {error}"


def _machine_payload(machine: MachineDescriptor) -> dict[str, Any]:
    return machine.model_dump(mode="json")


class NexusCommands:
    """The operations a UI can invoke."""

    def __init__(
        self,
        config: Config | None = None,
        provider: LLMProvider | None = None,
        executor: RemoteExecutor | None = None,
        instructions: InstructionLoader | None = None,
        session_state: SessionState | None = None,
        config_state: ConfigState | None = None,
        config_path: Path | str | None = None,
    ):
        self.config = config or get_config()
        self.config_path = Path(config_path) if config_path else None
        self._provider = provider
        self.executor = executor or RemoteExecutor(self.config.remote)
        self.instructions = instructions or InstructionLoader()
        self.session_state = session_state or SessionState(
            max_history=self.config.session.max_history,
            lock_timeout=self.config.session.lock_timeout,
        )
        self.config_state = config_state or ConfigState(
            machines=MachineRegistry(self.config.machines),
            model_id=self.config.model.model,
            lock_timeout=self.config.session.lock_timeout,
        )

    # ── Helpers ─────────────────────────────────────────────────────

    def _get_provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    def _agent(self) -> Agent:
        return Agent(
            provider=self._get_provider(),
            config_state=self.config_state,
            executor=self.executor,
            instructions=self.instructions,
            max_tool_loops=self.config.session.max_tool_loops,
            max_tokens=self.config.model.max_tokens,
        )

    def _pricing(self, model_id: str) -> ModelConfig.AllowedModelConfig:
        try:
            return self.config.model.find_allowed(model_id)
        except InvalidModelError:
            return ModelConfig.AllowedModelConfig(id=model_id)

    async def _current_model(self) -> str:
        async with self.config_state.locked() as state:
            return state.model_id

    async def _machines_snapshot(self) -> MachineRegistry:
        async with self.config_state.locked() as state:
            return state.machines.copy()

    async def _describe_stats(self, stats: TokenStats) -> dict[str, Any]:
        model_id = await self._current_model()
        return describe_token_stats(stats, self._pricing(model_id), self.config.context)

    async def _turn_payload(self, result: TurnResult, stats: TokenStats) -> dict[str, Any]:
        executions = [execution.model_dump() for execution in result.tool_executions]
        return {
            "answer": result.answer,
            "state": result.state.value,
            "token_stats": await self._describe_stats(stats),
            "tool_executions": executions,
            "tool_summary": {
                "count": len(executions),
                "succeeded": sum(1 for item in executions if item["success"]),
            },
        }

    async def _run_turn(self, text: str, callback: EventCallback | None) -> dict[str, Any]:
        message = (text or "").strip()
        if not message:
            raise ValueError("Message is empty")

        # Credential problems surface before anything is recorded.
        agent = self._agent()

        async with self.session_state.locked() as state:
            state.history.append("user", message)
            history = state.history.snapshot()

        try:
            result = await agent.run_turn(history, event_callback=callback)
        except NexusError as e:
            log.error("Turn failed", error=str(e))
            raise

        async with self.session_state.locked() as state:
            if result.answer:
                state.history.append("assistant", result.answer)
            stats = state.tokens.record_turn(result.usage)

        return await self._turn_payload(result, stats)

    # ── Conversation ────────────────────────────────────────────────

    async def send_message(self, text: str) -> dict[str, Any]:
        """Run a full turn and return ``{answer, token_stats, tool_executions}``."""
        return await self._run_turn(text, None)

    async def send_message_stream(self, text: str, emit: EventCallback) -> dict[str, Any]:
        """Run a full turn, forwarding live events to ``emit``.

        Emits ``stream-start``, ``stream-delta``, ``tool-executing``,
        ``tool-completed``, ``stream-tool-continue`` and finally either
        ``stream-end`` or ``stream-error``.
        """
        emit(EVENT_STREAM_START, {})
        try:
            payload = await self._run_turn(text, emit)
        except (NexusError, ValueError) as e:
            emit(EVENT_STREAM_ERROR, {"message": describe_error(e)})
            raise
        emit(EVENT_STREAM_END, {
            "answer": payload["answer"],
            "token_stats": payload["token_stats"],
            "tool_executions": payload["tool_executions"],
        })
        return payload

    async def clear_history(self) -> dict[str, Any]:
        """Empty the conversation; cumulative cost is kept."""
        async with self.session_state.locked() as state:
            state.history.clear()
            state.tokens.clear_context()
            stats = state.tokens.snapshot()
        log.info("History cleared")
        return await self._describe_stats(stats)

    async def reset_cost(self) -> dict[str, Any]:
        """Zero all token counters."""
        async with self.session_state.locked() as state:
            state.tokens.reset_cost()
            stats = state.tokens.snapshot()
        log.info("Token counters reset")
        return await self._describe_stats(stats)

    async def get_token_stats(self) -> dict[str, Any]:
        async with self.session_state.locked() as state:
            stats = state.tokens.snapshot()
        return await self._describe_stats(stats)

    async def get_history(self) -> list[dict[str, str]]:
        async with self.session_state.locked() as state:
            entries = state.history.snapshot()
        return [{"role": entry.role, "text": entry.text} for entry in entries]

    # ── Model selection ─────────────────────────────────────────────

    async def get_current_model(self) -> str:
        return await self._current_model()

    def list_models(self) -> list[dict[str, Any]]:
        return [entry.model_dump() for entry in self.config.model.allowed]

    async def set_model(self, model_id: str) -> str:
        """Switch the active model; ids outside the allow-list are rejected."""
        entry = self.config.model.find_allowed((model_id or "").strip())
        async with self.config_state.locked() as state:
            state.model_id = entry.id
        log.info("Model changed", model=entry.id)
        return f"Model switched to {entry.id}"

    # ── Machines ────────────────────────────────────────────────────

    async def get_machine_status(self) -> list[dict[str, Any]]:
        """Probe every machine concurrently (Commander is always online)."""
        machines = (await self._machines_snapshot()).list()
        online = await asyncio.gather(*(self.executor.probe(machine) for machine in machines))
        return [
            {"name": machine.name, "role": machine.role.value, "online": bool(is_online)}
            for machine, is_online in zip(machines, online)
        ]

    async def execute_remote_command(self, machine_name: str, command: str) -> dict[str, Any]:
        """Run a command directly, outside the model loop."""
        machine = (await self._machines_snapshot()).get(machine_name)
        result = await self.executor.execute(machine, command)
        return {
            "success": result.success,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exit_code": result.exit_code,
        }

    async def get_ssh_config(self) -> list[dict[str, Any]]:
        machines = (await self._machines_snapshot()).list()
        return [_machine_payload(machine) for machine in machines]

    async def update_ssh_config(
        self,
        machine_name: str,
        host: str | None = None,
        enabled: bool | None = None,
    ) -> dict[str, Any]:
        """Update host and/or enabled flag of a registered machine.

        The change is copied into ``config.machines`` and, when a
        ``config_path`` was given, written back to that file.
        """
        async with self.config_state.locked() as state:
            updated = state.machines.update(machine_name, host=host, enabled=enabled)
            self.config.machines = state.machines.list()
            if self.config_path is not None:
                self.config.save(self.config_path)
        log.info("Machine updated", machine=updated.name, host=updated.host, enabled=updated.enabled)
        return _machine_payload(updated)

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()
