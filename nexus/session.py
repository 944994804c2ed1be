"""Conversation history, token accounting and the lock-guarded state objects."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

from nexus.exceptions import StateLockError
from nexus.llm import Usage
from nexus.logging import get_logger
from nexus.machines import MachineRegistry

log = get_logger(__name__)

MAX_HISTORY = 20
CONVERSATION_ROLES = ("user", "assistant")


@dataclass(frozen=True)
class ConversationEntry:
    """One turn of the visible conversation."""

    role: str  # "user", "assistant"
    text: str

    def __post_init__(self) -> None:
        if self.role not in CONVERSATION_ROLES:
            raise ValueError(f"Invalid conversation role: {self.role}")


class HistoryStore:
    """Bounded FIFO conversation log."""

    def __init__(self, max_entries: int = MAX_HISTORY):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: list[ConversationEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, role: str, text: str) -> ConversationEntry:
        """Append an entry and evict the oldest ones beyond the cap."""
        entry = ConversationEntry(role=role, text=text)
        self._entries.append(entry)
        self.trim()
        return entry

    def trim(self, limit: int | None = None) -> None:
        """Keep only the most recent ``limit`` entries (default: the cap)."""
        keep = self.max_entries if limit is None else max(0, limit)
        overflow = len(self._entries) - keep
        if overflow > 0:
            del self._entries[:overflow]

    def clear(self) -> None:
        self._entries.clear()

    def snapshot(self) -> list[ConversationEntry]:
        return list(self._entries)


@dataclass
class TokenStats:
    """Process-lifetime token counters."""

    last_input_tokens: int = 0
    last_output_tokens: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    request_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class TurnUsage:
    """Usage summed over every API call made during one turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    last_input_tokens: int = 0
    last_output_tokens: int = 0
    api_calls: int = 0

    def add_call(self, usage: Usage) -> None:
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.last_input_tokens = usage.input_tokens
        self.last_output_tokens = usage.output_tokens
        self.api_calls += 1


class TokenAccountant:
    """Running token totals.

    ``last_*`` reflect only the final API call of the latest turn (context
    size); ``total_*`` sum every call, tool-loop calls included (cost).
    ``request_count`` advances once per completed turn.
    """

    def __init__(self):
        self.stats = TokenStats()

    def record_turn(self, usage: TurnUsage) -> TokenStats:
        if usage.api_calls == 0:
            return self.snapshot()
        self.stats.last_input_tokens = usage.last_input_tokens
        self.stats.last_output_tokens = usage.last_output_tokens
        self.stats.total_input_tokens += usage.input_tokens
        self.stats.total_output_tokens += usage.output_tokens
        self.stats.request_count += 1
        return self.snapshot()

    def clear_context(self) -> None:
        """Reset per-call counters only; cumulative cost is kept."""
        self.stats.last_input_tokens = 0
        self.stats.last_output_tokens = 0

    def reset_cost(self) -> None:
        self.stats = TokenStats()

    def snapshot(self) -> TokenStats:
        return TokenStats(**asdict(self.stats))


class GuardedState:
    """Base for shared state reached only through :meth:`locked`.

    Holders must keep the critical section short and never await network
    or subprocess work while inside it.
    """

    name = "state"

    def __init__(self, lock_timeout: float = 10.0):
        self._lock = asyncio.Lock()
        self.lock_timeout = lock_timeout

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[Any]:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError as e:
            log.error("State lock timeout", state=self.name, timeout=self.lock_timeout)
            raise StateLockError(self.name, self.lock_timeout) from e
        try:
            yield self
        finally:
            self._lock.release()


class SessionState(GuardedState):
    """Conversation history plus token counters."""

    name = "session"

    def __init__(self, max_history: int = MAX_HISTORY, lock_timeout: float = 10.0):
        super().__init__(lock_timeout=lock_timeout)
        self.history = HistoryStore(max_entries=max_history)
        self.tokens = TokenAccountant()


class ConfigState(GuardedState):
    """Machine registry plus the active model id."""

    name = "config"

    def __init__(
        self,
        machines: MachineRegistry | None = None,
        model_id: str = "",
        lock_timeout: float = 10.0,
    ):
        super().__init__(lock_timeout=lock_timeout)
        self.machines = machines if machines is not None else MachineRegistry()
        self.model_id = model_id
