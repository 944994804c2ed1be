"""Remote command execution over ssh."""

import asyncio
import shlex
from typing import Any

from pydantic import BaseModel, model_validator

from nexus.config import RemoteConfig, get_config
from nexus.logging import get_logger
from nexus.machines import MachineDescriptor, validate_host

log = get_logger(__name__)

TIMEOUT_ERROR = "timeout"

_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "nohup", "time"}


class ToolExecutionResult(BaseModel):
    """Outcome of one remote command."""

    machine_name: str
    command: str
    stdout: str = ""
    stderr: str = ""
    success: bool = False
    exit_code: int | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolExecutionResult":
        """Failed results always carry a stderr message."""
        if not self.success and not self.stderr.strip():
            if self.exit_code is not None:
                self.stderr = f"Command exited with code {self.exit_code}"
            else:
                self.stderr = "Command failed"
        return self

    def to_tool_content(self) -> str:
        """Render the result as text for a tool-result message."""
        parts: list[str] = []
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr:
            parts.append(f"[stderr] {self.stderr}")
        if self.exit_code is not None:
            parts.append(f"[exit code: {self.exit_code}]")
        return "\n".join(parts) or "[no output]"


def decode_output(data: bytes, fallback_encodings: list[str] | tuple[str, ...] = ("cp932", "euc_jp")) -> str:
    """Decode command output: UTF-8 first, then legacy codepages, then lossy UTF-8."""
    if not data:
        return ""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    for encoding in fallback_encodings:
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("utf-8", errors="replace")


def _clip(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n... [truncated, {len(text)} total chars]"


def _split_segments(command: str) -> list[list[str]]:
    """Tokenize a command line into segments split on shell control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _base_command(tokens: list[str]) -> str:
    for token in tokens:
        if token in _SHELL_WRAPPER_TOKENS:
            continue
        return token
    return ""


def _contains_run(tokens: list[str], run: list[str]) -> bool:
    width = len(run)
    return any(tokens[i:i + width] == run for i in range(len(tokens) - width + 1))


def is_blocked_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Check a command line against blocked patterns.

    Patterns containing whitespace must appear as a run of whole tokens in
    one segment. Single-word patterns are prefix-matched against each
    segment's base command, and symbol-only patterns against the raw
    command line.

    Returns:
        Tuple of (blocked, matched pattern or reason)
    """
    cleaned = (command or "").strip()
    if not cleaned:
        return True, "empty command"
    try:
        segments = _split_segments(cleaned)
    except ValueError:
        # Unbalanced quotes etc; let the remote shell report it.
        segments = [cleaned.split()]

    base_commands = [base for tokens in segments if (base := _base_command(tokens))]

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        pattern_tokens = pattern.split()
        if len(pattern_tokens) > 1:
            if any(_contains_run(tokens, pattern_tokens) for tokens in segments):
                return True, pattern
        elif any(base.split("/")[-1].startswith(pattern) for base in base_commands):
            return True, pattern
        elif pattern in cleaned and not pattern.isalnum():
            return True, pattern
    return False, ""


class RemoteExecutor:
    """Run single commands on registered machines through the ssh client."""

    def __init__(self, config: RemoteConfig | None = None):
        self.config = config or get_config().remote

    def build_ssh_args(self, host: str, command: str, connect_timeout: int | None = None) -> list[str]:
        """Build a non-interactive ssh argv for one command."""
        timeout = connect_timeout if connect_timeout is not None else self.config.connect_timeout
        return [
            self.config.ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={int(timeout)}",
            "-o", f"ServerAliveInterval={int(self.config.keepalive_interval)}",
            "-o", "ServerAliveCountMax=2",
            "--",
            host,
            command,
        ]

    async def _run(self, args: list[str], timeout: float) -> tuple[int | None, bytes, bytes] | None:
        """Run a subprocess and race it against ``timeout``.

        Returns:
            ``(returncode, stdout, stderr)``, or None when the timeout won
            (the process has been killed and reaped by then)
        """
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        communicate_task = asyncio.create_task(process.communicate())
        try:
            done, _ = await asyncio.wait({communicate_task}, timeout=timeout)
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            communicate_task.cancel()
            raise

        if communicate_task in done:
            stdout, stderr = communicate_task.result()
            return process.returncode, stdout or b"", stderr or b""

        process.kill()
        await process.wait()
        communicate_task.cancel()
        try:
            await communicate_task
        except asyncio.CancelledError:
            pass
        return None

    async def execute(
        self,
        machine: MachineDescriptor,
        command: str,
        timeout: float | None = None,
    ) -> ToolExecutionResult:
        """Execute a command on a machine.

        Never raises for remote failures; failures come back as a result
        with ``success=False``. Nothing is retried.

        Args:
            machine: Target machine
            command: Command line, passed verbatim to the remote shell
            timeout: Overall timeout override in seconds

        Returns:
            ToolExecutionResult with decoded output
        """
        def failed(stderr: str, **extra: Any) -> ToolExecutionResult:
            return ToolExecutionResult(
                machine_name=machine.name,
                command=command,
                success=False,
                stderr=stderr,
                **extra,
            )

        if machine.is_commander:
            return failed(
                f"Remote execution is not supported for this role: {machine.role.value}"
            )
        if not machine.enabled:
            return failed(f"Machine is disabled: {machine.name}")
        if not machine.host.strip():
            return failed(f"Machine has no host configured: {machine.name}")
        try:
            validate_host(machine.host)
        except ValueError as e:
            return failed(str(e))

        blocked, matched = is_blocked_command(command, self.config.blocked)
        if blocked:
            log.warning("Blocked remote command", machine=machine.name, command=command, reason=matched)
            return failed(f"Command blocked: {matched}")

        limit = float(timeout if timeout is not None else self.config.command_timeout)
        args = self.build_ssh_args(machine.host, command)
        log.info("Executing remote command", machine=machine.name, host=machine.host, command=command)

        try:
            outcome = await self._run(args, limit)
        except OSError as e:
            log.error("Failed to start ssh", machine=machine.name, error=str(e))
            return failed(f"Failed to start ssh: {e}")

        if outcome is None:
            log.warning("Remote command timed out", machine=machine.name, command=command, timeout=limit)
            return failed(TIMEOUT_ERROR)

        returncode, raw_stdout, raw_stderr = outcome
        encodings = self.config.fallback_encodings
        stdout = _clip(decode_output(raw_stdout, encodings).strip(), self.config.max_output_chars)
        stderr = _clip(decode_output(raw_stderr, encodings).strip(), self.config.max_output_chars)

        result = ToolExecutionResult(
            machine_name=machine.name,
            command=command,
            stdout=stdout,
            stderr=stderr,
            success=returncode == 0,
            exit_code=returncode,
        )
        log.info(
            "Remote command finished",
            machine=machine.name,
            exit_code=returncode,
            success=result.success,
        )
        return result

    async def probe(self, machine: MachineDescriptor) -> bool:
        """Lightweight liveness check (``echo ok``) under the probe timeout."""
        if machine.is_commander:
            return True
        if not machine.is_targetable:
            return False
        try:
            validate_host(machine.host)
        except ValueError:
            return False
        args = self.build_ssh_args(
            machine.host,
            "echo ok",
            connect_timeout=max(1, int(self.config.probe_timeout)),
        )
        try:
            outcome = await self._run(args, float(self.config.probe_timeout))
        except OSError as e:
            log.debug("Probe failed to start", machine=machine.name, error=str(e))
            return False
        if outcome is None:
            return False
        returncode, stdout, _ = outcome
        return returncode == 0 and b"ok" in stdout
