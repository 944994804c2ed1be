import asyncio

import pytest

import nexus.tools.remote as remote_module
from nexus.config import RemoteConfig
from nexus.machines import MachineDescriptor, MachineRole
from nexus.tools.remote import (
    TIMEOUT_ERROR,
    RemoteExecutor,
    ToolExecutionResult,
    decode_output,
    is_blocked_command,
)

COMMANDER = MachineDescriptor(name="Commander", host="localhost", role=MachineRole.COMMANDER)
HOST_A = MachineDescriptor(name="Host-A", host="admin@host-a")


class FakeProcess:
    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode
        self.killed = False

    async def communicate(self):
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True

    async def wait(self):
        return self.returncode


class HangingProcess:
    def __init__(self):
        self.returncode = None
        self.killed = False
        self._exited = asyncio.Event()

    async def communicate(self):
        await self._exited.wait()
        return b"", b""

    def kill(self):
        self.killed = True
        self.returncode = -9
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode


def _install_process(monkeypatch, process) -> list[tuple]:
    calls: list[tuple] = []

    async def fake_exec(*args, **kwargs):
        calls.append(args)
        return process

    monkeypatch.setattr(remote_module.asyncio, "create_subprocess_exec", fake_exec)
    return calls


def _forbid_subprocess(monkeypatch) -> None:
    async def fail_exec(*args, **kwargs):
        raise AssertionError("subprocess must not be spawned")

    monkeypatch.setattr(remote_module.asyncio, "create_subprocess_exec", fail_exec)


def test_decode_prefers_utf8():
    text = "disk usage: 42% ✓"

    assert decode_output(text.encode("utf-8")) == text


def test_decode_falls_back_to_legacy_codepage():
    data = "テスト".encode("cp932")

    assert decode_output(data) == "テスト"


def test_decode_never_raises_on_garbage():
    assert isinstance(decode_output(b"\xff\xfe\xfa\x80"), str)
    assert decode_output(b"") == ""


@pytest.mark.parametrize(
    ("command", "blocked"),
    [
        ("df -h", False),
        ("echo reboot", False),
        ("sudo shutdown -h now", True),
        ("ls -la && rm -rf /", True),
        ("rm -rf /tmp/build", False),
        ("sudo rm -rf / --no-preserve-root", True),
        ("mkfs.ext4 /dev/sdb1", True),
        ("  ", True),
    ],
)
def test_blocked_command_policy(command, blocked):
    is_blocked, _ = is_blocked_command(command, RemoteConfig().blocked)

    assert is_blocked is blocked


def test_ssh_args_are_non_interactive_with_keepalive():
    executor = RemoteExecutor(RemoteConfig(connect_timeout=4, keepalive_interval=5))

    args = executor.build_ssh_args("admin@host-a", "uptime")

    assert args[0] == "ssh"
    assert "BatchMode=yes" in args
    assert "ConnectTimeout=4" in args
    assert "ServerAliveInterval=5" in args
    assert args[-3:] == ["--", "admin@host-a", "uptime"]


@pytest.mark.asyncio
async def test_commander_is_rejected_without_spawning(monkeypatch):
    _forbid_subprocess(monkeypatch)

    result = await RemoteExecutor(RemoteConfig()).execute(COMMANDER, "ls")

    assert result.success is False
    assert "not supported for this role" in result.stderr


@pytest.mark.asyncio
async def test_disabled_machine_is_rejected_without_spawning(monkeypatch):
    _forbid_subprocess(monkeypatch)
    machine = HOST_A.model_copy(update={"enabled": False})

    result = await RemoteExecutor(RemoteConfig()).execute(machine, "ls")

    assert result.success is False
    assert "disabled" in result.stderr


@pytest.mark.asyncio
async def test_option_shaped_host_is_rejected_without_spawning(monkeypatch):
    _forbid_subprocess(monkeypatch)
    machine = MachineDescriptor.model_construct(name="Host-X", host="-oProxyCommand=touch /tmp/x")

    result = await RemoteExecutor(RemoteConfig()).execute(machine, "uptime")

    assert result.success is False
    assert "must not start with" in result.stderr
    assert await RemoteExecutor(RemoteConfig()).probe(machine) is False


@pytest.mark.asyncio
async def test_blocked_command_is_rejected_without_spawning(monkeypatch):
    _forbid_subprocess(monkeypatch)

    result = await RemoteExecutor(RemoteConfig()).execute(HOST_A, "sudo reboot")

    assert result.success is False
    assert result.stderr.startswith("Command blocked")


@pytest.mark.asyncio
async def test_successful_command_decodes_output(monkeypatch):
    calls = _install_process(monkeypatch, FakeProcess(stdout="テスト\n".encode("cp932")))

    result = await RemoteExecutor(RemoteConfig()).execute(HOST_A, "type readme.txt")

    assert result.success is True
    assert result.exit_code == 0
    assert result.stdout == "テスト"
    assert result.machine_name == "Host-A"
    assert calls[0][-2:] == ("admin@host-a", "type readme.txt")


@pytest.mark.asyncio
async def test_non_zero_exit_is_failure_with_message(monkeypatch):
    _install_process(monkeypatch, FakeProcess(returncode=2))

    result = await RemoteExecutor(RemoteConfig()).execute(HOST_A, "false")

    assert result.success is False
    assert result.exit_code == 2
    assert result.stderr == "Command exited with code 2"


@pytest.mark.asyncio
async def test_timeout_kills_process_and_reports_timeout(monkeypatch):
    process = HangingProcess()
    _install_process(monkeypatch, process)

    result = await RemoteExecutor(RemoteConfig()).execute(HOST_A, "sleep 60", timeout=0.05)

    assert result.success is False
    assert result.stderr == TIMEOUT_ERROR
    assert process.killed is True


@pytest.mark.asyncio
async def test_missing_ssh_binary_is_reported(monkeypatch):
    async def missing_exec(*args, **kwargs):
        raise FileNotFoundError("ssh")

    monkeypatch.setattr(remote_module.asyncio, "create_subprocess_exec", missing_exec)

    result = await RemoteExecutor(RemoteConfig()).execute(HOST_A, "uptime")

    assert result.success is False
    assert result.stderr.startswith("Failed to start ssh")


@pytest.mark.asyncio
async def test_long_output_is_clipped(monkeypatch):
    _install_process(monkeypatch, FakeProcess(stdout=b"x" * 50))

    result = await RemoteExecutor(RemoteConfig(max_output_chars=10)).execute(HOST_A, "cat big")

    assert result.stdout.startswith("x" * 10)
    assert "truncated, 50 total chars" in result.stdout


@pytest.mark.asyncio
async def test_probe_commander_is_online_without_spawning(monkeypatch):
    _forbid_subprocess(monkeypatch)

    assert await RemoteExecutor(RemoteConfig()).probe(COMMANDER) is True


@pytest.mark.asyncio
async def test_probe_runs_echo(monkeypatch):
    calls = _install_process(monkeypatch, FakeProcess(stdout=b"ok\n"))

    online = await RemoteExecutor(RemoteConfig()).probe(HOST_A)

    assert online is True
    assert calls[0][-1] == "echo ok"


@pytest.mark.asyncio
async def test_probe_unreachable_host_is_offline(monkeypatch):
    _install_process(monkeypatch, FakeProcess(stderr=b"ssh: connect to host", returncode=255))

    assert await RemoteExecutor(RemoteConfig()).probe(HOST_A) is False


def test_tool_content_includes_stderr_and_exit_code():
    result = ToolExecutionResult(machine_name="Host-A", command="ls /nope", stdout="", stderr="No such file", exit_code=2)

    assert result.to_tool_content() == "[stderr] No such file\n[exit code: 2]"
