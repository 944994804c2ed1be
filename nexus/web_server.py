"""HTTP + server-sent-events transport for the Nexus command surface."""

import asyncio
import json
import signal
from pathlib import Path
from typing import Any

from aiohttp import web

from nexus.commands import EVENT_STREAM_ERROR, NexusCommands, describe_error
from nexus.config import Config
from nexus.exceptions import (
    ConfigurationError,
    LLMError,
    NexusError,
    UnknownMachineError,
)
from nexus.logging import get_logger

log = get_logger(__name__)


def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=str, ensure_ascii=False)


def format_sse(event: str, payload: dict[str, Any]) -> bytes:
    """Encode one server-sent event."""
    return f"event: {event}\ndata: {_dumps(payload)}\n\n".encode("utf-8")


def _error_status(error: BaseException) -> int:
    if isinstance(error, UnknownMachineError):
        return 404
    if isinstance(error, (ConfigurationError, ValueError)):
        return 400
    if isinstance(error, LLMError):
        return 502
    return 500


def _error_response(error: BaseException) -> web.Response:
    return web.json_response(
        {"ok": False, "error": describe_error(error)},
        status=_error_status(error),
        dumps=_dumps,
    )


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError("Invalid JSON in request body") from e
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


class WebServer:
    """Nexus HTTP server."""

    def __init__(
        self,
        config: Config,
        commands: NexusCommands | None = None,
        config_path: Path | None = None,
    ):
        self.config = config
        self.commands = commands or NexusCommands(config=config, config_path=config_path)

    # ── Conversation ────────────────────────────────────────────────

    async def send_message(self, request: web.Request) -> web.Response:
        """POST /api/message: full turn, single JSON response."""
        try:
            body = await _read_json(request)
            payload = await self.commands.send_message(str(body.get("text", "")))
        except (NexusError, ValueError) as e:
            return _error_response(e)
        return web.json_response(payload, dumps=_dumps)

    async def send_message_stream(self, request: web.Request) -> web.StreamResponse:
        """POST /api/message/stream: full turn as server-sent events."""
        try:
            body = await _read_json(request)
        except ValueError as e:
            return _error_response(e)
        text = str(body.get("text", ""))

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[tuple[str, dict[str, Any]] | None] = asyncio.Queue()

        def emit(event: str, payload: dict[str, Any]) -> None:
            queue.put_nowait((event, payload))

        async def run_turn() -> None:
            try:
                await self.commands.send_message_stream(text, emit)
            except (NexusError, ValueError) as e:
                # Already delivered to the client as stream-error.
                log.debug("Streamed turn failed", error=str(e))
            except Exception as e:
                log.error("Streamed turn crashed", error=str(e))
                emit(EVENT_STREAM_ERROR, {"message": describe_error(e)})
            finally:
                queue.put_nowait(None)

        # The turn runs to completion even if the client goes away, so
        # history and counters stay consistent.
        turn_task = asyncio.create_task(run_turn())
        connected = True
        while True:
            item = await queue.get()
            if item is None:
                break
            if not connected:
                continue
            event, payload = item
            try:
                await response.write(format_sse(event, payload))
            except ConnectionResetError:
                log.info("Stream client disconnected")
                connected = False
        await turn_task

        if connected:
            await response.write_eof()
        return response

    async def clear_history(self, request: web.Request) -> web.Response:
        try:
            stats = await self.commands.clear_history()
        except NexusError as e:
            return _error_response(e)
        return web.json_response({"ok": True, "token_stats": stats}, dumps=_dumps)

    async def reset_cost(self, request: web.Request) -> web.Response:
        try:
            stats = await self.commands.reset_cost()
        except NexusError as e:
            return _error_response(e)
        return web.json_response({"ok": True, "token_stats": stats}, dumps=_dumps)

    async def get_token_stats(self, request: web.Request) -> web.Response:
        try:
            stats = await self.commands.get_token_stats()
        except NexusError as e:
            return _error_response(e)
        return web.json_response(stats, dumps=_dumps)

    async def get_history(self, request: web.Request) -> web.Response:
        try:
            history = await self.commands.get_history()
        except NexusError as e:
            return _error_response(e)
        return web.json_response({"history": history}, dumps=_dumps)

    # ── Model ───────────────────────────────────────────────────────

    async def get_model(self, request: web.Request) -> web.Response:
        try:
            model = await self.commands.get_current_model()
        except NexusError as e:
            return _error_response(e)
        return web.json_response({"model": model})

    async def set_model(self, request: web.Request) -> web.Response:
        try:
            body = await _read_json(request)
            message = await self.commands.set_model(str(body.get("model_id", "")))
        except (NexusError, ValueError) as e:
            return _error_response(e)
        return web.json_response({"ok": True, "message": message})

    async def list_models(self, request: web.Request) -> web.Response:
        return web.json_response({"models": self.commands.list_models()}, dumps=_dumps)

    # ── Machines ────────────────────────────────────────────────────

    async def get_machine_status(self, request: web.Request) -> web.Response:
        try:
            statuses = await self.commands.get_machine_status()
        except NexusError as e:
            return _error_response(e)
        return web.json_response({"machines": statuses}, dumps=_dumps)

    async def execute_remote_command(self, request: web.Request) -> web.Response:
        """POST /api/machines/{name}/exec: direct command execution."""
        machine_name = request.match_info["name"]
        try:
            body = await _read_json(request)
            command = str(body.get("command", "")).strip()
            if not command:
                raise ValueError("Command is empty")
            result = await self.commands.execute_remote_command(machine_name, command)
        except (NexusError, ValueError) as e:
            return _error_response(e)
        return web.json_response(result, dumps=_dumps)

    async def get_ssh_config(self, request: web.Request) -> web.Response:
        try:
            machines = await self.commands.get_ssh_config()
        except NexusError as e:
            return _error_response(e)
        return web.json_response({"machines": machines}, dumps=_dumps)

    async def update_ssh_config(self, request: web.Request) -> web.Response:
        """PATCH /api/ssh-config/{name}: body ``{host?, enabled?}``."""
        machine_name = request.match_info["name"]
        try:
            body = await _read_json(request)
            host = body.get("host")
            enabled = body.get("enabled")
            if host is not None and not isinstance(host, str):
                raise ValueError("host must be a string")
            if enabled is not None and not isinstance(enabled, bool):
                raise ValueError("enabled must be a boolean")
            machine = await self.commands.update_ssh_config(machine_name, host=host, enabled=enabled)
        except (NexusError, ValueError) as e:
            return _error_response(e)
        return web.json_response({"ok": True, "machine": machine}, dumps=_dumps)

    # ── App setup ───────────────────────────────────────────────────

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/message", self.send_message)
        app.router.add_post("/api/message/stream", self.send_message_stream)
        app.router.add_get("/api/history", self.get_history)
        app.router.add_post("/api/history/clear", self.clear_history)
        app.router.add_post("/api/cost/reset", self.reset_cost)
        app.router.add_get("/api/tokens", self.get_token_stats)
        app.router.add_get("/api/model", self.get_model)
        app.router.add_post("/api/model", self.set_model)
        app.router.add_get("/api/models", self.list_models)
        app.router.add_get("/api/machines/status", self.get_machine_status)
        app.router.add_post("/api/machines/{name}/exec", self.execute_remote_command)
        app.router.add_get("/api/ssh-config", self.get_ssh_config)
        app.router.add_patch("/api/ssh-config/{name}", self.update_ssh_config)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.commands.close()


async def _run_server(config: Config, config_path: Path | None = None) -> None:
    """Start the web server and block until SIGINT/SIGTERM."""
    server = WebServer(config, config_path=config_path)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler.
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    host = config.web.host
    port = config.web.port
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("Web server started", host=host, port=port)
    print(f"\n  Nexus API running at http://{host}:{port}/api")

    try:
        await stop_event.wait()
    finally:
        print("\nShutting down...")
        await runner.cleanup()


def run_web_server(config: Config, config_path: Path | None = None) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config, config_path))
    except KeyboardInterrupt:
        pass
