"""Shared process supervision for tunnel engines"""
import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tunnelcore.config import settings
from tunnelcore.engines import deploy
from tunnelcore.errors import (
    AdapterAlreadyRunning,
    AdapterNotFound,
    MaxRetriesExceeded,
    ProcessExitedUnexpectedly,
    ProcessSpawnFailure,
)
from tunnelcore.utils import pid_alive, process_io_counters, resolve_binary, shell_join

logger = logging.getLogger(__name__)

Spawner = Callable[..., Awaitable[Any]]
FailureListener = Callable[[str, str, Optional[str]], Awaitable[None]]


class EngineStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTH_FAILED = "auth_failed"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class EngineEvent:
    kind: str
    data: Any = None


@dataclass
class EngineRuntimeHandle:
    tunnel_id: str
    mode: str
    options: Dict[str, Any]
    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    config_path: Optional[Path] = None
    process: Any = None
    pid: Optional[int] = None
    status: EngineStatus = EngineStatus.CONNECTING
    retries: int = 0
    last_error: Optional[str] = None
    started_at: Optional[float] = None
    stopping: bool = False
    launch: int = 0
    tasks: List[asyncio.Task] = field(default_factory=list)
    supervisor: Optional[asyncio.Task] = None
    reconnect_task: Optional[asyncio.Task] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class BaseEngine:
    """
    Launches one external tunnel program per tunnel id and keeps it alive.

    Subclasses describe the program (argv, config file, output phrases);
    this class owns spawning, output watching, the settle timer, the
    reconnect policy and teardown. Every launch feeds an asyncio.Queue of
    EngineEvents consumed by a single supervisor task, and all state changes
    go through _apply_event.
    """

    name = "base"
    display_name = "Base"
    config_suffix: Optional[str] = None
    default_settle_delay = 3.0
    # stream -> phrases; matched case-insensitively, auth checked first
    auth_patterns: Dict[str, Tuple[str, ...]] = {}
    success_patterns: Dict[str, Tuple[str, ...]] = {}
    error_patterns: Tuple[str, ...] = ()

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        spawner: Optional[Spawner] = None,
        max_retries: Optional[int] = None,
        reconnect_interval: Optional[float] = None,
        settle_delay: Optional[float] = None,
        stop_timeout: Optional[float] = None,
    ):
        self.config_dir = Path(config_dir) if config_dir else Path(settings.data_dir) / self.name
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self._spawner = spawner
        self.max_retries = settings.reconnect_max_retries if max_retries is None else max_retries
        self.reconnect_interval = settings.reconnect_interval if reconnect_interval is None else reconnect_interval
        self.settle_delay = self.default_settle_delay if settle_delay is None else settle_delay
        self.stop_timeout = settings.stop_timeout if stop_timeout is None else stop_timeout
        self.handles: Dict[str, EngineRuntimeHandle] = {}
        self._listeners: List[FailureListener] = []

    # -- engine description, overridden per engine ----------------------------

    def resolve_mode(self, options: Dict[str, Any]) -> str:
        return options.get("mode") or "client"

    def binary_name(self, mode: str) -> str:
        raise NotImplementedError

    def configured_binary(self, mode: str) -> str:
        return ""

    def render_config(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Optional[str]:
        """Config file content, or None when the engine is driven by argv only"""
        return None

    def build_argv(
        self, tunnel_id: str, mode: str, options: Dict[str, Any], config_path: Optional[str], binary: str
    ) -> List[str]:
        raise NotImplementedError

    def build_env(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Dict[str, str]:
        return {}

    async def _on_started(self, handle: EngineRuntimeHandle) -> Dict[str, Any]:
        return {}

    async def _on_stopped(self, handle: EngineRuntimeHandle) -> None:
        return None

    # -- listeners -------------------------------------------------------------

    def add_listener(self, callback: FailureListener) -> None:
        """Register an async callback fired when a tunnel reaches the failed state"""
        self._listeners.append(callback)

    # -- lifecycle ---------------------------------------------------------------

    def config_path_for(self, tunnel_id: str) -> Optional[Path]:
        if not self.config_suffix:
            return None
        return self.config_dir / f"{self.name}_{tunnel_id}{self.config_suffix}"

    async def start(self, tunnel_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Render config and spawn the engine process.

        Returns as soon as the process is spawned; connection state is
        reported later through get_status().
        """
        if tunnel_id in self.handles:
            return AdapterAlreadyRunning(
                f"{self.display_name} tunnel {tunnel_id} is already running", tunnel_id=tunnel_id
            ).to_result()

        options = dict(options or {})
        try:
            mode = self.resolve_mode(options)
            config_text = self.render_config(tunnel_id, mode, options)
            config_path = self.config_path_for(tunnel_id) if config_text is not None else None
            argv = self.build_argv(
                tunnel_id, mode, options, str(config_path) if config_path else None, self.binary_name(mode)
            )
        except (KeyError, ValueError) as e:
            logger.error(f"Invalid {self.name} options for tunnel {tunnel_id}: {e}")
            return {"success": False, "tunnel_id": tunnel_id, "error": str(e), "code": "invalid_options"}

        if config_path is not None:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text(config_text, encoding="utf-8")

        handle = EngineRuntimeHandle(
            tunnel_id=tunnel_id,
            mode=mode,
            options=options,
            argv=argv,
            env=self.build_env(tunnel_id, mode, options),
            config_path=config_path,
        )

        try:
            await self._launch(handle)
        except ProcessSpawnFailure as e:
            logger.error(f"{self.display_name} tunnel {tunnel_id} failed to spawn: {e}")
            self._remove_config(handle)
            return e.to_result()

        self.handles[tunnel_id] = handle
        logger.info(f"{self.display_name} tunnel {tunnel_id} started ({mode}), PID={handle.pid}")

        result = {
            "success": True,
            "tunnel_id": tunnel_id,
            "pid": handle.pid,
            "mode": mode,
            "status": handle.status.value,
            "config_path": str(config_path) if config_path else None,
        }
        result.update(await self._on_started(handle))
        return result

    async def stop(self, tunnel_id: str) -> Dict[str, Any]:
        handle = self.handles.get(tunnel_id)
        if handle is None:
            return AdapterNotFound(
                f"{self.display_name} tunnel {tunnel_id} not found", tunnel_id=tunnel_id
            ).to_result()

        handle.stopping = True
        handle.status = EngineStatus.STOPPING
        if handle.reconnect_task and not handle.reconnect_task.done():
            handle.reconnect_task.cancel()

        await self._terminate(handle)
        await self._cancel_tasks(handle)

        self.handles.pop(tunnel_id, None)
        self._remove_config(handle)
        await self._on_stopped(handle)
        handle.status = EngineStatus.DISCONNECTED
        logger.info(f"{self.display_name} tunnel {tunnel_id} stopped")
        return {"success": True, "tunnel_id": tunnel_id}

    async def cleanup(self) -> None:
        """Stop every running tunnel of this engine"""
        for tunnel_id in list(self.handles.keys()):
            try:
                await self.stop(tunnel_id)
            except Exception as e:
                logger.error(f"Error stopping {self.name} tunnel {tunnel_id} during cleanup: {e}", exc_info=True)

    # -- status ------------------------------------------------------------------

    def get_status(self, tunnel_id: str) -> Optional[Dict[str, Any]]:
        handle = self.handles.get(tunnel_id)
        if handle is None:
            return None
        uptime = int(time.time() - handle.started_at) if handle.started_at else 0
        status = {
            "tunnel_id": tunnel_id,
            "engine": self.name,
            "mode": handle.mode,
            "status": handle.status.value,
            "pid": handle.pid,
            "retries": handle.retries,
            "last_error": handle.last_error,
            "started_at": handle.started_at,
            "uptime": uptime,
            "stats": process_io_counters(handle.pid),
        }
        status.update(handle.extra)
        return status

    def get_all_status(self) -> List[Dict[str, Any]]:
        return [self.get_status(tunnel_id) for tunnel_id in list(self.handles.keys())]

    async def health_check(self, tunnel_id: str) -> Dict[str, Any]:
        handle = self.handles.get(tunnel_id)
        if handle is None:
            return {"healthy": False, "status": "not_found", "tunnel_id": tunnel_id}
        running = handle.process is not None and handle.process.returncode is None and pid_alive(handle.pid)
        return {
            "healthy": handle.status == EngineStatus.CONNECTED and running,
            "status": handle.status.value,
            "tunnel_id": tunnel_id,
            "pid": handle.pid,
            "uptime": int(time.time() - handle.started_at) if handle.started_at else 0,
            "retries": handle.retries,
            "last_error": handle.last_error,
        }

    # -- deployment ----------------------------------------------------------------

    def generate_deploy_config(self, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Command line, systemd unit and setup script for running this tunnel by hand"""
        options = dict(options or {})
        tunnel_id = options.get("tunnel_id") or f"{self.name}-tunnel"
        mode = self.resolve_mode(options)
        binary = self.binary_name(mode)
        config_text = self.render_config(tunnel_id, mode, options)
        config_path = None
        if config_text is not None:
            config_path = f"{deploy.DEPLOY_ROOT}/{self.name}/{tunnel_id}{self.config_suffix}"
        argv = self.build_argv(tunnel_id, mode, options, config_path, f"/usr/local/bin/{binary}")
        unit_name = f"elahe-{self.name}-{tunnel_id}"
        unit_text = deploy.render_unit(
            f"Elahe {self.display_name} tunnel {tunnel_id} ({mode})",
            argv,
            env=self.build_env(tunnel_id, mode, options),
        )
        result = {
            "tunnel_id": tunnel_id,
            "engine": self.name,
            "mode": mode,
            "command": shell_join(argv),
            "supervisor_unit": unit_text,
            "unit_name": unit_name,
            "setup_script": deploy.render_setup_script(binary, unit_name, unit_text, config_path, config_text),
        }
        if config_text is not None:
            result["config"] = config_text
            result["config_path"] = config_path
        return result

    # -- process plumbing ----------------------------------------------------------

    async def _spawn(self, handle: EngineRuntimeHandle):
        env = {**os.environ, **handle.env} if handle.env else None
        if self._spawner is not None:
            return await self._spawner(
                *handle.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        argv = list(handle.argv)
        argv[0] = str(resolve_binary(argv[0], self.configured_binary(handle.mode)))
        return await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(self.config_dir),
            start_new_session=True,
        )

    async def _launch(self, handle: EngineRuntimeHandle) -> None:
        handle.launch += 1
        handle.status = EngineStatus.CONNECTING
        try:
            process = await self._spawn(handle)
        except OSError as e:
            raise ProcessSpawnFailure(
                f"Failed to start {self.display_name}: {e}", tunnel_id=handle.tunnel_id
            ) from e

        handle.process = process
        handle.pid = process.pid
        handle.started_at = time.time()
        logger.debug(f"Launched {shell_join(handle.argv)} for tunnel {handle.tunnel_id}, PID={process.pid}")

        queue: asyncio.Queue = asyncio.Queue()
        readers = [
            asyncio.create_task(self._watch_stream(process.stdout, "stdout", queue)),
            asyncio.create_task(self._watch_stream(process.stderr, "stderr", queue)),
        ]
        handle.tasks = readers + [
            asyncio.create_task(self._watch_exit(process, readers, queue)),
            asyncio.create_task(self._settle(queue)),
        ]
        handle.supervisor = asyncio.create_task(self._supervise(handle, queue, handle.launch))

    async def _watch_stream(self, stream, kind: str, queue: asyncio.Queue) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            await queue.put(EngineEvent(kind, line.decode("utf-8", errors="replace").rstrip()))

    async def _watch_exit(self, process, readers: List[asyncio.Task], queue: asyncio.Queue) -> None:
        code = await process.wait()
        # Drain remaining output before reporting the exit
        await asyncio.gather(*readers, return_exceptions=True)
        await queue.put(EngineEvent("exit", code))

    async def _settle(self, queue: asyncio.Queue) -> None:
        await asyncio.sleep(self.settle_delay)
        await queue.put(EngineEvent("settle"))

    async def _supervise(self, handle: EngineRuntimeHandle, queue: asyncio.Queue, launch: int) -> None:
        while True:
            event = await queue.get()
            if handle.stopping or handle.launch != launch:
                return
            action = self._apply_event(handle, event)
            if action == "reconnect":
                handle.reconnect_task = asyncio.create_task(self._reconnect_after(handle))
                return
            if action == "fail":
                await self._fail(handle)
                return
            if action == "done":
                return

    def _matches(self, line: str, phrases: Tuple[str, ...]) -> bool:
        lowered = line.lower()
        return any(phrase.lower() in lowered for phrase in phrases)

    def _apply_event(self, handle: EngineRuntimeHandle, event: EngineEvent) -> Optional[str]:
        """
        Single transition function for a running handle.

        Returns None to keep consuming events, "reconnect" to schedule a
        relaunch, "fail" for the terminal failed state, or "done" after a
        clean exit.
        """
        if event.kind in ("stdout", "stderr"):
            line = event.data
            logger.debug(f"[{self.name}:{handle.tunnel_id}] {event.kind}: {line}")
            if self._matches(line, self.auth_patterns.get(event.kind, ())):
                handle.status = EngineStatus.AUTH_FAILED
                handle.last_error = line
            elif self._matches(line, self.success_patterns.get(event.kind, ())):
                if handle.status in (EngineStatus.CONNECTING, EngineStatus.RECONNECTING):
                    handle.status = EngineStatus.CONNECTED
                    logger.info(f"{self.display_name} tunnel {handle.tunnel_id} connected")
            elif self._matches(line, self.error_patterns):
                handle.last_error = line
            return None

        if event.kind == "settle":
            if handle.status == EngineStatus.CONNECTING:
                handle.status = EngineStatus.CONNECTED
            return None

        if event.kind == "exit":
            code = event.data
            if code == 0:
                handle.status = EngineStatus.DISCONNECTED
                logger.info(f"{self.display_name} tunnel {handle.tunnel_id} exited cleanly")
                return "done"
            handle.status = EngineStatus.DISCONNECTED
            if not handle.last_error:
                handle.last_error = ProcessExitedUnexpectedly(f"process exited with code {code}").message
            logger.warning(
                f"{self.display_name} tunnel {handle.tunnel_id} exited with code {code}: {handle.last_error}"
            )
            return self._next_retry_action(handle)

        return None

    def _next_retry_action(self, handle: EngineRuntimeHandle) -> str:
        if handle.retries < self.max_retries:
            handle.retries += 1
            handle.status = EngineStatus.RECONNECTING
            logger.info(
                f"Reconnecting {self.name} tunnel {handle.tunnel_id} in {self.reconnect_interval}s "
                f"(attempt {handle.retries}/{self.max_retries})"
            )
            return "reconnect"
        handle.status = EngineStatus.FAILED
        handle.last_error = MaxRetriesExceeded(
            f"max retries ({self.max_retries}) exceeded, last error: {handle.last_error}"
        ).message
        return "fail"

    async def _reconnect_after(self, handle: EngineRuntimeHandle) -> None:
        await asyncio.sleep(self.reconnect_interval)
        if handle.stopping or self.handles.get(handle.tunnel_id) is not handle:
            return
        await self._cancel_tasks(handle)
        try:
            await self._launch(handle)
        except ProcessSpawnFailure as e:
            handle.status = EngineStatus.ERROR
            handle.last_error = e.message
            if self._next_retry_action(handle) == "reconnect":
                handle.reconnect_task = asyncio.create_task(self._reconnect_after(handle))
            else:
                await self._fail(handle)

    async def _fail(self, handle: EngineRuntimeHandle) -> None:
        logger.error(f"{self.display_name} tunnel {handle.tunnel_id} failed: {handle.last_error}")
        for task in handle.tasks:
            if not task.done():
                task.cancel()
        self.handles.pop(handle.tunnel_id, None)
        self._remove_config(handle)
        await self._on_stopped(handle)
        for listener in list(self._listeners):
            try:
                await listener(handle.tunnel_id, handle.status.value, handle.last_error)
            except Exception as e:
                logger.error(f"Failure listener raised for tunnel {handle.tunnel_id}: {e}", exc_info=True)

    async def _terminate(self, handle: EngineRuntimeHandle) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{self.display_name} tunnel {handle.tunnel_id} did not exit within {self.stop_timeout}s, killing"
            )
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _cancel_tasks(self, handle: EngineRuntimeHandle) -> None:
        current = asyncio.current_task()
        pending = [
            task for task in handle.tasks + [handle.supervisor]
            if task is not None and task is not current and not task.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        handle.tasks = []

    def _remove_config(self, handle: EngineRuntimeHandle) -> None:
        if handle.config_path is not None:
            try:
                handle.config_path.unlink()
            except FileNotFoundError:
                pass
