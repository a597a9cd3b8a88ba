"""
Lifecycle management for the PDF processing engine.

The engine is an external HTTP service that the gateway builds and runs as a
single child process. :class:`BackendSupervisor` owns that process:

- build it once (non-fatal on failure, the previous binary is used instead)
- spawn it with an explicit working directory and environment
- forward its stdout/stderr to our logs for as long as it runs
- poll ``/health`` a bounded number of times
- record an unexpected exit (no automatic restart)
- terminate it when the host shuts down

State transitions::

    not_started -> building -> built -> starting ------------.
                            \\-> build_failed -> starting_existing
                                                             |
                      health_checking <---------------------'
                        |-> running -> stopped
                        '-> failed

A failed boot is logged as a warning and never raised: the gateway keeps
serving its other routes and the proxy answers 502 while the engine is away.

Everything outside this module gets a :class:`BackendHandle`, which can read
the state but not change it.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import signal
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import httpx
from omegaconf import DictConfig

from .models import BackendState, BackendStatus

logger = logging.getLogger(__name__)

# asyncio's default 64 KiB line limit is too small for some toolchain output
STREAM_LIMIT = 1024 * 1024


async def probe_health(url: str, timeout: float, client: Optional[httpx.AsyncClient] = None) -> bool:
    """Single GET against a health endpoint; any 2xx counts as healthy."""
    try:
        if client is not None:
            response = await client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.get(url)
    except httpx.RequestError as exc:
        logger.debug("Health probe %s failed: %s", url, exc)
        return False
    return response.is_success


class BackendHandle:
    """Read-only view of the supervised engine, shared by every request."""

    def __init__(self, supervisor: "BackendSupervisor") -> None:
        self._supervisor = supervisor

    @property
    def base_url(self) -> str:
        return self._supervisor.base_url

    @property
    def health_url(self) -> str:
        return self._supervisor.health_url

    @property
    def state(self) -> BackendState:
        return self._supervisor._state

    @property
    def is_running(self) -> bool:
        return self._supervisor._state == BackendState.RUNNING

    @property
    def pid(self) -> Optional[int]:
        process = self._supervisor._process
        if process is None or process.returncode is not None:
            return None
        return process.pid

    @property
    def last_exit_code(self) -> Optional[int]:
        return self._supervisor._exit_code

    @property
    def history(self) -> Tuple[BackendState, ...]:
        return tuple(self._supervisor._history)

    def status(self) -> BackendStatus:
        return BackendStatus(
            state=self.state,
            pid=self.pid,
            base_url=self.base_url,
            last_exit_code=self.last_exit_code,
        )


class BackendSupervisor:
    """
    Owner of the engine child process.

    Create one per application and call :meth:`start` once from the startup
    hook; concurrent or repeated calls are no-ops that report the current
    state.
    """

    def __init__(self, config: DictConfig) -> None:
        self.host: str = config.host
        self.port: int = int(config.port)
        self.workdir = Path(os.path.expanduser(str(config.workdir))).resolve()
        self.binary = Path(os.path.expanduser(str(config.binary)))
        self.args: List[str] = [str(arg) for arg in config.args]
        self.build_command: List[str] = [str(part) for part in (config.build_command or [])]
        self.build_on_start: bool = bool(config.build_on_start)
        self.extra_path: List[str] = [str(entry) for entry in (config.extra_path or [])]
        self.health_path: str = config.health_path
        self.health_interval: float = float(config.health_interval_seconds)
        self.health_attempts: int = int(config.health_attempts)
        self.health_timeout: float = float(config.health_timeout_seconds)
        self.shutdown_grace: float = float(config.shutdown_grace_seconds)

        self._state = BackendState.NOT_STARTED
        self._history: List[BackendState] = [BackendState.NOT_STARTED]
        self._process: Optional[asyncio.subprocess.Process] = None
        self._exit_code: Optional[int] = None
        self._tasks: List[asyncio.Task] = []
        self._lock = asyncio.Lock()
        self._boot_attempted = False
        self._stopping = False
        self._atexit_registered = False
        self._handle = BackendHandle(self)

    @property
    def handle(self) -> BackendHandle:
        return self._handle

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def health_url(self) -> str:
        return f"{self.base_url}{self.health_path}"

    @property
    def executable(self) -> Path:
        # Joining an absolute binary path onto workdir yields the binary itself
        return self.workdir / self.binary

    def _set_state(self, state: BackendState) -> None:
        if state != self._state:
            logger.debug("PDF backend state: %s -> %s", self._state.value, state.value)
        self._state = state
        self._history.append(state)

    def _environment(self) -> dict:
        env = dict(os.environ)
        extra = [os.path.expanduser(entry) for entry in self.extra_path]
        env["PATH"] = os.pathsep.join([*extra, env.get("PATH", "")])
        env["PORT"] = str(self.port)
        return env

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------

    async def start(self) -> BackendState:
        """Build, spawn and health-check the engine. Never raises."""
        async with self._lock:
            if self._boot_attempted:
                logger.debug("PDF backend boot already attempted (state=%s)", self._state.value)
                return self._state
            self._boot_attempted = True
            try:
                await self._boot()
            except Exception:
                logger.exception("Unexpected error while starting the PDF backend")
                self._set_state(BackendState.FAILED)
            logger.debug("PDF backend boot path: %s", _describe(self._history))
            return self._state

    async def _boot(self) -> None:
        next_state = BackendState.STARTING
        if self.build_on_start and self.build_command:
            self._set_state(BackendState.BUILDING)
            if await self._build():
                self._set_state(BackendState.BUILT)
            else:
                self._set_state(BackendState.BUILD_FAILED)
                next_state = BackendState.STARTING_EXISTING

        self._set_state(next_state)
        if not await self._spawn():
            self._set_state(BackendState.FAILED)
            logger.warning("PDF backend failed to start. PDF processing will be unavailable.")
            return

        self._set_state(BackendState.HEALTH_CHECKING)
        if await self._wait_until_healthy():
            self._set_state(BackendState.RUNNING)
            logger.info("PDF backend started successfully on %s", self.base_url)
        else:
            self._set_state(BackendState.FAILED)
            logger.warning(
                "PDF backend failed its health check after %d attempts. "
                "PDF processing may not work.",
                self.health_attempts,
            )

    async def _build(self) -> bool:
        logger.info("Building PDF backend: %s (in %s)", " ".join(self.build_command), self.workdir)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command,
                cwd=str(self.workdir),
                env=self._environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            logger.warning("Failed to build PDF backend (%s); trying to start existing binary", exc)
            return False

        await asyncio.gather(
            self._pump(process.stdout, "[build]", logging.INFO),
            self._pump(process.stderr, "[build]", logging.WARNING),
        )
        code = await process.wait()
        if code != 0:
            logger.warning(
                "PDF backend build failed with code %s; trying to start existing binary", code
            )
            return False

        logger.info("PDF backend built successfully")
        return True

    async def _spawn(self) -> bool:
        logger.info("Starting PDF backend from: %s", self.executable)
        try:
            process = await asyncio.create_subprocess_exec(
                str(self.executable),
                *self.args,
                cwd=str(self.workdir),
                env=self._environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            logger.warning("Failed to start PDF backend: %s", exc)
            return False

        self._process = process
        self._exit_code = None
        self._tasks = [
            asyncio.create_task(self._pump(process.stdout, "[pdf-backend]", logging.INFO)),
            asyncio.create_task(self._pump(process.stderr, "[pdf-backend]", logging.WARNING)),
            asyncio.create_task(self._watch(process)),
        ]
        if not self._atexit_registered:
            atexit.register(self._terminate_at_exit)
            self._atexit_registered = True
        return True

    async def _wait_until_healthy(self) -> bool:
        async with httpx.AsyncClient(timeout=self.health_timeout) as client:
            for attempt in range(1, self.health_attempts + 1):
                process = self._process
                if process is not None and process.returncode is not None:
                    logger.warning(
                        "PDF backend exited with code %s before becoming healthy",
                        process.returncode,
                    )
                    return False
                if await probe_health(self.health_url, self.health_timeout, client):
                    logger.debug("PDF backend healthy after %d attempt(s)", attempt)
                    return True
                await asyncio.sleep(self.health_interval)
        return False

    # ------------------------------------------------------------------
    # Runtime
    # ------------------------------------------------------------------

    @staticmethod
    async def _pump(stream: Optional[asyncio.StreamReader], tag: str, level: int) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.log(level, "%s %s", tag, text)

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        self._exit_code = code
        if self._stopping:
            logger.info("PDF backend exited with code %s", code)
            return
        if self._state == BackendState.RUNNING:
            logger.warning("PDF backend exited unexpectedly with code %s; it will not be restarted", code)
            self._set_state(BackendState.STOPPED)
        else:
            logger.warning("PDF backend exited with code %s", code)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Terminate the engine, escalating to kill after the grace period."""
        process = self._process
        if process is None:
            return

        if process.returncode is None:
            self._stopping = True
            logger.info("Stopping PDF backend (pid %s)", process.pid)
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "PDF backend did not exit within %.1fs; killing it", self.shutdown_grace
                )
                process.kill()
                await process.wait()

        self._exit_code = process.returncode
        self._set_state(BackendState.STOPPED)
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def _terminate_at_exit(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            os.kill(process.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            pass


def _describe(states: Sequence[BackendState]) -> str:
    return " -> ".join(state.value for state in states)
