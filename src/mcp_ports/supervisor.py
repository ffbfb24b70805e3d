"""
Process supervisor for a swarm of MCP servers on one host.

The supervisor reads the services file, launches every enabled service as a
child process inside its project directory, restarts children that exit
with a non-zero code, and forwards SIGINT/SIGTERM as an orderly shutdown.

It does not read the port ledger. Services without a fixed port register
themselves through the ledger when they start.

Restart policy: fixed delay between restarts and a bounded restart count
per service. A child that exits with code 0 is not restarted.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from mcp_ports.config import ServicesFile, load_services_config
from mcp_ports.logging import get_logger

if TYPE_CHECKING:
    from mcp_ports.config import AppConfig, ServiceConfig

logger = get_logger(__name__)


class ChildState(str, Enum):
    """Lifecycle of a supervised child."""

    PENDING = "pending"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class ChildStatus:
    """
    Observable status of one supervised service.

    Attributes:
        name: Service name.
        state: Current lifecycle state.
        pid: PID of the running child, if any.
        restarts: Restarts performed so far.
        returncode: Exit code of the most recent child.
        command: Command line of the most recent launch.
    """

    name: str
    state: ChildState = ChildState.PENDING
    pid: int | None = None
    restarts: int = 0
    returncode: int | None = None
    command: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert the status to a dictionary for logging/serialization."""
        return {
            "name": self.name,
            "state": self.state.value,
            "pid": self.pid,
            "restarts": self.restarts,
            "returncode": self.returncode,
            "command": self.command,
        }


def build_command(service: ServiceConfig, transport: str) -> list[str]:
    """
    Build the launch command line for a service.

    The service command is followed by the standard server options:
    ``--transport``, ``--host`` and, when configured, ``--port``.
    """
    command = [*service.command, "--transport", transport, "--host", service.host]
    if service.port is not None:
        command += ["--port", str(service.port)]
    return command


def _descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []


class ProcessSupervisor:
    """
    Launches and supervises the enabled services of a services file.

    Example:
        >>> services = load_services_config("mcp_services.yml")
        >>> supervisor = ProcessSupervisor(services)
        >>> exit_code = asyncio.run(supervisor.run())
    """

    def __init__(
        self,
        services: ServicesFile,
        transport: str = "sse",
        max_restarts: int = 5,
        restart_delay_seconds: float = 2.0,
        shutdown_timeout_seconds: float = 10.0,
        env: dict[str, str] | None = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            services: Parsed services file.
            transport: Transport passed to every service.
            max_restarts: Restarts allowed per service.
            restart_delay_seconds: Delay before each restart.
            shutdown_timeout_seconds: Grace period between terminate and kill.
            env: Environment for children. Defaults to the current environment.
        """
        self.services = services.enabled_services()
        self.transport = transport
        self.max_restarts = max_restarts
        self.restart_delay_seconds = restart_delay_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self._env = env
        self._status = {name: ChildStatus(name=name) for name in self.services}
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stop_event = asyncio.Event()
        self._stopping = False

    @classmethod
    def from_config(
        cls, config: AppConfig, services_file: Path | str | None = None
    ) -> ProcessSupervisor:
        """Build a supervisor from application configuration."""
        path = services_file if services_file is not None else config.supervisor.services_file
        return cls(
            load_services_config(path),
            transport=config.supervisor.transport,
            max_restarts=config.supervisor.max_restarts,
            restart_delay_seconds=config.supervisor.restart_delay_seconds,
            shutdown_timeout_seconds=config.supervisor.shutdown_timeout_seconds,
        )

    def status(self) -> dict[str, ChildStatus]:
        """Return the status of every supervised service."""
        return dict(self._status)

    def exit_code(self) -> int:
        """Return 1 if any service ended in the failed state, else 0."""
        if any(s.state is ChildState.FAILED for s in self._status.values()):
            return 1
        return 0

    async def start(self) -> None:
        """Launch every enabled service in file order."""
        for name, service in self.services.items():
            self._tasks[name] = asyncio.create_task(
                self._supervise(name, service), name=f"supervise-{name}"
            )
        logger.info(
            "Supervisor started",
            extra={"services": list(self.services), "transport": self.transport},
        )

    async def wait(self) -> None:
        """Wait until every supervision task has finished."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values())

    def request_stop(self) -> None:
        """Ask run() to shut down; safe to call from a signal handler."""
        self._stop_event.set()

    async def run(self) -> int:
        """
        Start all services and supervise them until they finish or a
        shutdown signal arrives.

        Returns:
            Exit code: 1 if any service failed permanently, else 0.
        """
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)

        stop_waiter = asyncio.create_task(self._stop_event.wait())
        try:
            await self.start()
            all_done = asyncio.ensure_future(self.wait())
            await asyncio.wait(
                {stop_waiter, all_done}, return_when=asyncio.FIRST_COMPLETED
            )
            if self._stop_event.is_set():
                logger.info("Shutdown requested, stopping services")
                await self.stop()
            await all_done
        finally:
            stop_waiter.cancel()
            for sig in installed:
                loop.remove_signal_handler(sig)

        return self.exit_code()

    async def stop(self) -> None:
        """Terminate every running child (with its descendants) and wait."""
        self._stopping = True
        self._stop_event.set()

        await asyncio.gather(
            *(self._terminate(name, proc) for name, proc in list(self._processes.items()))
        )
        await self.wait()
        logger.info(
            "Supervisor stopped",
            extra={"status": [s.to_dict() for s in self._status.values()]},
        )

    async def _spawn(self, name: str, service: ServiceConfig) -> asyncio.subprocess.Process:
        status = self._status[name]
        command = build_command(service, self.transport)
        status.command = command
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=service.project_dir,
            env=self._env if self._env is not None else os.environ.copy(),
        )
        self._processes[name] = proc
        status.pid = proc.pid
        status.state = ChildState.RUNNING
        logger.info(
            "Service launched",
            extra={
                "service_name": name,
                "pid": proc.pid,
                "command": command,
                "project_dir": service.project_dir,
                "port": service.port,
            },
        )
        return proc

    async def _supervise(self, name: str, service: ServiceConfig) -> None:
        status = self._status[name]

        while not self._stopping:
            try:
                proc = await self._spawn(name, service)
            except OSError as e:
                status.state = ChildState.FAILED
                logger.error(
                    "Service could not be launched",
                    extra={"service_name": name, "error": str(e)},
                )
                return

            if self._stopping:
                await self._terminate(name, proc)

            returncode = await proc.wait()
            self._processes.pop(name, None)
            status.pid = None
            status.returncode = returncode

            if self._stopping:
                break

            if returncode == 0:
                status.state = ChildState.EXITED
                logger.info("Service exited cleanly", extra={"service_name": name})
                return

            if status.restarts >= self.max_restarts:
                status.state = ChildState.FAILED
                logger.error(
                    "Service failed, restart limit reached",
                    extra={
                        "service_name": name,
                        "returncode": returncode,
                        "restarts": status.restarts,
                    },
                )
                return

            status.restarts += 1
            logger.warning(
                "Service exited with error, restarting",
                extra={
                    "service_name": name,
                    "returncode": returncode,
                    "restart": status.restarts,
                    "delay_seconds": self.restart_delay_seconds,
                },
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.restart_delay_seconds
                )

        status.state = ChildState.STOPPED

    async def _terminate(self, name: str, proc: asyncio.subprocess.Process) -> None:
        descendants = _descendants(proc.pid)
        for child in descendants:
            with contextlib.suppress(psutil.NoSuchProcess):
                child.terminate()
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.shutdown_timeout_seconds)
        except TimeoutError:
            logger.warning(
                "Service did not stop in time, killing",
                extra={"service_name": name, "pid": proc.pid},
            )
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

        if descendants:
            _, alive = await asyncio.to_thread(
                psutil.wait_procs, descendants, timeout=self.shutdown_timeout_seconds
            )
            for child in alive:
                with contextlib.suppress(psutil.NoSuchProcess):
                    child.kill()
