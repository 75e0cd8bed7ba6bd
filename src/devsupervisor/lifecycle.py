"""
Top-level driver for the development stack.

State flow::

    Idle -> Reclaiming -> Verifying -> Launching -> Running -> ShuttingDown -> Stopped

Every port is probed once and the occupied ones are reclaimed one at a time,
starting from that snapshot (Reclaiming is skipped when every port is
already free). Then all are re-probed; nothing is launched unless every
managed port is free. Interrupt signals, unexpected child exits
and uncaught faults all funnel into :meth:`LifecycleController.shutdown`,
which runs its sequence exactly once no matter how many triggers fire.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config.settings import DevStackSettings
from .errors import LaunchFailureError, ReclaimExhaustedError
from .port_probe import PortProber, ProbeFailurePolicy, is_port_occupied, select_port_prober
from .port_reclaimer import PortReclaimer, RetryBudget
from .process_terminator import PsutilProcessTerminator
from .supervisor import ProcessSupervisor, RoleSpec

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


class LifecycleState(str, Enum):
    IDLE = "idle"
    RECLAIMING = "reclaiming"
    VERIFYING = "verifying"
    LAUNCHING = "launching"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ExitCode(int, Enum):
    """Process exit codes of the orchestrator."""

    SUCCESS = 0
    STARTUP_FAILED = 1
    CHILD_EXITED = 2
    INTERNAL_ERROR = 3


class LifecycleController:
    """Owns the managed ports, the retry budget and every process handle."""

    def __init__(
        self,
        *,
        ports: Sequence[int],
        roles: Sequence[RoleSpec],
        prober: PortProber,
        reclaimer: PortReclaimer,
        supervisor: ProcessSupervisor,
        retry_budget: RetryBudget,
        failure_policy: ProbeFailurePolicy = ProbeFailurePolicy.OCCUPIED,
        urls: Optional[Dict[str, str]] = None,
        console: Callable[[str], None] = print,
        handle_signals: bool = True,
    ) -> None:
        self.ports = tuple(ports)
        self.roles = tuple(roles)
        self.prober = prober
        self.reclaimer = reclaimer
        self.supervisor = supervisor
        self.retry_budget = retry_budget
        self.failure_policy = failure_policy
        self.urls = dict(urls or {})
        self._console = console
        self._handle_signals = handle_signals

        self.state = LifecycleState.IDLE
        self.state_history: List[LifecycleState] = [LifecycleState.IDLE]
        self.exit_code = ExitCode.SUCCESS

        self._shutdown_requested: Optional[asyncio.Event] = None
        self._shutdown_task: Optional[asyncio.Future] = None
        self._startup_task: Optional[asyncio.Task] = None
        self._installed_signals: List[int] = []
        self._fallback_handlers: Dict[int, Any] = {}

    @classmethod
    def from_settings(cls, settings: DevStackSettings, **overrides: Any) -> "LifecycleController":
        """Wire the production prober, terminator and supervisor from settings."""
        prober = overrides.pop("prober", None) or select_port_prober(settings.prober_name)
        reclaimer = overrides.pop("reclaimer", None) or PortReclaimer(
            prober,
            PsutilProcessTerminator(),
            failure_policy=settings.probe_failure_policy,
        )
        supervisor = overrides.pop("supervisor", None) or ProcessSupervisor(
            terminate_timeout=settings.terminate_timeout_seconds
        )
        return cls(
            ports=settings.managed_ports,
            roles=settings.roles,
            prober=prober,
            reclaimer=reclaimer,
            supervisor=supervisor,
            retry_budget=settings.retry_budget,
            failure_policy=settings.probe_failure_policy,
            urls={"Frontend": settings.frontend_url, "Backend": settings.api_base_url},
            **overrides,
        )

    @property
    def shutdown_requested(self) -> asyncio.Event:
        if self._shutdown_requested is None:
            self._shutdown_requested = asyncio.Event()
        return self._shutdown_requested

    async def start(self) -> None:
        """
        Free every managed port, verify, then launch each role in order.

        Raises:
            ReclaimExhaustedError: If any port is still occupied after reclaiming
            LaunchFailureError: If a role could not be started
        """
        occupied = {}
        for port in self.ports:
            busy, owners = await self.reclaimer.probe(port)
            if busy:
                occupied[port] = owners
        if occupied:
            self._transition(LifecycleState.RECLAIMING)
            logger.info("Stopping any existing processes on ports %s...", ", ".join(str(port) for port in occupied))
            for port, owners in occupied.items():
                result = await self.reclaimer.reclaim_port(port, self.retry_budget, owners)
                if not result.freed:
                    logger.error("Could not free port %s after %s attempt(s)", result.port, result.attempts)

        self._transition(LifecycleState.VERIFYING)
        busy = [port for port in self.ports if await is_port_occupied(self.prober, port, self.failure_policy)]
        if busy:
            raise ReclaimExhaustedError.for_ports(busy)

        self._transition(LifecycleState.LAUNCHING)
        logger.info("Starting development servers...")
        for spec in self.roles:
            await self.supervisor.launch(spec)

        self._transition(LifecycleState.RUNNING)
        self._announce()

    async def run(self) -> ExitCode:
        """Start the stack, block until a shutdown trigger, stop it, return the exit code."""
        loop = asyncio.get_running_loop()
        if self._handle_signals:
            self._install_signal_handlers(loop)
        previous_exception_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)
        try:
            return await self._run()
        finally:
            loop.set_exception_handler(previous_exception_handler)
            self._remove_signal_handlers(loop)

    async def _run(self) -> ExitCode:
        self._startup_task = asyncio.create_task(self.start())
        try:
            await self._startup_task
        except asyncio.CancelledError:
            if not (self._startup_task.cancelled() and self.shutdown_requested.is_set()):
                raise
            logger.info("Startup interrupted")
            await self.shutdown()
            return self.exit_code
        except (ReclaimExhaustedError, LaunchFailureError) as exc:
            logger.error("%s", exc)
            self.exit_code = ExitCode.STARTUP_FAILED
            if self.supervisor.handles:
                await self.shutdown()
            else:
                self._transition(LifecycleState.STOPPED)
            return self.exit_code
        except Exception:
            logger.exception("Unexpected error during startup")
            self.exit_code = ExitCode.INTERNAL_ERROR
            await self.shutdown()
            return self.exit_code
        finally:
            self._startup_task = None

        await self._wait_for_trigger()
        await self.shutdown()
        return self.exit_code

    def request_shutdown(self, exit_code: ExitCode = ExitCode.SUCCESS, reason: str = "") -> None:
        """Ask the controller to stop; only the first request sets the exit code."""
        if self.shutdown_requested.is_set():
            logger.debug("Shutdown already requested; ignoring %s", reason or exit_code.name)
            return
        self.exit_code = exit_code
        if reason:
            logger.info("Shutting down: %s", reason)
        self.shutdown_requested.set()
        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()

    async def shutdown(self) -> None:
        """Run the shutdown sequence once; concurrent callers wait for the same run."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown_sequence())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown_sequence(self) -> None:
        self._transition(LifecycleState.SHUTTING_DOWN)
        await self.supervisor.terminate_all()

        results = await self.reclaimer.reclaim_ports(self.ports, self.retry_budget)
        lingering = [result.port for result in results if not result.freed]
        if lingering:
            logger.warning("Ports still in use after shutdown: %s", ", ".join(str(port) for port in lingering))

        self._transition(LifecycleState.STOPPED)
        logger.info("Development servers stopped")

    async def _wait_for_trigger(self) -> None:
        failure_task = asyncio.create_task(self.supervisor.next_failure())
        shutdown_task = asyncio.create_task(self.shutdown_requested.wait())
        done, pending = await asyncio.wait({failure_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if failure_task in done:
            failure = failure_task.result()
            self.request_shutdown(ExitCode.CHILD_EXITED, str(failure))

    def _transition(self, state: LifecycleState) -> None:
        logger.debug("Lifecycle %s -> %s", self.state.value, state.value)
        self.state = state
        self.state_history.append(state)

    def _announce(self) -> None:
        self._console("\nDevelopment servers started!")
        for label, url in self.urls.items():
            self._console(f"{label}: {url}")
        self._console("\nPress Ctrl+C to stop all servers.\n")

    def _on_signal(self, signum: int) -> None:
        name = signal.Signals(signum).name
        if self.shutdown_requested.is_set():
            logger.info("Received %s; shutdown already in progress", name)
            return
        self.request_shutdown(ExitCode.SUCCESS, f"received {name}")

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        loop.default_exception_handler(context)
        self.request_shutdown(ExitCode.INTERNAL_ERROR, context.get("message", "unhandled error"))

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for name in _SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
                self._installed_signals.append(signum)
            except NotImplementedError:
                # Proactor loops on Windows have no add_signal_handler
                self._fallback_handlers[signum] = signal.signal(
                    signum, lambda received, _frame: loop.call_soon_threadsafe(self._on_signal, received)
                )
            except (ValueError, RuntimeError) as exc:
                logger.debug("Cannot handle %s outside the main thread: %s", name, exc)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in self._installed_signals:
            loop.remove_signal_handler(signum)
        self._installed_signals.clear()
        for signum, previous in self._fallback_handlers.items():
            signal.signal(signum, previous)
        self._fallback_handlers.clear()


__all__ = ["ExitCode", "LifecycleController", "LifecycleState"]
