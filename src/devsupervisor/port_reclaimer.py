"""
Port reclamation: free a TCP port by force-killing whatever holds it.

Each attempt is two separately awaited steps: request termination of every
owning process, then, after a settling delay, re-probe the port. The number of
attempts is bounded by a :class:`RetryBudget`.

The owner set is a snapshot. A process may exit between the probe and the kill
request; that counts as success for the kill. A freed port is only known to
have been free at the last probe, so callers must not treat it as reserved.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Iterable, List, Optional, Tuple

from .errors import ProbeInconclusiveError, ReclaimExhaustedError
from .port_probe import PortProber, ProbeFailurePolicy
from .process_terminator import ProcessTerminator

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_RECLAIM_ATTEMPTS = 3
DEFAULT_SETTLE_DELAY_SECONDS = 1.0
DEFAULT_MAX_SETTLE_DELAY_SECONDS = 10.0


@dataclass(frozen=True)
class RetryBudget:
    """Finite number of kill-and-verify cycles per port, with an optional backoff."""

    max_attempts: int = DEFAULT_RECLAIM_ATTEMPTS
    settle_delay_seconds: float = DEFAULT_SETTLE_DELAY_SECONDS
    backoff_multiplier: float = 1.0
    max_delay_seconds: float = DEFAULT_MAX_SETTLE_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1 (got {self.max_attempts})")
        if self.settle_delay_seconds < 0:
            raise ValueError(f"settle_delay_seconds must be non-negative (got {self.settle_delay_seconds})")
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be at least 1 (got {self.backoff_multiplier})")

    def delay_for(self, attempt: int) -> float:
        """Settling delay after the ``attempt``-th (1-based) kill round."""
        return min(self.settle_delay_seconds * (self.backoff_multiplier ** (attempt - 1)), self.max_delay_seconds)


@dataclass(frozen=True)
class ReclaimResult:
    port: int
    freed: bool
    attempts: int
    terminated_pids: Tuple[int, ...] = field(default_factory=tuple)

    def raise_for_status(self) -> None:
        if not self.freed:
            raise ReclaimExhaustedError.for_port(self.port, self.attempts)


class PortReclaimer:
    """Stateless service freeing one port at a time."""

    def __init__(
        self,
        prober: PortProber,
        terminator: ProcessTerminator,
        *,
        failure_policy: ProbeFailurePolicy = ProbeFailurePolicy.OCCUPIED,
        sleep: Sleep = asyncio.sleep,
        own_pid: Optional[int] = None,
    ) -> None:
        self.prober = prober
        self.terminator = terminator
        self.failure_policy = failure_policy
        self._sleep = sleep
        self._own_pid = os.getpid() if own_pid is None else own_pid

    async def reclaim_port(
        self, port: int, budget: RetryBudget, owners: Optional[FrozenSet[int]] = None
    ) -> ReclaimResult:
        """
        Kill every owner of ``port`` until it is observed free or the budget runs out.

        Args:
            port: TCP port to free
            budget: Maximum kill-and-verify cycles and their settling delays
            owners: Owners from a probe the caller already made; the port is
                then taken as occupied and not probed again before the first kill

        Returns:
            ReclaimResult; ``freed`` is False when the budget was exhausted
        """
        if owners is None:
            occupied, owners = await self.probe(port)
        else:
            occupied = True
        if not occupied:
            logger.debug("Port %s is free", port)
            return ReclaimResult(port=port, freed=True, attempts=0)

        terminated: List[int] = []
        for attempt in range(1, budget.max_attempts + 1):
            if attempt > 1:
                logger.info("Port %s is still in use. Attempting to kill again (attempt %s/%s)...", port, attempt, budget.max_attempts)
            terminated.extend(self._request_termination(port, owners))

            await self._sleep(budget.delay_for(attempt))

            occupied, owners = await self.probe(port)
            if not occupied:
                logger.info("Port %s freed after %s attempt(s)", port, attempt)
                return ReclaimResult(port=port, freed=True, attempts=attempt, terminated_pids=tuple(terminated))

        logger.error("Port %s is still in use after %s reclaim attempt(s)", port, budget.max_attempts)
        return ReclaimResult(port=port, freed=False, attempts=budget.max_attempts, terminated_pids=tuple(terminated))

    async def reclaim_ports(self, ports: Iterable[int], budget: RetryBudget) -> List[ReclaimResult]:
        """Reclaim ``ports`` one after another; every port is attempted."""
        results = []
        for port in ports:
            results.append(await self.reclaim_port(port, budget))
        return results

    async def probe(self, port: int) -> Tuple[bool, FrozenSet[int]]:
        """Return whether ``port`` counts as occupied and the owners seen; inconclusive reads follow the policy."""
        try:
            owners = await self.prober.owning_pids(port)
        except ProbeInconclusiveError as exc:
            logger.warning("%s; treating port %s as %s", exc, port, self.failure_policy.value)
            return self.failure_policy is ProbeFailurePolicy.OCCUPIED, frozenset()
        return bool(owners), owners

    def _request_termination(self, port: int, owners: FrozenSet[int]) -> List[int]:
        requested = []
        for pid in sorted(owners):
            if pid == self._own_pid:
                logger.warning("Port %s is held by this process (PID %s); not killing it", port, pid)
                continue
            logger.info("Killing process %s holding port %s", pid, port)
            if self.terminator.force_kill(pid):
                requested.append(pid)
        return requested


__all__ = [
    "DEFAULT_RECLAIM_ATTEMPTS",
    "DEFAULT_SETTLE_DELAY_SECONDS",
    "PortReclaimer",
    "ReclaimResult",
    "RetryBudget",
]
