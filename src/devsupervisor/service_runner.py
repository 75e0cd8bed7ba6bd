"""Runs the orchestrator's event loop with consistent Ctrl+C and exit-code handling."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional

ServiceFactory = Callable[[], Coroutine[Any, Any, int]]

INTERRUPTED_EXIT_CODE = 0


def run_async_service(
    factory: ServiceFactory,
    *,
    service_name: str,
    logger_name: Optional[str] = None,
    shutdown_message: Optional[str] = None,
) -> int:
    """Run an async service and return its exit code.

    Args:
        factory: Callable returning the coroutine to execute; its result is
            the exit code.
        service_name: Identifier used in log messages.
        logger_name: Optional logger name override.
        shutdown_message: Optional custom message when interrupted before the
            service installed its own signal handling.
    """

    logger = logging.getLogger(logger_name or f"devsupervisor.{service_name}")

    try:
        return int(asyncio.run(factory()))
    except KeyboardInterrupt:
        # Ctrl+C arrived before the controller took over SIGINT
        if shutdown_message:
            logger.info(shutdown_message)
        else:
            logger.info("%s interrupted by user", service_name)
        return INTERRUPTED_EXIT_CODE
