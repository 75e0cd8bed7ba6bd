"""Console entry point: ``devsupervisor`` (or ``python -m devsupervisor``)."""

from __future__ import annotations

import sys

from .config import ConfigurationError, load_settings
from .lifecycle import ExitCode, LifecycleController
from .logging_config import setup_logging
from .service_runner import run_async_service

SERVICE_NAME = "devsupervisor"


async def _serve() -> int:
    settings = load_settings()
    setup_logging(SERVICE_NAME, log_dir=settings.log_dir)
    controller = LifecycleController.from_settings(settings)
    return int(await controller.run())


def main() -> int:
    setup_logging()
    try:
        return run_async_service(_serve, service_name=SERVICE_NAME)
    except ConfigurationError as exc:
        sys.stderr.write(f"Invalid configuration: {exc}\n")
        return int(ExitCode.STARTUP_FAILED)


if __name__ == "__main__":
    sys.exit(main())
