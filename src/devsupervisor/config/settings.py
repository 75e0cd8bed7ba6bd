from __future__ import annotations

"""Settings for the development stack: managed ports, roles and retry policy."""

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from ..port_probe import PROBER_NAMES, ProbeFailurePolicy
from ..port_reclaimer import RetryBudget
from ..supervisor import DEFAULT_TERMINATE_TIMEOUT_SECONDS, RoleSpec
from .errors import ConfigurationError
from .runtime import env_float, env_int, env_list, env_seconds, env_str

DEFAULT_BACKEND_PORT = 8081
DEFAULT_FRONTEND_PORTS = (5173, 5174)
DEFAULT_BACKEND_COMMAND = "go run cmd/webserver/main.go"
DEFAULT_FRONTEND_COMMAND = "npm start"
DEFAULT_FRONTEND_SUBDIR = "web"

BACKEND_ROLE = "backend"
FRONTEND_ROLE = "frontend"
API_BASE_URL_ENV = "VITE_API_BASE_URL"

_MAX_PORT = 65535


@dataclass(frozen=True)
class DevStackSettings:
    """Everything the lifecycle controller needs to bring the stack up."""

    project_root: Path
    backend_port: int
    frontend_ports: tuple[int, ...]
    backend: RoleSpec
    frontend: RoleSpec
    api_base_url: str
    retry_budget: RetryBudget
    terminate_timeout_seconds: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS
    probe_failure_policy: ProbeFailurePolicy = ProbeFailurePolicy.OCCUPIED
    prober_name: Optional[str] = None
    log_dir: Optional[Path] = None

    @property
    def managed_ports(self) -> tuple[int, ...]:
        return (self.backend_port, *self.frontend_ports)

    @property
    def roles(self) -> tuple[RoleSpec, ...]:
        """Roles in launch order; backend first so its log lines come first."""
        return (self.backend, self.frontend)

    @property
    def frontend_url(self) -> str:
        return f"http://localhost:{self.frontend_ports[0]}"


def validate_port(name: str, value: int) -> int:
    if not 0 <= value <= _MAX_PORT:
        raise ConfigurationError.invalid_value(name, value, f"Ports must be between 0 and {_MAX_PORT}")
    return value


def parse_ports(name: str, raw_items: Sequence[str]) -> tuple[int, ...]:
    """Convert a list of textual port numbers, rejecting blanks and junk."""
    ports = []
    for item in raw_items:
        try:
            port = int(item)
        except ValueError as exc:
            raise ConfigurationError.invalid_format(name, item, "a comma separated list of integers") from exc
        ports.append(validate_port(name, port))
    if not ports:
        raise ConfigurationError.missing_value(name)
    return tuple(ports)


def parse_command(name: str, raw: str) -> tuple[str, ...]:
    try:
        parts = shlex.split(raw)
    except ValueError as exc:
        raise ConfigurationError.invalid_format(name, raw, "a shell-style command line") from exc
    if not parts:
        raise ConfigurationError.missing_value(name)
    return tuple(parts)


def _resolve_dir(raw: Optional[str], base: Path, fallback: Path) -> Path:
    if raw is None:
        return fallback
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate


def _probe_failure_policy() -> ProbeFailurePolicy:
    raw = env_str("DEV_PROBE_FAILURE_POLICY", ProbeFailurePolicy.OCCUPIED.value)
    try:
        return ProbeFailurePolicy(raw.lower())
    except ValueError as exc:
        allowed = ", ".join(policy.value for policy in ProbeFailurePolicy)
        raise ConfigurationError.invalid_value("DEV_PROBE_FAILURE_POLICY", raw, f"Expected one of: {allowed}") from exc


def _prober_name() -> Optional[str]:
    raw = env_str("DEV_PORT_PROBER")
    if raw is None:
        return None
    name = raw.lower()
    if name not in PROBER_NAMES:
        raise ConfigurationError.invalid_value("DEV_PORT_PROBER", raw, f"Expected one of: {', '.join(PROBER_NAMES)}")
    return name


def _retry_budget() -> RetryBudget:
    attempts = env_int("DEV_RECLAIM_ATTEMPTS", RetryBudget.max_attempts)
    settle = env_seconds("DEV_SETTLE_DELAY_SECONDS", RetryBudget.settle_delay_seconds)
    multiplier = env_float("DEV_RECLAIM_BACKOFF", RetryBudget.backoff_multiplier)
    try:
        return RetryBudget(
            max_attempts=attempts,
            settle_delay_seconds=settle,
            backoff_multiplier=multiplier,
        )
    except ValueError as exc:
        raise ConfigurationError.invalid_value("retry budget", (attempts, settle, multiplier), str(exc)) from exc


def load_settings(project_root: Optional[Path] = None) -> DevStackSettings:
    """
    Build settings from the environment (and .env defaults).

    Args:
        project_root: Repository root; ``DEV_PROJECT_ROOT`` or the current
            directory when omitted.

    Raises:
        ConfigurationError: If any value is malformed or ports collide
    """
    if project_root is None:
        project_root = Path(env_str("DEV_PROJECT_ROOT", ".")).expanduser()
    root = project_root.resolve()

    backend_port = validate_port("DEV_BACKEND_PORT", env_int("DEV_BACKEND_PORT", DEFAULT_BACKEND_PORT))
    frontend_items = env_list("DEV_FRONTEND_PORTS", or_value=[str(port) for port in DEFAULT_FRONTEND_PORTS], unique=False)
    frontend_ports = parse_ports("DEV_FRONTEND_PORTS", frontend_items)

    all_ports = (backend_port, *frontend_ports)
    if len(set(all_ports)) != len(all_ports):
        raise ConfigurationError.invalid_value("managed ports", all_ports, "Each managed port must be unique")

    api_base_url = env_str(API_BASE_URL_ENV, f"http://localhost:{backend_port}")

    backend = RoleSpec(
        role=BACKEND_ROLE,
        command=parse_command("DEV_BACKEND_COMMAND", env_str("DEV_BACKEND_COMMAND", DEFAULT_BACKEND_COMMAND)),
        cwd=_resolve_dir(env_str("DEV_BACKEND_DIR"), root, root),
    )
    frontend = RoleSpec(
        role=FRONTEND_ROLE,
        command=parse_command("DEV_FRONTEND_COMMAND", env_str("DEV_FRONTEND_COMMAND", DEFAULT_FRONTEND_COMMAND)),
        cwd=_resolve_dir(env_str("DEV_FRONTEND_DIR"), root, root / DEFAULT_FRONTEND_SUBDIR),
        env={API_BASE_URL_ENV: api_base_url},
    )

    log_dir_raw = env_str("DEV_LOG_DIR")

    return DevStackSettings(
        project_root=root,
        backend_port=backend_port,
        frontend_ports=frontend_ports,
        backend=backend,
        frontend=frontend,
        api_base_url=api_base_url,
        retry_budget=_retry_budget(),
        terminate_timeout_seconds=env_seconds("DEV_TERMINATE_TIMEOUT_SECONDS", DEFAULT_TERMINATE_TIMEOUT_SECONDS),
        probe_failure_policy=_probe_failure_policy(),
        prober_name=_prober_name(),
        log_dir=Path(log_dir_raw).expanduser() if log_dir_raw else None,
    )


__all__ = [
    "BACKEND_ROLE",
    "FRONTEND_ROLE",
    "API_BASE_URL_ENV",
    "DevStackSettings",
    "load_settings",
    "parse_command",
    "parse_ports",
    "validate_port",
]
