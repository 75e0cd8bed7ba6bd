"""Dotenv file loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Dict

from ..errors import ConfigurationError


class DotenvLoader:
    """Loads ``KEY=value`` defaults from ``.env``-style files."""

    @staticmethod
    def load_from_file(path: Path) -> Dict[str, str]:
        """
        Load key-value pairs from a .env file.

        Missing files yield an empty mapping. Lines may carry an ``export``
        prefix and quoted values; comments and blank lines are skipped.

        Raises:
            ConfigurationError: If the file exists but cannot be read
        """
        if not path.is_file():
            return {}

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError.load_failed("environment defaults", str(path)) from exc

        values: Dict[str, str] = {}
        for line in text.splitlines():
            parsed = DotenvLoader._parse_env_line(line.strip())
            if parsed is not None:
                key, value = parsed
                values[key] = value
        return values

    @staticmethod
    def _parse_env_line(line: str) -> tuple[str, str] | None:
        if not line or line.startswith("#") or "=" not in line:
            return None
        if line.startswith("export "):
            line = line[len("export ") :]
        key, raw_value = line.split("=", 1)
        key = key.strip()
        if not key:
            return None
        return key, raw_value.strip().strip("'").strip('"')
