"""
ReadyTx-EVM Settings

Typed, validated view of the environment used by the MCP tools. The engine
itself never reads this module; tools translate settings into explicit
arguments (chain, rpc url, signer, policy, journal home).

Usage:
    from app.core.settings import settings

    chain = resolve_chain(settings.READYTX_CHAIN)
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class SettingsValidationError(Exception):
    """Raised when settings validation fails."""

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        super().__init__(f"Invalid configuration for {field}={value!r}: {message}")


def _parse_int(value: str | None, default: int | None = None) -> int | None:
    """Parse an integer from environment variable."""
    if value is None or value.strip() == "":
        return default
    try:
        return int(value.strip(), 0)
    except ValueError:
        return default


def _parse_str(value: str | None) -> str | None:
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _get_version_from_pyproject() -> str:
    """Extract version from pyproject.toml."""
    try:
        pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "0.0.0"))
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"


@dataclass
class Settings:
    """
    Unified settings class with validation.

    All configuration is loaded and validated at instantiation time.
    """

    PROJECT_NAME: str = "ReadyTx-EVM"
    VERSION: str = field(default_factory=_get_version_from_pyproject)

    # Journal location
    READYTX_HOME: str = field(
        default_factory=lambda: _parse_str(os.getenv("READYTX_HOME")) or str(Path("~/.readytx").expanduser())
    )
    READYTX_JOURNAL_PATH: str | None = field(default_factory=lambda: _parse_str(os.getenv("READYTX_JOURNAL_PATH")))

    # Execution defaults
    READYTX_PROFILE: str = field(default_factory=lambda: _parse_str(os.getenv("READYTX_PROFILE")) or "default")
    READYTX_CHAIN: str = field(default_factory=lambda: _parse_str(os.getenv("READYTX_CHAIN")) or "base")
    READYTX_SIGNER: str = field(default_factory=lambda: _parse_str(os.getenv("READYTX_SIGNER")) or "readonly")
    REMOTE_SIGNER_AUTH_ENV: str | None = field(default_factory=lambda: _parse_str(os.getenv("REMOTE_SIGNER_AUTH_ENV")))

    # Timeouts
    TX_TIMEOUT_MS: int = field(default_factory=lambda: _parse_int(os.getenv("TX_TIMEOUT_MS"), 120_000) or 120_000)
    TX_WATCH_INTERVAL_MS: int = field(
        default_factory=lambda: _parse_int(os.getenv("TX_WATCH_INTERVAL_MS"), 3_000) or 3_000
    )

    # Observability
    READYTX_LOG_LEVEL: str = field(default_factory=lambda: os.getenv("READYTX_LOG_LEVEL", "info").strip().lower())

    def __post_init__(self) -> None:
        """Validate settings after initialization."""
        self._validate()

    def _validate(self) -> None:
        errors: list[str] = []

        if self.TX_TIMEOUT_MS <= 0:
            errors.append(f"TX_TIMEOUT_MS must be positive, got {self.TX_TIMEOUT_MS}")
        if self.TX_WATCH_INTERVAL_MS <= 0:
            errors.append(f"TX_WATCH_INTERVAL_MS must be positive, got {self.TX_WATCH_INTERVAL_MS}")
        if self.READYTX_LOG_LEVEL not in LOG_LEVELS:
            errors.append(f"READYTX_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {self.READYTX_LOG_LEVEL!r}")

        if errors:
            raise SettingsValidationError("MULTIPLE", None, "; ".join(errors))

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary (redacting secrets)."""
        result: dict[str, Any] = {}
        for key in dir(self):
            if key.startswith("_") or not key.isupper():
                continue
            value = getattr(self, key)
            if any(s in key.upper() for s in ["SECRET", "PASSWORD", "TOKEN"]):
                result[key] = "***REDACTED***" if value else None
            else:
                result[key] = value
        return result


# Global settings instance
settings = Settings()
