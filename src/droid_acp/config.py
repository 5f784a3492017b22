"""
Bridge configuration.

Settings are read from the environment once at startup; the CLI may load a
``.env`` file and override individual values before building them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

API_KEY_ENV = "FACTORY_API_KEY"
DEBUG_ENV = "DROID_DEBUG"
INIT_TIMEOUT_ENV = "DROID_INIT_TIMEOUT"
EXECUTABLE_ENV = "DROID_EXECUTABLE"
LOG_LEVEL_ENV = "DROID_ACP_LOG_LEVEL"

DEFAULT_INIT_TIMEOUT_MS = 60_000
# Liveness fallback for a turn the droid never completes.
PROMPT_TIMEOUT_SECONDS = 5 * 60


def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() not in ("", "0", "false", "no", "off")


@dataclass
class BridgeSettings:
    """Runtime settings for the bridge."""

    droid_executable: str = "droid"
    init_timeout: float = DEFAULT_INIT_TIMEOUT_MS / 1000
    prompt_timeout: float = PROMPT_TIMEOUT_SECONDS
    debug: bool = False
    api_key_env: str = API_KEY_ENV
    log_level: str = "warning"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "BridgeSettings":
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).

        Raises:
            ValueError: If ``DROID_INIT_TIMEOUT`` is not a positive integer.
        """
        env = os.environ if environ is None else environ

        raw_timeout = env.get(INIT_TIMEOUT_ENV, "").strip()
        init_timeout_ms = DEFAULT_INIT_TIMEOUT_MS
        if raw_timeout:
            init_timeout_ms = int(raw_timeout)
            if init_timeout_ms <= 0:
                raise ValueError(f"{INIT_TIMEOUT_ENV} must be positive, got {raw_timeout}")

        return cls(
            droid_executable=env.get(EXECUTABLE_ENV) or "droid",
            init_timeout=init_timeout_ms / 1000,
            debug=_env_flag(env.get(DEBUG_ENV)),
            log_level=env.get(LOG_LEVEL_ENV) or "warning",
        )

    def api_key(self) -> str | None:
        """Return the API key from the live environment, if set."""
        return os.environ.get(self.api_key_env) or None


__all__ = ["BridgeSettings", "PROMPT_TIMEOUT_SECONDS"]
