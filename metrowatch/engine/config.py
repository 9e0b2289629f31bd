"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via METRO_* env vars,
or with a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field

from .models import TunnelBehavior

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8081

# Readiness sentinels for bundlers that print plain text instead of
# JSON reporter records.
DEFAULT_READY_PATTERNS = [
    r"Loading dependency graph, done",
    r"Metro (?:Bundler )?(?:is )?(?:ready|waiting)",
    r"Welcome to Metro",
]

DEFAULT_ERROR_PATTERNS = {
    "EADDRINUSE": r"EADDRINUSE|address already in use",
    "NoMetroProjectError": r"could not find (?:a )?(?:react-native|metro) project",
}


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in {"1", "true", "yes"}


@dataclass
class SupervisorConfig:
    """Supervisor configuration."""

    # Command used to launch the bundler. "{port}" is substituted.
    command: list[str] = field(
        default_factory=lambda: ["npx", "react-native", "start", "--port", "{port}"]
    )
    port: int = DEFAULT_PORT
    host: str = "localhost"

    # Grace period between terminate() and kill() when stopping.
    stop_timeout: float = 5.0
    # Hard readiness timeout. Set to 0 to wait for readiness indefinitely.
    startup_timeout: float = 0.0

    # Tunnel
    default_tunnel_behavior: TunnelBehavior = TunnelBehavior.ASK
    tunnel_ports: list[int] = field(default_factory=lambda: [DEFAULT_PORT])
    # Remote address the tunnel forwards to; defaults to the root's host.
    tunnel_host: str | None = None

    # Editor the bundler opens stack frames in.
    editor: str | None = None
    editor_dev_mode: bool = False

    # Output classification
    ready_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_READY_PATTERNS)
    )
    error_patterns: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_ERROR_PATTERNS)
    )

    # Logging
    log_level: str = "INFO"

    # Optional SQLite path for lifecycle tracking events.
    telemetry_db_path: str | None = None

    def launch_command(self) -> list[str]:
        """The bundler command with placeholders filled in."""
        return [part.replace("{port}", str(self.port)) for part in self.command]

    @classmethod
    def from_env(cls) -> SupervisorConfig:
        """Load configuration from METRO_* environment variables."""
        metro_vars = {
            k: v for k, v in os.environ.items() if k.startswith("METRO_")
        }
        if metro_vars:
            logger.info(
                "SupervisorConfig.from_env: METRO_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(metro_vars.items())),
            )
        else:
            logger.debug("SupervisorConfig.from_env: no METRO_* env vars set, using defaults")

        config = cls()
        command = os.getenv("METRO_COMMAND")
        if command:
            config.command = shlex.split(command)
        config.port = int(os.getenv("METRO_PORT", str(cls.port)))
        config.host = os.getenv("METRO_HOST", cls.host)
        config.stop_timeout = float(os.getenv(
            "METRO_STOP_TIMEOUT", str(cls.stop_timeout)
        ))
        config.startup_timeout = float(os.getenv(
            "METRO_STARTUP_TIMEOUT", str(cls.startup_timeout)
        ))
        behavior = os.getenv("METRO_TUNNEL")
        if behavior:
            config.default_tunnel_behavior = parse_tunnel_behavior(behavior)
        ports = os.getenv("METRO_TUNNEL_PORTS")
        if ports:
            config.tunnel_ports = [int(p) for p in ports.split(",") if p.strip()]
        else:
            config.tunnel_ports = [config.port]
        config.tunnel_host = os.getenv("METRO_TUNNEL_HOST") or None
        config.editor = os.getenv("METRO_EDITOR") or None
        config.editor_dev_mode = _env_flag("METRO_EDITOR_DEV")
        config.log_level = os.getenv("METRO_LOG_LEVEL", cls.log_level)
        config.telemetry_db_path = os.getenv("METRO_TELEMETRY_DB_PATH") or None

        logger.info(
            "SupervisorConfig.from_env: command=%s port=%d tunnel=%s",
            " ".join(config.launch_command()), config.port,
            config.default_tunnel_behavior.value,
        )
        return config


def parse_tunnel_behavior(value: str) -> TunnelBehavior:
    """Parse a tunnel behavior string. Accepts enum values and short forms."""
    mapping = {
        "open_tunnel": TunnelBehavior.ALWAYS,
        "always": TunnelBehavior.ALWAYS,
        "yes": TunnelBehavior.ALWAYS,
        "do_not_open_tunnel": TunnelBehavior.NEVER,
        "never": TunnelBehavior.NEVER,
        "no": TunnelBehavior.NEVER,
        "ask_about_tunnel": TunnelBehavior.ASK,
        "ask": TunnelBehavior.ASK,
    }
    try:
        return mapping[value.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown tunnel behavior '{value}'. "
            f"Expected one of: {', '.join(sorted(mapping))}"
        ) from None
