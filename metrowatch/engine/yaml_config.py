"""YAML configuration loader.

Loads a single YAML file layered over the METRO_* environment defaults.

Example YAML:
    supervisor:
      command: ["npx", "react-native", "start", "--port", "{port}"]
      port: 8081
      stop_timeout: 5
      startup_timeout: 0
      log_level: INFO
      telemetry_db_path: ~/.metrowatch/telemetry.db

    editor:
      command: code
      dev_mode: false

    tunnel:
      behavior: ask_about_tunnel
      ports: [8081, 8097]
      host: devserver.example.com

    output:
      ready_patterns:
        - "Loading dependency graph, done"
      error_patterns:
        EADDRINUSE: "address already in use"
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from .config import SupervisorConfig, parse_tunnel_behavior

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".metrowatch"
CONFIG_FILE_NAME = "metrowatch.yaml"


def discover_config_path(cwd: str | Path) -> Path | None:
    """Return .metrowatch/metrowatch.yaml (preferred) or metrowatch.yaml under cwd."""
    cwd = Path(cwd)
    candidates = [cwd / CONFIG_DIR_NAME / CONFIG_FILE_NAME, cwd / CONFIG_FILE_NAME]
    for candidate in candidates:
        if candidate.is_file():
            logger.info("Auto-discovered config: %s", candidate)
            return candidate
    logger.debug(
        "No config file found (tried %s); using defaults",
        ", ".join(str(c) for c in candidates),
    )
    return None


def load_yaml_config(
    path: str | Path,
    base: SupervisorConfig | None = None,
) -> SupervisorConfig:
    """Load and parse a YAML config file.

    Values present in the file override *base* (defaults to
    SupervisorConfig.from_env()). Unknown sections are ignored with a
    warning.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top-level YAML value must be a mapping")

    known = {"supervisor", "editor", "tunnel", "output"}
    unknown = sorted(set(raw) - known)
    if unknown:
        logger.warning(
            "load_yaml_config: ignoring unknown sections in %s: %s",
            path.name, ", ".join(unknown),
        )

    config = base if base is not None else SupervisorConfig.from_env()

    # ── Supervisor ─────────────────────────────────────────────
    sup = raw.get("supervisor") or {}
    if "command" in sup:
        command = sup["command"]
        config.command = command.split() if isinstance(command, str) else list(command)
    if "port" in sup:
        config.port = int(sup["port"])
    if "host" in sup:
        config.host = str(sup["host"])
    if "stop_timeout" in sup:
        config.stop_timeout = float(sup["stop_timeout"])
    if "startup_timeout" in sup:
        config.startup_timeout = float(sup["startup_timeout"])
    if "log_level" in sup:
        config.log_level = str(sup["log_level"]).upper()
    if sup.get("telemetry_db_path"):
        config.telemetry_db_path = os.path.expanduser(str(sup["telemetry_db_path"]))

    # ── Editor ─────────────────────────────────────────────────
    editor = raw.get("editor") or {}
    if editor.get("command"):
        config.editor = str(editor["command"])
    if "dev_mode" in editor:
        config.editor_dev_mode = bool(editor["dev_mode"])

    # ── Tunnel ─────────────────────────────────────────────────
    tunnel = raw.get("tunnel") or {}
    if "behavior" in tunnel:
        config.default_tunnel_behavior = parse_tunnel_behavior(str(tunnel["behavior"]))
    if "ports" in tunnel:
        config.tunnel_ports = [int(p) for p in tunnel["ports"]]
    elif "port" in sup:
        config.tunnel_ports = [config.port]
    if tunnel.get("host"):
        config.tunnel_host = str(tunnel["host"])

    # ── Output classification ──────────────────────────────────
    output = raw.get("output") or {}
    if "ready_patterns" in output:
        config.ready_patterns = [str(p) for p in output["ready_patterns"]]
    if "error_patterns" in output:
        config.error_patterns = {
            str(code): str(pattern)
            for code, pattern in (output["error_patterns"] or {}).items()
        }

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    return config
