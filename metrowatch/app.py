"""metrowatch CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_DIR = Path.home() / ".metrowatch" / "logs"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(level: str, log_file: Path, rich_console: bool) -> None:
    """Root logger: rotating file plus stderr (rich in console mode)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if rich_console:
        stream_handler: logging.Handler = RichHandler(
            console=Console(stderr=True), show_path=False, rich_tracebacks=True,
        )
        # Only warnings reach the terminal; the file has everything.
        stream_handler.setLevel(logging.WARNING)
    else:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)


def main() -> None:
    import argparse

    from metrowatch.adapters import BusErrorReporter, BusPrompter, EventBus
    from metrowatch.engine.config import SupervisorConfig, parse_tunnel_behavior
    from metrowatch.engine.controller import SessionController
    from metrowatch.engine.root_source import RootSource
    from metrowatch.engine.triggers import get_trigger_registry
    from metrowatch.engine.yaml_config import discover_config_path, load_yaml_config

    parser = argparse.ArgumentParser(
        prog="metrowatch",
        description="metrowatch: supervisor for the React Native bundler",
    )
    parser.add_argument(
        "--root", metavar="PATH",
        help="Working root (local path or nuclide://host/path; default: cwd)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .metrowatch/metrowatch.yaml if present)",
    )
    parser.add_argument(
        "--tunnel", metavar="BEHAVIOR",
        help="Tunnel behavior: open_tunnel, do_not_open_tunnel or ask_about_tunnel",
    )
    parser.add_argument(
        "--no-start", action="store_true",
        help="Do not start the bundler until asked",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE control server mode",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Server bind host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )
    args = parser.parse_args()

    config = SupervisorConfig.from_env()
    config_path = Path(args.config) if args.config else discover_config_path(Path.cwd())
    if config_path is not None:
        try:
            config = load_yaml_config(config_path, base=config)
        except (OSError, ValueError) as exc:
            parser.error(f"could not load config {config_path}: {exc}")

    behavior = config.default_tunnel_behavior
    if args.tunnel:
        try:
            behavior = parse_tunnel_behavior(args.tunnel)
        except ValueError as exc:
            parser.error(str(exc))
        config.default_tunnel_behavior = behavior

    level = "DEBUG" if args.verbose else config.log_level
    log_name = "metrowatch-server.log" if args.server else "metrowatch.log"
    configure_logging(level, LOG_DIR / log_name, rich_console=not args.server)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting metrowatch root=%s config=%s mode=%s",
        args.root or Path.cwd(), config_path or "<none>",
        "server" if args.server else "console",
    )

    root_source = RootSource(args.root or str(Path.cwd()))
    bus = EventBus()
    prompter = BusPrompter(bus)
    triggers = get_trigger_registry()
    autostart = None if args.no_start else behavior

    async def run() -> None:
        controller = SessionController(
            config,
            root_source,
            reporter=BusErrorReporter(bus),
            prompter=prompter,
            triggers=triggers,
        )
        controller.observe_status(bus.on_status)
        controller.observe_messages(bus.on_message)

        if args.server:
            from metrowatch.server import ControlServer

            server = ControlServer(
                controller, root_source, bus, prompter, triggers,
                host=args.host, port=args.port,
            )
            await server.start(autostart)
        else:
            from metrowatch.console import ConsoleHost

            host = ConsoleHost(controller, root_source, bus, prompter, triggers)
            await host.run(autostart)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
