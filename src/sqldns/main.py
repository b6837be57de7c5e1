from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import List, Optional

from .config.config_parser import (
    load_plugins,
    normalize_listen_config,
    parse_config_file,
    run_setup_plugins,
)
from .config.logging_config import init_logging
from .plugins.resolve.base import BasePlugin
from .servers.server import DNSServer
from .sql.errors import ConfigurationError


def _close_plugins(plugins: List[BasePlugin]) -> None:
    log = logging.getLogger("sqldns.main")
    for plugin in plugins:
        try:
            plugin.close()
        except Exception:
            log.exception("Error while closing plugin %s", plugin.name)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the DNS server.
    Parses arguments, loads configuration, sets up plugins, and serves until a
    termination signal arrives.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 after SIGHUP, 2 after SIGTERM/SIGINT, 1 when the
        configuration or plugin setup is invalid or listeners cannot bind.

    Example use:
        CLI:
            sqldns --config config.yaml -v DB_PASSWORD=secret
            PYTHONPATH=src python -m sqldns.main --config config.yaml
    """
    parser = argparse.ArgumentParser(description="SQL-backed authoritative DNS server")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="KEY=YAML",
        help="Set a config variable (overrides config file and environment)",
    )
    args = parser.parse_args(argv)

    try:
        cfg = parse_config_file(args.config, cli_vars=args.var)
    except (ConfigurationError, OSError) as exc:
        print(str(exc))
        return 1

    init_logging(cfg.get("logging"))
    logger = logging.getLogger("sqldns.main")
    logger.info("Loaded config from %s", args.config)

    listen = normalize_listen_config(cfg)
    plugins: List[BasePlugin] = []
    try:
        plugins = load_plugins(cfg.get("plugins", []), default_zones=cfg.get("zones"))
        logger.info(
            "Loaded %d plugins: %s", len(plugins), [p.name for p in plugins]
        )
        run_setup_plugins(plugins)
    except ConfigurationError as e:
        logger.error("Plugin setup failed: %s", e)
        _close_plugins(plugins)
        return 1

    if not (listen["udp"] or listen["tcp"]):
        logger.error("No listeners enabled; enable listen.udp and/or listen.tcp")
        _close_plugins(plugins)
        return 1

    try:
        server = DNSServer(
            listen["host"],
            listen["port"],
            plugins,
            udp=listen["udp"],
            tcp=listen["tcp"],
            timeout_ms=listen["timeout_ms"],
        )
    except OSError as e:
        logger.error("Failed to start listeners: %s", e)
        _close_plugins(plugins)
        return 1

    shutdown_event = threading.Event()
    exit_code = 0

    def _request_shutdown(reason: str, code: int) -> None:
        nonlocal exit_code
        if shutdown_event.is_set():
            return
        exit_code = code
        logger.info("Received %s, initiating shutdown (exit code=%d)", reason, code)
        shutdown_event.set()

    for signame, code in (("SIGHUP", 0), ("SIGTERM", 2), ("SIGINT", 2)):
        signum = getattr(signal, signame, None)
        if signum is None:
            continue
        try:
            signal.signal(
                signum, lambda _s, _f, n=signame, c=code: _request_shutdown(n, c)
            )
        except ValueError:
            # Not running in the main thread (embedded or test use).
            logger.debug("Could not install %s handler", signame)

    server.start()
    logger.info(
        "Serving on %s:%d (udp=%s, tcp=%s)",
        listen["host"],
        listen["port"],
        listen["udp"],
        listen["tcp"],
    )
    try:
        shutdown_event.wait()
    except KeyboardInterrupt:
        _request_shutdown("KeyboardInterrupt", 2)
    finally:
        server.stop()
        _close_plugins(plugins)
        logger.info("Shutdown complete")

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
