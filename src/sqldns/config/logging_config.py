from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_TAGS = {
    logging.DEBUG: "[debug]",
    logging.INFO: "[info]",
    logging.WARNING: "[warn]",
    logging.ERROR: "[error]",
    logging.CRITICAL: "[crit]",
}

LOG_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"


def _level_tag(levelno: int) -> str:
    return _TAGS.get(levelno, f"[lvl{levelno}]")


class SyslogFormatter(logging.Formatter):
    """Formatter for syslog output; syslog adds its own timestamp."""

    def format(self, record):
        record.level_tag = _level_tag(record.levelno)
        return f"{record.level_tag} {record.name}: {record.getMessage()}"


class BracketLevelFormatter(logging.Formatter):
    """Formatter with bracketed lowercase level tags and UTC timestamps."""

    def formatTime(self, record, datefmt=None):
        """Format the record time as UTC ISO-8601 with a Z suffix."""
        return datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        record.level_tag = _level_tag(record.levelno)
        return super().format(record)


def parse_level(value: Any, default: int = logging.INFO) -> int:
    """Brief: Map a config level string (debug|info|warn|error|crit) to logging's constant.

    Example:
        >>> parse_level("warn") == logging.WARNING
        True
        >>> parse_level("nonsense") == logging.INFO
        True
    """
    return _LEVELS.get(str(value).strip().lower(), default)


def _syslog_handler(syslog_cfg: Any) -> logging.Handler:
    """Brief: Build a SysLogHandler from ``true`` or an address/facility mapping.

    Raises:
      - OSError / ValueError when the syslog endpoint cannot be opened.
    """
    address: Any = "/dev/log"
    facility_name = "USER"
    if isinstance(syslog_cfg, dict):
        address = syslog_cfg.get("address", address)
        if isinstance(address, list):
            # YAML has no tuples; (host, port) arrives as a list.
            address = tuple(address)
        facility_name = str(syslog_cfg.get("facility", facility_name)).upper()

    handler_cls = logging.handlers.SysLogHandler
    facility = getattr(handler_cls, f"LOG_{facility_name}", handler_cls.LOG_USER)
    handler = handler_cls(address=address, facility=facility)
    handler.setFormatter(SyslogFormatter())
    return handler


def build_handlers(cfg: Optional[Dict[str, Any]]) -> List[logging.Handler]:
    """
    Brief: Create the handlers described by a ``logging`` config block.

    Inputs:
      - cfg: mapping with optional keys stderr (default True), file and syslog.

    Outputs:
      - list of handlers: stderr and file handlers use BracketLevelFormatter,
        the syslog handler uses SyslogFormatter. A syslog endpoint that cannot
        be opened is logged and left out.
    """
    cfg = cfg or {}
    formatter = BracketLevelFormatter(fmt=LOG_FORMAT)
    handlers: List[logging.Handler] = []

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        handlers.append(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    syslog_cfg = cfg.get("syslog")
    if syslog_cfg:
        try:
            handlers.append(_syslog_handler(syslog_cfg))
        except (OSError, ValueError) as e:  # pragma: no cover - depends on a local syslog socket
            logger.warning("Failed to configure syslog: %s", e)

    return handlers


def configure_logger(target: logging.Logger, cfg: Optional[Dict[str, Any]]) -> None:
    """Brief: Replace target's handlers and level with those from cfg."""
    cfg = cfg or {}
    target.setLevel(parse_level(cfg.get("level", "info")))
    for h in list(target.handlers):
        target.removeHandler(h)
    for h in build_handlers(cfg):
        target.addHandler(h)


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Initialize root logging from the ``logging`` config block.

    Args:
        cfg: Logging configuration dictionary with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: boolean to log to stderr (default: True)
            - file: string path to log file (optional)
            - syslog: boolean or dict with address and facility (optional)

    Example config:
        {
            "level": "info",
            "stderr": True,
            "file": "./sqldns.log",
            "syslog": {"address": "/dev/log", "facility": "daemon"}
        }
    """
    configure_logger(logging.getLogger(), cfg)
    logging.captureWarnings(True)
