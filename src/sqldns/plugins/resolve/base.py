from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import ClassVar, Dict, Optional, Sequence, Union, final

from dnslib import QTYPE

from sqldns.config.logging_config import configure_logger

logger = logging.getLogger(__name__)


@dataclass
class PluginDecision:
    """
    Brief: Represents the outcome a handler produced for one query.

    Inputs:
      - action: "override" when response carries the reply to send, or
        "servfail" when the query failed and a SERVFAIL must be sent.
      - response: Optional[bytes] packed DNS reply.
      - error: Optional exception that caused a "servfail" decision; kept for
        logging and diagnostics.
      - plugin_label: Optional[str] name of the handler that decided.

    Outputs:
      - PluginDecision instance with attributes populated.
    """

    action: str
    response: Optional[bytes] = None
    error: Optional[BaseException] = None
    plugin_label: Optional[str] = None


class PluginContext:
    """Brief: Per-request context passed down the handler chain.

    Inputs:
      - client_ip: str IP address of the requesting client.
      - transport: "udp" or "tcp"; drives response size limits.
      - timeout: Optional seconds the request may take; converted into an
        absolute monotonic deadline.

    Attributes:
      - client_ip, transport
      - deadline: Optional[float] time.monotonic() value after which work for
        this request should stop.
      - cancelled: threading.Event set by whoever abandons the request. The
        listeners set it once the chain has answered; callers driving the
        chain themselves may set it earlier to abort store calls.

    Example use:
        >>> from sqldns.plugins.resolve.base import PluginContext
        >>> ctx = PluginContext(client_ip="192.0.2.1", transport="tcp")
        >>> ctx.transport
        'tcp'
        >>> ctx.remaining() is None
        True
    """

    @final
    def __init__(
        self,
        client_ip: str,
        transport: str = "udp",
        timeout: Optional[float] = None,
    ) -> None:
        self.client_ip = client_ip
        self.transport = str(transport).lower()
        self.deadline: Optional[float] = (
            None if timeout is None else time.monotonic() + float(timeout)
        )
        self.cancelled = threading.Event()

    def remaining(self) -> Optional[float]:
        """Brief: Seconds left before the deadline (may be negative), or None."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def cancel(self) -> None:
        self.cancelled.set()


class BasePlugin:
    """Brief: Base class for all resolve plugins.

    Plugins are linked into a chain through ``next``. A plugin answers a query
    by returning a PluginDecision from pre_resolve(); returning None means the
    query is not its responsibility and serve_dns() hands the original request
    to ``next`` unchanged.

    Inputs:
      - name: Optional human-friendly identifier used in logs. When omitted,
        the first alias or the class name is used.
      - **config: Plugin configuration including optional pre_priority and
        setup_priority (chain and setup ordering, lower runs first) and an
        optional per-plugin ``logging`` block.

    Outputs:
      - Initialized plugin instance.

    Example use:
        >>> from sqldns.plugins.resolve.base import BasePlugin
        >>> class MyPlugin(BasePlugin):
        ...     def pre_resolve(self, qname, qtype, req, ctx):
        ...         return None
        >>> plugin = MyPlugin(name="mine", pre_priority=25)
        >>> plugin.pre_priority
        25
    """

    pre_priority: ClassVar[int] = 100
    setup_priority: ClassVar[int] = 100
    aliases: ClassVar[Sequence[str]] = ()

    @classmethod
    def get_aliases(cls) -> Sequence[str]:
        return tuple(getattr(cls, "aliases", ()))

    @classmethod
    def get_config_model(cls):
        """Brief: Return a pydantic model validating this plugin's config, or None."""
        return None

    @final
    def __init__(self, name: Optional[str] = None, **config: object) -> None:
        if name is not None:
            self.name = str(name)
        else:
            aliases = list(self.__class__.get_aliases())
            self.name = str(aliases[0]) if aliases else self.__class__.__name__

        self.config = config
        self.next: Optional[BasePlugin] = None
        logger.debug("loading %s", self)

        self.logger = logging.getLogger(getattr(self.__class__, "__module__", __name__))
        plugin_logging_cfg = config.get("logging")
        if isinstance(plugin_logging_cfg, dict):
            self._init_instance_logger(plugin_logging_cfg)

        self.pre_priority = self._parse_priority_value(
            config.get("pre_priority", self.__class__.pre_priority),
            "pre_priority",
            logger,
        )
        raw_setup = config.get(
            "setup_priority",
            config.get("pre_priority", getattr(self.__class__, "setup_priority", 100)),
        )
        self.setup_priority = self._parse_priority_value(
            raw_setup, "setup_priority", logger
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={getattr(self, 'name', '?')!r}>"

    def _init_instance_logger(self, logging_cfg: Dict[str, object]) -> None:
        """Brief: Give this plugin's module logger its own level and handlers.

        Inputs:
          - logging_cfg: Mapping with level, stderr, file and syslog keys, as
            accepted by init_logging().

        Outputs:
          - None; replaces self.logger and stops propagation to the root.
        """
        plugin_logger = logging.getLogger(
            str(getattr(self.__class__, "__module__", __name__))
        )
        configure_logger(plugin_logger, dict(logging_cfg))
        plugin_logger.propagate = False
        self.logger = plugin_logger

    @staticmethod
    def _parse_priority_value(value: object, key: str, logger: logging.Logger) -> int:
        """Brief: Parse and clamp a priority value to the inclusive range [1, 255].

        Example:
            >>> BasePlugin._parse_priority_value("25", "pre_priority", logger)
            25
            >>> BasePlugin._parse_priority_value(300, "pre_priority", logger)
            255
        """
        default = 100
        try:
            val = int(value)  # type: ignore[arg-type]
        except (ValueError, TypeError):
            logger.warning("Invalid %s %r; using default %d", key, value, default)
            return default

        if val < 1:
            logger.warning("%s below 1; clamping to 1", key)
            return 1
        if val > 255:
            logger.warning("%s above 255; clamping to 255", key)
            return 255
        return val

    @staticmethod
    def qtype_name(qtype: Union[int, str]) -> str:
        """Brief: Normalize a DNS qtype value to its uppercase mnemonic."""
        if isinstance(qtype, int):
            return str(QTYPE.get(qtype, str(qtype))).upper()
        return str(qtype).upper()

    def set_next(self, handler: Optional["BasePlugin"]) -> None:
        self.next = handler

    def pre_resolve(
        self, qname: str, qtype: int, req: bytes, ctx: PluginContext
    ) -> Optional[PluginDecision]:
        """Brief: Answer the query or return None to pass it along.

        Inputs:
          - qname: The queried domain name, fully qualified as received.
          - qtype: The numeric query type.
          - req: The raw DNS request.
          - ctx: The request context.

        Outputs:
          - PluginDecision when this plugin handled the query, or None.

        Example use:
            >>> plugin = BasePlugin()
            >>> plugin.pre_resolve("example.com.", 1, b"", PluginContext("127.0.0.1")) is None
            True
        """
        return None

    def serve_dns(
        self, qname: str, qtype: int, req: bytes, ctx: PluginContext
    ) -> PluginDecision:
        """Brief: Run this plugin and fall through to ``next`` when it passes."""
        decision = self.pre_resolve(qname, qtype, req, ctx)
        if decision is not None:
            if decision.plugin_label is None:
                decision.plugin_label = self.name
            return decision
        return self.next_or_failure(qname, qtype, req, ctx)

    def next_or_failure(
        self, qname: str, qtype: int, req: bytes, ctx: PluginContext
    ) -> PluginDecision:
        """Brief: Delegate the unchanged request to ``next``, or fail.

        Outputs:
          - The next handler's decision; a "servfail" decision when this is
            the last plugin in the chain.
        """
        if self.next is not None:
            return self.next.serve_dns(qname, qtype, req, ctx)
        return PluginDecision(
            action="servfail",
            error=LookupError(f"{self.name}: no next plugin found"),
            plugin_label=self.name,
        )

    def setup(self) -> None:
        """Brief: One-time initialization run before listeners start."""
        return None

    def close(self) -> None:
        """Brief: Release resources held by the plugin (default no-op)."""
        return None


def plugin_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a plugin class for registry discovery.

    Example:
        >>> @plugin_aliases("sql", "database")
        ... class SqlRecords(BasePlugin):
        ...     pass
        >>> SqlRecords.aliases
        ('sql', 'database')
    """

    def _wrap(cls: type) -> type:
        cls.aliases = tuple(aliases)
        return cls

    return _wrap
