from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from dnslib import QTYPE, DNSError, DNSRecord
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sqldns.plugins.resolve.base import (
    BasePlugin,
    PluginContext,
    PluginDecision,
    plugin_aliases,
)
from sqldns.sql.errors import ConfigurationError, SqlDnsError
from sqldns.sql.records import RecordMapper
from sqldns.sql.response import assemble_response, servfail_response
from sqldns.sql.store import RecordStore, open_record_store
from sqldns.sql.templates import compile_templates, parse_query_overrides
from sqldns.sql.zones import ZoneMatcher

logger = logging.getLogger(__name__)


class PoolConfig(BaseModel):
    """Brief: Connection pool limits for the backing store."""

    max_connections: int = Field(default=8, ge=1)
    idle_timeout_s: float = Field(default=30.0, gt=0)


class SqlRecordsConfig(BaseModel):
    """Brief: Typed configuration model for SqlRecords.

    Inputs:
      - zones: Zones this plugin is authoritative for.
      - url: Backing store URL (postgres://, postgresql:// or mysql://).
      - tls: Positional TLS files (CA | cert key | cert key CA).
      - queries: Per-type query templates keyed by mnemonic (a, cname, ...).
      - parameterized: Bind the query name as a driver parameter instead of
        splicing it into the SQL text.
      - timeout_ms: Upper bound for one store call.
      - pool: Connection pool limits.
      - store: Optional pre-built RecordStore; url is ignored when set.

    Outputs:
      - SqlRecordsConfig instance with normalized field types.
    """

    model_config = ConfigDict(extra="allow", arbitrary_types_allowed=True)

    zones: List[str] = Field(default_factory=list)
    url: Optional[str] = None
    tls: List[str] = Field(default_factory=list)
    queries: Dict[str, str] = Field(default_factory=dict)
    parameterized: bool = True
    timeout_ms: int = Field(default=2000, gt=0)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    store: Optional[Any] = None


@plugin_aliases("sql", "database", "sql_records")
class SqlRecords(BasePlugin):
    """Brief: Answer queries for configured zones from a relational database.

    Queries outside every zone, and record types without a query template,
    are passed unchanged to the next plugin. Everything else gets exactly one
    store round trip and either an authoritative answer or SERVFAIL.

    Example use:
        >>> plugin = SqlRecords(zones=["example.org"], store=my_store)
        >>> plugin.setup()
    """

    @classmethod
    def get_config_model(cls):
        """Brief: Return the Pydantic model used to validate plugin configuration.

        Outputs:
          - SqlRecordsConfig class for use by the core config loader.
        """
        return SqlRecordsConfig

    def setup(self) -> None:
        """
        Brief: Build the zone matcher, templates, mapper table and store.

        Inputs:
          - self.config: Raw plugin configuration (see SqlRecordsConfig).

        Outputs:
          - None

        Raises:
          - ConfigurationError: invalid config, zones, queries, TLS args or URL.
        """
        try:
            cfg = SqlRecordsConfig(**self.config)
        except ValidationError as exc:
            raise ConfigurationError(f"{self.name}: invalid config: {exc}") from exc

        self.zones = ZoneMatcher(cfg.zones)
        self.templates = compile_templates(parse_query_overrides(cfg.queries))
        self.mapper = RecordMapper()
        self.parameterized = bool(cfg.parameterized)
        self.timeout = cfg.timeout_ms / 1000.0

        if cfg.store is not None:
            if not isinstance(cfg.store, RecordStore):
                raise ConfigurationError(
                    f"{self.name}: store must be a RecordStore, got {type(cfg.store).__name__}"
                )
            self.store: RecordStore = cfg.store
        else:
            self.store = open_record_store(
                cfg.url,
                cfg.tls,
                max_connections=cfg.pool.max_connections,
                idle_timeout_s=cfg.pool.idle_timeout_s,
            )

        logger.info(
            "%s: serving zones %s via %s (%s types, parameterized=%s)",
            self.name,
            ", ".join(self.zones.zones),
            self.store.name,
            ", ".join(QTYPE.get(t, str(t)) for t in self.templates.types()),
            self.parameterized,
        )

    def _timeout_for(self, ctx: PluginContext) -> float:
        remaining = ctx.remaining()
        if remaining is None:
            return self.timeout
        return min(self.timeout, remaining)

    def _servfail(
        self,
        request: DNSRecord,
        qname: str,
        qtype: int,
        exc: SqlDnsError,
    ) -> PluginDecision:
        logger.warning(
            "%s: SERVFAIL for %s %s: %s: %s",
            self.name,
            qname,
            self.qtype_name(qtype),
            type(exc).__name__,
            exc,
        )
        return PluginDecision(
            action="servfail",
            response=servfail_response(request).pack(),
            error=exc,
            plugin_label=self.name,
        )

    def pre_resolve(
        self, qname: str, qtype: int, req: bytes, ctx: PluginContext
    ) -> Optional[PluginDecision]:
        """Brief: Resolve one query against the backing store.

        Inputs:
          - qname: Query name as received (fully qualified).
          - qtype: Numeric query type.
          - req: Raw DNS request bytes.
          - ctx: Request context carrying transport, deadline and cancel event.

        Outputs:
          - None when the name is outside every zone or the type has no
            template (the chain delegates to the next plugin).
          - PluginDecision("override") with the packed answer.
          - PluginDecision("servfail") when rendering, the store or row
            decoding fails; error carries the cause.
        """
        zone = self.zones.match(qname)
        if zone is None:
            logger.debug("%s: %s outside zones, delegating", self.name, qname)
            return None

        template = self.templates.get(qtype)
        if template is None:
            logger.debug(
                "%s: no query for type %s, delegating",
                self.name,
                self.qtype_name(qtype),
            )
            return None

        try:
            request = DNSRecord.parse(req)
        except DNSError as exc:
            logger.warning("%s: unparsable request for %s: %s", self.name, qname, exc)
            return PluginDecision(action="servfail", error=exc, plugin_label=self.name)

        try:
            if self.parameterized:
                bound = template.bind(
                    qname,
                    qtype,
                    escape_percent=self.store.escape_percent,
                    text_param=self.store.text_param,
                )
                sql, params = bound.sql, bound.params
            else:
                sql, params = template.render(qname, qtype), None
            records = self.store.execute(
                sql,
                self.mapper.for_type(qtype),
                params=params,
                timeout=self._timeout_for(ctx),
                cancel=ctx.cancelled,
            )
        except SqlDnsError as exc:
            return self._servfail(request, qname, qtype, exc)

        reply = assemble_response(request, records, transport=ctx.transport)
        logger.debug(
            "%s: %s %s in zone %s -> %d answers",
            self.name,
            qname,
            self.qtype_name(qtype),
            zone,
            len(reply.rr),
        )
        return PluginDecision(
            action="override", response=reply.pack(), plugin_label=self.name
        )

    def close(self) -> None:
        store = getattr(self, "store", None)
        if store is not None:
            store.close()
