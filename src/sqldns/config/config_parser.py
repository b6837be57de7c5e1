"""Configuration parsing and plugin loading helpers for sqldns.

Brief:
  This module contains the configuration-parsing utilities used by the CLI
  entrypoint. It centralizes:
    - reading YAML config files
    - merging variables from config/env/CLI
    - JSON Schema validation (including variable expansion performed by
      validate_config)
    - listener and server settings normalization
    - loading plugins from config plugin specs

Inputs:
  - YAML config dicts and paths

Outputs:
  - Normalized config dicts and constructed plugin instances
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, List, Optional

import yaml

from ..plugins.resolve.base import BasePlugin
from ..plugins.resolve.registry import discover_plugins, get_plugin_class
from ..sql.errors import ConfigurationError
from .config_schema import validate_config

logger = logging.getLogger(__name__)

_VAR_KEY = re.compile(r"[A-Z_][A-Z0-9_]*")

DEFAULT_LISTEN_HOST = "127.0.0.1"
DEFAULT_LISTEN_PORT = 5353
DEFAULT_TIMEOUT_MS = 2000


def _is_var_key(key: str) -> bool:
    """Brief: True when key is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*."""
    return bool(key) and bool(_VAR_KEY.fullmatch(key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML.

    Outputs:
      - Any: Parsed value (the original string when it is not valid YAML).
    """
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['variables'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI `KEY=YAML` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['variables'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.

    Example:
      >>> cfg = {'variables': {'DB_PORT': 5432}}
      >>> parse_config_variables(cfg, cli_vars=['DB_PORT=6432'], environ={})['DB_PORT']
      6432
    """
    base = cfg.get("variables")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ConfigurationError("config.variables must be a mapping when present")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if isinstance(k, str) and _is_var_key(k):
            merged[k] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ConfigurationError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ConfigurationError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )
        merged[k] = _parse_yaml_value(raw)

    cfg["variables"] = merged
    return merged


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, variable-merge, and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - cli_vars: Optional list of CLI `KEY=YAML` assignments (from -v/--var).
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: Parsed configuration mapping with variables expanded.

    Raises:
      - ConfigurationError: unreadable YAML, schema violations or bad variables.
    """
    with open(config_path, "r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"{config_path}: invalid YAML: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ConfigurationError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []), environ=environ)
    validate_config(cfg, config_path=config_path)
    return cfg


def normalize_listen_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Brief: Resolve listener settings with defaults applied.

    Inputs:
      - cfg: Validated configuration mapping.

    Outputs:
      - dict with host, port, udp (bool), tcp (bool) and timeout_ms.

    Example:
      >>> normalize_listen_config({"listen": {"port": 53, "tcp": {"enabled": False}}})["tcp"]
      False
    """
    listen = cfg.get("listen") or {}
    server = cfg.get("server") or {}

    def _enabled(key: str) -> bool:
        block = listen.get(key)
        if isinstance(block, dict):
            return bool(block.get("enabled", True))
        if block is None:
            return True
        return bool(block)

    return {
        "host": str(listen.get("host", DEFAULT_LISTEN_HOST)),
        "port": int(listen.get("port", DEFAULT_LISTEN_PORT)),
        "udp": _enabled("udp"),
        "tcp": _enabled("tcp"),
        "timeout_ms": int(server.get("timeout_ms", DEFAULT_TIMEOUT_MS)),
    }


def _validate_plugin_config(plugin_cls: type, config: Optional[dict]) -> dict:
    """Brief: Validate and normalize plugin configuration via its config model.

    Inputs:
      - plugin_cls: Plugin class (subclass of BasePlugin).
      - config: Raw config mapping for this plugin (may be None).

    Outputs:
      - dict: Validated/normalized config mapping to be passed into plugin_cls.

    Notes:
      - The optional "logging" sub-config is a BasePlugin option; it is kept
        out of model validation and re-attached afterwards.
    """
    cfg: dict = dict(config or {})
    logging_cfg = cfg.pop("logging", None)

    model_cls = plugin_cls.get_config_model()
    if model_cls is not None:
        try:
            validated = dict(model_cls(**cfg).model_dump())
        except Exception as exc:
            raise ConfigurationError(
                f"Invalid configuration for plugin {plugin_cls.__name__}: {exc}"
            ) from exc
    else:
        validated = cfg

    if logging_cfg is not None:
        validated["logging"] = logging_cfg
    return validated


def load_plugins(
    plugin_specs: List[Any],
    default_zones: Optional[List[str]] = None,
) -> List[BasePlugin]:
    """Brief: Load and initialize plugins from the config plugin entries.

    Inputs:
      - plugin_specs: List of plugin specs. Each item is either:
        - str: a dotted class path or short alias, or
        - dict: plugin entry mapping supporting:
          - module: dotted class path or alias
          - name: optional friendly plugin label
          - config: plugin-specific configuration mapping
          - enabled: bool (default True). When false, the plugin is skipped.
          - pre_priority/setup_priority: BasePlugin ordering options
      - default_zones: Zones applied to plugins whose config has no zones
        (the top-level ``zones`` key).

    Outputs:
      - list[BasePlugin]: Initialized (not yet set up) plugin instances.

    Notes:
      - Each plugin instance must have a unique name. When a config entry omits
        `name`, the module text is used as the instance name.
    """
    alias_registry = discover_plugins()
    plugins: List[BasePlugin] = []
    seen_names: set = set()

    for spec in plugin_specs or []:
        if isinstance(spec, str):
            module_path: Optional[str] = spec
            plugin_name: Optional[object] = None
            spec_opts: Dict[str, Any] = {}
            raw_config: Dict[str, Any] = {}
        elif isinstance(spec, dict):
            module_path = spec.get("module")
            plugin_name = spec.get("name")
            spec_opts = spec
            cfg_obj = spec.get("config", {})
            raw_config = cfg_obj if isinstance(cfg_obj, dict) else {}
        else:
            raise ConfigurationError(f"plugins[]: unsupported entry {spec!r}")

        if not module_path:
            raise ConfigurationError("plugins[]: each entry must have a module")

        effective_name = str(plugin_name if plugin_name is not None else module_path).strip()
        if effective_name in seen_names:
            raise ConfigurationError(
                "Duplicate plugin name '%s'. Each plugin must have a unique name; "
                "set 'name' explicitly in plugins[] to disambiguate." % effective_name
            )
        seen_names.add(effective_name)

        enabled = raw_config.get("enabled", spec_opts.get("enabled", True))
        if not bool(enabled):
            logger.info("plugin %s disabled", effective_name)
            continue

        plugin_specific_config = dict(raw_config)
        priorities: Dict[str, Any] = {}
        for key in ("pre_priority", "setup_priority"):
            value = plugin_specific_config.pop(key, spec_opts.get(key))
            if value is not None:
                priorities[key] = value
        plugin_specific_config.pop("enabled", None)
        plugin_specific_config.pop("comment", None)

        if not plugin_specific_config.get("zones") and default_zones:
            plugin_specific_config["zones"] = list(default_zones)

        try:
            plugin_cls = get_plugin_class(module_path, alias_registry)
        except (KeyError, ImportError, AttributeError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"plugins[]: {exc}") from exc
        validated_config = _validate_plugin_config(plugin_cls, plugin_specific_config)
        validated_config.update(priorities)

        plugins.append(plugin_cls(name=effective_name, **validated_config))

    return plugins


def run_setup_plugins(plugins: List[BasePlugin]) -> None:
    """Brief: Run setup() on every plugin, ordered by setup_priority.

    Raises:
      - ConfigurationError: propagated from the first plugin that fails.
    """
    for plugin in sorted(plugins, key=lambda p: p.setup_priority):
        logger.debug("setting up plugin %s", plugin.name)
        plugin.setup()
