"""JSON Schema validation and variable expansion for sqldns configuration.

Brief:
  validate_config() expands ``${VAR}`` references from the ``variables`` group
  and then validates the result against the bundled JSON Schema
  (``sqldns/assets/config-schema.json``) using jsonschema's Draft 2020-12
  validator.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from jsonschema import Draft202012Validator, ValidationError

from ..sql.errors import ConfigurationError

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")
_VAR_KEY = re.compile(r"[A-Z_][A-Z0-9_]*")


def expand_variables(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level ``variables`` into the config and remove the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - Replaces ``${KEY}`` occurrences inside strings.
      - A string that is exactly ``${KEY}`` is replaced with the variable's
        underlying YAML value (list/dict/int/etc.).
      - Unknown references are left as written.
      - The ``variables`` group is removed after expansion.

    Raises:
      - ConfigurationError: non-mapping group, bad key names or cycles.

    Example:
      >>> cfg = {"variables": {"PW": "s3cret"}, "url": "mysql://dns:${PW}@db/dns"}
      >>> expand_variables(cfg)
      >>> cfg
      {'url': 'mysql://dns:s3cret@db/dns'}
    """
    variables = cfg.get("variables")
    if variables is None:
        cfg.pop("variables", None)
        return
    if not isinstance(variables, dict):
        raise ConfigurationError("config.variables must be a mapping when present")

    for k in variables.keys():
        if not isinstance(k, str) or not _VAR_KEY.fullmatch(k):
            raise ConfigurationError(
                f"config.variables key {k!r} must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*"
            )

    resolved: Dict[str, Any] = {}

    def _resolve_var(key: str, stack: List[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            cycle = " -> ".join(stack + [key])
            raise ConfigurationError(f"config.variables contains a cycle: {cycle}")
        if key not in variables:
            raise KeyError(key)
        stack.append(key)
        value = _expand_obj(variables[key], stack)
        stack.pop()
        resolved[key] = value
        return value

    def _expand_string(text: str, stack: List[str]) -> Any:
        whole = _VAR_PATTERN.fullmatch(text)
        if whole is not None and whole.group(1) in variables:
            return copy.deepcopy(_resolve_var(whole.group(1), stack))

        def _repl(match: "re.Match[str]") -> str:
            try:
                v = _resolve_var(match.group(1), stack)
            except KeyError:
                return match.group(0)
            if isinstance(v, bool):
                return "true" if v else "false"
            if v is None:
                return "null"
            if isinstance(v, (int, float, str)):
                return str(v)
            return json.dumps(v)

        return _VAR_PATTERN.sub(_repl, text)

    def _expand_obj(obj: Any, stack: List[str]) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj, stack)
        if isinstance(obj, list):
            return [_expand_obj(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand_obj(v, stack) for k, v in obj.items()}
        return obj

    for k in list(variables.keys()):
        _resolve_var(k, [])

    for top_key in list(cfg.keys()):
        if top_key == "variables":
            continue
        cfg[top_key] = _expand_obj(cfg[top_key], [])

    cfg.pop("variables", None)


def get_default_schema_path() -> Path:
    """Brief: Location of the bundled JSON Schema."""
    return Path(__file__).resolve().parent.parent / "assets" / "config-schema.json"


def _load_schema(schema_path: Optional[Path] = None) -> Dict[str, Any]:
    path = schema_path or get_default_schema_path()
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string."""
    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def _split_extra_property_errors(
    errors: List[ValidationError],
) -> Tuple[List[ValidationError], List[ValidationError]]:
    """Brief: Partition validation errors into unexpected-key errors and the rest."""
    extra: List[ValidationError] = []
    other: List[ValidationError] = []
    for err in errors:
        if err.validator in {"additionalProperties", "unevaluatedProperties"}:
            extra.append(err)
        else:
            other.append(err)
    return extra, other


_UNKNOWN_KEY_POLICIES: Set[str] = {"ignore", "warn", "error"}


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> None:
    """Brief: Expand variables and validate a configuration mapping.

    Inputs:
      - cfg: Dict loaded from YAML (mutated: variables are expanded).
      - schema_path: Optional explicit path to a JSON Schema file.
      - config_path: Optional path of the YAML file, used in error messages.
      - unknown_keys: "ignore", "warn" (default) or "error" for keys the
        schema does not describe.

    Outputs:
      - None on success.

    Raises:
      - ConfigurationError: when validation fails, or when unknown_keys is
        "error" and unexpected keys are present.

    Example:
      >>> import yaml
      >>> data = yaml.safe_load("listen: {host: 127.0.0.1, port: 5353}\\nplugins: [{module: sql}]")
      >>> validate_config(data)
    """
    if unknown_keys not in _UNKNOWN_KEY_POLICIES:
        raise ValueError(
            f"unknown_keys policy must be 'ignore', 'warn', or 'error', got {unknown_keys!r}"
        )

    expand_variables(cfg)

    schema = _load_schema(schema_path)
    validator = Draft202012Validator(schema)
    all_errors = sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path])
    if not all_errors:
        return None

    extra_errors, other_errors = _split_extra_property_errors(all_errors)
    if other_errors:
        raise ConfigurationError(
            _format_errors(other_errors + extra_errors, config_path=config_path)
        )

    message = _format_errors(extra_errors, config_path=config_path)
    if unknown_keys == "warn":
        logger.warning(message)
    elif unknown_keys == "error":
        raise ConfigurationError(message)
    return None
