"""Plugin discovery and lookup for the resolve chain.

Plugins are found by importing every module below a package and collecting
the BasePlugin subclasses defined there. Each class is reachable under its
declared aliases and under a default alias derived from its class name
(``SqlRecords`` -> ``sql_records``). Config entries may also name a class by
dotted path.
"""

import difflib
import importlib
import inspect
import logging
import pkgutil
import re
from types import ModuleType
from typing import Dict, Iterator, Optional, Tuple, Type

from .base import BasePlugin

logger = logging.getLogger(__name__)

DEFAULT_PLUGIN_PACKAGE = "sqldns.plugins.resolve"

_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")

Registry = Dict[str, Type[BasePlugin]]


def _camel_to_snake(name: str) -> str:
    return _WORD_BOUNDARY.sub("_", name).lower()


def _default_alias_for(cls: type) -> str:
    name = cls.__name__
    if name.endswith("Plugin") and name != "Plugin":
        name = name[: -len("Plugin")]
    return _camel_to_snake(name)


def _normalize(alias: str) -> str:
    return alias.strip().lower().replace("-", "_")


def aliases_for(cls: Type[BasePlugin]) -> Tuple[str, ...]:
    """Brief: Normalized aliases a plugin class answers to, declared ones first.

    Example:
        >>> from sqldns.plugins.resolve.sql_records import SqlRecords
        >>> aliases_for(SqlRecords)
        ('sql', 'database', 'sql_records')
    """
    names = [_normalize(a) for a in cls.get_aliases()]
    names.append(_normalize(_default_alias_for(cls)))
    return tuple(dict.fromkeys(names))


def _plugin_classes(module: ModuleType) -> Iterator[Type[BasePlugin]]:
    for _, obj in inspect.getmembers(module, inspect.isclass):
        # Imported classes are registered by the module that defines them.
        if obj.__module__ != module.__name__:
            continue
        if issubclass(obj, BasePlugin) and obj is not BasePlugin:
            yield obj


def discover_plugins(package_name: str = DEFAULT_PLUGIN_PACKAGE) -> Registry:
    """
    Import every module under package_name and index its plugin classes.

    Inputs:
      - package_name (str): Package to scan.

    Outputs:
      - Registry: normalized alias -> plugin class.

    Raises ImportError when a module cannot be imported and ValueError when
    two classes claim the same alias.

    Example:
        >>> discover_plugins()["database"].__name__
        'SqlRecords'
    """
    package = importlib.import_module(package_name)
    registry: Registry = {}

    for info in pkgutil.walk_packages(package.__path__, package.__name__ + "."):
        try:
            module = importlib.import_module(info.name)
        except ImportError as e:
            logger.error("Failed importing plugin module %s: %s", info.name, e)
            raise

        for cls in _plugin_classes(module):
            for alias in aliases_for(cls):
                owner = registry.setdefault(alias, cls)
                if owner is not cls:
                    raise ValueError(
                        f"Duplicate plugin alias '{alias}' claimed by "
                        f"{cls.__module__}.{cls.__name__} and "
                        f"{owner.__module__}.{owner.__name__}"
                    )

    logger.debug("discovered plugin aliases: %s", ", ".join(sorted(registry)))
    return registry


def _import_plugin_path(path: str) -> Type[BasePlugin]:
    modname, _, classname = path.rpartition(".")
    if not modname or not classname:
        raise ValueError(f"Invalid plugin path '{path}'")
    cls = getattr(importlib.import_module(modname), classname)
    if not (inspect.isclass(cls) and issubclass(cls, BasePlugin)):
        raise TypeError(f"{path} is not a BasePlugin subclass")
    return cls


def get_plugin_class(identifier: str, registry: Optional[Registry] = None) -> Type[BasePlugin]:
    """
    Resolve a config ``module`` value to a plugin class.

    A value containing a dot is a "package.module.Class" import path; anything
    else is an alias looked up in registry (discovered when not given).
    Unknown aliases raise KeyError with the closest known aliases.
    """
    ident = identifier.strip()
    if "." in ident:
        return _import_plugin_path(ident)

    known = registry if registry is not None else discover_plugins()
    key = _normalize(ident)
    if key in known:
        return known[key]

    suggestions = difflib.get_close_matches(key, list(known), n=3)
    raise KeyError(
        f"Unknown plugin alias '{identifier}'. "
        f"Known aliases: {', '.join(sorted(known))}. "
        f"Suggestions: {suggestions}"
    )
