"""
Resolve plugins for sqldns.

Brief: Every module in this package is scanned by the registry; plugin
classes defined here become selectable by alias from the ``plugins`` list of
the config file. The handler building blocks are re-exported for plugin
authors.
"""

from .base import BasePlugin, PluginContext, PluginDecision, plugin_aliases

__all__ = ["BasePlugin", "PluginContext", "PluginDecision", "plugin_aliases"]
