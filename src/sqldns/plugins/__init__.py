"""sqldns plugin namespace package.

Brief:
    Groups built-in sqldns plugins under the ``sqldns.plugins`` namespace.

Outputs:
    - Makes ``sqldns.plugins.resolve`` importable for tests and runtime code.
"""
