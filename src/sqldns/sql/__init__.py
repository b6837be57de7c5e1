"""SQL-backed resolution pipeline.

Brief:
    Zone matching, query templates, record stores and drivers, row mapping and
    response assembly used by the ``sql`` resolve plugin.
"""
