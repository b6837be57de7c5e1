"""sqldns package"""

# Re-export the plugins subpackage so dotted paths like 'sqldns.plugins.*'
# work with tooling that traverses attributes instead of using importlib.
from . import plugins as plugins
