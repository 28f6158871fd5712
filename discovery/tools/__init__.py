"""Tool framework — import tool modules here to register them."""

# Import tool modules so their @registry.tool() decorators execute.
# To add a new analysis tool, create a file in discovery/tools/ and add an import here.
from discovery.tools import search, stats, trends  # noqa: F401
from discovery.tools.registry import registry

__all__ = ["registry"]
