"""Generic utilities and helpers.

Helpers that are not bound to any specific component of the engine,
like the rendering of results in the terminal.
"""

from . import tabulate

__all__ = ("tabulate",)
