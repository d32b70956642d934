"""Pickup marketplace settlement and order-lifecycle service."""
from marketplace.version import __version__

__all__ = ["__version__"]
