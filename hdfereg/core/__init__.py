# hdfereg/core/__init__.py
"""Core computational modules for hdfereg."""
from . import config, exceptions, factors, families, fe, irls, linalg, vcov

__all__ = ["config", "exceptions", "factors", "families", "fe", "irls", "linalg", "vcov"]
