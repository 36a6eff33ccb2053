"""Chaos and invariant harness for Pix-style payment APIs, with in-memory and HTTP targets."""

__version__ = "1.0.0"
__all__ = ["__version__"]