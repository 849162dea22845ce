"""Zemicall call signalling library."""

__version__ = "0.1.0"
