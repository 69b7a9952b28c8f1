"""Batch camera-trap detection across local inference devices."""

__version__ = "0.1.0"
