"""Ordered, lane-routed AI reply pipeline."""

__version__ = "0.1.0"
