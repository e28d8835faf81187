"""Shift scheduling conflict detection, template expansion and bulk booking."""

__version__ = "0.1.0"
