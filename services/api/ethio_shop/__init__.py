"""Ethio Shop API - resource-access layer for the marketplace backend."""

__version__ = "1.0.0"
