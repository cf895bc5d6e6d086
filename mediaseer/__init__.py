"""Mediaseer: media request and discovery service."""

__version__ = "1.0.0"
