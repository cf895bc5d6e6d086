"""Catalog metadata clients and API mappers."""
