"""Durable task worker for storefront AI generation, translation and catalog sync."""

__version__ = "0.1.0"
