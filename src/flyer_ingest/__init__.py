"""
Flyer ingestion pipeline.

Turns retail-store flyer PDFs into catalog products and price history:
render pages, extract listings with a vision model, match them against
product masters. Shared utilities (config, logging, paths, errors) live at
the package root.
"""

__all__ = [
    "config",
    "errors",
    "logging",
    "paths",
]
