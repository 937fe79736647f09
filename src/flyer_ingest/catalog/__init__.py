"""SQLite-backed catalog store (stores, flyers, jobs, masters, products, prices)."""

from .db import CatalogDatabase, connect_sqlite, default_db_path

__all__ = [
    "CatalogDatabase",
    "connect_sqlite",
    "default_db_path",
]
