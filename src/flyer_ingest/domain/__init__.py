"""Plain domain types and text/price normalization helpers."""
