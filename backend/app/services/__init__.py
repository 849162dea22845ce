"""Application service helpers."""
