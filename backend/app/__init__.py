"""Zemicall backend application."""
