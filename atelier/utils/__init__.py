"""Utility modules: configuration, constants and datetime helpers."""
