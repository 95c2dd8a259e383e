"""Atelier - production workflow and material reservation engine for a tailoring workshop."""

__version__ = "0.1.0"
