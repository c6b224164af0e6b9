"""Genealogy: weighted rule matching with feedback-driven rule evolution."""

__version__ = "0.1.0"
