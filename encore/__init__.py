"""Encore artist import pipeline."""

__version__ = "0.4.0"
