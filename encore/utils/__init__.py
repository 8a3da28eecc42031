"""Utility helpers for Encore."""
