"""Shared helpers for the supporter app."""
