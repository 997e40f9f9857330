"""Shared helpers for the calendar sync engine."""
