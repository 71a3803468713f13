"""Shared models, utilities and persistence helpers for Haven services."""
