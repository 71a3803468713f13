"""Shared utilities for Haven services."""
from .pii import hash_pii, hash_text_for_audit, configure_pii_salt, configure_pii_salt_from_env
from .timeutil import utc_now, to_iso, parse_iso, ensure_utc

__all__ = [
    "hash_pii",
    "hash_text_for_audit",
    "configure_pii_salt",
    "configure_pii_salt_from_env",
    "utc_now",
    "to_iso",
    "parse_iso",
    "ensure_utc",
]
