"""Salted hashing of person identifiers.

Alerts are about people in crisis, so person ids only ever reach logs,
the platform audit log and the lifecycle stream as salted hashes. Names
and message text stay inside the alert record.
"""
import hashlib
import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 32
DEV_SALT = "default_dev_salt_change_in_production_32chars"

_PII_SALT: Optional[str] = None


def configure_pii_salt(salt: str) -> None:
    """Set the process-wide salt; call once at start-up.

    Raises:
        ValueError: If the salt is shorter than MIN_SALT_LENGTH
    """
    global _PII_SALT
    if not salt or len(salt) < MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": MIN_SALT_LENGTH}
        )
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def configure_pii_salt_from_env() -> None:
    """Configure from ``PII_HASH_SALT``, falling back to the dev salt."""
    salt = os.getenv("PII_HASH_SALT")
    if not salt:
        logger.warning("PII_SALT_DEV_DEFAULT_IN_USE")
        salt = DEV_SALT
    configure_pii_salt(salt)


def hash_pii(value: str) -> str:
    """Stable 64-char hex digest of ``value`` under the configured salt.

    Raises:
        RuntimeError: If configure_pii_salt() has not been called
    """
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    return hashlib.sha256(f"{_PII_SALT}{value}".encode()).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """Unsalted fingerprint of message text.

    Lifecycle events carry this instead of the person's message, so
    consumers can match duplicates without reading the content.
    """
    return hashlib.sha256(text.encode()).hexdigest()
