"""Audit Service: platform-wide, hash-chained audit log.

Every alert creation, lifecycle action, delivery write and export is
recorded append-only with a SHA-256 chain so tampering is detectable.
Storage is PostgreSQL (INSERT/SELECT only) or memory in development.
"""

from .audit_logger import AuditLogger, AuditAction, AuditEntity, AuditEntry, verify_chain
from .audit_repository import AuditRepository

__all__ = [
    "AuditLogger",
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
    "AuditRepository",
    "verify_chain",
]
