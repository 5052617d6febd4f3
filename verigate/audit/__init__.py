"""Audit trail for verification outcomes."""

from .audit_log import AuditEntry, AuditLog, AuditRecord, generate_audit_id

__all__ = [
    "AuditEntry",
    "AuditLog",
    "AuditRecord",
    "generate_audit_id",
]
