"""
Audit Trail Module.

Provides HIPAA-oriented audit logging for offline data handling.
"""

from .audit_logger import AuditAction, AuditEntry, AuditLogger, AuditSeverity

__all__ = ["AuditAction", "AuditEntry", "AuditLogger", "AuditSeverity"]
