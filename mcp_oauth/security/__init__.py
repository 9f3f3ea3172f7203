"""
Security audit trail for the OAuth authorization core
"""

from .audit_logger import (
    AuditEventType,
    AuditOutcome,
    AuditEvent,
    AuditLogger,
    NullAuditLogger,
    InMemoryAuditLogger,
    SecurityAuditLogger,
    get_security_audit_logger,
)

__all__ = [
    'AuditEventType',
    'AuditOutcome',
    'AuditEvent',
    'AuditLogger',
    'NullAuditLogger',
    'InMemoryAuditLogger',
    'SecurityAuditLogger',
    'get_security_audit_logger'
]
