"""Append-only audit trail for credential checks, emergency sessions and access decisions.

HIPAA Citation: 45 CFR 164.312(b) - Audit Controls
HIPAA Citation: 45 CFR 164.312(a)(2)(ii) - Emergency Access Procedure
"""

from .context import AuditContext, audit_context, get_audit_context, set_audit_context
from .logger import AuditLogger
from .models import ActorRole, AuditEvent, AuditEventType
from .retention import AuditRetentionManager, PurgeResult, RetentionStatus
from .schema import AuditSchemaManager
from .trail import AuditFilters, AuditPage, AuditRecord, AuditStats, AuditTrail

__all__ = [
    "ActorRole",
    "AuditContext",
    "AuditEvent",
    "AuditEventType",
    "AuditFilters",
    "AuditLogger",
    "AuditPage",
    "AuditRecord",
    "AuditRetentionManager",
    "AuditSchemaManager",
    "AuditStats",
    "AuditTrail",
    "PurgeResult",
    "RetentionStatus",
    "audit_context",
    "get_audit_context",
    "set_audit_context",
]
