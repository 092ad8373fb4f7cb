"""
Audit logging for appeal, grant and policy actions.
"""

from warden.audit.models import AuditEntry
from warden.audit.recorder import AuditRecorder

__all__ = [
    "AuditEntry",
    "AuditRecorder",
]
