from medledger.core.audit.models import AuditEntry, AuditOutcome, IntegrityReport
from medledger.core.audit.trail import AuditTrail

__all__ = ["AuditEntry", "AuditOutcome", "AuditTrail", "IntegrityReport"]
