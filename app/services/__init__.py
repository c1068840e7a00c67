from .audit import AuditService

__all__ = ["AuditService"]
