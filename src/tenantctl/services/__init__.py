from .audit import AuditService
from .registry import RegistryStore, tenant_id_candidates

__all__ = ["AuditService", "RegistryStore", "tenant_id_candidates"]
