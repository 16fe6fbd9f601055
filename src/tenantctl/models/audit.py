from datetime import datetime
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from tenantctl.models.tenant import utc_now


class AuditEntry(BaseModel):
    tenant_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    action: str = Field(..., description="e.g., CREATE_SUBMITTED, PROVISIONING_FAILED")
    resource: str = Field(..., description="e.g., execution arn, stack id, table name")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None
    execution_arn: Optional[str] = None

    class Config:
        from_attributes = True
