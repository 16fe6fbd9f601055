from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Set, Any
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionTier(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ProvisioningState(str, Enum):
    CREATING = "creating"
    ACTIVE = "active"
    FAILED = "failed"
    DELETING = "deleting"
    DELETED = "deleted"
    DELETION_FAILED = "deletion_failed"
    INACTIVE = "inactive"


TRANSIENT_STATES = {ProvisioningState.CREATING, ProvisioningState.DELETING}

ALLOWED_TRANSITIONS: Dict[ProvisioningState, Set[ProvisioningState]] = {
    ProvisioningState.CREATING: {ProvisioningState.ACTIVE, ProvisioningState.FAILED},
    ProvisioningState.DELETING: {ProvisioningState.DELETED, ProvisioningState.DELETION_FAILED},
    ProvisioningState.ACTIVE: {ProvisioningState.INACTIVE, ProvisioningState.DELETING},
    ProvisioningState.INACTIVE: {ProvisioningState.ACTIVE, ProvisioningState.DELETING},
    ProvisioningState.FAILED: {ProvisioningState.DELETING},
    ProvisioningState.DELETION_FAILED: {ProvisioningState.DELETING},
    ProvisioningState.DELETED: set(),
}


def can_transition(current: ProvisioningState, target: ProvisioningState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def allowed_sources(target: ProvisioningState) -> Set[ProvisioningState]:
    """States from which ``target`` may be entered."""
    return {state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets}


class TenantRecord(BaseModel):
    """Registry entry for one tenant. Stored with camelCase attribute names."""

    tenant_id: str = Field(..., min_length=8, max_length=8, description="Date based 8 character id")
    tenant_name: str = Field(..., min_length=1, max_length=100)
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    admin_username: Optional[str] = None
    admin_email: Optional[str] = None
    subscription_tier: SubscriptionTier
    provisioning_state: ProvisioningState = ProvisioningState.CREATING
    tenant_account_id: Optional[str] = None
    tenant_table_name: Optional[str] = None
    cloud_formation_stack_id: Optional[str] = None
    step_function_execution_arn: Optional[str] = None
    step_function_status: Optional[str] = None
    last_execution_arn: Optional[str] = None
    provisioning_error: Optional[str] = None
    cancellation_requested: bool = False
    deletion_attempts: int = 0
    polling_attempts: int = 0
    created_by: str = "system"
    registered_on: datetime = Field(default_factory=utc_now)
    last_modified: datetime = Field(default_factory=utc_now)
    provisioning_submitted_at: Optional[datetime] = None
    provisioning_completed_at: Optional[datetime] = None
    deletion_submitted_at: Optional[datetime] = None
    deletion_failed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True
        extra = "ignore"

    @property
    def in_flight(self) -> bool:
        return self.step_function_execution_arn is not None

    def to_item(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "TenantRecord":
        return cls.model_validate(item)
