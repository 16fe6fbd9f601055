"""Typed payloads exchanged between the orchestrator and the workers."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from tenantctl.errors import ConfigurationError
from tenantctl.models.tenant import SubscriptionTier, TenantRecord, utc_now

ACCOUNT_ID_PATTERN = r"^\d{12}$"


class Operation(str, Enum):
    CREATE = "CREATE"
    DELETE = "DELETE"


class _Payload(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class _TenantWorkflowInput(_Payload):
    tenant_id: str = Field(..., min_length=1)
    tenant_account_id: str = Field(..., pattern=ACCOUNT_ID_PATTERN)
    subscription_tier: SubscriptionTier
    tenant_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_private(self) -> bool:
        return self.subscription_tier == SubscriptionTier.PRIVATE


class CreateTenantInput(_TenantWorkflowInput):
    operation: Literal["CREATE"] = "CREATE"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    admin_username: Optional[str] = None
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    created_by: str = "admin-portal"
    registered_on: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_record(cls, record: TenantRecord, admin_password: Optional[str] = None) -> "CreateTenantInput":
        return cls(
            tenant_id=record.tenant_id,
            tenant_account_id=record.tenant_account_id,
            subscription_tier=record.subscription_tier,
            tenant_name=record.tenant_name,
            email=record.email,
            first_name=record.first_name,
            last_name=record.last_name,
            admin_username=record.admin_username,
            admin_email=record.admin_email,
            admin_password=admin_password,
            created_by=record.created_by,
            registered_on=record.registered_on,
        )


class DeleteTenantInput(_TenantWorkflowInput):
    operation: Literal["DELETE"] = "DELETE"
    stack_id: Optional[str] = None
    deleted_by: str = "admin-portal"
    deleted_on: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _public_has_no_stack(self):
        if self.subscription_tier == SubscriptionTier.PUBLIC:
            self.stack_id = None
        return self

    @classmethod
    def from_record(cls, record: TenantRecord, deleted_by: str = "admin-portal") -> "DeleteTenantInput":
        return cls(
            tenant_id=record.tenant_id,
            tenant_account_id=record.tenant_account_id,
            subscription_tier=record.subscription_tier,
            tenant_name=record.tenant_name,
            email=record.email,
            stack_id=record.cloud_formation_stack_id,
            deleted_by=deleted_by,
        )


WorkflowInput = Annotated[Union[CreateTenantInput, DeleteTenantInput], Field(discriminator="operation")]

_workflow_input_adapter = TypeAdapter(WorkflowInput)


def parse_workflow_input(payload: Dict[str, Any]) -> Union[CreateTenantInput, DeleteTenantInput]:
    """Validate a raw workflow payload; malformed input never enters the state machine."""
    try:
        return _workflow_input_adapter.validate_python(payload)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid workflow input: {e}") from e


class WorkerResult(_Payload):
    success: bool
    operation: str
    tenant_id: str
    error: Optional[str] = None


class ProvisionResult(WorkerResult):
    status: str
    table_name: Optional[str] = None
    stack_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class DeprovisionResult(WorkerResult):
    status: str
    table_name: Optional[str] = None
    stack_id: Optional[str] = None
    deleted_count: int = 0
    unprocessed_count: int = 0
    message: Optional[str] = None
    deleted_at: datetime = Field(default_factory=utc_now)


class PollResult(WorkerResult):
    status: str
    stack_status: Optional[str] = None
    status_reason: Optional[str] = None
    attempts: int = 0
    outputs: Dict[str, str] = Field(default_factory=dict)
    events: List[Dict[str, Any]] = Field(default_factory=list)
