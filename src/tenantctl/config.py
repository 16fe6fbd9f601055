"""
Configuration for the provisioning workers and the admin-side services.
"""

import os
from typing import Literal, Optional
from pydantic import BaseModel, Field


def _optional(name: str) -> Optional[str]:
    value = os.environ.get(name)
    return value or None


class Settings(BaseModel):
    """Configuration settings shared by every worker."""

    # AWS
    region: str = Field(default="us-east-1", description="AWS region for all clients")
    entity: Literal["tenant", "account"] = Field(default="tenant", description="Managed entity type")
    workspace: str = Field(default="dev", description="Environment tag applied to stacks")

    # Tables
    registry_table: str = Field(default="platform-admin", description="Registry table (pk/sk)")
    public_table: Optional[str] = Field(default=None, description="Shared public-tier table")
    audit_table: str = Field(default="platform-audit", description="Lifecycle audit table")
    audit_retention_days: int = Field(default=90)

    # Cross-account access
    target_account_id: Optional[str] = Field(default=None, description="Default account for new tenants")
    cross_account_role_name: str = Field(default="CrossAccountTenantRole")
    external_id: str = Field(default="tenant-provisioning")
    assume_role_duration: int = Field(default=3600, ge=900, le=43200)
    assume_role_max_attempts: int = Field(default=2, ge=1, le=5)

    # Polling and retries
    poll_interval_seconds: int = Field(default=30, ge=1)
    max_poll_attempts: int = Field(default=60, ge=1)
    batch_max_retries: int = Field(default=3, ge=0)
    batch_base_delay: float = Field(default=0.1, ge=0)
    query_page_size: int = Field(default=100, ge=1)
    stale_after_minutes: int = Field(default=45, ge=1)

    # Step Functions (inline execution when unset)
    create_state_machine_arn: Optional[str] = None
    delete_state_machine_arn: Optional[str] = None

    log_level: str = Field(default="INFO")

    @property
    def entity_prefix(self) -> str:
        return self.entity.upper()

    @property
    def shared_table_name(self) -> str:
        return self.public_table or f"{self.entity_prefix}_PUBLIC"

    @property
    def uses_step_functions(self) -> bool:
        return bool(self.create_state_machine_arn and self.delete_state_machine_arn)

    @classmethod
    def from_environment(cls) -> "Settings":
        """Create settings from environment variables."""
        return cls(
            region=os.environ.get("AWS_REGION", "us-east-1"),
            entity=os.environ.get("ENTITY_TYPE", "tenant").lower(),
            workspace=os.environ.get("WORKSPACE", "dev"),
            registry_table=os.environ.get("TENANT_REGISTRY_TABLE_NAME", "platform-admin"),
            public_table=_optional("TENANT_PUBLIC_TABLE_NAME"),
            audit_table=os.environ.get("AUDIT_TABLE", "platform-audit"),
            audit_retention_days=int(os.environ.get("AUDIT_RETENTION_DAYS", "90")),
            target_account_id=_optional("TENANT_ACCOUNT_ID"),
            cross_account_role_name=os.environ.get("CROSS_ACCOUNT_ROLE_NAME", "CrossAccountTenantRole"),
            external_id=os.environ.get("CROSS_ACCOUNT_EXTERNAL_ID", "tenant-provisioning"),
            assume_role_duration=int(os.environ.get("ASSUME_ROLE_DURATION", "3600")),
            assume_role_max_attempts=int(os.environ.get("ASSUME_ROLE_MAX_ATTEMPTS", "2")),
            poll_interval_seconds=int(os.environ.get("POLL_INTERVAL_SECONDS", "30")),
            max_poll_attempts=int(os.environ.get("MAX_POLL_ATTEMPTS", "60")),
            batch_max_retries=int(os.environ.get("BATCH_MAX_RETRIES", "3")),
            batch_base_delay=float(os.environ.get("BATCH_BASE_DELAY", "0.1")),
            query_page_size=int(os.environ.get("QUERY_PAGE_SIZE", "100")),
            stale_after_minutes=int(os.environ.get("STALE_AFTER_MINUTES", "45")),
            create_state_machine_arn=_optional("CREATE_TENANT_STATE_MACHINE_ARN"),
            delete_state_machine_arn=_optional("DELETE_TENANT_STATE_MACHINE_ARN"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
