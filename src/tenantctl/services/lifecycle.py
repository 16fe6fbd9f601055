"""
Admin-facing tenant lifecycle: onboarding, updates, suspension and
offboarding. Everything that touches infrastructure goes through the
workflow orchestrator.
"""

import re
from typing import Any, Dict, List, Optional
from botocore.exceptions import ClientError

from tenantctl.config import Settings
from tenantctl.errors import ConfigurationError, InvalidStateTransitionError, TenantAlreadyExistsError
from tenantctl.logger import get_logger
from tenantctl.models import (
    CreateTenantInput,
    DeleteTenantInput,
    ProvisioningState,
    SubscriptionTier,
    TenantRecord,
    TRANSIENT_STATES,
    utc_now,
)
from tenantctl.naming import dedicated_table_name
from tenantctl.services.audit import AuditService
from tenantctl.services.registry import RegistryStore
from tenantctl.worker.orchestrator import INLINE_PREFIX, WorkflowOrchestrator

logger = get_logger(__name__)

REQUIRED_ONBOARDING_FIELDS = (
    "tenantName",
    "email",
    "subscriptionTier",
    "firstName",
    "lastName",
    "adminUsername",
    "adminEmail",
)

# camelCase request key -> stored attribute
MUTABLE_FIELDS = {
    "tenantName": "tenantName",
    "email": "email",
    "firstName": "firstName",
    "lastName": "lastName",
    "adminUsername": "adminUsername",
    "adminEmail": "adminEmail",
}

EXECUTION_FAILURE_STATUSES = {"FAILED", "TIMED_OUT", "ABORTED"}


class TenantLifecycleService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[RegistryStore] = None,
        audit: Optional[AuditService] = None,
        orchestrator: Optional[WorkflowOrchestrator] = None,
    ):
        self.settings = settings or Settings.from_environment()
        self.registry = registry or RegistryStore(self.settings)
        self.audit = audit or AuditService(self.settings)
        self.orchestrator = orchestrator or WorkflowOrchestrator(
            self.settings, registry=self.registry, audit=self.audit
        )

    def onboard(self, data: Dict[str, Any], actor: Optional[str] = None) -> TenantRecord:
        """
        Register a new tenant and start its CREATE workflow.

        Raises ``ConfigurationError`` for invalid input and
        ``TenantAlreadyExistsError`` when the name is taken.
        """
        for field in REQUIRED_ONBOARDING_FIELDS:
            if not data.get(field):
                raise ConfigurationError(f"Missing required field: {field}")
        try:
            tier = SubscriptionTier(data["subscriptionTier"])
        except ValueError as e:
            valid = ", ".join(t.value for t in SubscriptionTier)
            raise ConfigurationError(f"Invalid subscription tier. Must be one of: {valid}") from e

        account_id = data.get("tenantAccountId") or self.settings.target_account_id
        if not account_id:
            raise ConfigurationError("No target account id configured for new tenants")
        if not re.fullmatch(r"\d{12}", str(account_id)):
            raise ConfigurationError(f"Invalid target account id: {account_id}")

        existing = self.registry.find_by_name(data["tenantName"])
        if existing:
            logger.warning("Tenant name already exists", extra={"tenant_id": existing.tenant_id})
            raise TenantAlreadyExistsError("Tenant with this name already exists", existing.tenant_id)

        created_by = actor or data.get("createdBy") or "admin-portal"

        def build(tenant_id: str) -> TenantRecord:
            if tier == SubscriptionTier.PUBLIC:
                table_name = self.settings.shared_table_name
            else:
                table_name = dedicated_table_name(self.settings.entity, tenant_id)
            return TenantRecord(
                tenant_id=tenant_id,
                tenant_name=data["tenantName"],
                email=data["email"],
                first_name=data["firstName"],
                last_name=data["lastName"],
                admin_username=data["adminUsername"],
                admin_email=data["adminEmail"],
                subscription_tier=tier,
                provisioning_state=ProvisioningState.CREATING,
                tenant_account_id=str(account_id),
                tenant_table_name=table_name,
                created_by=created_by,
            )

        record = self.registry.create_with_generated_id(build)
        logger.info("Tenant registered", extra={"tenant_id": record.tenant_id, "subscription_tier": tier.value})

        request = CreateTenantInput.from_record(record, admin_password=data.get("adminPassword"))
        return self.orchestrator.submit(request, actor=created_by)

    def update(self, tenant_id: str, data: Dict[str, Any], actor: Optional[str] = None) -> TenantRecord:
        """Update descriptive fields. Lifecycle fields and the tier cannot be changed here."""
        record = self.registry.require(tenant_id)

        tier = data.get("subscriptionTier")
        if tier and tier != record.subscription_tier.value:
            raise ConfigurationError("subscriptionTier cannot be changed after creation")

        fields = {MUTABLE_FIELDS[key]: value for key, value in data.items() if key in MUTABLE_FIELDS and value}
        if not fields:
            raise ConfigurationError("No updatable fields supplied")

        new_name = fields.get("tenantName")
        if new_name and new_name != record.tenant_name:
            existing = self.registry.find_by_name(new_name)
            if existing and existing.tenant_id != tenant_id:
                raise TenantAlreadyExistsError("Tenant with this name already exists", existing.tenant_id)

        updated = self.registry.update_fields(tenant_id, fields)
        self.audit.log_action(tenant_id, "TENANT_UPDATED", tenant_id, metadata=fields, actor=actor)
        return updated

    def offboard(self, tenant_id: str, actor: Optional[str] = None) -> TenantRecord:
        record = self.registry.require(tenant_id)
        if not record.tenant_account_id:
            raise ConfigurationError(f"Tenant {tenant_id} has no target account id")
        request = DeleteTenantInput.from_record(record, deleted_by=actor or "admin-portal")
        return self.orchestrator.submit(request, actor=actor)

    def suspend(self, tenant_id: str, actor: Optional[str] = None) -> TenantRecord:
        record = self.registry.transition(
            tenant_id,
            ProvisioningState.INACTIVE,
            {"suspendedAt": utc_now()},
        )
        self.audit.log_action(tenant_id, "TENANT_SUSPENDED", tenant_id, actor=actor)
        return record

    def activate(self, tenant_id: str, actor: Optional[str] = None) -> TenantRecord:
        # Only a suspended tenant can be reactivated by hand
        record = self.registry.transition(
            tenant_id,
            ProvisioningState.ACTIVE,
            remove=["suspendedAt"],
            from_states=[ProvisioningState.INACTIVE],
        )
        self.audit.log_action(tenant_id, "TENANT_ACTIVATED", tenant_id, actor=actor)
        return record

    def cancel(self, tenant_id: str, actor: Optional[str] = None) -> TenantRecord:
        record = self.registry.request_cancellation(tenant_id)
        self.audit.log_action(
            tenant_id,
            "CANCELLATION_REQUESTED",
            record.step_function_execution_arn or tenant_id,
            actor=actor,
            execution_arn=record.step_function_execution_arn,
        )
        return record

    def get(self, tenant_id: str) -> TenantRecord:
        return self.registry.require(tenant_id)

    def list(self) -> List[TenantRecord]:
        return sorted(self.registry.list_all(), key=lambda r: r.registered_on, reverse=True)

    def provisioning_status(self, tenant_id: str) -> Dict[str, Any]:
        """
        Current provisioning details. When a Step Functions execution is
        tracked and has already finished, the registry is brought in line
        with it.
        """
        record = self.registry.require(tenant_id)
        details = {
            "tenantId": record.tenant_id,
            "provisioningState": record.provisioning_state.value,
            "subscriptionTier": record.subscription_tier.value,
            "lastModified": record.last_modified.isoformat(),
            "tenantTableName": record.tenant_table_name,
            "tenantAccountId": record.tenant_account_id,
            "pollingAttempts": record.polling_attempts,
        }
        if record.provisioning_error:
            details["provisioningError"] = record.provisioning_error

        arn = record.step_function_execution_arn
        if not arn or arn.startswith(INLINE_PREFIX):
            return details

        try:
            execution = self.orchestrator.launcher.describe(arn)
        except ClientError as e:
            logger.error(f"Failed to describe execution: {e}", extra={"tenant_id": tenant_id, "execution_arn": arn})
            details["stepFunctionError"] = str(e)
            return details

        status = execution.get("status")
        details["stepFunctionStatus"] = {
            "status": status,
            "startDate": str(execution.get("startDate")) if execution.get("startDate") else None,
            "stopDate": str(execution.get("stopDate")) if execution.get("stopDate") else None,
        }
        if record.provisioning_state not in TRANSIENT_STATES:
            if status != "RUNNING":
                # A finished run must not keep holding the slot
                self.registry.release_execution(tenant_id, arn, status)
            return details

        creating = record.provisioning_state == ProvisioningState.CREATING
        if status == "SUCCEEDED":
            target = ProvisioningState.ACTIVE if creating else ProvisioningState.DELETED
            stamp = "provisioningCompletedAt" if creating else "deletedAt"
            try:
                updated = self.registry.transition(
                    tenant_id, target, {stamp: utc_now()}, release=arn, execution_status=status
                )
            except InvalidStateTransitionError:
                # The finalize task got there first
                self.registry.release_execution(tenant_id, arn, status)
                updated = self.registry.require(tenant_id)
            details["provisioningState"] = updated.provisioning_state.value
        elif status in EXECUTION_FAILURE_STATUSES:
            error = execution.get("error") or execution.get("cause") or "Step Function execution failed"
            updated = self.orchestrator.finalizer.fail(tenant_id, "CREATE" if creating else "DELETE", error, arn)
            details["provisioningState"] = updated.provisioning_state.value
            details["provisioningError"] = error
        return details
