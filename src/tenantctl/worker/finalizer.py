from typing import Optional, Union

from tenantctl.config import Settings
from tenantctl.credentials import CredentialBroker
from tenantctl.errors import InvalidStateTransitionError
from tenantctl.logger import get_logger
from tenantctl.models import (
    CreateTenantInput,
    DeleteTenantInput,
    Operation,
    PollResult,
    ProvisioningState,
    TenantRecord,
    utc_now,
)
from tenantctl.naming import dedicated_table_name
from tenantctl.services.audit import AuditService
from tenantctl.services.registry import RegistryStore
from tenantctl.worker.provisioner import Provisioner

logger = get_logger(__name__)

SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"


class Finalizer:
    """
    Writes the terminal outcome of a workflow run to the registry.

    Both paths are safe to repeat: the init marker write is conditional and
    each terminal transition accepts the state it moves to. The execution
    handle is cleared in the same conditional write as the transition.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broker: Optional[CredentialBroker] = None,
        registry: Optional[RegistryStore] = None,
        audit: Optional[AuditService] = None,
    ):
        self.settings = settings or Settings.from_environment()
        self.broker = broker or CredentialBroker(self.settings, session_prefix="finalize")
        self.registry = registry or RegistryStore(self.settings)
        self.audit = audit or AuditService(self.settings)

    def succeed(
        self,
        request: Union[CreateTenantInput, DeleteTenantInput],
        poll: Optional[PollResult] = None,
        execution_arn: Optional[str] = None,
    ) -> TenantRecord:
        operation = Operation(request.operation)
        tenant_id = request.tenant_id

        if operation == Operation.CREATE:
            if request.is_private:
                # Second phase of a private create: the table exists now
                table_name = (poll.outputs.get("TableName") if poll else None) or dedicated_table_name(
                    self.settings.entity, tenant_id
                )
                clients = self.broker.clients_for(request.tenant_account_id, tenant_id)
                Provisioner(self.settings, self.broker, self.registry).write_init_marker(clients, table_name, request)
            record = self.registry.transition(
                tenant_id,
                ProvisioningState.ACTIVE,
                {"provisioningCompletedAt": utc_now()},
                remove=["provisioningError"],
                allow_same=True,
                release=execution_arn,
                execution_status=SUCCEEDED,
            )
            action = "PROVISIONING_COMPLETED"
        else:
            record = self.registry.transition(
                tenant_id,
                ProvisioningState.DELETED,
                {"deletedAt": utc_now()},
                remove=["provisioningError"],
                allow_same=True,
                release=execution_arn,
                execution_status=SUCCEEDED,
            )
            action = "DELETION_COMPLETED"

        self.audit.log_action(
            tenant_id,
            action,
            record.tenant_table_name or "",
            metadata={"tier": request.subscription_tier.value},
            execution_arn=execution_arn,
        )
        logger.info(action.replace("_", " ").capitalize(), extra={"tenant_id": tenant_id, "execution_arn": execution_arn})
        return record

    def fail(
        self,
        tenant_id: str,
        operation: Union[Operation, str],
        error: str,
        execution_arn: Optional[str] = None,
    ) -> TenantRecord:
        operation = Operation(operation)
        if operation == Operation.CREATE:
            target = ProvisioningState.FAILED
            fields = {"provisioningError": error}
            action = "PROVISIONING_FAILED"
        else:
            target = ProvisioningState.DELETION_FAILED
            fields = {"provisioningError": error, "deletionFailedAt": utc_now()}
            action = "DELETION_FAILED"

        try:
            record = self.registry.transition(
                tenant_id, target, fields, allow_same=True, release=execution_arn, execution_status=FAILED
            )
        except InvalidStateTransitionError:
            # Already terminal; the handle must not outlive the run
            if execution_arn:
                self.registry.release_execution(tenant_id, execution_arn, FAILED)
            logger.warning(
                f"Could not record {operation.value} failure: {error}",
                extra={"tenant_id": tenant_id, "execution_arn": execution_arn},
            )
            raise
        self.audit.log_action(tenant_id, action, execution_arn or "", metadata={"error": error}, execution_arn=execution_arn)
        logger.error(f"{operation.value} failed: {error}", extra={"tenant_id": tenant_id, "execution_arn": execution_arn})
        return record
