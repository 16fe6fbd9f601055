import json
from typing import Optional
from botocore.exceptions import ClientError

from tenantctl.config import Settings
from tenantctl.credentials import CredentialBroker, ScopedClients
from tenantctl.errors import CrossAccountAuthError
from tenantctl.logger import get_logger
from tenantctl.models import CreateTenantInput, ProvisioningState, ProvisionResult, utc_now
from tenantctl.models.stack import CREATE_COMPLETE, CREATE_FAILED, CREATE_IN_PROGRESS
from tenantctl.naming import INIT_SORT_KEY, dedicated_table_name, partition_key, stack_name
from tenantctl.services.registry import RegistryStore
from tenantctl.worker.templates import build_table_template, stack_tags

logger = get_logger(__name__)


class Provisioner:
    """Creates tenant data resources inside the tenant account."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broker: Optional[CredentialBroker] = None,
        registry: Optional[RegistryStore] = None,
    ):
        self.settings = settings or Settings.from_environment()
        self.broker = broker or CredentialBroker(self.settings, session_prefix="create-infra")
        self.registry = registry or RegistryStore(self.settings)

    def provision(self, request: CreateTenantInput) -> ProvisionResult:
        tenant_id = request.tenant_id
        log_ctx = {"tenant_id": tenant_id, "operation": "CREATE", "subscription_tier": request.subscription_tier.value}
        logger.info("Provisioning tenant infrastructure", extra=log_ctx)

        try:
            clients = self.broker.clients_for(request.tenant_account_id, tenant_id)
        except CrossAccountAuthError as e:
            # Never leave the tenant silently "creating"
            self.registry.transition(
                tenant_id,
                ProvisioningState.FAILED,
                {"provisioningError": str(e)},
                allow_same=True,
            )
            return ProvisionResult(
                success=False,
                operation="ASSUME_ROLE",
                tenant_id=tenant_id,
                status=CREATE_FAILED,
                error=str(e),
            )

        if request.is_private:
            result = self._create_stack(clients, request)
        else:
            result = self._create_public_entry(clients, request)

        if result.success:
            fields = {"tenantTableName": result.table_name}
            if result.stack_id:
                fields["cloudFormationStackId"] = result.stack_id
            self.registry.update_fields(tenant_id, fields)

        logger.info(f"Provisioning step finished with {result.status}", extra=log_ctx)
        return result

    def init_marker(self, request: CreateTenantInput) -> dict:
        now = utc_now().isoformat()
        return {
            "pk": partition_key(self.settings.entity, request.tenant_id),
            "sk": INIT_SORT_KEY,
            "tenantId": request.tenant_id,
            "tenantName": request.tenant_name,
            "email": request.email,
            "subscriptionTier": request.subscription_tier.value,
            "status": "initialized",
            "version": "1.0.0",
            "createdAt": now,
            "lastModified": now,
        }

    def write_init_marker(self, clients: ScopedClients, table_name: str, request: CreateTenantInput) -> bool:
        """
        Put the ``init`` row guarded by ``attribute_not_exists``.

        Returns False when the row was already there; any other error propagates.
        """
        item = {k: v for k, v in self.init_marker(request).items() if v is not None}
        try:
            clients.dynamodb.Table(table_name).put_item(Item=item, ConditionExpression="attribute_not_exists(pk)")
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.info(
                    "Init marker already present",
                    extra={"tenant_id": request.tenant_id, "table_name": table_name},
                )
                return False
            raise
        logger.info("Init marker written", extra={"tenant_id": request.tenant_id, "table_name": table_name})
        return True

    def _create_public_entry(self, clients: ScopedClients, request: CreateTenantInput) -> ProvisionResult:
        table_name = self.settings.shared_table_name
        try:
            self.write_init_marker(clients, table_name, request)
        except ClientError as e:
            logger.error(
                f"Failed to create tenant entry in public table: {e}",
                extra={"tenant_id": request.tenant_id, "table_name": table_name},
            )
            return ProvisionResult(
                success=False,
                operation="CREATE_TENANT_ENTRY",
                tenant_id=request.tenant_id,
                status=CREATE_FAILED,
                table_name=table_name,
                error=f"{e.response['Error']['Code']}: {e.response['Error'].get('Message', '')}",
            )
        return ProvisionResult(
            success=True,
            operation="CREATE_TENANT_ENTRY",
            tenant_id=request.tenant_id,
            status=CREATE_COMPLETE,
            table_name=table_name,
        )

    def _create_stack(self, clients: ScopedClients, request: CreateTenantInput) -> ProvisionResult:
        name = stack_name(self.settings.entity, request.tenant_id)
        table_name = dedicated_table_name(self.settings.entity, request.tenant_id)
        template = build_table_template(self.settings, request.tenant_id, request.tenant_name)

        try:
            response = clients.cloudformation.create_stack(
                StackName=name,
                TemplateBody=json.dumps(template),
                Tags=stack_tags(self.settings, request.tenant_id, request.tenant_name),
                OnFailure="ROLLBACK",
                EnableTerminationProtection=False,
            )
            stack_id = response["StackId"]
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code != "AlreadyExistsException":
                logger.error(
                    f"Failed to create stack {name}: {e}",
                    extra={"tenant_id": request.tenant_id, "stack_id": name},
                )
                return ProvisionResult(
                    success=False,
                    operation="CREATE_DYNAMODB_TABLE",
                    tenant_id=request.tenant_id,
                    status=CREATE_FAILED,
                    table_name=table_name,
                    error=f"{code}: {e.response['Error'].get('Message', '')}",
                )
            # Retried workflow: adopt the stack the first attempt created
            stack_id = clients.cloudformation.describe_stacks(StackName=name)["Stacks"][0]["StackId"]
            logger.info("Stack already exists, resuming", extra={"tenant_id": request.tenant_id, "stack_id": stack_id})

        logger.info("Stack creation initiated", extra={"tenant_id": request.tenant_id, "stack_id": stack_id})
        return ProvisionResult(
            success=True,
            operation="CREATE_DYNAMODB_TABLE",
            tenant_id=request.tenant_id,
            status=CREATE_IN_PROGRESS,
            table_name=table_name,
            stack_id=stack_id,
        )
