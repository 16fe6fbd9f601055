from typing import Any, Dict, List, Optional, Tuple
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from tenantctl.config import Settings
from tenantctl.credentials import CredentialBroker, ScopedClients
from tenantctl.errors import CrossAccountAuthError
from tenantctl.logger import get_logger
from tenantctl.models import DeleteTenantInput, DeprovisionResult, ProvisioningState, utc_now
from tenantctl.models.stack import DELETE_COMPLETE, DELETE_FAILED, DELETE_IN_PROGRESS
from tenantctl.naming import dedicated_table_name, partition_key, stack_name
from tenantctl.services.registry import RegistryStore
from tenantctl.worker.policy import RetryPolicy

logger = get_logger(__name__)

BATCH_WRITE_LIMIT = 25


class Deprovisioner:
    """Tears down tenant data resources, mirroring the provisioner."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broker: Optional[CredentialBroker] = None,
        registry: Optional[RegistryStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings or Settings.from_environment()
        self.broker = broker or CredentialBroker(self.settings, session_prefix="delete-infra")
        self.registry = registry or RegistryStore(self.settings)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)

    def deprovision(self, request: DeleteTenantInput) -> DeprovisionResult:
        tenant_id = request.tenant_id
        log_ctx = {"tenant_id": tenant_id, "operation": "DELETE", "subscription_tier": request.subscription_tier.value}
        logger.info("Deprovisioning tenant infrastructure", extra=log_ctx)

        # Registry says "deleting" before anything destructive happens
        self.registry.transition(tenant_id, ProvisioningState.DELETING, allow_same=True)
        self.registry.increment_deletion_attempts(tenant_id)

        try:
            clients = self.broker.clients_for(request.tenant_account_id, tenant_id)
        except CrossAccountAuthError as e:
            self.registry.transition(
                tenant_id,
                ProvisioningState.DELETION_FAILED,
                {"provisioningError": str(e), "deletionFailedAt": utc_now()},
                allow_same=True,
            )
            return DeprovisionResult(
                success=False,
                operation="ASSUME_ROLE",
                tenant_id=tenant_id,
                status=DELETE_FAILED,
                error=str(e),
            )

        if request.is_private:
            return self._delete_stack(clients, request)
        return self._delete_public_rows(clients, request)

    # Public tier

    def _delete_public_rows(self, clients: ScopedClients, request: DeleteTenantInput) -> DeprovisionResult:
        table_name = self.settings.shared_table_name
        pk = partition_key(self.settings.entity, request.tenant_id)
        log_ctx = {"tenant_id": request.tenant_id, "table_name": table_name}

        try:
            keys = self.collect_keys(clients, table_name, pk)
            deleted, unprocessed = self.batch_delete(clients, table_name, keys)
        except ClientError as e:
            logger.error(f"Failed to delete tenant rows: {e}", extra=log_ctx)
            return DeprovisionResult(
                success=False,
                operation="DELETE_TENANT_DATA",
                tenant_id=request.tenant_id,
                status=DELETE_FAILED,
                table_name=table_name,
                error=f"{e.response['Error']['Code']}: {e.response['Error'].get('Message', '')}",
            )

        message = f"Deleted {deleted} of {len(keys)} rows"
        if unprocessed:
            # Best-effort: leftovers are reported, the deletion still completes
            logger.warning(f"{unprocessed} rows left unprocessed after retries", extra=log_ctx)
            message += f", {unprocessed} unprocessed"
        logger.info(message, extra=log_ctx)

        return DeprovisionResult(
            success=True,
            operation="DELETE_TENANT_DATA",
            tenant_id=request.tenant_id,
            status=DELETE_COMPLETE,
            table_name=table_name,
            deleted_count=deleted,
            unprocessed_count=unprocessed,
            message=message,
        )

    def collect_keys(self, clients: ScopedClients, table_name: str, pk: str) -> List[Dict[str, Any]]:
        """Every key under ``pk``, draining all query pages."""
        table = clients.dynamodb.Table(table_name)
        query_kwargs = {
            "KeyConditionExpression": Key("pk").eq(pk),
            "ProjectionExpression": "#pk, #sk",
            "ExpressionAttributeNames": {"#pk": "pk", "#sk": "sk"},
            "Limit": self.settings.query_page_size,
        }
        keys = []
        while True:
            response = table.query(**query_kwargs)
            keys.extend({"pk": item["pk"], "sk": item["sk"]} for item in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            query_kwargs["ExclusiveStartKey"] = last_key
        return keys

    def batch_delete(self, clients: ScopedClients, table_name: str, keys: List[Dict[str, Any]]) -> Tuple[int, int]:
        """
        Delete ``keys`` in chunks of 25.

        Unprocessed items are retried with exponential backoff up to the
        retry policy's cap. Returns (deleted, still_unprocessed).
        """
        deleted = 0
        unprocessed_total = 0
        for start in range(0, len(keys), BATCH_WRITE_LIMIT):
            chunk = keys[start:start + BATCH_WRITE_LIMIT]
            pending = {table_name: [{"DeleteRequest": {"Key": key}} for key in chunk]}
            retry = 0
            while True:
                response = clients.dynamodb.batch_write_item(RequestItems=pending)
                pending = response.get("UnprocessedItems") or {}
                if not pending.get(table_name):
                    break
                if retry >= self.retry_policy.max_retries:
                    break
                logger.info(
                    f"Retrying {len(pending[table_name])} unprocessed deletes",
                    extra={"table_name": table_name, "attempt": retry + 1},
                )
                self.retry_policy.backoff(retry)
                retry += 1

            leftover = len(pending.get(table_name, []))
            deleted += len(chunk) - leftover
            unprocessed_total += leftover
        return deleted, unprocessed_total

    # Private tier

    def _delete_stack(self, clients: ScopedClients, request: DeleteTenantInput) -> DeprovisionResult:
        stack_ref = request.stack_id or stack_name(self.settings.entity, request.tenant_id)
        table_name = dedicated_table_name(self.settings.entity, request.tenant_id)
        log_ctx = {"tenant_id": request.tenant_id, "stack_id": stack_ref}

        try:
            stacks = clients.cloudformation.describe_stacks(StackName=stack_ref).get("Stacks", [])
            if not stacks or stacks[0]["StackStatus"] == DELETE_COMPLETE:
                return self._already_gone(request, stack_ref, table_name)
            clients.cloudformation.delete_stack(StackName=stack_ref)
        except ClientError as e:
            err = e.response["Error"]
            if err["Code"] == "ValidationError" and "does not exist" in err.get("Message", ""):
                return self._already_gone(request, stack_ref, table_name)
            logger.error(f"Failed to delete stack: {e}", extra=log_ctx)
            return DeprovisionResult(
                success=False,
                operation="DELETE_STACK",
                tenant_id=request.tenant_id,
                status=DELETE_FAILED,
                table_name=table_name,
                stack_id=stack_ref,
                error=f"{err['Code']}: {err.get('Message', '')}",
            )

        logger.info("Stack deletion initiated", extra=log_ctx)
        return DeprovisionResult(
            success=True,
            operation="DELETE_STACK",
            tenant_id=request.tenant_id,
            status=DELETE_IN_PROGRESS,
            table_name=table_name,
            stack_id=stack_ref,
            message="Stack deletion initiated",
        )

    def _already_gone(self, request: DeleteTenantInput, stack_ref: str, table_name: str) -> DeprovisionResult:
        logger.info("Stack not found, treating as deleted", extra={"tenant_id": request.tenant_id, "stack_id": stack_ref})
        return DeprovisionResult(
            success=True,
            operation="DELETE_STACK",
            tenant_id=request.tenant_id,
            status=DELETE_COMPLETE,
            table_name=table_name,
            stack_id=stack_ref,
            message="Stack not found, already deleted",
        )
