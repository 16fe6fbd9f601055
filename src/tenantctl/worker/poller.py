from typing import Any, Dict, List, Optional, Union
from botocore.exceptions import ClientError

from tenantctl.config import Settings
from tenantctl.credentials import CredentialBroker, ScopedClients
from tenantctl.errors import CrossAccountAuthError
from tenantctl.logger import get_logger
from tenantctl.models import (
    NOT_FOUND,
    CreateTenantInput,
    DeleteTenantInput,
    Operation,
    PollResult,
    evaluate_stack_status,
)
from tenantctl.naming import stack_name
from tenantctl.services.registry import RegistryStore
from tenantctl.worker.policy import PollDecision, PollingPolicy

logger = get_logger(__name__)

MAX_FAILURE_EVENTS = 5


def _stack_missing(error: ClientError) -> bool:
    err = error.response["Error"]
    return err["Code"] == "ValidationError" and "does not exist" in err.get("Message", "")


class StatusPoller:
    """
    Reconciles one stack status observation against the workflow.

    Public tenants have nothing to wait for, so a public poll reports
    completion without touching the tenant account.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broker: Optional[CredentialBroker] = None,
        registry: Optional[RegistryStore] = None,
        policy: Optional[PollingPolicy] = None,
    ):
        self.settings = settings or Settings.from_environment()
        self.broker = broker or CredentialBroker(self.settings, session_prefix="poll-infra")
        self.registry = registry or RegistryStore(self.settings)
        self.policy = policy or PollingPolicy.from_settings(self.settings)

    def poll(
        self,
        request: Union[CreateTenantInput, DeleteTenantInput],
        stack_id: Optional[str] = None,
        attempts_so_far: int = 0,
    ) -> PollResult:
        operation = Operation(request.operation)
        attempts = attempts_so_far + 1
        log_ctx = {"tenant_id": request.tenant_id, "operation": operation.value, "attempt": attempts}

        if not request.is_private:
            logger.info("Public tier, nothing to poll", extra=log_ctx)
            return PollResult(
                success=True,
                operation=operation.value,
                tenant_id=request.tenant_id,
                status=PollDecision.COMPLETE.value,
                attempts=attempts,
            )

        self.registry.record_polling_attempt(request.tenant_id, attempts)
        stack_ref = stack_id or stack_name(self.settings.entity, request.tenant_id)

        try:
            clients = self.broker.clients_for(request.tenant_account_id, request.tenant_id)
            stack = self.describe_stack(clients, stack_ref)
        except CrossAccountAuthError as e:
            return self._result(request, PollDecision.FAILED, attempts, error=str(e))
        except ClientError as e:
            logger.error(f"Failed to describe stack {stack_ref}: {e}", extra=log_ctx)
            return self._result(request, PollDecision.FAILED, attempts, error=str(e))

        status = stack["StackStatus"] if stack else NOT_FOUND
        reason = stack.get("StackStatusReason") if stack else None
        outcome = evaluate_stack_status(operation, status)
        decision = self.policy.decide(outcome, attempts)
        logger.info(f"Stack {stack_ref} is {status}, decision {decision.value}", extra={**log_ctx, "stack_id": stack_ref})

        outputs = {o["OutputKey"]: o["OutputValue"] for o in (stack or {}).get("Outputs", [])}
        error = None
        events: List[Dict[str, Any]] = []
        if decision == PollDecision.FAILED:
            if status == NOT_FOUND:
                error = f"Stack {stack_ref} no longer exists during {operation.value}"
            else:
                error = f"Stack operation failed with status {status}" + (f": {reason}" if reason else "")
                events = self.failure_events(clients, stack_ref)
        elif decision == PollDecision.TIMEOUT:
            error = f"Polling timeout after {attempts} attempts (last status {status})"

        return self._result(
            request,
            decision,
            attempts,
            error=error,
            stack_status=status,
            status_reason=reason,
            outputs=outputs,
            events=events,
        )

    def describe_stack(self, clients: ScopedClients, stack_ref: str) -> Optional[Dict[str, Any]]:
        """Current stack description, or None when the stack does not exist."""
        try:
            stacks = clients.cloudformation.describe_stacks(StackName=stack_ref).get("Stacks", [])
        except ClientError as e:
            if _stack_missing(e):
                return None
            raise
        return stacks[0] if stacks else None

    def failure_events(self, clients: ScopedClients, stack_ref: str) -> List[Dict[str, Any]]:
        try:
            events = clients.cloudformation.describe_stack_events(StackName=stack_ref).get("StackEvents", [])
        except ClientError as e:
            logger.warning(f"Could not read stack events for {stack_ref}: {e}", extra={"stack_id": stack_ref})
            return []
        return [
            {
                "timestamp": str(event.get("Timestamp")),
                "resourceType": event.get("ResourceType"),
                "logicalResourceId": event.get("LogicalResourceId"),
                "resourceStatus": event.get("ResourceStatus"),
                "resourceStatusReason": event.get("ResourceStatusReason"),
            }
            for event in events[:MAX_FAILURE_EVENTS]
        ]

    def _result(self, request, decision: PollDecision, attempts: int, **kwargs) -> PollResult:
        return PollResult(
            success=decision in (PollDecision.COMPLETE, PollDecision.CONTINUE),
            operation=request.operation,
            tenant_id=request.tenant_id,
            status=decision.value,
            attempts=attempts,
            **kwargs,
        )


def is_settled(result: PollResult) -> bool:
    return result.status != PollDecision.CONTINUE.value

