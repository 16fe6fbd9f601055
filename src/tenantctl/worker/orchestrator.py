from datetime import timedelta
from typing import List, Optional, Union
import ulid
from botocore.exceptions import BotoCoreError, ClientError

from tenantctl.config import Settings
from tenantctl.credentials import CredentialBroker
from tenantctl.errors import InvalidStateTransitionError, WorkflowError, WorkflowStartError
from tenantctl.logger import get_logger
from tenantctl.models import (
    CreateTenantInput,
    DeleteTenantInput,
    Operation,
    PollResult,
    ProvisioningState,
    TenantRecord,
    TRANSIENT_STATES,
    utc_now,
)
from tenantctl.naming import execution_arn as build_execution_arn
from tenantctl.services.audit import AuditService
from tenantctl.services.registry import RegistryStore
from tenantctl.worker.deprovisioner import Deprovisioner
from tenantctl.worker.finalizer import Finalizer
from tenantctl.worker.launcher import StepFunctionsLauncher
from tenantctl.worker.policy import PollDecision, PollingPolicy, RetryPolicy
from tenantctl.worker.poller import StatusPoller, is_settled
from tenantctl.worker.provisioner import Provisioner

logger = get_logger(__name__)

INLINE_PREFIX = "inline:"
CANCELLED = "cancelled"


def execution_name(operation: Operation, entity: str, tenant_id: str) -> str:
    return f"{Operation(operation).value.lower()}-{entity}-{tenant_id}-{ulid.new()}"


class WorkflowOrchestrator:
    """
    Drives a tenant through Provision -> Poll -> Finalize (or the delete
    mirror of it).

    With both state machine ARNs configured, ``submit`` hands the run to
    Step Functions and the worker Lambdas do the rest. Otherwise the same
    workers run inline, with ``PollingPolicy`` supplying the wait between
    polls.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        broker: Optional[CredentialBroker] = None,
        registry: Optional[RegistryStore] = None,
        audit: Optional[AuditService] = None,
        launcher: Optional[StepFunctionsLauncher] = None,
        polling_policy: Optional[PollingPolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings or Settings.from_environment()
        self.broker = broker or CredentialBroker(self.settings)
        self.registry = registry or RegistryStore(self.settings)
        self.audit = audit or AuditService(self.settings)
        self.polling_policy = polling_policy or PollingPolicy.from_settings(self.settings)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._launcher = launcher

        self.provisioner = Provisioner(self.settings, self.broker, self.registry)
        self.deprovisioner = Deprovisioner(self.settings, self.broker, self.registry, self.retry_policy)
        self.poller = StatusPoller(self.settings, self.broker, self.registry, self.polling_policy)
        self.finalizer = Finalizer(self.settings, self.broker, self.registry, self.audit)

    @property
    def launcher(self) -> StepFunctionsLauncher:
        if self._launcher is None:
            self._launcher = StepFunctionsLauncher(region=self.settings.region)
        return self._launcher

    def _state_machine_arn(self, operation: Operation) -> Optional[str]:
        if operation == Operation.CREATE:
            return self.settings.create_state_machine_arn
        return self.settings.delete_state_machine_arn

    def submit(self, request: Union[CreateTenantInput, DeleteTenantInput], actor: Optional[str] = None) -> TenantRecord:
        """
        Claim the tenant's single execution slot, then start the workflow.

        The execution handle is on the registry record before any
        infrastructure call is made. Raises ``ExecutionInFlightError`` when
        another run holds the slot.
        """
        operation = Operation(request.operation)
        name = execution_name(operation, self.settings.entity, request.tenant_id)
        state_machine_arn = self._state_machine_arn(operation) if self.settings.uses_step_functions else None
        arn = build_execution_arn(state_machine_arn, name) if state_machine_arn else f"{INLINE_PREFIX}{name}"

        if operation == Operation.CREATE:
            target, fields = ProvisioningState.CREATING, {"provisioningSubmittedAt": utc_now()}
        else:
            target, fields = ProvisioningState.DELETING, {"deletionSubmittedAt": utc_now()}

        record = self.registry.claim_execution(request.tenant_id, arn, target, fields)
        self.audit.log_action(
            request.tenant_id,
            f"{operation.value}_SUBMITTED",
            arn,
            metadata={"tier": request.subscription_tier.value},
            actor=actor,
            execution_arn=arn,
        )
        log_ctx = {"tenant_id": request.tenant_id, "operation": operation.value, "execution_arn": arn}

        if state_machine_arn is None:
            logger.info("Running workflow inline", extra=log_ctx)
            return self.run(request, arn)

        try:
            self.launcher.start(state_machine_arn, name, request.to_payload())
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to start execution: {e}", extra=log_ctx)
            self.finalizer.fail(request.tenant_id, operation, f"Failed to start workflow: {e}", arn)
            raise WorkflowStartError(f"Could not start {operation.value} workflow for {request.tenant_id}: {e}") from e
        return record

    def run(self, request: Union[CreateTenantInput, DeleteTenantInput], execution_arn: str) -> TenantRecord:
        operation = Operation(request.operation)
        step = "PROVISION" if operation == Operation.CREATE else "DEPROVISION"
        try:
            if operation == Operation.CREATE:
                result = self.provisioner.provision(request)
            else:
                result = self.deprovisioner.deprovision(request)
            if not result.success:
                return self.finalizer.fail(request.tenant_id, operation, result.error or result.status, execution_arn)

            step = "POLL"
            poll = self.poll_until_terminal(request, result.stack_id)
            if poll.status != PollDecision.COMPLETE.value:
                return self.finalizer.fail(request.tenant_id, operation, poll.error or poll.status, execution_arn)

            step = "FINALIZE"
            return self.finalizer.succeed(request, poll, execution_arn)
        except Exception as e:
            wrapped = WorkflowError(operation.value, step, e)
            log_ctx = {"tenant_id": request.tenant_id, "execution_arn": execution_arn}
            logger.exception(str(wrapped), extra=log_ctx)
            try:
                self.finalizer.fail(request.tenant_id, operation, str(wrapped), execution_arn)
            except InvalidStateTransitionError as terminal:
                # The handle is already released; keep the original error
                logger.warning(str(terminal), extra=log_ctx)
            raise wrapped from e

    def poll_until_terminal(
        self, request: Union[CreateTenantInput, DeleteTenantInput], stack_id: Optional[str] = None
    ) -> PollResult:
        attempts = 0
        while True:
            if self.cancellation_requested(request.tenant_id):
                logger.info("Cancellation requested, stopping", extra={"tenant_id": request.tenant_id})
                return PollResult(
                    success=False,
                    operation=request.operation,
                    tenant_id=request.tenant_id,
                    status=PollDecision.FAILED.value,
                    attempts=attempts,
                    error=CANCELLED,
                )
            poll = self.poller.poll(request, stack_id, attempts)
            attempts = poll.attempts
            if is_settled(poll):
                return poll
            self.polling_policy.wait()

    def cancellation_requested(self, tenant_id: str) -> bool:
        record = self.registry.get(tenant_id)
        return bool(record and record.cancellation_requested)

    def sweep_stalled(self, remediate: bool = False) -> List[TenantRecord]:
        """
        Tenants stuck in ``creating``/``deleting``, or holding an execution
        handle, for longer than ``stale_after_minutes``.

        With ``remediate`` the stalled runs are failed and their execution
        handles released, unless Step Functions still reports the execution
        as running.
        """
        stalled = self.registry.find_stalled(timedelta(minutes=self.settings.stale_after_minutes))
        swept = []
        for record in stalled:
            log_ctx = {"tenant_id": record.tenant_id, "execution_arn": record.step_function_execution_arn}
            logger.warning(
                f"Tenant stalled in {record.provisioning_state.value} since {record.last_modified.isoformat()}",
                extra=log_ctx,
            )
            if not remediate:
                swept.append(record)
                continue
            if self._execution_running(record.step_function_execution_arn):
                logger.info("Execution still running, leaving it alone", extra=log_ctx)
                swept.append(record)
                continue
            if record.provisioning_state not in TRANSIENT_STATES:
                # Terminal state with a leftover handle: only the handle needs clearing
                swept.append(
                    self.registry.release_execution(record.tenant_id, record.step_function_execution_arn, "FAILED")
                    or self.registry.require(record.tenant_id)
                )
                continue
            operation = Operation.CREATE if record.provisioning_state == ProvisioningState.CREATING else Operation.DELETE
            swept.append(
                self.finalizer.fail(
                    record.tenant_id,
                    operation,
                    f"Stalled in {record.provisioning_state.value} since {record.last_modified.isoformat()}",
                    record.step_function_execution_arn,
                )
            )
        return swept

    def _execution_running(self, arn: Optional[str]) -> bool:
        if not arn or arn.startswith(INLINE_PREFIX):
            return False
        try:
            return self.launcher.describe(arn).get("status") == "RUNNING"
        except ClientError as e:
            logger.warning(f"Could not describe execution {arn}: {e}", extra={"execution_arn": arn})
            return False
