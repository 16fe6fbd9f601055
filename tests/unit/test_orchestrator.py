import unittest
from datetime import timedelta
from unittest import mock
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from moto import mock_aws
import boto3

from tenantctl.credentials import CredentialBroker
from tenantctl.errors import ExecutionInFlightError, WorkflowError, WorkflowStartError
from tenantctl.models import (
    CreateTenantInput,
    DeleteTenantInput,
    Operation,
    ProvisioningState,
    SubscriptionTier,
    utc_now,
)
from tenantctl.services.audit import AuditService
from tenantctl.services.registry import RegistryStore
from tenantctl.worker import state_machine
from tenantctl.worker.launcher import StepFunctionsLauncher
from tenantctl.worker.orchestrator import WorkflowOrchestrator
from tenantctl.worker.policy import PollingPolicy, RetryPolicy

from aws_tables import ACCOUNT_ID, create_tables, make_settings, no_sleep, tenant_record

FUNCTIONS = {
    "create": f"arn:aws:lambda:us-east-1:{ACCOUNT_ID}:function:create-infra",
    "delete": f"arn:aws:lambda:us-east-1:{ACCOUNT_ID}:function:delete-infra",
    "poll": f"arn:aws:lambda:us-east-1:{ACCOUNT_ID}:function:poll-infra",
    "finalize": f"arn:aws:lambda:us-east-1:{ACCOUNT_ID}:function:finalize",
}
IN_PROGRESS = {"StackStatus": "CREATE_IN_PROGRESS"}
THROTTLED = ClientError(
    {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}}, "UpdateItem"
)


@mock_aws
class TestInlineWorkflow(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings(max_poll_attempts=3)
        self.dynamodb = create_tables(self.settings)
        self.registry = RegistryStore(self.settings, dynamodb=self.dynamodb)
        self.audit = AuditService(self.settings, dynamodb=self.dynamodb)
        self.waits = []
        self.orchestrator = WorkflowOrchestrator(
            self.settings,
            broker=CredentialBroker(self.settings, sleep=no_sleep),
            registry=self.registry,
            audit=self.audit,
            polling_policy=PollingPolicy.from_settings(self.settings, sleep=self.waits.append),
            retry_policy=RetryPolicy(sleep=no_sleep),
        )

    def _create(self, tier=SubscriptionTier.PUBLIC, **overrides):
        record = self.registry.create(tenant_record(tier=tier, **overrides))
        return CreateTenantInput.from_record(record)

    def _rows(self, table_name, tenant_id="20261019"):
        return self.dynamodb.Table(table_name).query(
            KeyConditionExpression=Key("pk").eq(f"TENANT#{tenant_id}")
        )["Items"]

    def test_public_create_is_active_without_polling(self):
        record = self.orchestrator.submit(self._create())

        self.assertEqual(record.provisioning_state, ProvisioningState.ACTIVE)
        self.assertFalse(record.in_flight)
        self.assertTrue(record.last_execution_arn.startswith("inline:create-tenant-20261019-"))
        self.assertEqual(record.step_function_status, "SUCCEEDED")
        self.assertIsNotNone(record.provisioning_completed_at)
        self.assertEqual(self.waits, [])

        rows = self._rows("TENANT_PUBLIC")
        self.assertEqual([r["sk"] for r in rows], ["init"])

        actions = {entry.action for entry in self.audit.get_tenant_audit("20261019")}
        self.assertIn("CREATE_SUBMITTED", actions)
        self.assertIn("PROVISIONING_COMPLETED", actions)

    def test_private_create_reaches_active_with_init_row(self):
        record = self.orchestrator.submit(self._create(SubscriptionTier.PRIVATE))

        self.assertEqual(record.provisioning_state, ProvisioningState.ACTIVE)
        self.assertIn("tenant-20261019-dynamodb", record.cloud_formation_stack_id)
        self.assertEqual(record.tenant_table_name, "TENANT_20261019")
        rows = self._rows("TENANT_20261019")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["sk"], "init")

    def test_private_delete_after_out_of_band_stack_removal(self):
        created = self.orchestrator.submit(self._create(SubscriptionTier.PRIVATE))
        boto3.client("cloudformation", region_name="us-east-1").delete_stack(
            StackName=created.cloud_formation_stack_id
        )

        record = self.orchestrator.submit(DeleteTenantInput.from_record(created))

        self.assertEqual(record.provisioning_state, ProvisioningState.DELETED)
        self.assertIsNotNone(record.deleted_at)
        self.assertFalse(record.in_flight)

    def test_public_delete_removes_rows_and_marks_deleted(self):
        created = self.orchestrator.submit(self._create())
        self.dynamodb.Table("TENANT_PUBLIC").put_item(Item={"pk": "TENANT#20261019", "sk": "ORDER#1"})

        record = self.orchestrator.submit(DeleteTenantInput.from_record(created))

        self.assertEqual(record.provisioning_state, ProvisioningState.DELETED)
        self.assertEqual(self._rows("TENANT_PUBLIC"), [])
        self.assertEqual(record.deletion_attempts, 1)

    def test_stack_vanishing_mid_create_fails(self):
        request = self._create(SubscriptionTier.PRIVATE)
        with mock.patch.object(self.orchestrator.poller, "describe_stack", side_effect=[IN_PROGRESS, None]):
            record = self.orchestrator.submit(request)

        self.assertEqual(record.provisioning_state, ProvisioningState.FAILED)
        self.assertIn("no longer exists", record.provisioning_error)
        self.assertEqual(self.waits, [1])
        self.assertFalse(record.in_flight)
        self.assertEqual(record.step_function_status, "FAILED")

    def test_poll_ceiling_times_out_to_failed(self):
        request = self._create(SubscriptionTier.PRIVATE)
        with mock.patch.object(self.orchestrator.poller, "describe_stack", return_value=IN_PROGRESS):
            record = self.orchestrator.submit(request)

        self.assertEqual(record.provisioning_state, ProvisioningState.FAILED)
        self.assertEqual(record.provisioning_error, "Polling timeout after 3 attempts (last status CREATE_IN_PROGRESS)")
        self.assertEqual(len(self.waits), 2)
        self.assertEqual(record.polling_attempts, 3)

    def test_cancellation_stops_the_poll_loop(self):
        request = self._create(SubscriptionTier.PRIVATE)

        def still_running(clients, stack_ref):
            self.registry.request_cancellation(request.tenant_id)
            return IN_PROGRESS

        with mock.patch.object(self.orchestrator.poller, "describe_stack", side_effect=still_running):
            record = self.orchestrator.submit(request)

        self.assertEqual(record.provisioning_state, ProvisioningState.FAILED)
        self.assertEqual(record.provisioning_error, "cancelled")

    def test_second_create_is_rejected_while_first_in_flight(self):
        request = self._create(SubscriptionTier.PRIVATE)
        self.registry.claim_execution(request.tenant_id, "inline:first", ProvisioningState.CREATING)

        with self.assertRaises(ExecutionInFlightError):
            self.orchestrator.submit(request)

        record = self.registry.get(request.tenant_id)
        self.assertEqual(record.step_function_execution_arn, "inline:first")
        self.assertEqual(record.provisioning_state, ProvisioningState.CREATING)
        cfn = boto3.client("cloudformation", region_name="us-east-1")
        self.assertEqual(cfn.list_stacks()["StackSummaries"], [])

    def test_unexpected_error_is_wrapped_and_persisted(self):
        request = self._create()
        with mock.patch.object(self.orchestrator.provisioner, "provision", side_effect=KeyError("boom")):
            with self.assertRaises(WorkflowError):
                self.orchestrator.submit(request)

        record = self.registry.get(request.tenant_id)
        self.assertEqual(record.provisioning_state, ProvisioningState.FAILED)
        self.assertEqual(record.provisioning_error, "CREATE PROVISION failed: KeyError: 'boom'")
        self.assertFalse(record.in_flight)

    def test_sweep_reports_and_remediates_stalled_runs(self):
        stale = utc_now() - timedelta(hours=2)
        self.registry.create(
            tenant_record(step_function_execution_arn="inline:lost", last_modified=stale)
        )
        self.registry.create(tenant_record("20261020", tenant_name="Fresh"))

        reported = self.orchestrator.sweep_stalled()
        self.assertEqual([r.tenant_id for r in reported], ["20261019"])
        self.assertEqual(self.registry.get("20261019").provisioning_state, ProvisioningState.CREATING)

        remediated = self.orchestrator.sweep_stalled(remediate=True)
        self.assertEqual(remediated[0].provisioning_state, ProvisioningState.FAILED)
        self.assertTrue(remediated[0].provisioning_error.startswith("Stalled in creating"))
        self.assertFalse(remediated[0].in_flight)

    def test_success_clears_handle_without_separate_release(self):
        with mock.patch.object(self.registry, "release_execution", side_effect=THROTTLED) as release:
            record = self.orchestrator.submit(self._create())

        release.assert_not_called()
        self.assertEqual(record.provisioning_state, ProvisioningState.ACTIVE)
        self.assertFalse(record.in_flight)

        deleted = self.orchestrator.submit(DeleteTenantInput.from_record(record))
        self.assertEqual(deleted.provisioning_state, ProvisioningState.DELETED)

    def test_error_after_terminal_write_still_frees_the_slot(self):
        request = self._create()

        def activate_then_throttle(req, poll, execution_arn):
            self.registry.transition(req.tenant_id, ProvisioningState.ACTIVE)
            raise THROTTLED

        with mock.patch.object(self.orchestrator.finalizer, "succeed", side_effect=activate_then_throttle):
            with self.assertRaises(WorkflowError) as ctx:
                self.orchestrator.submit(request)

        self.assertIsInstance(ctx.exception.cause, ClientError)
        record = self.registry.get(request.tenant_id)
        self.assertEqual(record.provisioning_state, ProvisioningState.ACTIVE)
        self.assertFalse(record.in_flight)
        self.assertEqual(record.step_function_status, "FAILED")

        deleted = self.orchestrator.submit(DeleteTenantInput.from_record(record))
        self.assertEqual(deleted.provisioning_state, ProvisioningState.DELETED)

    def test_sweep_clears_handle_left_on_terminal_tenant(self):
        self.registry.create(
            tenant_record(
                provisioning_state=ProvisioningState.ACTIVE,
                step_function_execution_arn="inline:lost",
                last_modified=utc_now() - timedelta(hours=2),
            )
        )

        swept = self.orchestrator.sweep_stalled(remediate=True)

        self.assertEqual(swept[0].provisioning_state, ProvisioningState.ACTIVE)
        self.assertFalse(swept[0].in_flight)
        self.assertEqual(swept[0].last_execution_arn, "inline:lost")


@mock_aws
class TestStepFunctionsWorkflow(unittest.TestCase):
    def setUp(self):
        sfn = boto3.client("stepfunctions", region_name="us-east-1")
        role = f"arn:aws:iam::{ACCOUNT_ID}:role/tenant-workflow"
        create_arn = sfn.create_state_machine(
            name="create-tenant",
            definition=state_machine.render(Operation.CREATE, FUNCTIONS),
            roleArn=role,
        )["stateMachineArn"]
        delete_arn = sfn.create_state_machine(
            name="delete-tenant",
            definition=state_machine.render(Operation.DELETE, FUNCTIONS),
            roleArn=role,
        )["stateMachineArn"]
        self.sfn = sfn
        self.settings = make_settings(create_state_machine_arn=create_arn, delete_state_machine_arn=delete_arn)
        self.dynamodb = create_tables(self.settings)
        self.registry = RegistryStore(self.settings, dynamodb=self.dynamodb)
        self.orchestrator = WorkflowOrchestrator(
            self.settings,
            broker=CredentialBroker(self.settings, sleep=no_sleep),
            registry=self.registry,
            audit=AuditService(self.settings, dynamodb=self.dynamodb),
            launcher=StepFunctionsLauncher(sfn),
        )

    def test_execution_handle_matches_started_execution(self):
        record = self.registry.create(tenant_record(tier=SubscriptionTier.PRIVATE))
        submitted = self.orchestrator.submit(CreateTenantInput.from_record(record))

        executions = self.sfn.list_executions(stateMachineArn=self.settings.create_state_machine_arn)["executions"]
        self.assertEqual(len(executions), 1)
        self.assertEqual(submitted.step_function_execution_arn, executions[0]["executionArn"])
        self.assertEqual(submitted.provisioning_state, ProvisioningState.CREATING)

        with self.assertRaises(ExecutionInFlightError):
            self.orchestrator.submit(CreateTenantInput.from_record(record))

    def test_start_failure_marks_tenant_failed(self):
        record = self.registry.create(tenant_record())
        client = mock.Mock()
        client.start_execution.side_effect = ClientError(
            {"Error": {"Code": "StateMachineDoesNotExist", "Message": "gone"}}, "StartExecution"
        )
        self.orchestrator._launcher = StepFunctionsLauncher(client)

        with self.assertRaises(WorkflowStartError):
            self.orchestrator.submit(CreateTenantInput.from_record(record))

        stored = self.registry.get(record.tenant_id)
        self.assertEqual(stored.provisioning_state, ProvisioningState.FAILED)
        self.assertIn("StateMachineDoesNotExist", stored.provisioning_error)
        self.assertFalse(stored.in_flight)

    def test_sweep_leaves_running_execution_alone(self):
        record = self.registry.create(tenant_record(tier=SubscriptionTier.PRIVATE))
        submitted = self.orchestrator.submit(CreateTenantInput.from_record(record))
        self.registry.table.update_item(
            Key={"pk": "TENANT#20261019", "sk": "METADATA"},
            UpdateExpression="SET lastModified = :t",
            ExpressionAttributeValues={":t": (utc_now() - timedelta(hours=2)).isoformat()},
        )

        swept = self.orchestrator.sweep_stalled(remediate=True)

        self.assertEqual(swept[0].step_function_execution_arn, submitted.step_function_execution_arn)
        self.assertEqual(self.registry.get("20261019").provisioning_state, ProvisioningState.CREATING)
