import unittest
from unittest import mock
from moto import mock_aws

from tenantctl.credentials import CredentialBroker
from tenantctl.errors import (
    ConfigurationError,
    InvalidStateTransitionError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
)
from tenantctl.models import ProvisioningState
from tenantctl.services.audit import AuditService
from tenantctl.services.lifecycle import TenantLifecycleService
from tenantctl.services.registry import RegistryStore
from tenantctl.worker.launcher import StepFunctionsLauncher
from tenantctl.worker.orchestrator import WorkflowOrchestrator
from tenantctl.worker.policy import PollingPolicy, RetryPolicy

from aws_tables import ACCOUNT_ID, create_tables, make_settings, no_sleep, tenant_record

ONBOARDING = {
    "tenantName": "Acme",
    "email": "admin@acme.com",
    "subscriptionTier": "public",
    "firstName": "Ada",
    "lastName": "Lovelace",
    "adminUsername": "ada",
    "adminEmail": "ada@acme.com",
    "adminPassword": "Temp#1234",
}


def build_service(settings, dynamodb, launcher=None):
    registry = RegistryStore(settings, dynamodb=dynamodb)
    audit = AuditService(settings, dynamodb=dynamodb)
    orchestrator = WorkflowOrchestrator(
        settings,
        broker=CredentialBroker(settings, sleep=no_sleep),
        registry=registry,
        audit=audit,
        launcher=launcher,
        polling_policy=PollingPolicy.from_settings(settings, sleep=no_sleep),
        retry_policy=RetryPolicy(sleep=no_sleep),
    )
    return TenantLifecycleService(settings, registry=registry, audit=audit, orchestrator=orchestrator)


@mock_aws
class TestTenantLifecycleService(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        self.dynamodb = create_tables(self.settings)
        self.service = build_service(self.settings, self.dynamodb)

    def test_onboard_public_tenant(self):
        record = self.service.onboard(dict(ONBOARDING), actor="ops@example.com")

        self.assertEqual(len(record.tenant_id), 8)
        self.assertEqual(record.provisioning_state, ProvisioningState.ACTIVE)
        self.assertEqual(record.tenant_table_name, "TENANT_PUBLIC")
        self.assertEqual(record.tenant_account_id, ACCOUNT_ID)
        self.assertEqual(record.created_by, "ops@example.com")
        # The admin password is handed to the workflow, never stored
        item = self.dynamodb.Table("platform-admin").get_item(
            Key={"pk": f"TENANT#{record.tenant_id}", "sk": "METADATA"}
        )["Item"]
        self.assertNotIn("adminPassword", item)

    def test_onboard_private_tenant(self):
        record = self.service.onboard(dict(ONBOARDING, subscriptionTier="private"))

        self.assertEqual(record.provisioning_state, ProvisioningState.ACTIVE)
        self.assertEqual(record.tenant_table_name, f"TENANT_{record.tenant_id}")
        self.assertIsNotNone(record.cloud_formation_stack_id)

    def test_onboard_validation(self):
        for field in ("tenantName", "email", "adminEmail"):
            data = dict(ONBOARDING)
            del data[field]
            with self.assertRaises(ConfigurationError) as ctx:
                self.service.onboard(data)
            self.assertEqual(str(ctx.exception), f"Missing required field: {field}")

        with self.assertRaises(ConfigurationError):
            self.service.onboard(dict(ONBOARDING, subscriptionTier="gold"))
        with self.assertRaises(ConfigurationError):
            self.service.onboard(dict(ONBOARDING, tenantAccountId="42"))
        self.assertEqual(self.service.list(), [])

    def test_onboard_without_target_account(self):
        service = build_service(make_settings(target_account_id=None), self.dynamodb)
        with self.assertRaises(ConfigurationError):
            service.onboard(dict(ONBOARDING))

    def test_duplicate_name_is_rejected(self):
        first = self.service.onboard(dict(ONBOARDING))
        with self.assertRaises(TenantAlreadyExistsError) as ctx:
            self.service.onboard(dict(ONBOARDING))
        self.assertEqual(ctx.exception.existing_tenant_id, first.tenant_id)

    def test_update_only_touches_descriptive_fields(self):
        record = self.service.onboard(dict(ONBOARDING))
        updated = self.service.update(
            record.tenant_id,
            {"email": "new@acme.com", "provisioningState": "deleted", "tenantId": "hijacked"},
        )
        self.assertEqual(updated.email, "new@acme.com")
        self.assertEqual(updated.provisioning_state, ProvisioningState.ACTIVE)
        self.assertEqual(updated.tenant_id, record.tenant_id)

        with self.assertRaises(ConfigurationError):
            self.service.update(record.tenant_id, {"subscriptionTier": "private"})
        with self.assertRaises(ConfigurationError):
            self.service.update(record.tenant_id, {"provisioningState": "deleted"})
        with self.assertRaises(TenantNotFoundError):
            self.service.update("20990101", {"email": "x@y.z"})

    def test_suspend_and_activate(self):
        record = self.service.onboard(dict(ONBOARDING))

        suspended = self.service.suspend(record.tenant_id)
        self.assertEqual(suspended.provisioning_state, ProvisioningState.INACTIVE)
        self.assertIsNotNone(suspended.suspended_at)
        with self.assertRaises(InvalidStateTransitionError):
            self.service.suspend(record.tenant_id)

        activated = self.service.activate(record.tenant_id)
        self.assertEqual(activated.provisioning_state, ProvisioningState.ACTIVE)
        self.assertIsNone(activated.suspended_at)
        with self.assertRaises(InvalidStateTransitionError):
            self.service.activate(record.tenant_id)

    def test_activate_cannot_short_circuit_provisioning(self):
        self.service.registry.create(tenant_record())
        with self.assertRaises(InvalidStateTransitionError):
            self.service.activate("20261019")

    def test_offboard_suspended_tenant(self):
        record = self.service.onboard(dict(ONBOARDING))
        self.service.suspend(record.tenant_id)

        deleted = self.service.offboard(record.tenant_id, actor="ops@example.com")
        self.assertEqual(deleted.provisioning_state, ProvisioningState.DELETED)

        # Name is free again once the old tenant is deleted
        again = self.service.onboard(dict(ONBOARDING))
        self.assertNotEqual(again.tenant_id, record.tenant_id)

    def test_offboard_deleted_tenant_is_rejected(self):
        record = self.service.onboard(dict(ONBOARDING))
        self.service.offboard(record.tenant_id)
        with self.assertRaises(InvalidStateTransitionError):
            self.service.offboard(record.tenant_id)

    def test_cancel_requires_running_workflow(self):
        record = self.service.onboard(dict(ONBOARDING))
        with self.assertRaises(InvalidStateTransitionError):
            self.service.cancel(record.tenant_id)

    def test_provisioning_status_for_inline_run(self):
        record = self.service.onboard(dict(ONBOARDING))
        status = self.service.provisioning_status(record.tenant_id)

        self.assertEqual(status["tenantId"], record.tenant_id)
        self.assertEqual(status["provisioningState"], "active")
        self.assertEqual(status["subscriptionTier"], "public")
        self.assertNotIn("stepFunctionStatus", status)


@mock_aws
class TestProvisioningStatusReconciliation(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings(
            create_state_machine_arn=f"arn:aws:states:us-east-1:{ACCOUNT_ID}:stateMachine:create-tenant",
            delete_state_machine_arn=f"arn:aws:states:us-east-1:{ACCOUNT_ID}:stateMachine:delete-tenant",
        )
        self.dynamodb = create_tables(self.settings)
        self.client = mock.Mock()
        self.client.start_execution.return_value = {
            "executionArn": f"arn:aws:states:us-east-1:{ACCOUNT_ID}:execution:create-tenant:started"
        }
        self.service = build_service(self.settings, self.dynamodb, launcher=StepFunctionsLauncher(self.client))

    def _submitted(self):
        return self.service.onboard(dict(ONBOARDING, subscriptionTier="private"))

    def test_onboard_leaves_tenant_creating(self):
        record = self._submitted()
        self.assertEqual(record.provisioning_state, ProvisioningState.CREATING)
        self.assertTrue(record.step_function_execution_arn.startswith(
            f"arn:aws:states:us-east-1:{ACCOUNT_ID}:execution:create-tenant:create-tenant-"
        ))
        self.client.start_execution.assert_called_once()

    def test_succeeded_execution_activates_tenant(self):
        record = self._submitted()
        self.client.describe_execution.return_value = {"status": "SUCCEEDED"}

        status = self.service.provisioning_status(record.tenant_id)

        self.assertEqual(status["provisioningState"], "active")
        self.assertEqual(status["stepFunctionStatus"]["status"], "SUCCEEDED")
        stored = self.service.get(record.tenant_id)
        self.assertEqual(stored.provisioning_state, ProvisioningState.ACTIVE)
        self.assertFalse(stored.in_flight)

    def test_failed_execution_marks_tenant_failed(self):
        record = self._submitted()
        self.client.describe_execution.return_value = {"status": "FAILED", "error": "CREATEFailed"}

        status = self.service.provisioning_status(record.tenant_id)

        self.assertEqual(status["provisioningState"], "failed")
        self.assertEqual(status["provisioningError"], "CREATEFailed")
        self.assertFalse(self.service.get(record.tenant_id).in_flight)

    def test_running_execution_changes_nothing(self):
        record = self._submitted()
        self.client.describe_execution.return_value = {"status": "RUNNING"}

        status = self.service.provisioning_status(record.tenant_id)

        self.assertEqual(status["provisioningState"], "creating")
        self.assertTrue(self.service.get(record.tenant_id).in_flight)

    def test_cancel_sets_flag_on_running_workflow(self):
        record = self._submitted()
        cancelled = self.service.cancel(record.tenant_id)
        self.assertTrue(cancelled.cancellation_requested)

    def test_finished_execution_releases_leftover_handle(self):
        record = self._submitted()
        self.service.registry.transition(record.tenant_id, ProvisioningState.ACTIVE)
        self.client.describe_execution.return_value = {"status": "FAILED", "error": "CREATEFailed"}

        status = self.service.provisioning_status(record.tenant_id)

        self.assertEqual(status["provisioningState"], "active")
        stored = self.service.get(record.tenant_id)
        self.assertFalse(stored.in_flight)
        self.assertEqual(stored.last_execution_arn, record.step_function_execution_arn)
