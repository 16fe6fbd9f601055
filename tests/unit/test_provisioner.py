import json
import unittest
from unittest import mock
from boto3.dynamodb.conditions import Key
from moto import mock_aws
import boto3

from tenantctl.credentials import CredentialBroker
from tenantctl.errors import CrossAccountAuthError
from tenantctl.models import ProvisioningState, SubscriptionTier
from tenantctl.services.registry import RegistryStore
from tenantctl.worker.provisioner import Provisioner
from tenantctl.worker.templates import build_table_template

from aws_tables import create_request, create_tables, make_settings, no_sleep, tenant_record


@mock_aws
class TestProvisioner(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        self.dynamodb = create_tables(self.settings)
        self.registry = RegistryStore(self.settings, dynamodb=self.dynamodb)
        self.broker = CredentialBroker(self.settings, sleep=no_sleep)
        self.provisioner = Provisioner(self.settings, self.broker, self.registry)

    def _init_rows(self, table_name, tenant_id):
        return self.dynamodb.Table(table_name).query(
            KeyConditionExpression=Key("pk").eq(f"TENANT#{tenant_id}")
        )["Items"]

    def test_public_tier_writes_init_marker(self):
        record = self.registry.create(tenant_record())
        result = self.provisioner.provision(create_request(record))

        self.assertTrue(result.success)
        self.assertEqual(result.status, "CREATE_COMPLETE")
        self.assertEqual(result.table_name, "TENANT_PUBLIC")
        self.assertIsNone(result.stack_id)

        rows = self._init_rows("TENANT_PUBLIC", "20261019")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["sk"], "init")
        self.assertEqual(rows[0]["status"], "initialized")
        self.assertEqual(rows[0]["tenantName"], "Acme")
        self.assertEqual(self.registry.get("20261019").tenant_table_name, "TENANT_PUBLIC")

    def test_public_tier_is_idempotent(self):
        record = self.registry.create(tenant_record())
        self.provisioner.provision(create_request(record))
        result = self.provisioner.provision(create_request(record))

        self.assertTrue(result.success)
        self.assertEqual(len(self._init_rows("TENANT_PUBLIC", "20261019")), 1)

    def test_private_tier_submits_stack(self):
        record = self.registry.create(tenant_record(tier=SubscriptionTier.PRIVATE))
        result = self.provisioner.provision(create_request(record))

        self.assertTrue(result.success)
        self.assertEqual(result.status, "CREATE_IN_PROGRESS")
        self.assertEqual(result.table_name, "TENANT_20261019")
        self.assertIn("tenant-20261019-dynamodb", result.stack_id)

        cfn = boto3.client("cloudformation", region_name="us-east-1")
        stack = cfn.describe_stacks(StackName="tenant-20261019-dynamodb")["Stacks"][0]
        tags = {t["Key"]: t["Value"] for t in stack["Tags"]}
        self.assertEqual(tags["TenantId"], "20261019")
        self.assertEqual(tags["CreatedBy"], "tenantctl-provisioner")

        stored = self.registry.get("20261019")
        self.assertEqual(stored.cloud_formation_stack_id, result.stack_id)
        self.assertEqual(stored.tenant_table_name, "TENANT_20261019")

    def test_private_tier_resubmission_adopts_existing_stack(self):
        record = self.registry.create(tenant_record(tier=SubscriptionTier.PRIVATE))
        first = self.provisioner.provision(create_request(record))
        second = self.provisioner.provision(create_request(record))

        self.assertTrue(second.success)
        self.assertEqual(second.stack_id, first.stack_id)

    def test_auth_failure_marks_tenant_failed(self):
        record = self.registry.create(tenant_record(tier=SubscriptionTier.PRIVATE))
        with mock.patch.object(
            self.broker, "clients_for", side_effect=CrossAccountAuthError("Cannot assume role", code="AccessDenied")
        ):
            result = self.provisioner.provision(create_request(record))

        self.assertFalse(result.success)
        self.assertEqual(result.operation, "ASSUME_ROLE")
        stored = self.registry.get("20261019")
        self.assertEqual(stored.provisioning_state, ProvisioningState.FAILED)
        self.assertEqual(stored.provisioning_error, "Cannot assume role")

    def test_template_describes_dedicated_table(self):
        template = build_table_template(self.settings, "20261019", "Acme")
        props = template["Resources"]["TenantTable"]["Properties"]

        self.assertEqual(props["TableName"], "TENANT_20261019")
        self.assertEqual([k["AttributeName"] for k in props["KeySchema"]], ["pk", "sk"])
        self.assertEqual(props["BillingMode"], "PAY_PER_REQUEST")
        self.assertTrue(props["SSESpecification"]["SSEEnabled"])
        self.assertTrue(props["PointInTimeRecoverySpecification"]["PointInTimeRecoveryEnabled"])
        self.assertEqual(set(template["Outputs"]), {"TableName", "TableArn"})
        json.dumps(template)
