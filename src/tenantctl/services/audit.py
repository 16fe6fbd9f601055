import time
from typing import Dict, Any, Optional, List
import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from tenantctl.config import Settings
from tenantctl.logger import get_logger
from tenantctl.models import AuditEntry, utc_now

logger = get_logger(__name__)


class AuditService:
    def __init__(self, settings: Optional[Settings] = None, dynamodb=None):
        self.settings = settings or Settings.from_environment()
        self.dynamodb = dynamodb or boto3.resource("dynamodb", region_name=self.settings.region)
        self.table_name = self.settings.audit_table
        self.table = self.dynamodb.Table(self.table_name)
        self.retention_days = self.settings.audit_retention_days

    def log_action(
        self,
        tenant_id: str,
        action: str,
        resource: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
        execution_arn: Optional[str] = None,
    ):
        """
        Logs a lifecycle action to the audit table.

        Audit writes never fail the workflow step that triggered them.
        """
        expires_at = int(time.time()) + (self.retention_days * 24 * 60 * 60)

        entry = AuditEntry(
            tenant_id=tenant_id,
            timestamp=utc_now(),
            action=action,
            resource=resource,
            metadata={k: str(v) for k, v in (metadata or {}).items()},
            actor=actor,
            execution_arn=execution_arn,
        )

        item = entry.model_dump(mode="json", exclude_none=True)
        item["expires_at"] = expires_at

        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            logger.warning(f"Failed to log audit entry {action}: {e}", extra={"tenant_id": tenant_id})

    def get_tenant_audit(self, tenant_id: str, limit: int = 50) -> List[AuditEntry]:
        """
        Retrieves audit entries for a tenant, newest first.
        """
        response = self.table.query(
            KeyConditionExpression=Key("tenant_id").eq(tenant_id),
            ScanIndexForward=False,
            Limit=limit,
        )
        return [AuditEntry(**item) for item in response.get("Items", [])]
