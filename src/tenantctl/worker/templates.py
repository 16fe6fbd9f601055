from typing import Any, Dict, List, Optional

from tenantctl.config import Settings
from tenantctl.naming import dedicated_table_name

MANAGED_BY = "tenantctl-provisioner"


def stack_tags(settings: Settings, tenant_id: str, tenant_name: Optional[str]) -> List[Dict[str, str]]:
    return [
        {"Key": "TenantId", "Value": tenant_id},
        {"Key": "TenantName", "Value": tenant_name or tenant_id},
        {"Key": "CreatedBy", "Value": MANAGED_BY},
        {"Key": "Environment", "Value": settings.workspace},
        {"Key": "SubscriptionTier", "Value": "private"},
    ]


def build_table_template(settings: Settings, tenant_id: str, tenant_name: Optional[str] = None) -> Dict[str, Any]:
    """CloudFormation template for a private tenant's dedicated pk/sk table."""
    table_name = dedicated_table_name(settings.entity, tenant_id)
    return {
        "AWSTemplateFormatVersion": "2010-09-09",
        "Description": f"DynamoDB table for {settings.entity} {tenant_id}",
        "Resources": {
            "TenantTable": {
                "Type": "AWS::DynamoDB::Table",
                "Properties": {
                    "TableName": table_name,
                    "AttributeDefinitions": [
                        {"AttributeName": "pk", "AttributeType": "S"},
                        {"AttributeName": "sk", "AttributeType": "S"},
                    ],
                    "KeySchema": [
                        {"AttributeName": "pk", "KeyType": "HASH"},
                        {"AttributeName": "sk", "KeyType": "RANGE"},
                    ],
                    "BillingMode": "PAY_PER_REQUEST",
                    "PointInTimeRecoverySpecification": {"PointInTimeRecoveryEnabled": True},
                    "SSESpecification": {"SSEEnabled": True},
                    "Tags": stack_tags(settings, tenant_id, tenant_name)[:4],
                },
            }
        },
        "Outputs": {
            "TableName": {
                "Description": "Name of the created DynamoDB table",
                "Value": {"Ref": "TenantTable"},
            },
            "TableArn": {
                "Description": "ARN of the created DynamoDB table",
                "Value": {"Fn::GetAtt": ["TenantTable", "Arn"]},
            },
        },
    }
