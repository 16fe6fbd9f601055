import json
from typing import Any, Dict, Optional
import boto3

from tenantctl.logger import get_logger

logger = get_logger(__name__)


class StepFunctionsLauncher:
    """Thin wrapper over the Step Functions client used by the orchestrator."""

    def __init__(self, client=None, region: Optional[str] = None):
        self.client = client or boto3.client("stepfunctions", region_name=region)

    def start(self, state_machine_arn: str, name: str, payload: Dict[str, Any]) -> str:
        response = self.client.start_execution(
            stateMachineArn=state_machine_arn,
            name=name,
            input=json.dumps(payload),
        )
        logger.info("Execution started", extra={"execution_arn": response["executionArn"]})
        return response["executionArn"]

    def describe(self, execution_arn: str) -> Dict[str, Any]:
        return self.client.describe_execution(executionArn=execution_arn)
