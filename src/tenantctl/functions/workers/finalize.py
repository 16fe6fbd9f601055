import json
from typing import Any, Dict

from tenantctl.logger import get_logger
from tenantctl.models import PollResult, parse_workflow_input
from tenantctl.worker import Finalizer

logger = get_logger(__name__)


def failure_reason(state: Dict[str, Any]) -> str:
    """Best description of why the execution is on the failure path."""
    for key in ("poll", "infra"):
        error = (state.get(key) or {}).get("error")
        if error:
            return error
    caught = state.get("error") or {}
    cause = caught.get("Cause")
    if cause:
        # Lambda errors arrive as a JSON document in Cause
        try:
            details = json.loads(cause)
        except ValueError:
            return cause
        if isinstance(details, dict) and details.get("errorMessage"):
            return f"{details.get('errorType', 'Error')}: {details['errorMessage']}"
        return cause
    return caught.get("Error") or "Workflow failed"


def handler(event, context):
    """
    Step Functions task: write the execution outcome to the registry.

    ``event`` is ``{"outcome": "SUCCEEDED"|"FAILED", "payload": <state>,
    "executionArn": <arn>}``.
    """
    state = event["payload"]
    execution_arn = event.get("executionArn")
    finalizer = Finalizer()

    if event["outcome"] == "SUCCEEDED":
        request = parse_workflow_input(state)
        poll = PollResult.model_validate(state["poll"]) if state.get("poll") else None
        record = finalizer.succeed(request, poll, execution_arn)
    else:
        reason = failure_reason(state)
        logger.info(f"Recording failure: {reason}", extra={"tenant_id": state.get("tenantId")})
        record = finalizer.fail(state["tenantId"], state["operation"], reason, execution_arn)

    return {
        "tenantId": record.tenant_id,
        "provisioningState": record.provisioning_state.value,
        "outcome": event["outcome"],
    }
