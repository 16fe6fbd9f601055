"""
Amazon States Language definitions for the create and delete workflows.

Each worker Lambda receives the whole execution state and returns only its
own result, which the task's ``ResultPath`` stores next to the original
workflow input. The poll loop is a Wait state followed by a poll task, so
no Lambda ever sleeps.
"""

import json
from typing import Any, Dict

from tenantctl.models import Operation
from tenantctl.models.stack import DELETE_COMPLETE
from tenantctl.worker.policy import PollDecision

CATCH_ALL = [{"ErrorEquals": ["States.ALL"], "ResultPath": "$.error", "Next": "RecordFailure"}]

TASK_RETRY = [
    {
        "ErrorEquals": ["Lambda.ServiceException", "Lambda.TooManyRequestsException"],
        "IntervalSeconds": 2,
        "MaxAttempts": 3,
        "BackoffRate": 2.0,
    }
]


def _task(function_arn: str, result_path: str, next_state: str) -> Dict[str, Any]:
    return {
        "Type": "Task",
        "Resource": function_arn,
        "ResultPath": result_path,
        "Retry": TASK_RETRY,
        "Catch": CATCH_ALL,
        "Next": next_state,
    }


def _finalize(function_arn: str, outcome: str, next_state: str) -> Dict[str, Any]:
    return {
        "Type": "Task",
        "Resource": function_arn,
        "Parameters": {
            "outcome": outcome,
            "payload.$": "$",
            "executionArn.$": "$$.Execution.Id",
        },
        "ResultPath": "$.finalize",
        "Retry": TASK_RETRY,
        "Next": next_state,
    }


def build_definition(operation: Operation, functions: Dict[str, str], poll_interval_seconds: int = 30) -> Dict[str, Any]:
    """
    Render the state machine for ``operation``.

    ``functions`` maps ``create``/``delete``, ``poll`` and ``finalize`` to
    Lambda ARNs.
    """
    operation = Operation(operation)
    if operation == Operation.CREATE:
        start, start_arn = "CreateInfrastructure", functions["create"]
        # Public creates are synchronous and skip the poll loop
        done_early = {"Variable": "$.subscriptionTier", "StringEquals": "public", "Next": "RecordSuccess"}
        comment = "Provision tenant infrastructure and reconcile the stack status with the registry"
    else:
        start, start_arn = "DeleteInfrastructure", functions["delete"]
        # Public rows are already gone and a missing stack needs no polling
        done_early = {"Variable": "$.infra.status", "StringEquals": DELETE_COMPLETE, "Next": "RecordSuccess"}
        comment = "Tear down tenant infrastructure and mark the registry record deleted"

    record_success = _finalize(functions["finalize"], "SUCCEEDED", "Succeeded")
    record_success["Catch"] = CATCH_ALL

    return {
        "Comment": comment,
        "StartAt": start,
        "States": {
            start: _task(start_arn, "$.infra", "CheckInfrastructure"),
            "CheckInfrastructure": {
                "Type": "Choice",
                "Choices": [
                    {"Variable": "$.infra.success", "BooleanEquals": False, "Next": "RecordFailure"},
                    done_early,
                ],
                "Default": "WaitForStack",
            },
            "WaitForStack": {"Type": "Wait", "Seconds": poll_interval_seconds, "Next": "PollStack"},
            "PollStack": _task(functions["poll"], "$.poll", "EvaluatePoll"),
            "EvaluatePoll": {
                "Type": "Choice",
                "Choices": [
                    {"Variable": "$.poll.status", "StringEquals": PollDecision.CONTINUE.value, "Next": "WaitForStack"},
                    {"Variable": "$.poll.status", "StringEquals": PollDecision.COMPLETE.value, "Next": "RecordSuccess"},
                ],
                "Default": "RecordFailure",
            },
            "RecordSuccess": record_success,
            "RecordFailure": _finalize(functions["finalize"], "FAILED", "Failed"),
            "Succeeded": {"Type": "Succeed"},
            "Failed": {
                "Type": "Fail",
                "Error": f"{operation.value}Failed",
                "Cause": f"Tenant {operation.value.lower()} workflow failed",
            },
        },
    }


def render(operation: Operation, functions: Dict[str, str], poll_interval_seconds: int = 30) -> str:
    return json.dumps(build_definition(operation, functions, poll_interval_seconds), indent=2)
