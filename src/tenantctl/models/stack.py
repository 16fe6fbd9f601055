"""
Stack lifecycle as an explicit state machine.

CloudFormation reports dozens of status strings; the workflow only cares
whether an operation is still moving, finished, or broke. Everything that
inspects a stack status goes through ``evaluate_stack_status``.
"""

from enum import Enum
from typing import Dict, Tuple

from tenantctl.models.workflow import Operation

NOT_FOUND = "NOT_FOUND"

CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
CREATE_COMPLETE = "CREATE_COMPLETE"
CREATE_FAILED = "CREATE_FAILED"
ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
DELETE_COMPLETE = "DELETE_COMPLETE"
DELETE_FAILED = "DELETE_FAILED"


class StackOutcome(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


# Explicit entries win over the generic rules below.
TRANSITIONS: Dict[Tuple[Operation, str], StackOutcome] = {
    (Operation.CREATE, CREATE_COMPLETE): StackOutcome.SUCCEEDED,
    (Operation.CREATE, DELETE_COMPLETE): StackOutcome.FAILED,
    (Operation.CREATE, DELETE_IN_PROGRESS): StackOutcome.FAILED,
    (Operation.CREATE, NOT_FOUND): StackOutcome.FAILED,
    (Operation.DELETE, DELETE_COMPLETE): StackOutcome.SUCCEEDED,
    (Operation.DELETE, NOT_FOUND): StackOutcome.SUCCEEDED,
}


def is_terminal_failure(status: str) -> bool:
    """A stack status from which the operation cannot recover on its own."""
    return "FAILED" in status or status == ROLLBACK_COMPLETE


def evaluate_stack_status(operation: Operation, status: str) -> StackOutcome:
    operation = Operation(operation)
    outcome = TRANSITIONS.get((operation, status))
    if outcome is not None:
        return outcome
    if is_terminal_failure(status):
        return StackOutcome.FAILED
    return StackOutcome.IN_PROGRESS
