from .tenant import (
    TenantRecord,
    SubscriptionTier,
    ProvisioningState,
    TRANSIENT_STATES,
    ALLOWED_TRANSITIONS,
    allowed_sources,
    can_transition,
    utc_now,
)
from .workflow import (
    Operation,
    CreateTenantInput,
    DeleteTenantInput,
    WorkflowInput,
    parse_workflow_input,
    WorkerResult,
    ProvisionResult,
    DeprovisionResult,
    PollResult,
)
from .stack import StackOutcome, NOT_FOUND, evaluate_stack_status, is_terminal_failure
from .audit import AuditEntry

__all__ = [
    "TenantRecord",
    "SubscriptionTier",
    "ProvisioningState",
    "TRANSIENT_STATES",
    "ALLOWED_TRANSITIONS",
    "allowed_sources",
    "can_transition",
    "utc_now",
    "Operation",
    "CreateTenantInput",
    "DeleteTenantInput",
    "WorkflowInput",
    "parse_workflow_input",
    "WorkerResult",
    "ProvisionResult",
    "DeprovisionResult",
    "PollResult",
    "StackOutcome",
    "NOT_FOUND",
    "evaluate_stack_status",
    "is_terminal_failure",
    "AuditEntry",
]
