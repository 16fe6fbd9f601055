from .policy import PollDecision, PollingPolicy, RetryPolicy
from .provisioner import Provisioner
from .poller import StatusPoller
from .deprovisioner import Deprovisioner
from .finalizer import Finalizer
from .launcher import StepFunctionsLauncher
from .orchestrator import WorkflowOrchestrator

__all__ = [
    "PollDecision",
    "PollingPolicy",
    "RetryPolicy",
    "Provisioner",
    "StatusPoller",
    "Deprovisioner",
    "Finalizer",
    "StepFunctionsLauncher",
    "WorkflowOrchestrator",
]
