from tenantctl.logger import get_logger
from tenantctl.models import PollResult, parse_workflow_input
from tenantctl.worker import PollDecision, StatusPoller

logger = get_logger(__name__)


def handler(event, context):
    """
    Step Functions task: one stack status observation.

    ``event`` is the execution state; ``infra`` holds the create/delete
    result and ``poll`` the previous observation, if any.
    """
    request = parse_workflow_input(event)
    infra = event.get("infra") or {}
    previous = event.get("poll") or {}
    stack_id = infra.get("stackId") or event.get("stackId")
    attempts = int(previous.get("attempts", 0))

    poller = StatusPoller()
    record = poller.registry.get(request.tenant_id)
    if record and record.cancellation_requested:
        logger.info("Cancellation requested, stopping", extra={"tenant_id": request.tenant_id})
        return PollResult(
            success=False,
            operation=request.operation,
            tenant_id=request.tenant_id,
            status=PollDecision.FAILED.value,
            attempts=attempts,
            error="cancelled",
        ).to_payload()

    return poller.poll(request, stack_id, attempts).to_payload()

