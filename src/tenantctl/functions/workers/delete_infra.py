from tenantctl.logger import get_logger
from tenantctl.models import DeleteTenantInput, parse_workflow_input
from tenantctl.worker import Deprovisioner

logger = get_logger(__name__)


def handler(event, context):
    """Step Functions task: start tearing down the tenant's data resources."""
    request = parse_workflow_input(event)
    if not isinstance(request, DeleteTenantInput):
        raise ValueError(f"delete-infra received a {request.operation} request")
    logger.info("delete-infra invoked", extra={"tenant_id": request.tenant_id, "operation": request.operation})
    return Deprovisioner().deprovision(request).to_payload()
