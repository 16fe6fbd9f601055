from tenantctl.logger import get_logger
from tenantctl.models import CreateTenantInput, parse_workflow_input
from tenantctl.worker import Provisioner

logger = get_logger(__name__)


def handler(event, context):
    """Step Functions task: start creating the tenant's data resources."""
    request = parse_workflow_input(event)
    if not isinstance(request, CreateTenantInput):
        raise ValueError(f"create-infra received a {request.operation} request")
    logger.info("create-infra invoked", extra={"tenant_id": request.tenant_id, "operation": request.operation})
    return Provisioner().provision(request).to_payload()
