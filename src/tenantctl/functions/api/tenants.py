import json
from typing import Any, Dict, Optional

from tenantctl.errors import (
    ConfigurationError,
    ExecutionInFlightError,
    InvalidStateTransitionError,
    TenantAlreadyExistsError,
    TenantIdExhaustedError,
    TenantNotFoundError,
)
from tenantctl.logger import get_logger
from tenantctl.models import TenantRecord
from tenantctl.services.lifecycle import TenantLifecycleService

logger = get_logger(__name__)


def _record(record: TenantRecord) -> Dict[str, Any]:
    return record.to_item()


def respond(status_code: int, message: str, data: Any = None) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"status": status_code, "message": message, "data": data}, default=str),
    }


def _error_status(error: Exception) -> int:
    if isinstance(error, ConfigurationError):
        return 400
    if isinstance(error, TenantNotFoundError):
        return 404
    if isinstance(error, (ExecutionInFlightError, InvalidStateTransitionError, TenantAlreadyExistsError)):
        return 409
    if isinstance(error, TenantIdExhaustedError):
        return 503
    return 500


def _actor(event) -> Optional[str]:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    return authorizer.get("principalId") or authorizer.get("userId")


def _body(event) -> Dict[str, Any]:
    try:
        return json.loads(event.get("body") or "{}")
    except ValueError as e:
        raise ConfigurationError(f"Request body is not valid JSON: {e}") from e


def _query_tenant_id(event) -> str:
    tenant_id = (event.get("queryStringParameters") or {}).get("tenantId")
    if not tenant_id:
        raise ConfigurationError("Tenant ID is required")
    return tenant_id


def route(service: TenantLifecycleService, event) -> Dict[str, Any]:
    http_method = event.get("httpMethod") or event.get("requestContext", {}).get("http", {}).get("method")
    path = event.get("path") or event.get("rawPath") or ""
    parts = [p for p in path.split("/") if p]
    if parts and parts[0] == "tenants":
        parts = parts[1:]
    actor = _actor(event)

    if http_method == "GET":
        if not parts:
            tenants = [_record(r) for r in service.list()]
            return respond(200, "Tenants retrieved successfully", tenants)
        if parts[0] == "provisioning-status" and len(parts) == 2:
            return respond(200, "Tenant provisioning status retrieved successfully", service.provisioning_status(parts[1]))
        if len(parts) == 1:
            return respond(200, "Tenant retrieved successfully", _record(service.get(parts[0])))

    elif http_method == "POST" and parts == ["onboard"]:
        record = service.onboard(_body(event), actor=actor)
        return respond(201, "Tenant onboarding started", _record(record))

    elif http_method == "PUT":
        if parts == ["onboard"]:
            body = _body(event)
            if not body.get("tenantId"):
                raise ConfigurationError("Missing required field: tenantId")
            record = service.update(body["tenantId"], body, actor=actor)
            return respond(200, "Tenant updated successfully", _record(record))
        if parts == ["suspend"]:
            return respond(200, "Tenant suspended successfully", _record(service.suspend(_query_tenant_id(event), actor)))
        if parts == ["activate"]:
            return respond(200, "Tenant activated successfully", _record(service.activate(_query_tenant_id(event), actor)))
        if parts == ["cancel"]:
            return respond(202, "Cancellation requested", _record(service.cancel(_query_tenant_id(event), actor)))

    elif http_method == "DELETE" and parts == ["offboard"]:
        record = service.offboard(_query_tenant_id(event), actor=actor)
        return respond(202, "Tenant offboarding started", _record(record))

    return respond(405, "Method not allowed")


def handler(event, context):
    try:
        return route(TenantLifecycleService(), event)
    except Exception as e:
        status_code = _error_status(e)
        if status_code == 500:
            logger.exception(f"Unhandled error: {e}")
        else:
            logger.warning(f"Request rejected: {e}")
        return respond(status_code, str(e))
