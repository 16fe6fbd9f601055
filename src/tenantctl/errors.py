from typing import Optional


class TenantctlError(Exception):
    """Base class for provisioning errors."""


class ConfigurationError(TenantctlError):
    """Bad configuration or request; rejected before any workflow starts."""


class CrossAccountAuthError(TenantctlError):
    def __init__(self, message: str, role_arn: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.role_arn = role_arn
        self.code = code


class TenantNotFoundError(TenantctlError):
    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class TenantAlreadyExistsError(TenantctlError):
    def __init__(self, message: str, existing_tenant_id: Optional[str] = None):
        super().__init__(message)
        self.existing_tenant_id = existing_tenant_id


class TenantIdExhaustedError(TenantctlError):
    """Every tenant id candidate for the current day is taken."""


class InvalidStateTransitionError(TenantctlError):
    def __init__(self, tenant_id: str, target: str, current: Optional[str] = None):
        message = f"Tenant {tenant_id} cannot move to {target}"
        if current:
            message += f" from {current}"
        super().__init__(message)
        self.tenant_id = tenant_id
        self.target = target
        self.current = current


class ExecutionInFlightError(TenantctlError):
    def __init__(self, tenant_id: str, execution_arn: Optional[str] = None):
        super().__init__(f"Tenant {tenant_id} already has an active execution: {execution_arn or 'unknown'}")
        self.tenant_id = tenant_id
        self.execution_arn = execution_arn


class WorkflowStartError(TenantctlError):
    """The orchestration run could not be started."""


class WorkflowError(TenantctlError):
    """Unexpected failure inside a workflow step, wrapped with its operation context."""

    def __init__(self, operation: str, step: str, cause: Exception):
        super().__init__(f"{operation} {step} failed: {type(cause).__name__}: {cause}")
        self.operation = operation
        self.step = step
        self.cause = cause
