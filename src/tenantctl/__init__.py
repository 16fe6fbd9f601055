"""Tenant provisioning workflow: registry, cross-account workers and orchestration."""

__version__ = "0.1.0"
