"""
Multi-Tenancy Support Module

Every account, ledger entry and transaction record is partitioned by tenant.
This module decides, at the API boundary, which tenant a call runs under:
an explicit tenant id wins, then the tenant bound to the current context
(set from the X-Tenant-ID header), then either the configured default tenant
for clients that predate tenants or a ValidationError when tenants are
required.
"""

import contextvars
from contextlib import contextmanager
from typing import Dict, Optional

from .config import LedgerConfig, get_config
from .errors import ValidationError


TENANT_HEADER = "x-tenant-id"

# Context-local tenant using contextvars
_current_tenant = contextvars.ContextVar('current_tenant', default=None)


def get_current_tenant() -> Optional[str]:
    """Get the current tenant ID for this context"""
    return _current_tenant.get()


def set_current_tenant(tenant_id: Optional[str]) -> None:
    """Set the current tenant ID for this context"""
    _current_tenant.set(tenant_id)


@contextmanager
def tenant_context(tenant_id: Optional[str]):
    """Context manager for temporary tenant switching"""
    token = _current_tenant.set(tenant_id)
    try:
        yield
    finally:
        _current_tenant.reset(token)


def resolve_tenant(tenant_id: Optional[str] = None,
                   config: Optional[LedgerConfig] = None) -> str:
    """
    Decide the tenant a call runs under.

    Args:
        tenant_id: Tenant passed explicitly by the caller, may be empty
        config: Configuration, global configuration when None

    Returns:
        Tenant id to partition reads and writes by

    Raises:
        ValidationError: No tenant given and tenants are required
    """
    config = config or get_config()
    tenant_id = (tenant_id or "").strip() or get_current_tenant()
    if tenant_id:
        return tenant_id
    if config.require_tenant:
        raise ValidationError("Tenant ID is required")
    return config.default_tenant


def extract_tenant_from_headers(headers: Dict[str, str]) -> Optional[str]:
    """Extract tenant ID from the X-Tenant-ID header"""
    for name, value in headers.items():
        if name.lower() == TENANT_HEADER and value:
            return value.strip() or None
    return None
