"""
Request dependencies: the ledger service and the caller's tenant
"""

from typing import Optional

from fastapi import Request

from ..config import get_config
from ..service import LedgerService
from ..tenancy import extract_tenant_from_headers, resolve_tenant


# Global ledger service instance, created on first use
ledger_service: Optional[LedgerService] = None


def get_ledger_service() -> LedgerService:
    global ledger_service
    if ledger_service is None:
        ledger_service = LedgerService(config=get_config())
    return ledger_service


def set_ledger_service(service: Optional[LedgerService]) -> None:
    """Replace the global service (tests, embedding applications)"""
    global ledger_service
    ledger_service = service


def get_tenant_id(request: Request) -> str:
    """Tenant of the request from the X-Tenant-ID header"""
    service = get_ledger_service()
    return resolve_tenant(extract_tenant_from_headers(dict(request.headers)), service.config)
