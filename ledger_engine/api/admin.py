"""
Admin endpoints (reconciliation, inconsistency handling)
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from .deps import get_ledger_service, get_tenant_id
from .schemas import ReconcileRequest
from ..service import LedgerService


router = APIRouter()


@router.post("/reconcile")
async def reconcile(
    request: Optional[ReconcileRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
) -> Dict[str, Any]:
    """Finish or roll back transfers left pending"""
    min_age = request.min_age_seconds if request else None
    return service.reconcile(tenant_id, min_age)


@router.post("/acknowledge-inconsistency")
async def acknowledge_inconsistency(
    service: LedgerService = Depends(get_ledger_service)
) -> Dict[str, Any]:
    """Resume transfers after an operator resolved an inconsistency"""
    acknowledged = service.acknowledge_inconsistency()
    return {
        "halted": service.halted,
        "acknowledged": acknowledged
    }
