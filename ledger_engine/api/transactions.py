"""
Transaction endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .deps import get_ledger_service, get_tenant_id
from .schemas import PatchTransactionRequest, SearchRequest, TransferRequest
from ..queries import AccountSide
from ..service import LedgerService


router = APIRouter()


@router.post("/transfer")
async def transfer(
    request: TransferRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """Transfer credits between two accounts"""
    result = service.transfer(
        tenant_id,
        request.from_account,
        request.to_account,
        request.amount,
        initiator=request.initiator
    )
    return result.to_response()


@router.get("/accounts/{account_id}")
async def list_account_transactions(
    account_id: str,
    limit: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = None,
    side: Optional[str] = Query(None, description="from or to; sent transactions when omitted"),
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """List transactions of an account, newest first"""
    if side:
        try:
            account_side = AccountSide(side)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid side: {side}")
        page = service.list_by_side(tenant_id, account_side, account_id, limit, cursor)
    else:
        page = service.list_by_account(tenant_id, account_id, limit, cursor)
    return page.to_dict()


@router.get("/accounts/{account_id}/detailed")
async def list_detailed_transactions(
    account_id: str,
    limit: Optional[int] = Query(None, ge=1),
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """Sent then received transactions of an account"""
    records = service.list_detailed(tenant_id, account_id, limit)
    return {
        "account_id": account_id,
        "items": [record.to_dict() for record in records],
        "count": len(records)
    }


@router.get("/accounts/{account_id}/{transaction_id}")
async def get_transaction(
    account_id: str,
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """Get a single transaction"""
    record = service.get_one(tenant_id, account_id, transaction_id)
    if not record:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return record.to_dict()


@router.post("/search")
async def search_transactions(
    request: SearchRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """Search transactions by account, time range and status"""
    page = service.search(tenant_id, request.to_filter())
    return page.to_dict()


@router.patch("/{transaction_id}")
async def patch_transaction(
    transaction_id: str,
    request: PatchTransactionRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """Correct comment, status or error code of a transaction"""
    try:
        patch = request.to_patch()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    record = service.patch_transaction(tenant_id, transaction_id, patch)
    return record.to_dict()
