"""
Account endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_ledger_service, get_tenant_id
from .schemas import CheckExistRequest, CreateAccountRequest
from ..service import LedgerService


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """Create a new account with an opening balance"""
    account = service.create_account(
        tenant_id,
        request.account_id,
        balance=request.balance,
        currency=request.currency,
        full_name=request.full_name,
        mobile_number=request.mobile_number
    )
    return {
        "account_id": account.account_id,
        "tenant_id": account.tenant_id,
        "balance": str(account.balance),
        "currency": account.currency,
        "message": "Account created successfully"
    }


@router.post("/check-exist")
async def check_exist(
    request: CheckExistRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """Report which of the given accounts do not exist"""
    missing = service.check_exist(tenant_id, request.account_ids)
    return {
        "status": "success",
        "code": "accounts_checked",
        "message": "All accounts exist." if not missing else "Some accounts do not exist.",
        "data": {"missing_accounts": missing}
    }


@router.get("/{account_id}/balance")
async def get_balance(
    account_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: LedgerService = Depends(get_ledger_service)
):
    """Get the current balance of an account"""
    account = service.get_account(tenant_id, account_id)
    return {
        "account_id": account.account_id,
        "balance": str(account.balance),
        "currency": account.currency
    }
