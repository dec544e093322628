"""
Pydantic schemas for API requests and responses
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from ..audit_log import TransactionPatch, TransactionStatus
from ..queries import TransactionFilter


# Account schemas
class CreateAccountRequest(BaseModel):
    account_id: str
    balance: str = Field("0", description="Opening balance as decimal string")
    currency: Optional[str] = Field(None, description="Currency code, configured default when omitted")
    full_name: str = ""
    mobile_number: str = ""


class CheckExistRequest(BaseModel):
    account_ids: List[str]


# Transaction schemas
class TransferRequest(BaseModel):
    from_account: str
    to_account: str
    amount: str = Field(..., description="Decimal amount as string")
    initiator: str = ""


class SearchRequest(BaseModel):
    account_id: Optional[str] = None
    start_time: Optional[int] = Field(None, description="Epoch seconds, inclusive")
    end_time: Optional[int] = Field(None, description="Epoch seconds, inclusive")
    status: Optional[str] = Field(None, description="pending, success or failed")
    cursor: Optional[str] = None
    limit: Optional[int] = None

    def to_filter(self) -> TransactionFilter:
        return TransactionFilter(
            account_id=self.account_id,
            start_time=self.start_time,
            end_time=self.end_time,
            status=self.status,
            cursor=self.cursor,
            limit=self.limit
        )


class PatchTransactionRequest(BaseModel):
    comment: Optional[str] = None
    status: Optional[str] = Field(None, description="pending, success or failed")
    error_code: Optional[str] = None

    def to_patch(self) -> TransactionPatch:
        return TransactionPatch(
            comment=self.comment,
            status=TransactionStatus(self.status) if self.status else None,
            error_code=self.error_code
        )


# Admin schemas
class ReconcileRequest(BaseModel):
    min_age_seconds: Optional[int] = None
