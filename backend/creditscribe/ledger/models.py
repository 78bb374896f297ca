from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import uuid

from pydantic import BaseModel, Field

# Credits granted when an account is created
STARTING_CREDITS = 999


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    BONUS = "bonus"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserAccount(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    credits: int = Field(default=0, ge=0)
    plan: str = "free"
    role: UserRole = UserRole.USER
    created_at: datetime = Field(default_factory=_utcnow)


class CreditTransaction(BaseModel):
    """Append-only record of one balance change"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    amount: int
    type: TransactionType
    description: str
    related_payment_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}


class AdjustResult(BaseModel):
    credits: int
    applied: int
    transaction_id: str


class AdjustRequest(BaseModel):
    amount: int
    type: TransactionType = TransactionType.USAGE
    description: str = "Credit usage"
    related_payment_id: Optional[str] = None


class AdjustResponse(BaseModel):
    credits: int
    applied: int
    success: bool = True


class BalanceResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    credits: int
    plan: str
    role: UserRole


class CreateAccountRequest(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: UserRole = UserRole.USER


class CreateAccountResponse(BaseModel):
    user_id: str
    credits: int
    token: str


class GrantRequest(BaseModel):
    amount: int = Field(gt=0)
    type: TransactionType = TransactionType.PURCHASE
    description: str = "Credit purchase"
    related_payment_id: Optional[str] = None
