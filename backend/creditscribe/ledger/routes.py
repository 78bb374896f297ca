"""
Ledger REST API: balance reads, adjustments, history and admin grants.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from creditscribe.errors import AccountNotFound, InsufficientCredits
from creditscribe.ledger.auth import (
    Principal,
    TokenValidator,
    get_current_user,
    get_token_validator,
    require_admin,
    require_internal_secret,
)
from creditscribe.ledger.models import (
    AdjustRequest,
    AdjustResponse,
    BalanceResponse,
    CreateAccountRequest,
    CreateAccountResponse,
    GrantRequest,
    TransactionType,
)
from creditscribe.ledger.store import LedgerStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ledger"])


def get_store(request: Request) -> LedgerStore:
    return request.app.state.ledger


def _error(message: str, status_code: int, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


@router.get("/me", response_model=BalanceResponse)
async def get_me(
    principal: Principal = Depends(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """Current user with their credit balance"""
    try:
        account = await store.get_account(principal.user_id)
    except AccountNotFound:
        return _error("User not found", 404)

    return BalanceResponse(
        user_id=account.user_id,
        email=account.email,
        name=account.name,
        credits=account.credits,
        plan=account.plan,
        role=account.role,
    )


@router.post("/credits/adjust", response_model=AdjustResponse)
async def adjust_credits(
    body: AdjustRequest,
    principal: Principal = Depends(get_current_user),
    store: LedgerStore = Depends(get_store),
    idempotency_key: Optional[str] = Header(default=None)
):
    """Apply a signed delta to the caller's balance"""
    if body.amount == 0:
        return _error("Invalid amount", 400)

    if body.type is TransactionType.USAGE and body.amount > 0:
        return _error("Usage adjustments must be negative", 400)

    if body.type is not TransactionType.USAGE:
        if body.amount < 0:
            return _error(f"{body.type.value} adjustments must be positive", 400)
        if not principal.is_admin:
            return _error("Admin access required", 403)

    try:
        result = await store.adjust(
            principal.user_id,
            body.amount,
            body.type,
            body.description,
            related_payment_id=body.related_payment_id,
            idempotency_key=idempotency_key
        )
    except AccountNotFound:
        return _error("User not found", 404)
    except InsufficientCredits as e:
        return _error("Insufficient credits", 409, credits=e.credits)

    return AdjustResponse(credits=result.credits, applied=result.applied)


@router.get("/credits/transactions")
async def list_transactions(
    limit: int = 100,
    principal: Principal = Depends(get_current_user),
    store: LedgerStore = Depends(get_store)
):
    """The caller's credit history, newest first"""
    try:
        transactions = await store.list_transactions(principal.user_id, limit=limit)
    except AccountNotFound:
        return _error("User not found", 404)
    return {"transactions": [t.model_dump(mode="json") for t in transactions]}


@router.post(
    "/internal/accounts",
    response_model=CreateAccountResponse,
    dependencies=[Depends(require_internal_secret)]
)
async def create_account(
    body: CreateAccountRequest,
    store: LedgerStore = Depends(get_store),
    validator: TokenValidator = Depends(get_token_validator)
):
    """Create an account with the starting grant and issue its access token"""
    try:
        account = await store.create_account(
            user_id=body.user_id,
            email=body.email,
            name=body.name,
            role=body.role
        )
    except ValueError as e:
        return _error(str(e), 409)

    return CreateAccountResponse(
        user_id=account.user_id,
        credits=account.credits,
        token=validator.issue_token(account.user_id, account.role)
    )


@router.get("/admin/users", dependencies=[Depends(require_admin)])
async def list_users(store: LedgerStore = Depends(get_store)):
    accounts = await store.list_accounts()
    return {"users": [a.model_dump(mode="json") for a in accounts]}


@router.post("/admin/users/{user_id}/credits", response_model=AdjustResponse)
async def grant_credits(
    user_id: str,
    body: GrantRequest,
    admin: Principal = Depends(require_admin),
    store: LedgerStore = Depends(get_store)
):
    """Grant purchased or bonus credits to a user"""
    if body.type is TransactionType.USAGE:
        return _error("Grants must be purchase or bonus", 400)

    try:
        result = await store.adjust(
            user_id,
            body.amount,
            body.type,
            body.description,
            related_payment_id=body.related_payment_id
        )
    except AccountNotFound:
        return _error("User not found", 404)

    logger.info(
        f"Credits granted | admin={admin.user_id} | user_id={user_id} | "
        f"amount={body.amount} | type={body.type.value}"
    )
    return AdjustResponse(credits=result.credits, applied=result.applied)
