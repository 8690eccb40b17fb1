from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ..bootstrap import LedgerStack
from ..exceptions import (
    CreditError,
    DuplicateTransaction,
    InsufficientCredits,
    InvalidAmount,
    NotFound,
    TransientStoreFailure,
)
from ..models.api_models import (
    ConsumeCreditsRequest,
    CreditBalanceResponse,
    CreditTransactionResponse,
    GrantCreditsRequest,
    PaymentWebhookRequest,
    PaymentWebhookResponse,
    RegisterUserRequest,
    RegisterUserResponse,
    SweepResponse,
)
from ..models.transaction import (
    ConsumeOptions,
    ConsumeResult,
    CreditSummary,
    CreditTransaction,
    GrantOptions,
    TransactionScene,
)
from ..models.user import UserAccount


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])

_PAID_STATUSES = {"paid", "completed", "succeeded"}

_STATUS_CODES = {
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    InsufficientCredits: status.HTTP_402_PAYMENT_REQUIRED,
    DuplicateTransaction: status.HTTP_409_CONFLICT,
    TransientStoreFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_stack(request: Request) -> LedgerStack:
    return request.app.state.ledger


def to_http_exception(exc: CreditError) -> HTTPException:
    status_code = _STATUS_CODES.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": exc.message, **exc.details},
    )


def _to_response(tx: CreditTransaction) -> CreditTransactionResponse:
    return CreditTransactionResponse(
        id=tx.id or "",
        user_id=tx.user_id,
        transaction_type=tx.transaction_type.value,
        transaction_scene=tx.transaction_scene.value,
        credits=tx.credits,
        remaining_credits=tx.remaining_credits,
        status=tx.status.value,
        expires_at=tx.expires_at,
        created_at=tx.created_at,
        order_no=tx.order_no,
        transaction_no=tx.transaction_no,
        description=tx.description,
    )


@router.post(
    "/users", response_model=RegisterUserResponse, status_code=status.HTTP_201_CREATED
)
async def register_user(
    payload: RegisterUserRequest, stack: LedgerStack = Depends(get_stack)
) -> RegisterUserResponse:
    """Signup hook: create the ledger account and hand out the initial credits."""
    try:
        user = await stack.db.add_user(UserAccount(id=payload.user_id, email=payload.email))
        await stack.expiration_service.grant_initial_credits(user.id or "")
        balance = await stack.credit_service.remaining_balance(user.id or "")
    except CreditError as exc:
        raise to_http_exception(exc) from exc
    return RegisterUserResponse(user_id=user.id or "", email=user.email, credits=balance)


@router.get("/balance/{user_id}", response_model=CreditBalanceResponse)
async def get_balance(
    user_id: str, stack: LedgerStack = Depends(get_stack)
) -> CreditBalanceResponse:
    balance = await stack.credit_service.remaining_balance(user_id)
    return CreditBalanceResponse(user_id=user_id, credits=balance)


@router.get("/summary/{user_id}", response_model=CreditSummary)
async def get_summary(user_id: str, stack: LedgerStack = Depends(get_stack)) -> CreditSummary:
    return await stack.credit_service.get_credit_summary(user_id)


@router.get("/history/{user_id}", response_model=List[CreditTransactionResponse])
async def get_history(
    user_id: str, stack: LedgerStack = Depends(get_stack)
) -> List[CreditTransactionResponse]:
    rows = await stack.credit_service.get_credit_history(user_id)
    return [_to_response(tx) for tx in rows]


@router.post(
    "/grant", response_model=CreditTransactionResponse, status_code=status.HTTP_201_CREATED
)
async def grant_credits(
    payload: GrantCreditsRequest, stack: LedgerStack = Depends(get_stack)
) -> CreditTransactionResponse:
    try:
        tx = await stack.credit_service.grant(
            user_id=payload.user_id,
            amount=payload.amount,
            scene=payload.scene,
            options=GrantOptions(
                expires_in_days=payload.expires_in_days,
                description=payload.description,
            ),
        )
    except CreditError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(tx)


@router.post("/consume", response_model=ConsumeResult)
async def consume_credits(
    payload: ConsumeCreditsRequest,
    stack: LedgerStack = Depends(get_stack),
    x_request_id: Optional[str] = Header(default=None),
) -> ConsumeResult:
    try:
        return await stack.credit_service.consume(
            user_id=payload.user_id,
            amount=payload.amount,
            scene=payload.scene,
            options=ConsumeOptions(
                description=payload.description,
                transaction_no=payload.transaction_no,
            ),
            correlation_id=x_request_id,
        )
    except CreditError as exc:
        raise to_http_exception(exc) from exc


@router.post("/sweep", response_model=SweepResponse)
async def sweep_expired(stack: LedgerStack = Depends(get_stack)) -> SweepResponse:
    try:
        count = await stack.expiration_service.check_credit_expiration()
    except CreditError as exc:
        raise to_http_exception(exc) from exc
    return SweepResponse(expired=count)


@router.post("/webhooks/payment", response_model=PaymentWebhookResponse)
async def payment_webhook(
    payload: PaymentWebhookRequest, stack: LedgerStack = Depends(get_stack)
) -> PaymentWebhookResponse:
    """
    Called after the payment provider's signature has been verified upstream.
    Redelivered notifications for the same order grant nothing new.
    """
    if payload.status.lower() not in _PAID_STATUSES:
        logger.info(
            "Ignoring payment notification %s with status %s", payload.order_no, payload.status
        )
        return PaymentWebhookResponse(order_no=payload.order_no, granted=False)

    scene = (
        TransactionScene.SUBSCRIPTION if payload.subscription_no else TransactionScene.PAYMENT
    )
    try:
        tx, created = await stack.credit_service.grant_for_order(
            user_id=payload.user_id,
            amount=payload.credits,
            order_no=payload.order_no,
            scene=scene,
            options=GrantOptions(
                subscription_no=payload.subscription_no,
                expires_in_days=payload.expires_in_days,
                description=f"Credits for order {payload.order_no}",
                metadata=payload.metadata,
            ),
            correlation_id=payload.order_no,
        )
    except CreditError as exc:
        raise to_http_exception(exc) from exc
    return PaymentWebhookResponse(order_no=payload.order_no, granted=created, transaction_id=tx.id)
