from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .transaction import TransactionScene


class RegisterUserRequest(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None


class RegisterUserResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    credits: int


class GrantCreditsRequest(BaseModel):
    user_id: str
    amount: int
    scene: TransactionScene = TransactionScene.AWARD
    expires_in_days: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None


class ConsumeCreditsRequest(BaseModel):
    user_id: str
    amount: int
    scene: TransactionScene = TransactionScene.MEME_GENERATION
    description: Optional[str] = None
    transaction_no: Optional[str] = None


class PaymentWebhookRequest(BaseModel):
    """The fields the ledger needs from a verified payment notification."""

    order_no: str
    user_id: str
    credits: int
    status: str
    subscription_no: Optional[str] = None
    expires_in_days: Optional[int] = Field(default=None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits: int


class CreditTransactionResponse(BaseModel):
    id: str
    user_id: str
    transaction_type: str
    transaction_scene: str
    credits: int
    remaining_credits: int
    status: str
    expires_at: Optional[datetime] = None
    created_at: datetime
    order_no: Optional[str] = None
    transaction_no: Optional[str] = None
    description: Optional[str] = None


class SweepResponse(BaseModel):
    expired: int


class PaymentWebhookResponse(BaseModel):
    order_no: str
    granted: bool
    transaction_id: Optional[str] = None
