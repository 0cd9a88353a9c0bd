"""Handover code schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from marketrun.models.handover import HandoverStage
from marketrun.models.order import OrderStatus


class HandoverCodeResponse(BaseModel):
    """Code to display in person, with its expiry."""

    order_id: int
    stage: HandoverStage
    code: str
    expires_at: datetime


class HandoverVerifyRequest(BaseModel):
    """Code typed in by the counterparty."""

    code: str = Field(min_length=1, max_length=12)


class HandoverVerifyResponse(BaseModel):
    """Outcome of a successful verification."""

    order_id: int
    stage: HandoverStage
    verified: bool = True
    issuer_id: int
    status: OrderStatus
