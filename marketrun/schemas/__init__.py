"""Schema exports."""

from marketrun.schemas.auth import AuthUserResponse, LoginRequest, RegisterRequest, TokenResponse
from marketrun.schemas.handover import HandoverCodeResponse, HandoverVerifyRequest, HandoverVerifyResponse
from marketrun.schemas.order import (
    OrderActionResponse,
    OrderCreate,
    OrderItemPayload,
    OrderItemResponse,
    OrderResponse,
    TransitionRequest,
)

__all__ = [
    "AuthUserResponse",
    "LoginRequest",
    "RegisterRequest",
    "TokenResponse",
    "HandoverCodeResponse",
    "HandoverVerifyRequest",
    "HandoverVerifyResponse",
    "OrderActionResponse",
    "OrderCreate",
    "OrderItemPayload",
    "OrderItemResponse",
    "OrderResponse",
    "TransitionRequest",
]
