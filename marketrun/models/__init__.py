"""Application models package."""

from marketrun.models.audit_log import AuditLog
from marketrun.models.handover import HandoverChallenge, HandoverStage
from marketrun.models.order import Order, OrderItem, OrderStatus
from marketrun.models.product import Product
from marketrun.models.user import Role, User

__all__ = [
    "AuditLog", "HandoverChallenge", "HandoverStage", "Order", "OrderItem", "OrderStatus", "Product", "Role", "User",
]
