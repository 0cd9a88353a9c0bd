"""User ORM model and role vocabulary."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from marketrun.db.base import Base


class Role(str, Enum):
    """Actor roles known to the order lifecycle."""

    BUYER = "buyer"
    SELLER = "seller"
    RUNNER = "runner"
    COURIER = "courier"
    ADMIN = "admin"


USER_ROLES: tuple[str, ...] = tuple(role.value for role in Role)

# Accepted spellings from older clients.
ROLE_ALIASES: dict[str, str] = {
    "kayayo": Role.RUNNER.value,
    "rider": Role.COURIER.value,
}


def normalize_user_role(value: str | None) -> str:
    """Return the canonical lowercase role or raise ValueError."""
    normalized = str(value or "").strip().lower()
    normalized = ROLE_ALIASES.get(normalized, normalized)
    if normalized not in USER_ROLES:
        raise ValueError(f"Unknown role: {value!r}")
    return normalized


class User(Base):
    """Account of any party taking part in an order."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(SAEnum(*USER_ROLES, name="user_role"), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
