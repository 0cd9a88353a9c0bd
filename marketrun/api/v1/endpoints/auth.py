"""Authentication endpoints (API JWT)."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from marketrun.core.security import create_access_token, get_current_user, get_password_hash, verify_password
from marketrun.db.session import get_db
from marketrun.models.user import Role, User, normalize_user_role
from marketrun.schemas.auth import AuthUserResponse, LoginRequest, RegisterRequest, TokenResponse
from marketrun.services.user_service import create_user, get_user_by_email, get_user_by_username
from marketrun.utils.time import utcnow

router: APIRouter = APIRouter()
logger = logging.getLogger(__name__)
SELF_SERVICE_ROLES: set[str] = {Role.BUYER.value, Role.SELLER.value, Role.RUNNER.value, Role.COURIER.value}


@router.post("/register", response_model=AuthUserResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> AuthUserResponse:
    try:
        role = normalize_user_role(payload.role)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if role not in SELF_SERVICE_ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid role")
    if get_user_by_email(db=db, email=payload.email) is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    username = payload.username or payload.email.split("@")[0]
    if get_user_by_username(db=db, username=username) is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already taken")
    user = create_user(
        db=db,
        username=username,
        hashed_password=get_password_hash(payload.password),
        role=role,
        email=payload.email,
    )
    logger.info("[AUTH] Registered user_id=%s role=%s", user.id, user.role)
    return AuthUserResponse.model_validate(user)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse:
    user: User | None = get_user_by_email(db=db, email=payload.email)
    if user is None or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is disabled")
    user.last_login_at = utcnow()
    db.commit()
    return TokenResponse(access_token=create_access_token(data={"sub": str(user.id)}))


@router.get("/me", response_model=AuthUserResponse)
def me(current_user: User = Depends(get_current_user)) -> AuthUserResponse:
    return AuthUserResponse.model_validate(current_user)
