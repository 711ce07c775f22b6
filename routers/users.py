import logging
import math
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from auth import AuthService, auth_error
from config import get_settings
from dependencies import get_auth_service, get_current_user, get_db, get_transport, limiter
from messaging.base import QueueTransport
from messaging.events import publish_user_registered
from model import User
from schemas import (
    AuthResponse,
    ErrorResponse,
    LoginRequest,
    MessageResponse,
    Pagination,
    PasswordChange,
    ProfileUpdate,
    RegisterRequest,
    UserListResponse,
    UserOut,
    UserResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth-service", tags=["auth"])


def email_exists_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=ErrorResponse(code=409, error="EMAIL_EXISTS", message=message).model_dump(mode="json"),
    )


def user_not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=ErrorResponse(code=404, error="NOT_FOUND", message="User not found").model_dump(mode="json"),
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(lambda: get_settings().register_rate_limit)
async def register(
    request: Request,
    payload: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
    transport: QueueTransport = Depends(get_transport),
):
    if await crud.get_user_by_email(db, payload.email):
        raise email_exists_error("User with this email already exists")

    try:
        user = await crud.create_user(
            db,
            first_name=payload.first_name,
            last_name=payload.last_name,
            email=payload.email,
            password_hash=auth_service.get_password_hash(payload.password),
        )
    except IntegrityError:
        # Lost a race with a concurrent registration for the same email
        await db.rollback()
        raise email_exists_error("User with this email already exists")

    logger.info("Registered user %s (%s)", user.employee_id, user.email)
    await publish_user_registered(transport, user)

    return AuthResponse(
        message="User registered successfully",
        token=auth_service.create_access_token(user),
        user=UserOut.model_validate(user),
    )


@router.post("/login", response_model=AuthResponse)
@limiter.limit(lambda: get_settings().login_rate_limit)
async def login(
    request: Request,
    payload: LoginRequest,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Login with email and password"""
    user, token = await auth_service.login(db, payload.email, payload.password)
    return AuthResponse(message="Login successful", token=token, user=UserOut.model_validate(user))


@router.get("/profile", response_model=UserResponse)
async def get_profile(current_user: User = Depends(get_current_user)):
    return UserResponse(message="Profile retrieved successfully", user=UserOut.model_validate(current_user))


@router.put("/profile", response_model=UserResponse)
async def update_profile(
    payload: ProfileUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    changes = {}
    if payload.first_name:
        changes["first_name"] = payload.first_name.strip()
    if payload.last_name:
        changes["last_name"] = payload.last_name.strip()
    if payload.email:
        email = payload.email.lower()
        if email != current_user.email:
            if await crud.get_user_by_email(db, email):
                raise email_exists_error("Email already in use")
            changes["email"] = email

    try:
        user = await crud.update_user(db, current_user, **changes)
    except IntegrityError:
        # Email taken by a concurrent registration or profile update
        await db.rollback()
        raise email_exists_error("Email already in use")
    return UserResponse(message="Profile updated successfully", user=UserOut.model_validate(user))


@router.put("/change-password", response_model=MessageResponse)
async def change_password(
    payload: PasswordChange,
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
    current_user: User = Depends(get_current_user),
):
    if not auth_service.verify_password(payload.current_password, current_user.password_hash):
        raise auth_error(status.HTTP_401_UNAUTHORIZED, "INVALID_PASSWORD", "Current password is incorrect")

    await crud.update_user(db, current_user, password_hash=auth_service.get_password_hash(payload.new_password))
    return MessageResponse(message="Password changed successfully")


@router.get("/users", response_model=UserListResponse)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = "",
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    users, total = await crud.list_users(db, page=page, limit=limit, search=search.strip())
    return UserListResponse(
        message="Users retrieved successfully",
        users=[UserOut.model_validate(u) for u in users],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    user = await crud.get_user(db, user_id)
    if not user:
        raise user_not_found()
    return UserResponse(message="User retrieved successfully", user=UserOut.model_validate(user))


@router.get("/verify-token", response_model=UserResponse)
async def verify_token(current_user: User = Depends(get_current_user)):
    """Lets a frontend check whether its token is still valid"""
    return UserResponse(message="Token is valid", user=UserOut.model_validate(current_user))


@router.get("/health")
async def health():
    return {
        "status": "OK",
        "service": "auth-service",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
