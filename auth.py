from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status
from jose import jwt
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession

import crud
from config import Settings
from model import User
from schemas import ErrorResponse


def auth_error(status_code: int, error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(code=status_code, error=error, message=message).model_dump(mode="json"),
    )


class AuthService:
    def __init__(self, settings: Settings):
        self.secret_key = settings.jwt_secret
        self.algorithm = settings.jwt_algorithm
        self.token_lifetime = settings.token_lifetime
        # Password hashing
        self.pwd_context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=settings.bcrypt_rounds,
        )

    def create_access_token(self, user: User, expires_delta: Optional[timedelta] = None) -> str:
        """Create a signed, time-limited session token carrying the user's identity"""
        now = datetime.now(timezone.utc)
        exp = now + (expires_delta if expires_delta is not None else self.token_lifetime)
        payload = {
            "id": user.id,
            "email": user.email,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "role": getattr(user.role, "value", user.role),
            "employeeId": user.employee_id,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode_access_token(self, token: str) -> dict:
        """Verify signature and expiry; raises ExpiredSignatureError or JWTError"""
        return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        return self.pwd_context.verify(plain_password, hashed_password)

    def get_password_hash(self, password: str) -> str:
        return self.pwd_context.hash(password)

    async def authenticate_user(self, db: AsyncSession, email: str, password: str) -> User:
        user = await crud.get_user_by_email(db, email)

        if user is None:
            # Same cost as a real check so response time doesn't reveal the email
            self.pwd_context.dummy_verify()
            raise auth_error(status.HTTP_401_UNAUTHORIZED, "INVALID_CREDENTIALS", "Invalid email or password")

        if not user.is_active:
            raise auth_error(
                status.HTTP_401_UNAUTHORIZED,
                "ACCOUNT_INACTIVE",
                "Account is inactive. Please contact support.",
            )

        if not self.verify_password(password, user.password_hash):
            raise auth_error(status.HTTP_401_UNAUTHORIZED, "INVALID_CREDENTIALS", "Invalid email or password")

        return user

    async def login(self, db: AsyncSession, email: str, password: str):
        """Authenticate and issue a fresh token"""
        user = await self.authenticate_user(db, email, password)
        return user, self.create_access_token(user)
