import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

from fastapi import Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

import crud
from auth import AuthService, auth_error
from config import Settings
from messaging.base import QueueTransport
from model import User

logger = logging.getLogger(__name__)

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class ServiceContext:
    """Everything a service process shares between requests, built once at startup"""

    service: str
    settings: Settings
    transport: QueueTransport
    engine: Optional[AsyncEngine] = None
    session_factory: Optional[sessionmaker] = None
    auth: Optional[AuthService] = None
    tasks: List[asyncio.Task] = field(default_factory=list)

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.append(task)
        return task

    async def close(self):
        for task in self.tasks:
            task.cancel()
        for task in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.tasks.clear()
        await self.transport.close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("%s service resources released", self.service)


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def get_transport(context: ServiceContext = Depends(get_context)) -> QueueTransport:
    return context.transport


def get_auth_service(context: ServiceContext = Depends(get_context)) -> AuthService:
    return context.auth


async def get_db(context: ServiceContext = Depends(get_context)) -> AsyncIterator[AsyncSession]:
    """Async database session dependency"""
    async with context.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    """Dependency to get current user from a verified bearer token"""
    if credentials is None or not credentials.credentials:
        raise auth_error(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED", "Access denied. No token provided.")

    try:
        payload = auth_service.decode_access_token(credentials.credentials)
    except ExpiredSignatureError:
        raise auth_error(status.HTTP_401_UNAUTHORIZED, "TOKEN_EXPIRED", "Token expired.")
    except JWTError:
        raise auth_error(status.HTTP_401_UNAUTHORIZED, "INVALID_TOKEN", "Invalid token.")

    user_id = payload.get("id")
    user = await crud.get_user(db, user_id) if isinstance(user_id, int) else None
    if user is None:
        raise auth_error(status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED", "Invalid token. User not found.")

    if not user.is_active:
        raise auth_error(status.HTTP_401_UNAUTHORIZED, "ACCOUNT_INACTIVE", "Account is inactive.")

    return user
