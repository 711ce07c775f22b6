import argparse
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthService
from config import SERVICES, Settings, get_settings
from database import connect_database, create_engine_for, create_session_factory
from dependencies import ServiceContext, limiter
from messaging.base import QueueTransport
from messaging.events import QUEUES, create_transport, start_transport
from notifications import start_consumers
from routers import notifications, timesheets, users
from schemas import ErrorResponse

logger = logging.getLogger(__name__)

TITLES = {
    "auth": "Timesheet Auth Service",
    "submit": "Timesheet Submit Service",
    "save": "Timesheet Save Service",
    "notification": "Timesheet Notification Service",
}

PREFIXES = {
    "auth": "/auth-service",
    "submit": "/submit-service",
    "save": "/save-service",
    "notification": "",
}

ENDPOINTS = {
    "auth": [
        "POST /auth-service/register",
        "POST /auth-service/login",
        "GET /auth-service/profile",
        "PUT /auth-service/profile",
        "PUT /auth-service/change-password",
        "GET /auth-service/users",
        "GET /auth-service/users/{id}",
        "GET /auth-service/verify-token",
        "GET /auth-service/health",
    ],
    "submit": [
        "POST /submit-service/timesheets",
        "GET /submit-service/health",
    ],
    "save": [
        "GET /save-service/timesheets",
        "GET /save-service/timesheets/{id}",
        "POST /save-service/timesheets",
        "POST /save-service/timesheets/weekly",
        "GET /save-service/health",
    ],
    "notification": [
        "GET /health",
        "GET /stats",
        "POST /test/publish",
    ],
}


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def readable_errors(exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
        message = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
        errors.append(f"{field}: {message}" if field else message)
    return errors


async def start_messaging(context: ServiceContext):
    if not await start_transport(context.transport, context.settings):
        logger.warning("%s service running without a queue transport", context.service)
        return
    if context.service == "notification":
        await start_consumers(context.transport)


def create_app(
    service: Optional[str] = None,
    settings: Optional[Settings] = None,
    transport: Optional[QueueTransport] = None,
) -> FastAPI:
    settings = settings or get_settings()
    service = service or settings.service_name
    if service not in SERVICES:
        raise ValueError(f"Unknown service {service!r}, expected one of {', '.join(SERVICES)}")
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        context = ServiceContext(service=service, settings=settings, transport=transport or create_transport(settings))
        if service != "notification":
            context.engine = create_engine_for(settings)
            context.session_factory = create_session_factory(context.engine)
            await connect_database(context.engine, settings.db_connect_retries, settings.db_connect_delay)
        if service == "auth":
            context.auth = AuthService(settings)

        # Broker connection retries run in the background so HTTP is served immediately
        context.spawn(start_messaging(context))
        app.state.context = context
        logger.info("%s listening on port %s", TITLES[service], settings.listen_port(service))
        try:
            yield
        finally:
            await context.close()

    app = FastAPI(title=TITLES[service], version="1.0.0", lifespan=lifespan)

    app.state.limiter = limiter
    limiter.enabled = settings.rate_limit_enabled
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        content = ErrorResponse(code=400, error="VALIDATION_ERROR", message="Validation failed").model_dump(mode="json")
        content["errors"] = readable_errors(exc)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)

    @app.exception_handler(StarletteHTTPException)
    async def not_found_handler(request: Request, exc: StarletteHTTPException):
        # Structured errors raised by route handlers go out as the body itself
        if isinstance(exc.detail, dict):
            return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
        if exc.status_code != status.HTTP_404_NOT_FOUND or exc.detail != "Not Found":
            return await http_exception_handler(request, exc)
        hint = f"All endpoints are under {PREFIXES[service]}" if PREFIXES[service] else "See availableEndpoints"
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "error": "Route not found",
                "message": f"Cannot {request.method} {request.url.path}",
                "availableEndpoints": ENDPOINTS[service],
                "hint": hint,
            },
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(code=500, error="DATABASE_ERROR", message=str(exc)).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(code=500, error="INTERNAL_ERROR", message=str(exc)).model_dump(mode="json"),
        )

    @app.get("/")
    async def root():
        info = {
            "message": f"{TITLES[service]} is running",
            "version": app.version,
            "availableEndpoints": ENDPOINTS[service],
        }
        if service == "notification":
            info["queues"] = QUEUES
        return info

    # Include routers
    if service == "auth":
        app.include_router(users.router)
    elif service == "submit":
        app.include_router(timesheets.submit_router)
    elif service == "save":
        app.include_router(timesheets.save_router)
    else:
        app.include_router(notifications.router)

    return app


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one of the timesheet services")
    parser.add_argument("service", choices=SERVICES)
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args()

    settings = get_settings()
    uvicorn.run(
        create_app(args.service, settings),
        host=args.host or settings.host,
        port=args.port or settings.listen_port(args.service),
    )
