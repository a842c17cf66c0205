"""HTTP API exposing registration, login and password reset."""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .authentication import Authenticator
from .config import Settings, load_settings
from .database import RecordStore
from .directory import DirectoryGateway
from .errors import IdentityError, ValidationError
from .hashing import CredentialHasher
from .health import HealthMonitor
from .notifications import Notifier, build_notifier
from .password_reset import ResetTokenManager
from .registration import IdentityRegistrar

logger = logging.getLogger("identity.service")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")

FORGOT_PASSWORD_MESSAGE = "If the email exists, reset instructions have been queued."
RESET_PASSWORD_MESSAGE = "Password has been reset. Please sign in."
MIN_PASSWORD_LENGTH = 6


def _strip_text(value: object) -> object:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else value


class _RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterRequest(_RequestModel):
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    display_name: str = Field(default="", alias="displayName")
    username: str = ""
    email: str = ""
    password: str = ""

    @field_validator("first_name", "last_name", "display_name", "username", "email", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return _strip_text(value)

    def problems(self) -> List[str]:
        errors: List[str] = []
        if not self.first_name:
            errors.append("First name is required")
        if not self.last_name:
            errors.append("Last name is required")
        if not self.display_name:
            errors.append("Display name is required")
        elif len(self.display_name) < 3:
            errors.append("Display name must be at least 3 characters")
        if len(self.display_name) > 64:
            errors.append("Display name must be under 65 characters")
        if not self.username:
            errors.append("Username is required")
        if len(self.username) < 3:
            errors.append("Username must be at least 3 characters")
        elif len(self.username) > 64:
            errors.append("Username must be under 65 characters")
        elif not _USERNAME_PATTERN.fullmatch(self.username):
            errors.append("Username may only contain letters, numbers, '.', '_' and '-'")
        if not _EMAIL_PATTERN.fullmatch(self.email):
            errors.append("Valid email is required")
        if len(self.password) < MIN_PASSWORD_LENGTH:
            errors.append("Password must be at least 6 characters long")
        return errors


class LoginRequest(_RequestModel):
    username: str = ""
    password: str = ""

    @field_validator("username", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return _strip_text(value)


class ForgotPasswordRequest(_RequestModel):
    email: str = ""

    @field_validator("email", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return _strip_text(value)


class ResetPasswordRequest(_RequestModel):
    token: str = ""
    password: str = ""

    @field_validator("token", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return _strip_text(value)

    def problems(self) -> List[str]:
        errors: List[str] = []
        if not self.token:
            errors.append("Reset token is required")
        if len(self.password) < MIN_PASSWORD_LENGTH:
            errors.append("Password must be at least 6 characters long")
        return errors


def _error_response(exc: IdentityError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {"kind": exc.kind, "message": exc.message},
            "errors": exc.messages(),
        },
    )


def _describe_validation_error(error: Dict[str, object]) -> str:
    message = str(error.get("msg", "Invalid value"))
    if message.startswith("Value error, "):
        return message[len("Value error, "):]
    location = [str(part) for part in error.get("loc", ()) if part != "body"]
    return f"{'.'.join(location)}: {message}" if location else message


def register_auth_routes(
    app: FastAPI,
    *,
    registrar: IdentityRegistrar,
    authenticator: Authenticator,
    reset_manager: ResetTokenManager,
    default_group: str,
    expose_reset_url: bool = False,
) -> None:
    """Expose the account endpoints on the provided FastAPI application."""

    @app.post("/auth/register")
    async def register(request: RegisterRequest) -> Dict[str, Any]:
        errors = request.problems()
        if errors:
            raise ValidationError(errors)
        user = await registrar.register(
            first_name=request.first_name,
            last_name=request.last_name,
            display_name=request.display_name,
            username=request.username,
            email=request.email,
            password=request.password,
        )
        return {
            "success": True,
            "message": f"Account created and linked to {default_group}",
            "user": {"id": user.user_id, "username": user.identifier},
        }

    @app.post("/auth/login")
    async def login(request: LoginRequest) -> Dict[str, Any]:
        if not request.username or not request.password:
            raise ValidationError(["Username and password are required"])
        user = await authenticator.login(request.username, request.password)
        return {
            "success": True,
            "message": "Login successful",
            "user": {"username": user.identifier},
        }

    @app.post("/auth/forgot-password")
    async def forgot_password(request: ForgotPasswordRequest) -> Dict[str, Any]:
        if not request.email:
            raise ValidationError(["Email is required"])
        outcome = await reset_manager.request_reset(request.email)
        payload: Dict[str, Any] = {"success": True, "message": FORGOT_PASSWORD_MESSAGE}
        if expose_reset_url and outcome.matched and outcome.reset_url:
            payload["reset_url"] = outcome.reset_url
        return payload

    @app.post("/auth/reset-password")
    async def reset_password(request: ResetPasswordRequest) -> Dict[str, Any]:
        errors = request.problems()
        if errors:
            raise ValidationError(errors)
        await reset_manager.consume_reset(request.token, request.password)
        return {"success": True, "message": RESET_PASSWORD_MESSAGE}


def register_health_routes(app: FastAPI, monitor: HealthMonitor) -> None:
    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        snapshot = monitor.snapshot()
        if snapshot["status"] == "unknown":
            await monitor.run_checks()
            snapshot = monitor.snapshot()
        code = status.HTTP_503_SERVICE_UNAVAILABLE if snapshot["status"] == "degraded" else status.HTTP_200_OK
        return JSONResponse(status_code=code, content=snapshot)


def create_app(
    *,
    settings: Optional[Settings] = None,
    store: Optional[RecordStore] = None,
    directory: Optional[DirectoryGateway] = None,
    notifier: Optional[Notifier] = None,
    hasher: Optional[CredentialHasher] = None,
    start_health_monitor: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application for the identity service."""

    config = settings or load_settings()
    record_store = store or RecordStore(config.database)
    record_store.initialize()
    gateway = directory or DirectoryGateway(config.directory)
    credential_hasher = hasher or CredentialHasher(config.hashing)
    outbound = notifier or build_notifier(config.mail)

    if not config.directory.has_service_credentials:
        logger.warning(
            "Directory bind credentials are not configured; registration and password reset will fail"
        )
    if config.reset.expose_reset_url:
        logger.warning("Reset URLs are returned in API responses. Only enable this for local development.")

    registrar = IdentityRegistrar(record_store, gateway, credential_hasher)
    authenticator = Authenticator(record_store, gateway)
    reset_manager = ResetTokenManager(
        record_store,
        gateway,
        credential_hasher,
        outbound,
        reset_base_url=config.reset.base_url,
        client_origins=config.client_origins,
        token_ttl=config.reset.token_ttl,
    )
    monitor = HealthMonitor(
        {"database": record_store.ping, "directory": gateway.bind_as_service},
        interval=config.health_check_interval,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if start_health_monitor:
            await monitor.start()
        try:
            yield
        finally:
            await monitor.stop()

    app = FastAPI(
        title="Identity Service",
        version="0.1.0",
        description="Registration, login and password reset across the user database and the directory.",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.client_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = config
    app.state.store = record_store
    app.state.directory = gateway
    app.state.registrar = registrar
    app.state.authenticator = authenticator
    app.state.reset_manager = reset_manager
    app.state.health_monitor = monitor

    @app.exception_handler(IdentityError)
    async def handle_identity_error(_: Request, exc: IdentityError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed with %s: %s", exc.kind, exc.message)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_: Request, exc: RequestValidationError) -> JSONResponse:
        messages = [_describe_validation_error(error) for error in exc.errors()]
        return _error_response(ValidationError(messages or ["Invalid request"]))

    register_auth_routes(
        app,
        registrar=registrar,
        authenticator=authenticator,
        reset_manager=reset_manager,
        default_group=config.directory.default_group_cn,
        expose_reset_url=config.reset.expose_reset_url,
    )
    register_health_routes(app, monitor)
    return app


__all__ = ["create_app", "register_auth_routes", "register_health_routes"]
