"""
pipeline.py — Per-endpoint request pipeline
===========================================
Turns a declarative ``RoutePolicy`` into one FastAPI endpoint that runs

    rate limit -> authenticate -> admin check -> connect -> parse body
    -> handler -> format response

as an ordered list of stages. Every stage has the same contract: it
receives ``(request, ctx)`` and returns ``None`` to continue or a
``Response`` to short-circuit. Stages may also raise ``ApiError``, which
becomes ``{"error": message}`` with the error's status. Any other
exception is logged with its stack trace and answered with a 500 whose
message is generic outside development, and so is a 5xx ``ApiError``.

Usage:

    router.add_api_route("/me", create_api_handler(RoutePolicy(
        rate_limit="read",
        require_auth=True,
        handler=me,
    )), methods=["GET"])

``X-RateLimit-Remaining`` is set on every response produced after a
limiter ran, whichever stage produced it.
"""
from __future__ import annotations

import inspect
import json
import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Type, Union

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..auth.dependencies import authenticate_request, require_admin
from ..auth.tokens import get_token_from_request
from ..database import db_session
from ..errors import ApiError, ServerError, ValidationFailed, get_safe_error_message, log_error
from ..models import User
from ..security import SecurityServices
from ..security.rate_limiter import REMAINING_HEADER, RateLimitPolicy, create_rate_limit_middleware

logger = logging.getLogger("response_ready.pipeline")

GENERIC_ERROR = "An error occurred. Please try again later."


@dataclass
class HandlerContext:
    """Everything a handler learns about the request from the earlier stages."""

    request: Request
    security: SecurityServices
    user_id: str = ""
    is_admin: bool = False
    email: Optional[str] = None
    account: Optional[User] = None
    rate_limit_remaining: Optional[int] = None
    body: Any = None
    _stack: Optional[ExitStack] = field(default=None, repr=False)
    _db: Optional[Session] = field(default=None, repr=False)

    @property
    def db(self) -> Session:
        """The request's database session, opened on first use and at most once."""
        if self._db is None:
            if self._stack is None:
                raise ServerError("Database session requested outside the request scope.")
            self._db = self._stack.enter_context(db_session())
        return self._db


Handler = Callable[[Request, HandlerContext], Any]
Stage = Callable[[Request, HandlerContext], Awaitable[Optional[Response]]]


@dataclass
class RoutePolicy:
    handler: Handler
    rate_limit: Optional[Union[str, RateLimitPolicy]] = None
    require_auth: bool = False
    require_admin: bool = False
    check_active: bool = True
    needs_db: bool = True
    body: Optional[Type[BaseModel]] = None
    success_status: int = 200
    error_context: str = "API handler"


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def rate_limit_stage(limit: Union[str, RateLimitPolicy]) -> Stage:
    async def stage(request: Request, ctx: HandlerContext) -> Optional[Response]:
        security = ctx.security
        policy = security.resolve_policy(limit)
        check = create_rate_limit_middleware(security.rate_limiter, policy, security.clock)
        # A caller presenting a valid access token is counted per account.
        claims = security.tokens.verify_token(get_token_from_request(request))
        outcome = check(request, claims.user_id if claims else None)
        ctx.rate_limit_remaining = outcome.remaining
        if not outcome.allowed:
            return outcome.response
        return None

    return stage


def auth_stage(check_active: bool) -> Stage:
    async def stage(request: Request, ctx: HandlerContext) -> Optional[Response]:
        authenticate_request(request, ctx, check_active=check_active)
        return None

    return stage


async def admin_stage(request: Request, ctx: HandlerContext) -> Optional[Response]:
    require_admin(ctx)
    return None


async def connect_stage(request: Request, ctx: HandlerContext) -> Optional[Response]:
    _ = ctx.db  # opens the request's session
    return None


def body_stage(model: Type[BaseModel]) -> Stage:
    invalid_message = getattr(model, "invalid_message", "Invalid request body")

    async def stage(request: Request, ctx: HandlerContext) -> Optional[Response]:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationFailed("Invalid JSON body")
        if not isinstance(payload, dict):
            raise ValidationFailed(invalid_message)
        try:
            ctx.body = model.model_validate(payload)
        except ValidationError:
            raise ValidationFailed(invalid_message)
        return None

    return stage


def build_stages(policy: RoutePolicy) -> List[Stage]:
    stages: List[Stage] = []
    if policy.rate_limit is not None:
        stages.append(rate_limit_stage(policy.rate_limit))
    if policy.require_auth or policy.require_admin:
        # Admin routes always re-read the account for the current privilege.
        stages.append(auth_stage(policy.check_active or policy.require_admin))
    if policy.require_admin:
        stages.append(admin_stage)
    if policy.needs_db:
        stages.append(connect_stage)
    if policy.body is not None:
        stages.append(body_stage(policy.body))
    return stages


# ---------------------------------------------------------------------------
# Response formatting
# ---------------------------------------------------------------------------

def error_response(exc: ApiError) -> JSONResponse:
    message = exc.message
    if exc.status_code >= 500:
        message = get_safe_error_message(exc, GENERIC_ERROR)
    return JSONResponse(status_code=exc.status_code, content={"error": message})


def format_result(result: Any, status_code: int = 200) -> Response:
    if isinstance(result, Response):
        return result
    if isinstance(result, BaseModel):
        result = result.model_dump(by_alias=True)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))


async def _call_handler(handler: Handler, request: Request, ctx: HandlerContext) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(request, ctx)
    return await run_in_threadpool(handler, request, ctx)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def create_api_handler(policy: RoutePolicy) -> Callable[[Request], Awaitable[Response]]:
    stages = build_stages(policy)

    async def endpoint(request: Request) -> Response:
        ctx = HandlerContext(request=request, security=request.app.state.security)
        try:
            with ExitStack() as stack:
                ctx._stack = stack
                response: Optional[Response] = None
                for stage in stages:
                    response = await stage(request, ctx)
                    if response is not None:
                        break
                if response is None:
                    result = await _call_handler(policy.handler, request, ctx)
                    response = format_result(result, policy.success_status)
        except ApiError as exc:
            if exc.status_code >= 500:
                log_error(policy.error_context, exc, method=request.method, path=request.url.path)
            response = error_response(exc)
        except Exception as exc:
            log_error(policy.error_context, exc, method=request.method, path=request.url.path)
            response = JSONResponse(
                status_code=500,
                content={"error": get_safe_error_message(exc, GENERIC_ERROR)},
            )
        finally:
            ctx._stack = None

        if ctx.rate_limit_remaining is not None:
            response.headers[REMAINING_HEADER] = str(ctx.rate_limit_remaining)
        return response

    endpoint.__name__ = getattr(policy.handler, "__name__", "endpoint")
    endpoint.__doc__ = policy.handler.__doc__
    return endpoint
