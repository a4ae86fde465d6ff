from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Callable, TypeVar

from flask import abort, current_app, g, redirect, request

from ..services.auth_service import AuthService, get_token_from_request
from ..services.kv_service import KVService
from .config import get_config
from .logging import emit_log
from .responses import text_error

KV_STORE_EXTENSION = "clashub.kv_store"
Fn = TypeVar("Fn", bound=Callable)


@dataclass(frozen=True)
class AuthStatus:
    is_authenticated: bool
    token: str | None
    needs_setup: bool


def get_kv_service() -> KVService:
    store = current_app.extensions.get(KV_STORE_EXTENSION)
    if store is None:
        raise RuntimeError("KV store is not configured")
    return KVService(store)


def get_auth_service() -> AuthService:
    return AuthService(
        get_kv_service(),
        min_token_length=get_config().constants.min_token_length,
        emit_log=emit_log,
    )


def request_token() -> str | None:
    return get_token_from_request(request.args, request.headers.get("Cookie"))


def require_page_auth() -> str:
    auth_service = get_auth_service()

    if not auth_service.has_token():
        abort(redirect("/login?setup=true"))

    token = request_token()
    if not token:
        abort(redirect("/login"))

    if not auth_service.verify_token(token):
        abort(redirect("/login?error=invalid"))

    return token


def optional_auth() -> AuthStatus:
    try:
        auth_service = get_auth_service()
        if not auth_service.has_token():
            return AuthStatus(is_authenticated=False, token=None, needs_setup=True)

        token = request_token()
        if not token:
            return AuthStatus(is_authenticated=False, token=None, needs_setup=False)

        is_valid = auth_service.verify_token(token)
        return AuthStatus(is_authenticated=is_valid, token=token if is_valid else None, needs_setup=False)
    except Exception as exc:
        emit_log(f"optional auth check failed: {exc}", "WARN")
        return AuthStatus(is_authenticated=False, token=None, needs_setup=False)


def require_api_auth() -> str:
    # Query string only; cookies are not read here.
    token = request.args.get("token")
    if not token:
        abort(text_error("Unauthorized: Missing token", 401))

    if not get_auth_service().verify_token(token):
        abort(text_error("Unauthorized: Invalid token", 401))

    return token


def page_auth_required(fn: Fn) -> Fn:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        g.auth_token = require_page_auth()
        return fn(*args, **kwargs)

    return wrapper  # type: ignore[return-value]


def api_auth_required(fn: Fn) -> Fn:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        g.auth_token = require_api_auth()
        return fn(*args, **kwargs)

    return wrapper  # type: ignore[return-value]
