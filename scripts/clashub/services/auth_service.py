from __future__ import annotations

from typing import Callable, Mapping

from ..common.errors import AlreadyInitializedError, InvalidCurrentTokenError, InvalidTokenError
from .kv_service import KVService

TOKEN_COOKIE_NAME = "token"
DEFAULT_COOKIE_MAX_AGE = 60 * 60 * 24 * 30


class AuthService:
    def __init__(
        self,
        kv_service: KVService,
        *,
        min_token_length: int = 6,
        emit_log: Callable[..., None] | None = None,
    ) -> None:
        self.kv_service = kv_service
        self.min_token_length = min_token_length
        self.emit_log = emit_log

    def verify_token(self, token) -> bool:
        if not token or not isinstance(token, str):
            return False
        try:
            return self.kv_service.verify_token(token)
        except Exception as exc:
            if self.emit_log:
                self.emit_log(f"token verification failed: {exc}", "WARN")
            return False

    def set_token(self, token) -> None:
        if not token or not isinstance(token, str) or len(token) < self.min_token_length:
            raise InvalidTokenError(f"Token must be at least {self.min_token_length} characters")
        self.kv_service.set_auth_token(token)

    def has_token(self) -> bool:
        return self.kv_service.has_auth_token()

    def change_token(self, current_token: str, new_token: str) -> None:
        # Equality of old and new token is left to the caller.
        if not self.verify_token(current_token):
            raise InvalidCurrentTokenError("Current token is incorrect")
        self.set_token(new_token)
        if self.emit_log:
            self.emit_log("auth token changed", "SUCCESS")

    def initialize_token(self, token: str) -> None:
        if self.has_token():
            raise AlreadyInitializedError("Token has already been initialized")
        self.set_token(token)
        if self.emit_log:
            self.emit_log("auth token initialized", "SUCCESS")


def extract_token_from_cookie(cookie: str | None) -> str | None:
    if not cookie:
        return None

    cookies: dict[str, str] = {}
    for pair in cookie.split(";"):
        key, _, value = pair.strip().partition("=")
        cookies[key] = value
    return cookies.get(TOKEN_COOKIE_NAME) or None


def extract_token_from_query(args: Mapping[str, str]) -> str | None:
    return args.get(TOKEN_COOKIE_NAME) or None


def generate_token_cookie(token: str, max_age: int = DEFAULT_COOKIE_MAX_AGE) -> str:
    return f"{TOKEN_COOKIE_NAME}={token}; HttpOnly; Path=/; Max-Age={max_age}; SameSite=Strict"


def generate_clear_token_cookie() -> str:
    return f"{TOKEN_COOKIE_NAME}=; HttpOnly; Path=/; Max-Age=0; SameSite=Strict"


def get_token_from_request(args: Mapping[str, str], cookie: str | None) -> str | None:
    """Query parameter first so a bookmarked ``?token=`` link overrides the session cookie."""
    return extract_token_from_query(args) or extract_token_from_cookie(cookie)
