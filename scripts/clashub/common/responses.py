from __future__ import annotations

from flask import Response, redirect

TEXT_PLAIN = "text/plain; charset=utf-8"


def text_response(body: str, status: int = 200, headers: dict | None = None) -> Response:
    response = Response(body, status=status, content_type=TEXT_PLAIN)
    for key, value in (headers or {}).items():
        response.headers[key] = value
    return response


def text_error(message: str, status: int = 400) -> Response:
    return text_response(message, status)


def redirect_with_cookie(location: str, cookie: str) -> Response:
    response = redirect(location)
    response.headers.add("Set-Cookie", cookie)
    return response
