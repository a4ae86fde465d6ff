from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from ..common.errors import RelayConnectionError, UpstreamError
from .kv_service import Fetcher, ProxyProvider
from .yaml_service import extract_proxies

# Never copied from the inbound request to the upstream target.
_DROPPED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "cookie",
        "content-length",
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "user-agent",
        "x-forwarded-for",
        "x-real-ip",
    }
)
_BODYLESS_METHODS = frozenset({"GET", "HEAD"})


@dataclass
class RelayResult:
    status_code: int
    reason: str
    target_url: str
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def build_target_url(base_url: str, params: Iterable[tuple[str, str]]) -> str:
    """Append inbound query parameters, minus ``token``, to the stored target URL.

    An inbound parameter replaces every same-named parameter already present on the
    stored URL. Repeated inbound parameters are kept in order.
    """
    forwarded = [(key, value) for key, value in params if key != "token"]
    if not forwarded:
        return base_url

    parts = urlsplit(base_url)
    overridden = {key for key, _ in forwarded}
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in overridden
    ]
    query.extend(forwarded)
    return urlunsplit(parts._replace(query=urlencode(query, doseq=True)))


class RelayService:
    def __init__(
        self,
        *,
        subscription_user_agent: str,
        fetcher_user_agent: str,
        client_ip_header: str,
        allowed_response_headers: Iterable[str],
        timeout: float | None,
        emit_log: Callable[..., None],
    ) -> None:
        self.subscription_user_agent = subscription_user_agent
        self.fetcher_user_agent = fetcher_user_agent
        self.client_ip_header = client_ip_header
        self.allowed_response_headers = tuple(name.lower() for name in allowed_response_headers)
        self.timeout = timeout
        self.emit_log = emit_log

    def fetch_provider_proxies(self, provider: ProxyProvider) -> str:
        """Fetch a Clash subscription and keep only its ``proxies`` block.

        Raises ``RelayConnectionError`` when the upstream cannot be reached,
        ``UpstreamError`` for a non-2xx answer and ``FormatError`` when the body is
        not a Clash config with a proxies list.
        """
        try:
            response = requests.get(
                provider.subscription_url,
                headers={"User-Agent": self.subscription_user_agent},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            self.emit_log(f"subscription fetch failed [{provider.id}]: {exc}", "WARN")
            raise RelayConnectionError(str(exc)) from exc

        if not 200 <= response.status_code < 300:
            self.emit_log(
                f"subscription fetch failed [{provider.id}]: {response.status_code} {response.reason}",
                "WARN",
            )
            raise UpstreamError(response.status_code, response.reason or "")

        return extract_proxies(response.content.decode("utf-8", errors="replace"))

    def build_forward_headers(self, inbound_headers: Mapping[str, str]) -> dict[str, str]:
        client_ip_header = self.client_ip_header.lower()
        headers: dict[str, str] = {}
        for key, value in inbound_headers.items():
            lowered = key.lower()
            if lowered in _DROPPED_REQUEST_HEADERS or lowered == client_ip_header:
                continue
            headers[key] = value

        if not any(key.lower() == "accept-encoding" for key in headers):
            # The body is relayed undecoded, so only ask for what the caller accepts.
            headers["Accept-Encoding"] = "identity"

        client_ip = ""
        for key, value in inbound_headers.items():
            if key.lower() == client_ip_header:
                client_ip = str(value or "").strip()
                break
        client_ip = client_ip or "unknown"

        headers["User-Agent"] = self.fetcher_user_agent
        headers["X-Forwarded-For"] = client_ip
        headers["X-Real-IP"] = client_ip
        return headers

    def relay(
        self,
        fetcher: Fetcher,
        *,
        method: str,
        params: Iterable[tuple[str, str]],
        headers: Mapping[str, str],
        body: bytes | None = None,
    ) -> RelayResult:
        method = method.upper()
        target_url = build_target_url(fetcher.url, params)
        data = body if method not in _BODYLESS_METHODS and body else None

        try:
            response = requests.request(
                method,
                target_url,
                headers=self.build_forward_headers(headers),
                data=data,
                stream=True,
                allow_redirects=True,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            self.emit_log(f"fetcher relay failed [{fetcher.id}] {method} {target_url}: {exc}", "WARN")
            raise RelayConnectionError(str(exc)) from exc

        try:
            payload = b"" if method == "HEAD" else response.raw.read(decode_content=False)
        finally:
            response.close()

        result = RelayResult(
            status_code=response.status_code,
            reason=response.reason or "",
            target_url=target_url,
            body=payload or b"",
        )
        for name in self.allowed_response_headers:
            value = response.headers.get(name)
            if value is not None:
                result.headers[name] = value

        if not result.ok:
            self.emit_log(
                f"fetcher upstream [{fetcher.id}] answered {result.status_code} {result.reason}",
                "WARN",
            )
        return result
