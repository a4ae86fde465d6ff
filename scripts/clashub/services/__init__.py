"""Service layer: record storage, token auth, YAML handling and outbound relays."""

from .auth_service import (
    AuthService,
    extract_token_from_cookie,
    extract_token_from_query,
    generate_clear_token_cookie,
    generate_token_cookie,
    get_token_from_request,
)
from .kv_service import Config, Fetcher, KVService, ProxyProvider, RecordCollection
from .relay_service import RelayResult, RelayService, build_target_url
from .yaml_service import extract_proxies, format_yaml, parse_yaml, stringify_yaml, validate_yaml

__all__ = [
    "AuthService",
    "Config",
    "Fetcher",
    "KVService",
    "ProxyProvider",
    "RecordCollection",
    "RelayResult",
    "RelayService",
    "build_target_url",
    "extract_proxies",
    "extract_token_from_cookie",
    "extract_token_from_query",
    "format_yaml",
    "generate_clear_token_cookie",
    "generate_token_cookie",
    "get_token_from_request",
    "parse_yaml",
    "stringify_yaml",
    "validate_yaml",
]
