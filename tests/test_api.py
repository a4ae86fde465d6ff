"""
/api/v1 endpoint tests: query-token auth, config serving and both relays.
"""

from unittest.mock import patch

import pytest
import requests
import yaml

from clashub.common.logging import clear_logs, get_recent_logs
from clashub.services.kv_service import Config, Fetcher, KVService, ProxyProvider
from conftest import TOKEN, FakeUpstream


@pytest.fixture
def records(authed_store):
    service = KVService(authed_store)
    service.configs.save(Config(id="base", content="mixed-port: 7890\n"))
    service.proxy_providers.save(ProxyProvider(id="my-sub", subscription_url="https://sub.example/clash"))
    service.fetchers.save(Fetcher(id="my-fetch", url="https://example.com/data"))
    return service


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["success"] is True


# =============================================================================
# Auth
# =============================================================================


def test_api_rejects_missing_token_even_with_cookie(client, records):
    client.set_cookie("token", TOKEN)
    response = client.get("/api/v1/config/base")

    assert response.status_code == 401
    assert response.get_data(as_text=True) == "Unauthorized: Missing token"
    assert response.headers["Content-Type"] == "text/plain; charset=utf-8"


def test_api_rejects_invalid_token(client, records):
    response = client.get("/api/v1/config/base?token=wrong-token")
    assert response.status_code == 401
    assert response.get_data(as_text=True) == "Unauthorized: Invalid token"


def test_api_rejects_when_no_token_initialized(client, store):
    response = client.get("/api/v1/fetcher/my-fetch?token=anything")
    assert response.status_code == 401


# =============================================================================
# Config
# =============================================================================


def test_config_served_verbatim(client, records):
    response = client.get(f"/api/v1/config/base?token={TOKEN}")
    saved = records.configs.get("base")

    assert response.status_code == 200
    assert response.get_data(as_text=True) == "mixed-port: 7890\n"
    assert response.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert response.headers["Cache-Control"] == "public, max-age=60"
    assert response.headers["X-Config-Id"] == "base"
    assert response.headers["X-Last-Modified"] == saved.updated_at


def test_config_not_found(client, records):
    response = client.get(f"/api/v1/config/nope?token={TOKEN}")
    assert response.status_code == 404
    assert response.get_data(as_text=True) == 'Config "nope" not found'


def test_config_missing_id(client, records):
    response = client.get(f"/api/v1/config/?token={TOKEN}")
    assert response.status_code == 400
    assert response.get_data(as_text=True) == "Config ID is required"


@pytest.mark.parametrize("method", ["post", "put", "patch", "delete"])
def test_read_only_routes_reject_writes(client, records, method):
    for path in ("/api/v1/config/base", "/api/v1/proxy-provider/my-sub"):
        response = getattr(client, method)(f"{path}?token={TOKEN}")
        assert response.status_code == 405
        assert response.get_data(as_text=True) == "Method not allowed"


def test_cors_on_api_routes(client, records):
    response = client.get(f"/api/v1/config/base?token={TOKEN}", headers={"Origin": "https://dash.example"})
    assert response.headers["Access-Control-Allow-Origin"] == "*"


# =============================================================================
# Proxy provider (filtered relay)
# =============================================================================


def test_proxy_provider_filters_subscription(client, records):
    body = b"proxies:\n  - {name: a, type: ss, server: x, port: 1}\nother: ignored\n"
    with patch("requests.get", return_value=FakeUpstream(body=body)) as mocked:
        response = client.get(f"/api/v1/proxy-provider/my-sub?token={TOKEN}")

    assert mocked.call_args.args == ("https://sub.example/clash",)
    assert mocked.call_args.kwargs["headers"] == {"User-Agent": "Clashub/1.0"}
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert response.headers["Cache-Control"] == "public, max-age=300"
    assert response.headers["X-Source-Id"] == "my-sub"
    assert yaml.safe_load(response.get_data(as_text=True)) == {
        "proxies": [{"name": "a", "type": "ss", "server": "x", "port": 1}]
    }


def test_proxy_provider_not_found(client, records):
    response = client.get(f"/api/v1/proxy-provider/nope?token={TOKEN}")
    assert response.status_code == 404
    assert response.get_data(as_text=True) == 'Proxy Provider "nope" not found'


def test_proxy_provider_upstream_error(client, records):
    upstream = FakeUpstream(status_code=500, reason="Internal Server Error")
    with patch("requests.get", return_value=upstream):
        response = client.get(f"/api/v1/proxy-provider/my-sub?token={TOKEN}")

    assert response.status_code == 502
    assert response.get_data(as_text=True) == "Failed to fetch subscription: 500 Internal Server Error"


def test_proxy_provider_connection_error(client, records):
    with patch("requests.get", side_effect=requests.ConnectionError("connection refused")):
        response = client.get(f"/api/v1/proxy-provider/my-sub?token={TOKEN}")

    assert response.status_code == 502
    assert response.get_data(as_text=True).startswith("Bad Gateway:")


def test_proxy_provider_bad_document_is_logged(client, records):
    clear_logs()
    with patch("requests.get", return_value=FakeUpstream(body=b"port: 7890\n")):
        response = client.get(f"/api/v1/proxy-provider/my-sub?token={TOKEN}")

    assert response.status_code == 500
    assert response.get_data(as_text=True).startswith("Internal server error: ")
    errors = get_recent_logs(level="ERROR")
    assert errors and "my-sub" in errors[-1]["msg"]


# =============================================================================
# Fetcher (pass-through relay)
# =============================================================================


def test_fetcher_strips_token_and_relays(client, records):
    upstream = FakeUpstream(
        body=b'{"ok": true}',
        headers={"Content-Type": "application/json", "ETag": '"v1"', "Server": "nginx", "Set-Cookie": "sid=1"},
    )
    with patch("requests.request", return_value=upstream) as mocked:
        response = client.get(f"/api/v1/fetcher/my-fetch?token={TOKEN}&q=1")

    args, kwargs = mocked.call_args
    assert args == ("GET", "https://example.com/data?q=1")
    assert TOKEN not in args[1]
    assert kwargs["headers"]["User-Agent"] == "Clashub-Fetcher/1.0"
    assert kwargs["headers"]["X-Forwarded-For"] == "unknown"
    assert "Cookie" not in kwargs["headers"]

    assert response.status_code == 200
    assert response.get_data() == b'{"ok": true}'
    assert response.headers["Content-Type"] == "application/json"
    assert response.headers["ETag"] == '"v1"'
    assert "Server" not in response.headers
    assert "Set-Cookie" not in response.headers
    assert response.headers["X-Fetcher-Id"] == "my-fetch"
    assert response.headers["X-Target-Url"] == "https://example.com/data?q=1"
    assert response.headers["X-Proxy-Status"] == "200"
    assert "X-Proxy-Error" not in response.headers


def test_fetcher_target_url_header_is_percent_encoded(client, records):
    records.fetchers.save(Fetcher(id="cjk", url="https://example.com/数据"))
    with patch("requests.request", return_value=FakeUpstream(body=b"ok")):
        response = client.get(f"/api/v1/fetcher/cjk?token={TOKEN}")

    target = response.headers["X-Target-Url"]
    assert response.status_code == 200
    assert target == "https://example.com/%E6%95%B0%E6%8D%AE"
    target.encode("latin-1")


def test_fetcher_forwards_client_ip(client, records):
    with patch("requests.request", return_value=FakeUpstream()) as mocked:
        client.get(f"/api/v1/fetcher/my-fetch?token={TOKEN}", headers={"CF-Connecting-IP": "198.51.100.7"})

    headers = mocked.call_args.kwargs["headers"]
    assert headers["X-Forwarded-For"] == "198.51.100.7"
    assert headers["X-Real-IP"] == "198.51.100.7"
    assert "CF-Connecting-IP" not in headers


def test_fetcher_preserves_method_and_body(client, records):
    upstream = FakeUpstream(status_code=201, reason="Created", body=b"made")
    with patch("requests.request", return_value=upstream) as mocked:
        response = client.post(
            f"/api/v1/fetcher/my-fetch?token={TOKEN}",
            data=b"payload",
            content_type="application/octet-stream",
        )

    assert mocked.call_args.args[0] == "POST"
    assert mocked.call_args.kwargs["data"] == b"payload"
    assert response.status == "201 Created"
    assert response.get_data() == b"made"


def test_fetcher_relays_upstream_errors_verbatim(client, records):
    upstream = FakeUpstream(status_code=599, reason="Custom Failure", body=b"upstream said no")
    with patch("requests.request", return_value=upstream):
        response = client.get(f"/api/v1/fetcher/my-fetch?token={TOKEN}")

    assert response.status == "599 Custom Failure"
    assert response.get_data() == b"upstream said no"
    assert response.headers["X-Proxy-Status"] == "599"
    assert response.headers["X-Proxy-Error"] == "Upstream returned 599 Custom Failure"


def test_fetcher_connection_error_is_bad_gateway(client, records):
    with patch("requests.request", side_effect=requests.ConnectionError("name resolution failed")):
        response = client.get(f"/api/v1/fetcher/my-fetch?token={TOKEN}")

    assert response.status_code == 502
    assert response.get_data(as_text=True) == "Bad Gateway: name resolution failed"


def test_fetcher_unexpected_error_is_internal(client, records):
    clear_logs()
    with patch("requests.request", side_effect=ValueError("boom")):
        response = client.get(f"/api/v1/fetcher/my-fetch?token={TOKEN}")

    assert response.status_code == 500
    assert response.get_data(as_text=True) == "Error fetching data: boom"
    assert get_recent_logs(level="ERROR")


def test_fetcher_not_found(client, records):
    clear_logs()
    with patch("requests.request") as mocked:
        response = client.get(f"/api/v1/fetcher/nope?token={TOKEN}")

    assert response.status_code == 404
    assert response.get_data(as_text=True) == 'Fetcher "nope" not found'
    mocked.assert_not_called()
    assert get_recent_logs(level="ERROR") == []


def test_fetcher_requires_query_token(client, records):
    client.set_cookie("token", TOKEN)
    with patch("requests.request") as mocked:
        response = client.get("/api/v1/fetcher/my-fetch")

    assert response.status_code == 401
    mocked.assert_not_called()
