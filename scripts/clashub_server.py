#!/usr/bin/env python3
"""
Clashub: single-user console for Clash subscriptions, config snippets and fetchers.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from flask import Flask, Response, abort, g, jsonify, redirect, render_template, request
from flask_cors import CORS
from requests.utils import requote_uri
from werkzeug.exceptions import HTTPException

from clashub.common.auth import (
    KV_STORE_EXTENSION,
    api_auth_required,
    get_auth_service,
    get_kv_service,
    optional_auth,
    page_auth_required,
    require_api_auth,
)
from clashub.common.config import get_config
from clashub.common.errors import (
    ClashubError,
    FormatError,
    NotFoundError,
    RelayConnectionError,
    UpstreamError,
)
from clashub.common.io import JsonFileKVStore, MemoryKVStore
from clashub.common.logging import emit_log
from clashub.common.responses import redirect_with_cookie, text_error, text_response
from clashub.common.validation import sanitize_id, validate_url
from clashub.services.auth_service import generate_clear_token_cookie, generate_token_cookie
from clashub.services.kv_service import Config, Fetcher, ProxyProvider
from clashub.services.relay_service import RelayResult, RelayService
from clashub.services.yaml_service import format_yaml

cfg = get_config()

# Validate security settings on startup
for warning in cfg.validate_security():
    emit_log(f"[Security] {warning}", "WARN")

app = Flask(__name__, template_folder=str(Path(__file__).resolve().parent / "clashub" / "templates"))
CORS(app, resources={r"/api/*": {"origins": "*"}})

RELAY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]
READ_ONLY_API_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def build_kv_store():
    if cfg.store.backend == "memory":
        return MemoryKVStore()
    return JsonFileKVStore(cfg.store.file_path)


relay_service = RelayService(
    subscription_user_agent=cfg.relay.subscription_user_agent,
    fetcher_user_agent=cfg.relay.fetcher_user_agent,
    client_ip_header=cfg.relay.client_ip_header,
    allowed_response_headers=cfg.constants.relay_response_headers,
    timeout=cfg.relay.request_timeout,
    emit_log=emit_log,
)


def session_cookie(token: str) -> str:
    return generate_token_cookie(token, cfg.auth.session_max_age)


def form_value(name: str) -> str:
    return str(request.form.get(name, "") or "")


def describe_error(exc: Exception, fallback: str) -> str:
    return str(exc) or fallback


# ---------------------------------------------------------------------------
# Health / index
# ---------------------------------------------------------------------------


@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({"success": True, "time": datetime.now().isoformat()})


@app.route("/", methods=["GET"])
def index():
    return redirect("/proxy-providers")


# ---------------------------------------------------------------------------
# Login / logout / settings
# ---------------------------------------------------------------------------


@app.route("/login", methods=["GET"])
def login_page():
    status = optional_auth()
    if status.is_authenticated:
        return redirect("/proxy-providers")

    is_setup = request.args.get("setup") == "true"
    if status.needs_setup and not is_setup:
        return redirect("/login?setup=true")

    error = "Invalid token, please log in again" if request.args.get("error") == "invalid" else None
    return render_template("login.html", show_setup=status.needs_setup and is_setup, error=error)


@app.route("/login", methods=["POST"])
def login_submit():
    token = form_value("token")
    is_setup = form_value("setup") == "true"

    def render_error(message: str):
        return render_template("login.html", show_setup=is_setup, error=message)

    if len(token) < cfg.constants.min_token_length:
        return render_error(f"Token must be at least {cfg.constants.min_token_length} characters")

    auth_service = get_auth_service()
    try:
        if is_setup:
            auth_service.initialize_token(token)
        elif not auth_service.verify_token(token):
            return render_error("Incorrect token")
    except ClashubError as exc:
        return render_error(describe_error(exc, "Login failed"))

    return redirect_with_cookie("/proxy-providers", session_cookie(token))


@app.route("/logout", methods=["GET", "POST"])
def logout():
    return redirect_with_cookie("/login", generate_clear_token_cookie())


@app.route("/settings", methods=["GET"])
@page_auth_required
def settings_page():
    success = "Token changed" if request.args.get("success") == "1" else None
    return render_template("settings.html", success=success, error=None)


@app.route("/settings", methods=["POST"])
@page_auth_required
def settings_submit():
    def render_error(message: str):
        return render_template("settings.html", success=None, error=message)

    if form_value("action") != "change-password":
        return render_error("Invalid action")

    new_token = form_value("newToken")
    confirm_token = form_value("confirmToken")

    if not new_token or not confirm_token:
        return render_error("Please fill in all fields")
    if len(new_token) < cfg.constants.min_token_length:
        return render_error(f"New token must be at least {cfg.constants.min_token_length} characters")
    if new_token != confirm_token:
        return render_error("The two new tokens do not match")
    if new_token == g.auth_token:
        return render_error("New token must differ from the current one")

    try:
        get_auth_service().change_token(g.auth_token, new_token)
    except ClashubError as exc:
        return render_error(describe_error(exc, "Token change failed"))

    # Keep the browser session valid with the new token.
    return redirect_with_cookie("/settings?success=1", session_cookie(new_token))


# ---------------------------------------------------------------------------
# Record pages
# ---------------------------------------------------------------------------


def render_providers(success: str | None = None, error: str | None = None):
    providers = get_kv_service().proxy_providers.list()
    return render_template("proxy_providers.html", providers=providers, success=success, error=error)


@app.route("/proxy-providers", methods=["GET"])
@page_auth_required
def proxy_providers_page():
    return render_providers()


@app.route("/proxy-providers", methods=["POST"])
@page_auth_required
def proxy_providers_submit():
    action = form_value("action")
    collection = get_kv_service().proxy_providers

    try:
        if action in ("add", "edit"):
            raw_id = form_value("id")
            subscription_url = form_value("subscriptionUrl").strip()
            if not raw_id or not subscription_url:
                return render_providers(error="Please fill in all required fields")
            if not validate_url(subscription_url):
                return render_providers(error="Please enter a valid URL")

            saved = collection.save(ProxyProvider(id=sanitize_id(raw_id), subscription_url=subscription_url))
            emit_log(f"proxy provider saved: {saved.id}")
            verb = "added" if action == "add" else "updated"
            return render_providers(success=f'Proxy Provider "{saved.id}" {verb}')

        if action == "delete":
            record_id = form_value("id")
            if not record_id:
                return render_providers(error="ID must not be empty")
            if not collection.delete(record_id):
                return render_providers(error="Proxy Provider does not exist")
            emit_log(f"proxy provider deleted: {record_id}")
            return render_providers(success=f'Proxy Provider "{record_id}" deleted')

        return render_providers(error="Invalid action")
    except ClashubError as exc:
        return render_providers(error=describe_error(exc, "Operation failed"))


def render_fetchers(success: str | None = None, error: str | None = None):
    fetchers = get_kv_service().fetchers.list()
    return render_template("fetchers.html", fetchers=fetchers, success=success, error=error)


@app.route("/fetchers", methods=["GET"])
@page_auth_required
def fetchers_page():
    return render_fetchers()


@app.route("/fetchers", methods=["POST"])
@page_auth_required
def fetchers_submit():
    action = form_value("action")
    collection = get_kv_service().fetchers

    try:
        if action in ("add", "edit"):
            raw_id = form_value("id")
            url = form_value("url").strip()
            if not raw_id or not url:
                return render_fetchers(error="Please fill in all required fields")
            if not validate_url(url):
                return render_fetchers(error="Please enter a valid URL")

            saved = collection.save(Fetcher(id=sanitize_id(raw_id), url=url))
            emit_log(f"fetcher saved: {saved.id}")
            verb = "added" if action == "add" else "updated"
            return render_fetchers(success=f'Fetcher "{saved.id}" {verb}')

        if action == "delete":
            record_id = form_value("id")
            if not record_id:
                return render_fetchers(error="ID must not be empty")
            if not collection.delete(record_id):
                return render_fetchers(error="Fetcher does not exist")
            emit_log(f"fetcher deleted: {record_id}")
            return render_fetchers(success=f'Fetcher "{record_id}" deleted')

        return render_fetchers(error="Invalid action")
    except ClashubError as exc:
        return render_fetchers(error=describe_error(exc, "Operation failed"))


def render_configs(
    selected_id: str = "",
    editor_content: str | None = None,
    success: str | None = None,
    error: str | None = None,
):
    configs = get_kv_service().configs.list()
    selected = next((item for item in configs if item.id == selected_id), None)
    if editor_content is None:
        editor_content = selected.content if selected else ""
    return render_template(
        "configs.html",
        configs=configs,
        selected=selected,
        editor_content=editor_content,
        success=success,
        error=error,
    )


@app.route("/configs", methods=["GET"])
@page_auth_required
def configs_page():
    return render_configs(selected_id=request.args.get("id", ""))


@app.route("/configs", methods=["POST"])
@page_auth_required
def configs_submit():
    action = form_value("action")
    collection = get_kv_service().configs

    try:
        if action == "save":
            raw_id = form_value("id")
            if not raw_id:
                return render_configs(error="Config ID must not be empty")
            saved = collection.save(Config(id=sanitize_id(raw_id), content=form_value("content")))
            emit_log(f"config saved: {saved.id}")
            return render_configs(selected_id=saved.id, success=f'Config "{saved.id}" saved')

        if action == "format":
            raw_id = form_value("id")
            content = form_value("content")
            try:
                formatted = format_yaml(content)
            except FormatError as exc:
                return render_configs(selected_id=raw_id, editor_content=content, error=str(exc))
            return render_configs(selected_id=raw_id, editor_content=formatted, success="YAML formatted, not saved yet")

        if action == "create":
            raw_id = form_value("id")
            if not raw_id:
                return render_configs(error="Config ID must not be empty")
            config_id = sanitize_id(raw_id)
            if collection.get(config_id) is not None:
                return render_configs(error=f'Config "{config_id}" already exists')
            collection.save(Config(id=config_id, content=""))
            emit_log(f"config created: {config_id}")
            return render_configs(success=f'Config "{config_id}" created')

        if action == "delete":
            record_id = form_value("id")
            if not record_id:
                return render_configs(error="Config ID must not be empty")
            if not collection.delete(record_id):
                return render_configs(error="Config does not exist")
            emit_log(f"config deleted: {record_id}")
            return render_configs(success=f'Config "{record_id}" deleted')

        return render_configs(error="Invalid action")
    except ClashubError as exc:
        return render_configs(error=describe_error(exc, "Operation failed"))


# ---------------------------------------------------------------------------
# API v1
# ---------------------------------------------------------------------------


def require_path_id(value: str | None, label: str) -> str:
    if not value:
        abort(text_error(f"{label} ID is required", 400))
    return value


def require_record(collection, record_id: str, label: str):
    record = collection.get(record_id)
    if record is None:
        raise NotFoundError(f'{label} "{record_id}" not found')
    return record


@app.route("/api/v1/proxy-provider/", defaults={"source_id": ""}, methods=READ_ONLY_API_METHODS)
@app.route("/api/v1/proxy-provider/<source_id>", methods=READ_ONLY_API_METHODS)
def api_proxy_provider(source_id: str):
    if request.method != "GET":
        return text_error("Method not allowed", 405)
    require_api_auth()

    source_id = require_path_id(source_id, "Source")
    try:
        provider = require_record(get_kv_service().proxy_providers, source_id, "Proxy Provider")
        proxies_yaml = relay_service.fetch_provider_proxies(provider)
        return text_response(
            proxies_yaml,
            headers={
                "Cache-Control": "public, max-age=300",
                "X-Source-Id": source_id,
            },
        )
    except HTTPException:
        raise
    except NotFoundError as exc:
        return text_error(str(exc), 404)
    except UpstreamError as exc:
        return text_error(f"Failed to fetch subscription: {exc.status} {exc.reason}".rstrip(), 502)
    except RelayConnectionError as exc:
        return text_error(f"Bad Gateway: {exc}", 502)
    except Exception as exc:
        emit_log(f"API Error [{source_id}]: {exc}", "ERROR")
        return text_error(f"Internal server error: {describe_error(exc, 'Unknown error')}", 500)


@app.route("/api/v1/config/", defaults={"config_id": ""}, methods=READ_ONLY_API_METHODS)
@app.route("/api/v1/config/<config_id>", methods=READ_ONLY_API_METHODS)
def api_config(config_id: str):
    if request.method != "GET":
        return text_error("Method not allowed", 405)
    require_api_auth()

    config_id = require_path_id(config_id, "Config")
    try:
        config = require_record(get_kv_service().configs, config_id, "Config")
        return text_response(
            config.content,
            headers={
                "Cache-Control": "public, max-age=60",
                "X-Config-Id": config_id,
                "X-Last-Modified": config.updated_at,
            },
        )
    except HTTPException:
        raise
    except NotFoundError as exc:
        return text_error(str(exc), 404)
    except Exception as exc:
        emit_log(f"Config API Error [{config_id}]: {exc}", "ERROR")
        return text_error(f"Internal server error: {describe_error(exc, 'Unknown error')}", 500)


def relay_response(fetcher_id: str, result: RelayResult) -> Response:
    status = f"{result.status_code} {result.reason}" if result.reason else result.status_code
    response = Response(result.body, status=status)
    del response.headers["Content-Type"]
    for key, value in result.headers.items():
        response.headers[key] = value
    response.headers["X-Fetcher-Id"] = fetcher_id
    response.headers["X-Target-Url"] = requote_uri(result.target_url)
    response.headers["X-Proxy-Status"] = str(result.status_code)
    if not result.ok:
        response.headers["X-Proxy-Error"] = f"Upstream returned {result.status_code} {result.reason}".rstrip()
    return response


@app.route("/api/v1/fetcher/", defaults={"fetcher_id": ""}, methods=RELAY_METHODS)
@app.route("/api/v1/fetcher/<fetcher_id>", methods=RELAY_METHODS)
@api_auth_required
def api_fetcher(fetcher_id: str):
    fetcher_id = require_path_id(fetcher_id, "Fetcher")
    try:
        fetcher = require_record(get_kv_service().fetchers, fetcher_id, "Fetcher")
        result = relay_service.relay(
            fetcher,
            method=request.method,
            params=request.args.items(multi=True),
            headers=request.headers,
            body=request.get_data(),
        )
        return relay_response(fetcher_id, result)
    except HTTPException:
        raise
    except NotFoundError as exc:
        return text_error(str(exc), 404)
    except RelayConnectionError as exc:
        return text_error(f"Bad Gateway: {exc}", 502)
    except Exception as exc:
        emit_log(f"Fetcher API Error [{fetcher_id}]: {exc}", "ERROR")
        return text_error(f"Error fetching data: {describe_error(exc, 'Unknown error')}", 500)


def start_runtime_services() -> None:
    if KV_STORE_EXTENSION in app.extensions:
        return
    app.extensions[KV_STORE_EXTENSION] = build_kv_store()
    where = f" at {cfg.store.file_path}" if cfg.store.is_persistent else ""
    emit_log(f"kv store backend: {cfg.store.backend}{where}")


# Gunicorn imports `clashub_server:app` directly, so init must happen outside __main__.
start_runtime_services()


def main() -> None:
    emit_log(f"clashub starting on {cfg.server.host}:{cfg.server.port}")
    app.run(host=cfg.server.host, port=cfg.server.port, debug=cfg.server.debug)


if __name__ == "__main__":
    main()
