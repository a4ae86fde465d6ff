from __future__ import annotations

from flask import Flask

from clashub.common.auth import KV_STORE_EXTENSION
from clashub.common.io import KVStore


def create_app(store: KVStore | None = None) -> Flask:
    """Return the application, optionally bound to a caller-provided KV store."""
    from clashub_server import app as server_app

    if store is not None:
        server_app.extensions[KV_STORE_EXTENSION] = store
    return server_app
