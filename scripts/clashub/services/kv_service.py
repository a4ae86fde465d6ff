from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Generic, TypeVar

from ..common.io import KVStore

AUTH_TOKEN_KEY = "auth:token"
PROXY_PROVIDERS_KEY = "proxy-providers"
CONFIGS_KEY = "configs"
FETCHERS_KEY = "fetchers"


def utc_now_iso() -> str:
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


@dataclass(frozen=True)
class ProxyProvider:
    id: str
    subscription_url: str
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscriptionUrl": self.subscription_url,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProxyProvider":
        return cls(
            id=str(data["id"]),
            subscription_url=str(data.get("subscriptionUrl", "")),
            created_at=str(data.get("createdAt", "")),
            updated_at=str(data.get("updatedAt", "")),
        )


@dataclass(frozen=True)
class Config:
    id: str
    content: str = ""
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        return cls(
            id=str(data["id"]),
            content=str(data.get("content") or ""),
            created_at=str(data.get("createdAt", "")),
            updated_at=str(data.get("updatedAt", "")),
        )


@dataclass(frozen=True)
class Fetcher:
    id: str
    url: str
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Fetcher":
        return cls(
            id=str(data["id"]),
            url=str(data.get("url", "")),
            created_at=str(data.get("createdAt", "")),
            updated_at=str(data.get("updatedAt", "")),
        )


Record = TypeVar("Record", ProxyProvider, Config, Fetcher)


class RecordCollection(Generic[Record]):
    """One record kind stored as a single JSON array under one key.

    Every save/delete reads and rewrites the whole array. There is no locking
    around that cycle, so two concurrent writers can lose an update.
    """

    def __init__(
        self,
        *,
        store: KVStore,
        key: str,
        record_type: type[Record],
        now_iso: Callable[[], str],
    ) -> None:
        self.store = store
        self.key = key
        self.record_type = record_type
        self.now_iso = now_iso

    def list(self) -> list[Record]:
        raw = self.store.get(self.key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return []
        if not isinstance(data, list):
            return []

        records: list[Record] = []
        for item in data:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            records.append(self.record_type.from_dict(item))
        return records

    def get(self, record_id: str) -> Record | None:
        return next((item for item in self.list() if item.id == record_id), None)

    def save(self, record: Record) -> Record:
        records = self.list()
        existing_index = next(
            (index for index, item in enumerate(records) if item.id == record.id),
            -1,
        )

        now = self.now_iso()
        created_at = records[existing_index].created_at if existing_index >= 0 else now
        saved = replace(record, created_at=created_at or now, updated_at=now)

        if existing_index >= 0:
            records[existing_index] = saved
        else:
            records.append(saved)

        self._write(records)
        return saved

    def delete(self, record_id: str) -> bool:
        records = self.list()
        remaining = [item for item in records if item.id != record_id]
        if len(remaining) == len(records):
            return False
        self._write(remaining)
        return True

    def _write(self, records: list[Record]) -> None:
        payload = [item.to_dict() for item in records]
        self.store.put(self.key, json.dumps(payload, ensure_ascii=False))


class KVService:
    def __init__(self, store: KVStore, *, now_iso: Callable[[], str] = utc_now_iso) -> None:
        self.store = store
        self.now_iso = now_iso
        self.proxy_providers: RecordCollection[ProxyProvider] = RecordCollection(
            store=store, key=PROXY_PROVIDERS_KEY, record_type=ProxyProvider, now_iso=now_iso
        )
        self.configs: RecordCollection[Config] = RecordCollection(
            store=store, key=CONFIGS_KEY, record_type=Config, now_iso=now_iso
        )
        self.fetchers: RecordCollection[Fetcher] = RecordCollection(
            store=store, key=FETCHERS_KEY, record_type=Fetcher, now_iso=now_iso
        )

    def get_auth_token(self) -> str | None:
        raw = self.store.get(AUTH_TOKEN_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        token = data.get("token") if isinstance(data, dict) else None
        return token if isinstance(token, str) else None

    def set_auth_token(self, token: str) -> None:
        payload = {"token": token, "createdAt": self.now_iso()}
        self.store.put(AUTH_TOKEN_KEY, json.dumps(payload, ensure_ascii=False))

    def has_auth_token(self) -> bool:
        return self.get_auth_token() is not None

    def verify_token(self, token: str) -> bool:
        stored = self.get_auth_token()
        return stored is not None and stored == token
