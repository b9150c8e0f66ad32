from __future__ import annotations

import logging
from typing import Any

from redis import asyncio as redis
from redis.asyncio.client import Redis

from oebundle.common import log_event

from .helpers import dumps_compact, loads_dict, loads_str_list, now_iso
from .settings import StorageSettings


class RedisBundleJournal:
    """Redis hash per bundle, keyed by the first transaction signature."""

    def __init__(
        self,
        settings: StorageSettings,
        logger: logging.Logger,
        *,
        client: Redis | None = None,
    ) -> None:
        self.settings = settings
        self._logger = logger
        self._redis = client

    def _record_key(self, bundle_key: str) -> str:
        return f"{self.settings.bundle_status_prefix}:{bundle_key}"

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
        )

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

    async def record_bundle_status(
        self,
        *,
        bundle_key: str,
        status: str,
        tx_signatures: list[str],
        bundle_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        redis_client = self._require_redis()
        record_key = self._record_key(bundle_key)
        existing = await redis_client.hgetall(record_key)
        now = now_iso()

        mapping: dict[str, str] = {
            "bundle_key": bundle_key,
            "status": status,
            "updated_at": now,
            "tx_signatures": dumps_compact(tx_signatures),
        }
        if not existing:
            mapping["created_at"] = now
        if bundle_id is not None:
            mapping["bundle_id"] = bundle_id
        if payload is not None:
            merged_payload = loads_dict(existing.get("payload"))
            merged_payload.update(payload)
            mapping["payload"] = dumps_compact(merged_payload)

        await redis_client.hset(record_key, mapping=mapping)
        await redis_client.expire(record_key, max(60, self.settings.bundle_status_ttl_seconds))

    @staticmethod
    def _parse_record(raw: dict[str, str], *, fallback_key: str) -> dict[str, Any]:
        return {
            "bundle_key": str(raw.get("bundle_key", "")) or fallback_key,
            "status": str(raw.get("status", "")),
            "bundle_id": str(raw.get("bundle_id", "")) or None,
            "created_at": str(raw.get("created_at", "")),
            "updated_at": str(raw.get("updated_at", "")),
            "tx_signatures": loads_str_list(raw.get("tx_signatures")),
            "payload": loads_dict(raw.get("payload")),
        }

    async def get_bundle_status(self, *, bundle_key: str) -> dict[str, Any] | None:
        redis_client = self._require_redis()
        raw = await redis_client.hgetall(self._record_key(bundle_key))
        if not raw:
            return None
        return self._parse_record(raw, fallback_key=bundle_key)

    async def list_bundle_statuses(
        self,
        *,
        statuses: set[str] | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        redis_client = self._require_redis()
        normalized_limit = max(1, limit)
        normalized_statuses = {status for status in (statuses or set()) if status}
        pattern = f"{self.settings.bundle_status_prefix}:*"

        records: list[dict[str, Any]] = []
        async for key in redis_client.scan_iter(match=pattern, count=min(1000, normalized_limit * 4)):
            raw = await redis_client.hgetall(key)
            if not raw:
                continue
            status = str(raw.get("status", ""))
            if normalized_statuses and status not in normalized_statuses:
                continue
            records.append(self._parse_record(raw, fallback_key=key.split(":")[-1]))
            if len(records) >= normalized_limit:
                break

        records.sort(key=lambda item: item.get("updated_at", ""), reverse=True)
        return records

    async def delete_bundle_status(self, *, bundle_key: str) -> bool:
        redis_client = self._require_redis()
        deleted = await redis_client.delete(self._record_key(bundle_key))
        return bool(deleted)

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
