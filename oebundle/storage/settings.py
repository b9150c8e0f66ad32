from __future__ import annotations

import os
from dataclasses import dataclass

from oebundle.runtime.settings import to_int


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    bundle_status_prefix: str
    bundle_status_ttl_seconds: int

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    @classmethod
    def from_env(cls) -> "StorageSettings":
        return cls(
            redis_url=os.getenv("REDIS_URL", "").strip(),
            bundle_status_prefix=(
                os.getenv("REDIS_BUNDLE_STATUS_PREFIX", "").strip() or "bundles:status"
            ),
            bundle_status_ttl_seconds=max(
                60,
                to_int(os.getenv("REDIS_BUNDLE_STATUS_TTL_SECONDS"), 86400),
            ),
        )
