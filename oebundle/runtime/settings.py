from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_JITO_BLOCK_ENGINE_URL = "https://singapore.mainnet.block-engine.jito.wtf/api/v1"
DEFAULT_JITO_TIP_FLOOR_URL = "https://bundles.jito.wtf/api/v1/bundles/tip_floor"
DEFAULT_JITO_EXPLORER_URL = "https://explorer.jito.wtf/"
DEFAULT_WEBAUTHN_ORIGIN = "https://example.com"


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def _read_pem(value: str) -> str:
    # .env files usually carry PEM blocks on a single line with escaped newlines
    return value.replace("\\n", "\n").strip()


@dataclass(slots=True)
class AppSettings:
    rpc_url: str
    jito_block_engine_url: str
    jito_tip_floor_url: str
    jito_explorer_url: str
    http_timeout_seconds: float
    private_key: str
    r1_private_key_pem: str
    webauthn_origin: str
    webauthn_android_package_name: str
    smart_account_id: str
    smart_account_program_id: str
    vault_program_id: str
    optimistic_slot_window: int
    compute_unit_limit: int
    compute_unit_price_micro_lamports: int
    jito_fallback_tip_lamports: int
    tx_status_timeout_seconds: float
    tx_status_poll_interval_seconds: float
    bundle_status_timeout_seconds: float
    bundle_status_poll_interval_seconds: float
    retry_initial_delay_seconds: float
    retry_delay_multiplier: float
    retry_timeout_seconds: float
    tip_rng_seed: int | None

    @classmethod
    def from_env(cls) -> "AppSettings":
        raw_seed = os.getenv("TIP_ACCOUNT_RNG_SEED", "").strip()
        return cls(
            rpc_url=os.getenv("RPC_URL", "").strip(),
            jito_block_engine_url=(
                os.getenv("JITO_BLOCK_ENGINE_URL", "").strip() or DEFAULT_JITO_BLOCK_ENGINE_URL
            ),
            jito_tip_floor_url=os.getenv("JITO_TIP_FLOOR_URL", "").strip() or DEFAULT_JITO_TIP_FLOOR_URL,
            jito_explorer_url=os.getenv("JITO_EXPLORER_URL", "").strip() or DEFAULT_JITO_EXPLORER_URL,
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 30.0)),
            private_key=os.getenv("PRIVATE_KEY", "").strip(),
            r1_private_key_pem=_read_pem(os.getenv("TEST_R1_PRIVATE_KEY", "")),
            webauthn_origin=os.getenv("WEBAUTHN_ORIGIN", "").strip() or DEFAULT_WEBAUTHN_ORIGIN,
            webauthn_android_package_name=os.getenv("WEBAUTHN_ANDROID_PACKAGE_NAME", "").strip(),
            smart_account_id=os.getenv("SMART_ACCOUNT_ID", "").strip(),
            smart_account_program_id=os.getenv("SMART_ACCOUNT_PROGRAM_ID", "").strip(),
            vault_program_id=os.getenv("VAULT_PROGRAM_ID", "").strip(),
            optimistic_slot_window=max(1, to_int(os.getenv("OPTIMISTIC_SLOT_WINDOW"), 60)),
            compute_unit_limit=max(1, to_int(os.getenv("COMPUTE_UNIT_LIMIT"), 200_000)),
            compute_unit_price_micro_lamports=max(
                0,
                to_int(os.getenv("COMPUTE_UNIT_PRICE_MICRO_LAMPORTS"), 100_000),
            ),
            jito_fallback_tip_lamports=max(1, to_int(os.getenv("JITO_FALLBACK_TIP_LAMPORTS"), 10_000)),
            tx_status_timeout_seconds=max(1.0, to_float(os.getenv("TX_STATUS_TIMEOUT_SECONDS"), 120.0)),
            tx_status_poll_interval_seconds=max(
                0.1,
                to_float(os.getenv("TX_STATUS_POLL_INTERVAL_SECONDS"), 2.0),
            ),
            bundle_status_timeout_seconds=max(
                1.0,
                to_float(os.getenv("BUNDLE_STATUS_TIMEOUT_SECONDS"), 120.0),
            ),
            bundle_status_poll_interval_seconds=max(
                0.1,
                to_float(os.getenv("BUNDLE_STATUS_POLL_INTERVAL_SECONDS"), 5.0),
            ),
            retry_initial_delay_seconds=max(
                0.05,
                to_float(os.getenv("RETRY_INITIAL_DELAY_SECONDS"), 1.0),
            ),
            retry_delay_multiplier=max(1.0, to_float(os.getenv("RETRY_DELAY_MULTIPLIER"), 2.0)),
            retry_timeout_seconds=max(1.0, to_float(os.getenv("RETRY_TIMEOUT_SECONDS"), 120.0)),
            tip_rng_seed=to_int(raw_seed, 0) if raw_seed else None,
        )

    def missing_for_execution(self) -> list[str]:
        required = {
            "RPC_URL": self.rpc_url,
            "PRIVATE_KEY": self.private_key,
            "TEST_R1_PRIVATE_KEY": self.r1_private_key_pem,
            "SMART_ACCOUNT_ID": self.smart_account_id,
            "SMART_ACCOUNT_PROGRAM_ID": self.smart_account_program_id,
            "VAULT_PROGRAM_ID": self.vault_program_id,
        }
        return [name for name, value in required.items() if not value]
