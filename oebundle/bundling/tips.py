from __future__ import annotations

import logging
import random
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from oebundle.common import guarded_call, log_event

from .types import JITO_FALLBACK_TIP_LAMPORTS, TipQuote

LAMPORTS_PER_SOL = 1_000_000_000
TIP_FLOOR_PERCENTILE_FIELD = "landed_tips_95th_percentile"

DEFAULT_TIP_ACCOUNTS: tuple[str, ...] = (
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
)


def tip_lamports_from_floor(payload: Any) -> int:
    """Convert the tip floor feed's 95th percentile (in SOL) into lamports."""
    if not isinstance(payload, list) or not payload or not isinstance(payload[0], dict):
        raise ValueError(f"Unexpected tip floor payload: {payload!r}")
    raw = payload[0].get(TIP_FLOOR_PERCENTILE_FIELD)
    if raw is None or isinstance(raw, bool):
        raise ValueError(f"Tip floor payload has no {TIP_FLOOR_PERCENTILE_FIELD}: {payload[0]!r}")
    try:
        lamports = int(Decimal(str(raw)) * LAMPORTS_PER_SOL)
    except InvalidOperation as error:
        raise ValueError(f"Invalid tip floor value: {raw!r}") from error
    if lamports <= 0:
        raise ValueError(f"Tip floor value is not positive: {raw!r}")
    return lamports


class TipEstimator:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        fallback_tip_lamports: int = JITO_FALLBACK_TIP_LAMPORTS,
        tip_accounts: Sequence[str] = DEFAULT_TIP_ACCOUNTS,
        rng: random.Random | None = None,
    ) -> None:
        if fallback_tip_lamports <= 0:
            raise ValueError("fallback_tip_lamports must be greater than zero.")
        if not tip_accounts:
            raise ValueError("At least one tip account is required.")
        self._logger = logger
        self._fallback_tip_lamports = int(fallback_tip_lamports)
        self._tip_accounts = tuple(tip_accounts)
        self._rng = rng or random.Random()

    @property
    def tip_accounts(self) -> tuple[str, ...]:
        return self._tip_accounts

    def select_tip_account(self) -> str:
        return self._rng.choice(self._tip_accounts)

    async def estimate(self, *, transport: Any) -> int:
        """Current tip in lamports; falls back to the configured floor on any feed failure."""
        tip, _source = await self._estimate_with_source(transport=transport)
        return tip

    async def _estimate_with_source(self, *, transport: Any) -> tuple[int, str]:
        async def _fetch() -> int:
            return tip_lamports_from_floor(await transport.fetch_tip_floor())

        tip = await guarded_call(
            _fetch,
            logger=self._logger,
            event="jito_tip_estimate_failed",
            message="Failed to estimate Jito tip; using fallback value",
            level="warning",
            default=None,
            fallback_tip_lamports=self._fallback_tip_lamports,
        )
        if tip is None:
            return self._fallback_tip_lamports, "fallback"
        return int(tip), "tip_floor"

    async def quote(self, *, transport: Any) -> TipQuote:
        tip, source = await self._estimate_with_source(transport=transport)
        quote = TipQuote(amount_lamports=tip, tip_account=self.select_tip_account(), source=source)
        log_event(
            self._logger,
            level="info",
            event="jito_tip_quoted",
            message="Selected Jito tip account and amount",
            tip_lamports=quote.amount_lamports,
            tip_account=quote.tip_account,
            source=quote.source,
        )
        return quote
