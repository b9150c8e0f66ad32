from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any

import aiohttp
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.pubkey import Pubkey

from oebundle.common import log_event

from .errors import BlockEngineError, BlockEngineRateLimitError, ErrorKind

RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "network congested",
    "congested",
    "try again later",
)


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("details")
        if details:
            return str(details)
    return str(payload)


def is_rate_limit_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def _join_url(base_url: str, suffix: str) -> str:
    return f"{base_url.rstrip('/')}/{suffix.lstrip('/')}"


class JitoRpcTransport:
    """JSON-RPC access to the block engine, the Solana RPC node and the tip floor feed."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        block_engine_url: str,
        tip_floor_url: str,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url.strip()
        self._block_engine_url = block_engine_url.strip()
        self._tip_floor_url = tip_floor_url.strip()
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None
        self._request_id = 0

    @property
    def block_engine_url(self) -> str:
        return self._block_engine_url

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "JitoRpcTransport":
        await self.connect()
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _post_json(self, url: str, *, method: str, params: list[Any]) -> Any:
        if not url:
            raise BlockEngineError(f"No endpoint configured for {method}.", method=method)
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise BlockEngineError("HTTP session is not initialized.", method=method)

        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params}

        try:
            async with self._session.post(url, json=payload) as response:
                status = response.status
                retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                raw_text = await response.text()
        except (aiohttp.ClientError, TimeoutError) as error:
            raise BlockEngineError(
                f"{method} transport failure: {error}",
                kind=ErrorKind.RETRYABLE,
                method=method,
            ) from error

        parsed: Any = None
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}

        if status == 429:
            raise BlockEngineRateLimitError(
                f"{method} rate-limited: status={status} body={str(raw_text)[:240]!r}",
                method=method,
                status=status,
                payload=parsed,
                retry_after_seconds=retry_after_seconds,
            )

        error_payload = parsed.get("error") if isinstance(parsed, dict) else None
        if status >= 400 or error_payload is not None:
            error_message = str(raw_text)
            code = None
            if error_payload is not None:
                error_message = _error_message_from_payload(error_payload)
                if isinstance(error_payload, dict) and isinstance(error_payload.get("code"), int):
                    code = error_payload["code"]
            if is_rate_limit_message(error_message):
                raise BlockEngineRateLimitError(
                    f"{method} rate-limited: status={status} error={error_message}",
                    method=method,
                    status=status,
                    code=code,
                    payload=parsed,
                    retry_after_seconds=retry_after_seconds,
                )
            raise BlockEngineError(
                f"{method} failed: status={status} error={error_message[:240]}",
                method=method,
                status=status,
                code=code,
                payload=parsed,
            )

        if not isinstance(parsed, dict) or "result" not in parsed:
            raise BlockEngineError(f"Unexpected {method} response: {parsed}", method=method, payload=parsed)
        return parsed["result"]

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        return await self._post_json(self._rpc_url, method=method, params=params)

    async def block_engine_call(self, path: str, method: str, params: list[Any]) -> Any:
        return await self._post_json(
            _join_url(self._block_engine_url, path),
            method=method,
            params=params,
        )

    async def simulate_bundle(
        self,
        *,
        encoded_transactions: list[str],
        account_addresses: list[list[str]] | None = None,
    ) -> Any:
        addresses = account_addresses or [[] for _ in encoded_transactions]
        configs = [{"addresses": list(items), "encoding": "base64"} for items in addresses]
        params = [
            {"encodedTransactions": encoded_transactions},
            {
                "preExecutionAccountsConfigs": configs,
                "postExecutionAccountsConfigs": configs,
            },
        ]
        result = await self.rpc_call("simulateBundle", params)
        if isinstance(result, dict) and isinstance(result.get("value"), dict):
            return result["value"]
        return result

    async def send_bundle(self, *, encoded_transactions: list[str]) -> str:
        result = await self.block_engine_call(
            "bundles",
            "sendBundle",
            [encoded_transactions, {"encoding": "base64"}],
        )
        bundle_id = None
        if isinstance(result, str):
            bundle_id = result
        elif isinstance(result, dict):
            bundle_id = str(result.get("bundleId") or result.get("id") or "") or None
        if not bundle_id:
            raise BlockEngineError(f"sendBundle returned no bundle id: {result}", method="sendBundle")

        log_event(
            self._logger,
            level="info",
            event="jito_bundle_submitted",
            message="Bundle submitted to Jito Block Engine",
            tx_count=len(encoded_transactions),
            bundle_id=bundle_id,
        )
        return bundle_id

    async def get_bundle_statuses(self, *, bundle_id: str) -> dict[str, Any] | None:
        result = await self.block_engine_call("getBundleStatuses", "getBundleStatuses", [[bundle_id]])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, list) or not value:
            return None
        entry = value[0]
        return entry if isinstance(entry, dict) else None

    async def get_signature_statuses(self, *, tx_signatures: list[str]) -> list[dict[str, Any] | None]:
        result = await self.rpc_call(
            "getSignatureStatuses",
            [tx_signatures, {"searchTransactionHistory": False}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, list):
            raise BlockEngineError(
                f"Unexpected getSignatureStatuses response: {result}",
                method="getSignatureStatuses",
            )
        return [item if isinstance(item, dict) else None for item in value]

    async def get_latest_blockhash(self, *, commitment: str = "confirmed") -> tuple[str, int | None]:
        result = await self.rpc_call("getLatestBlockhash", [{"commitment": commitment}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            raise BlockEngineError(
                f"Unexpected getLatestBlockhash payload: {result}",
                method="getLatestBlockhash",
            )
        blockhash = str(value.get("blockhash") or "").strip()
        if not blockhash:
            raise BlockEngineError(
                f"Missing blockhash in RPC response: {result}",
                method="getLatestBlockhash",
            )
        raw_height = value.get("lastValidBlockHeight")
        return blockhash, int(raw_height) if isinstance(raw_height, int) else None

    async def get_slot(self, *, commitment: str = "confirmed") -> int:
        result = await self.rpc_call("getSlot", [{"commitment": commitment}])
        if not isinstance(result, int):
            raise BlockEngineError(f"Unexpected getSlot response: {result}", method="getSlot")
        return result

    async def get_account_info(self, *, address: str, commitment: str = "confirmed") -> bytes | None:
        result = await self.rpc_call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": commitment}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        raw = value.get("data") if isinstance(value, dict) else None
        if not isinstance(raw, list) or not raw or not isinstance(raw[0], str):
            raise BlockEngineError(
                f"Unexpected getAccountInfo payload for {address}: {value}",
                method="getAccountInfo",
            )
        try:
            return base64.b64decode(raw[0])
        except binascii.Error as error:
            raise BlockEngineError(
                f"Account data for {address} is not valid base64: {error}",
                method="getAccountInfo",
            ) from error

    async def get_address_lookup_tables(self, *, addresses: list[str]) -> list[AddressLookupTableAccount]:
        accounts: list[AddressLookupTableAccount] = []
        for address in addresses:
            result = await self.rpc_call("getAddressLookupTable", [address, {"commitment": "confirmed"}])
            value = result.get("value") if isinstance(result, dict) else None
            if not isinstance(value, dict):
                raise BlockEngineError(
                    f"Address lookup table not found: {address}",
                    method="getAddressLookupTable",
                )
            raw_addresses = value.get("addresses")
            if not isinstance(raw_addresses, list):
                raise BlockEngineError(
                    f"Address lookup table addresses are missing for {address}: {value}",
                    method="getAddressLookupTable",
                )
            accounts.append(
                AddressLookupTableAccount(
                    Pubkey.from_string(address),
                    [Pubkey.from_string(str(item)) for item in raw_addresses if str(item or "").strip()],
                )
            )
        return accounts

    async def fetch_tip_floor(self) -> Any:
        if not self._tip_floor_url:
            raise BlockEngineError("No tip floor URL configured.", method="tip_floor")
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise BlockEngineError("HTTP session is not initialized.", method="tip_floor")

        try:
            async with self._session.get(self._tip_floor_url) as response:
                status = response.status
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, json.JSONDecodeError) as error:
            raise BlockEngineError(
                f"Tip floor request failed: {error}",
                kind=ErrorKind.RETRYABLE,
                method="tip_floor",
            ) from error

        if status >= 400:
            raise BlockEngineError(
                f"Tip floor request failed: status={status} body={data}",
                kind=ErrorKind.RETRYABLE if status == 429 else ErrorKind.FATAL,
                method="tip_floor",
                status=status,
            )
        return data
