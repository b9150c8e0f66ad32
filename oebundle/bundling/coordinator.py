from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Protocol, Sequence

from oebundle.common import guarded_call, log_event

from .errors import (
    BlockEngineError,
    BundleExecutionError,
    BundleSubmissionError,
    ConfirmationTimeoutError,
    InvalidStatusTransitionError,
    OnLedgerTransactionError,
    RetryTimeoutError,
    SimulationFailedError,
)
from .retry import retry_rate_limited
from .tips import TipEstimator
from .types import (
    Bundle,
    BundleExecutionResult,
    BundleLifecycle,
    BundleStatus,
    CoordinatorConfig,
    SimulationOutcome,
    TipQuote,
)

SIMULATION_SUCCESS_MESSAGE = "Bundle simulation successful"

_BUNDLE_CONFIRMATION_LEVELS = {
    "processed": BundleStatus.LANDED_UNCONFIRMED,
    "confirmed": BundleStatus.CONFIRMED,
}


class BundleStatusStore(Protocol):
    async def record_bundle_status(
        self,
        *,
        bundle_key: str,
        status: str,
        tx_signatures: list[str],
        bundle_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        ...


def classify_simulation_response(response: Any) -> SimulationOutcome:
    """Map a ``simulateBundle`` result onto a ``SimulationOutcome``.

    The block engine reports success as the string summary ``"succeeded"`` and a
    failure as ``{"failed": {"error": {"TransactionFailure": [signature, message]}, ...}}``.
    Failure payloads of any other shape are returned unclassified with the payload
    rendered verbatim as the message.
    """
    if not isinstance(response, dict):
        return SimulationOutcome(
            ok=False,
            message=json.dumps(response, default=str),
            classified=False,
            raw=response,
        )

    per_tx_logs = [
        [str(line) for line in (item.get("logs") or [])]
        for item in (response.get("transactionResults") or [])
        if isinstance(item, dict)
    ]
    summary = response.get("summary")

    if isinstance(summary, dict) and "failed" in summary:
        failed = summary.get("failed")
        error = failed.get("error") if isinstance(failed, dict) else None
        failure = error.get("TransactionFailure") if isinstance(error, dict) else None
        if isinstance(failure, list) and len(failure) == 2:
            return SimulationOutcome(
                ok=False,
                message=str(failure[1]),
                per_tx_logs=per_tx_logs,
                raw=response,
            )
        return SimulationOutcome(
            ok=False,
            message=json.dumps(failed, default=str, separators=(",", ":")),
            per_tx_logs=per_tx_logs,
            classified=False,
            raw=response,
        )

    if summary == "succeeded" or (isinstance(summary, dict) and "succeeded" in summary):
        return SimulationOutcome(
            ok=True,
            message=SIMULATION_SUCCESS_MESSAGE,
            per_tx_logs=per_tx_logs,
            raw=response,
        )

    return SimulationOutcome(
        ok=False,
        message=json.dumps(response, default=str, separators=(",", ":")),
        per_tx_logs=per_tx_logs,
        classified=False,
        raw=response,
    )


def build_execution_summary(*, bundle_id: str, slot: int, explorer_url: str) -> str:
    base = explorer_url if explorer_url.endswith("/") else f"{explorer_url}/"
    return (
        f"Bundle finalized at slot: {slot}\n"
        f"\nBundle Event History: {base}events/{bundle_id}"
        f"\nBundle Details (Wait ~30 seconds to update): {base}bundle/{bundle_id}"
    )


def _is_bundle_error(err: Any) -> bool:
    return err is not None and err != {"Ok": None}


class BundleCoordinator:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        config: CoordinatorConfig | None = None,
        tip_estimator: TipEstimator | None = None,
        status_store: BundleStatusStore | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._config = config or CoordinatorConfig()
        self.tip_estimator = tip_estimator or TipEstimator(
            logger=logger,
            fallback_tip_lamports=self._config.fallback_tip_lamports,
        )
        self._status_store = status_store
        self._sleep = sleep

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    async def _record(
        self,
        lifecycle: BundleLifecycle | None,
        status: BundleStatus,
        *,
        bundle: Bundle,
        bundle_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if lifecycle is None:
            return
        # A terminal status reached by one confirmation loop wins over late reports from the other.
        if lifecycle.status.terminal:
            return
        if not lifecycle.advance(status):
            return
        if self._status_store is None:
            return

        store = self._status_store
        await guarded_call(
            lambda: store.record_bundle_status(
                bundle_key=lifecycle.bundle_key,
                status=status.value,
                tx_signatures=bundle.tx_signatures(),
                bundle_id=bundle_id,
                payload=payload,
            ),
            logger=self._logger,
            event="bundle_status_journal_failed",
            message="Failed to journal bundle status",
            level="warning",
            bundle_key=lifecycle.bundle_key,
            status=status.value,
        )

    def _retry(self, operation: Callable[[], Awaitable[Any]]) -> Awaitable[Any]:
        return retry_rate_limited(
            operation,
            initial_delay=self._config.retry_initial_delay_seconds,
            multiplier=self._config.retry_delay_multiplier,
            timeout=self._config.retry_timeout_seconds,
            logger=self._logger,
            sleep=self._sleep,
        )

    def select_tip_account(self) -> str:
        return self.tip_estimator.select_tip_account()

    async def estimate_tip(self, *, transport: Any) -> int:
        return await self.tip_estimator.estimate(transport=transport)

    async def quote_tip(self, *, transport: Any) -> TipQuote:
        return await self.tip_estimator.quote(transport=transport)

    async def simulate(
        self,
        bundle: Bundle,
        *,
        transport: Any,
        watch_accounts: Sequence[str] = (),
        lifecycle: BundleLifecycle | None = None,
        verbose: bool = False,
    ) -> SimulationOutcome:
        addresses = [list(watch_accounts) for _ in bundle.transactions]
        response = await transport.simulate_bundle(
            encoded_transactions=bundle.encoded(),
            account_addresses=addresses,
        )
        outcome = classify_simulation_response(response)

        if outcome.ok:
            log_event(
                self._logger,
                level="info",
                event="bundle_simulation_succeeded",
                message=outcome.message,
                bundle_key=bundle.key,
                tx_count=len(bundle),
            )
            if verbose:
                self._log_simulation_details(response)
            await self._record(lifecycle, BundleStatus.SIMULATED_OK, bundle=bundle)
        else:
            log_event(
                self._logger,
                level="warning",
                event="bundle_simulation_failed",
                message="Bundle simulation failed",
                bundle_key=bundle.key,
                classified=outcome.classified,
                remote_message=outcome.message,
            )
            await self._record(
                lifecycle,
                BundleStatus.SIMULATED_FAILED,
                bundle=bundle,
                payload={"message": outcome.message, "classified": outcome.classified},
            )
        return outcome

    def _log_simulation_details(self, response: dict[str, Any]) -> None:
        for index, item in enumerate(response.get("transactionResults") or [], start=1):
            if not isinstance(item, dict):
                continue
            log_event(
                self._logger,
                level="info",
                event="bundle_simulation_transaction",
                message=f"Transaction {index} simulation result",
                tx_index=index,
                logs=item.get("logs") or [],
                pre_execution_accounts=item.get("preExecutionAccounts"),
                post_execution_accounts=item.get("postExecutionAccounts"),
                units_consumed=item.get("unitsConsumed"),
            )

    async def submit(
        self,
        bundle: Bundle,
        *,
        transport: Any,
        lifecycle: BundleLifecycle | None = None,
    ) -> str:
        if lifecycle is not None and lifecycle.status is not BundleStatus.SIMULATED_OK:
            raise InvalidStatusTransitionError(
                f"Bundle {lifecycle.bundle_key} must pass simulation before submission "
                f"(status={lifecycle.status.value})."
            )
        encoded = bundle.encoded()
        try:
            bundle_id = await self._retry(lambda: transport.send_bundle(encoded_transactions=encoded))
        except RetryTimeoutError:
            await self._record(lifecycle, BundleStatus.FAILED, bundle=bundle, payload={"reason": "rate_limited"})
            raise
        except BlockEngineError as error:
            await self._record(lifecycle, BundleStatus.FAILED, bundle=bundle, payload={"error": str(error)})
            raise BundleSubmissionError(
                f"Bundle sending failed: {error}",
                payload=error.payload,
            ) from error

        await self._record(lifecycle, BundleStatus.SUBMITTED, bundle=bundle, bundle_id=bundle_id)
        return bundle_id

    async def _poll_transaction_statuses(
        self,
        *,
        bundle: Bundle,
        bundle_id: str,
        transport: Any,
        lifecycle: BundleLifecycle | None,
    ) -> list[dict[str, Any]]:
        tx_signatures = bundle.tx_signatures()
        while True:
            statuses: list[dict[str, Any] | None] | None = None
            try:
                statuses = await transport.get_signature_statuses(tx_signatures=tx_signatures)
            except BlockEngineError as error:
                if not error.retryable:
                    await self._record(
                        lifecycle,
                        BundleStatus.FAILED,
                        bundle=bundle,
                        bundle_id=bundle_id,
                        payload={"error": str(error), "method": error.method},
                    )
                    raise
                log_event(
                    self._logger,
                    level="warning",
                    event="bundle_tx_status_poll_failed",
                    message="Transaction status poll failed with a retryable error",
                    bundle_id=bundle_id,
                    error=str(error),
                )

            if statuses is not None:
                for tx_signature, status in zip(tx_signatures, statuses):
                    if status is not None and status.get("err") is not None:
                        await self._record(
                            lifecycle,
                            BundleStatus.FAILED,
                            bundle=bundle,
                            bundle_id=bundle_id,
                            payload={"tx_signature": tx_signature, "err": status.get("err")},
                        )
                        raise OnLedgerTransactionError(
                            f"Transaction failed: {tx_signature} err={status.get('err')}",
                            tx_signature=tx_signature,
                            payload=status,
                        )
                if len(statuses) == len(tx_signatures) and all(status is not None for status in statuses):
                    log_event(
                        self._logger,
                        level="info",
                        event="bundle_transactions_landed",
                        message="Transactions successful",
                        bundle_id=bundle_id,
                        tx_signatures=tx_signatures,
                    )
                    await self._record(
                        lifecycle,
                        BundleStatus.LANDED_UNCONFIRMED,
                        bundle=bundle,
                        bundle_id=bundle_id,
                    )
                    return [status for status in statuses if status is not None]

            log_event(
                self._logger,
                level="debug",
                event="bundle_transactions_pending",
                message="Transactions not found yet",
                bundle_id=bundle_id,
                poll_interval_seconds=self._config.tx_status_poll_interval_seconds,
            )
            await self._sleep(self._config.tx_status_poll_interval_seconds)

    async def _poll_bundle_status(
        self,
        *,
        bundle: Bundle,
        bundle_id: str,
        transport: Any,
        lifecycle: BundleLifecycle | None,
    ) -> int:
        while True:
            try:
                entry = await self._retry(lambda: transport.get_bundle_statuses(bundle_id=bundle_id))
            except RetryTimeoutError as error:
                raise ConfirmationTimeoutError(
                    f"Bundle status polling stayed rate-limited: {error}",
                    bundle_id=bundle_id,
                    last_status=lifecycle.status.value if lifecycle else None,
                ) from error

            if entry:
                if _is_bundle_error(entry.get("err")):
                    await self._record(
                        lifecycle,
                        BundleStatus.FAILED,
                        bundle=bundle,
                        bundle_id=bundle_id,
                        payload={"err": entry.get("err")},
                    )
                    raise OnLedgerTransactionError(
                        f"Bundle {bundle_id} failed on-ledger: {entry.get('err')}",
                        payload=entry,
                    )
                confirmation_status = str(entry.get("confirmation_status") or "")
                if confirmation_status == "finalized":
                    slot = entry.get("slot")
                    if not isinstance(slot, int) or isinstance(slot, bool):
                        raise BundleExecutionError(
                            f"Bundle {bundle_id} reported finalized without a landing slot.",
                            payload=entry,
                        )
                    return slot
                landed = _BUNDLE_CONFIRMATION_LEVELS.get(confirmation_status)
                if landed is not None:
                    await self._record(lifecycle, landed, bundle=bundle, bundle_id=bundle_id)

            log_event(
                self._logger,
                level="debug",
                event="bundle_not_finalized",
                message="Bundle not finalized yet",
                bundle_id=bundle_id,
                confirmation_status=(entry or {}).get("confirmation_status"),
                poll_interval_seconds=self._config.bundle_status_poll_interval_seconds,
            )
            await self._sleep(self._config.bundle_status_poll_interval_seconds)

    async def _bounded(
        self,
        awaitable: Awaitable[Any],
        *,
        timeout: float,
        loop_name: str,
        bundle_id: str,
        lifecycle: BundleLifecycle | None,
    ) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as error:
            raise ConfirmationTimeoutError(
                f"{loop_name} did not complete within {timeout:.0f}s; bundle {bundle_id} may still land",
                bundle_id=bundle_id,
                last_status=lifecycle.status.value if lifecycle else None,
            ) from error

    async def confirm(
        self,
        bundle_id: str,
        bundle: Bundle,
        *,
        transport: Any,
        lifecycle: BundleLifecycle | None = None,
    ) -> int:
        """Wait until every transaction is seen and the bundle is finalized; return the landing slot."""
        log_event(
            self._logger,
            level="info",
            event="bundle_confirmation_started",
            message="Waiting for bundle confirmation",
            bundle_id=bundle_id,
            tx_signatures=bundle.tx_signatures(),
        )

        tx_task = asyncio.create_task(
            self._bounded(
                self._poll_transaction_statuses(
                    bundle=bundle,
                    bundle_id=bundle_id,
                    transport=transport,
                    lifecycle=lifecycle,
                ),
                timeout=self._config.tx_status_timeout_seconds,
                loop_name="Transaction status polling",
                bundle_id=bundle_id,
                lifecycle=lifecycle,
            )
        )
        bundle_task = asyncio.create_task(
            self._bounded(
                self._poll_bundle_status(
                    bundle=bundle,
                    bundle_id=bundle_id,
                    transport=transport,
                    lifecycle=lifecycle,
                ),
                timeout=self._config.bundle_status_timeout_seconds,
                loop_name="Bundle status polling",
                bundle_id=bundle_id,
                lifecycle=lifecycle,
            )
        )
        tasks = [tx_task, bundle_task]

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is not None:
                    error = task.exception()
                    log_event(
                        self._logger,
                        level="error",
                        event="bundle_confirmation_failed",
                        message="Bundle confirmation failed",
                        bundle_id=bundle_id,
                        error=str(error),
                        error_type=type(error).__name__,
                    )
                    raise error
            slot = bundle_task.result()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._record(
            lifecycle,
            BundleStatus.FINALIZED,
            bundle=bundle,
            bundle_id=bundle_id,
            payload={"slot": slot},
        )
        log_event(
            self._logger,
            level="info",
            event="bundle_finalized",
            message="Bundle finalized",
            bundle_id=bundle_id,
            slot=slot,
        )
        return slot

    async def execute(
        self,
        bundle: Bundle,
        *,
        transport: Any,
        watch_account: str | None = None,
        simulate_only: bool = False,
    ) -> BundleExecutionResult:
        lifecycle = BundleLifecycle(bundle_key=bundle.key)
        watch_accounts = [watch_account] if watch_account else []

        outcome = await self.simulate(
            bundle,
            transport=transport,
            watch_accounts=watch_accounts,
            lifecycle=lifecycle,
            verbose=simulate_only,
        )
        if not outcome.ok:
            raise SimulationFailedError(
                f"Bundle simulation failed: {outcome.message}",
                remote_message=outcome.message,
                per_tx_logs=outcome.per_tx_logs,
                payload=outcome.raw,
            )

        if simulate_only:
            return BundleExecutionResult(
                status=lifecycle.status,
                summary=outcome.message,
                tx_signatures=bundle.tx_signatures(),
                simulation=outcome,
                history=list(lifecycle.history),
            )

        bundle_id = await self.submit(bundle, transport=transport, lifecycle=lifecycle)
        slot = await self.confirm(bundle_id, bundle, transport=transport, lifecycle=lifecycle)
        return BundleExecutionResult(
            status=lifecycle.status,
            summary=build_execution_summary(
                bundle_id=bundle_id,
                slot=slot,
                explorer_url=self._config.explorer_url,
            ),
            tx_signatures=bundle.tx_signatures(),
            bundle_id=bundle_id,
            slot=slot,
            simulation=outcome,
            history=list(lifecycle.history),
        )
