from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


class BlockEngineError(RuntimeError):
    """Transport-level failure, tagged with whether the retry policy may repeat the call."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.FATAL,
        method: str | None = None,
        status: int | None = None,
        code: int | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.method = method
        self.status = status
        self.code = code
        self.payload = payload

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RETRYABLE


class BlockEngineRateLimitError(BlockEngineError):
    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        status: int | None = None,
        code: int | None = None,
        payload: Any = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(
            message,
            kind=ErrorKind.RETRYABLE,
            method=method,
            status=status,
            code=code,
            payload=payload,
        )
        self.retry_after_seconds = retry_after_seconds


class BundleExecutionError(RuntimeError):
    def __init__(self, message: str, *, payload: Any = None) -> None:
        super().__init__(message)
        self.payload = payload


class SimulationFailedError(BundleExecutionError):
    def __init__(
        self,
        message: str,
        *,
        remote_message: str,
        per_tx_logs: list[list[str]] | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message, payload=payload)
        self.remote_message = remote_message
        self.per_tx_logs = per_tx_logs or []


class BundleSubmissionError(BundleExecutionError):
    pass


class ConfirmationTimeoutError(BundleExecutionError):
    """The bundle may or may not have landed; callers must not assume no state changed."""

    def __init__(
        self,
        message: str,
        *,
        bundle_id: str | None = None,
        last_status: str | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message, payload=payload)
        self.bundle_id = bundle_id
        self.last_status = last_status


class OnLedgerTransactionError(BundleExecutionError):
    def __init__(self, message: str, *, tx_signature: str | None = None, payload: Any = None) -> None:
        super().__init__(message, payload=payload)
        self.tx_signature = tx_signature


class RetryTimeoutError(BundleExecutionError):
    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(message, payload={"attempts": attempts})
        self.attempts = attempts
        self.last_error = last_error


class InvalidStatusTransitionError(RuntimeError):
    pass
