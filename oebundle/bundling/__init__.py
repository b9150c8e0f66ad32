from .coordinator import (
    BundleCoordinator,
    BundleStatusStore,
    build_execution_summary,
    classify_simulation_response,
)
from .errors import (
    BlockEngineError,
    BlockEngineRateLimitError,
    BundleExecutionError,
    BundleSubmissionError,
    ConfirmationTimeoutError,
    ErrorKind,
    InvalidStatusTransitionError,
    OnLedgerTransactionError,
    RetryTimeoutError,
    SimulationFailedError,
)
from .retry import retry_rate_limited
from .tips import DEFAULT_TIP_ACCOUNTS, LAMPORTS_PER_SOL, TipEstimator, tip_lamports_from_floor
from .transport import JitoRpcTransport, is_rate_limit_message
from .types import (
    MAX_BUNDLE_TRANSACTIONS,
    MAX_TRANSACTION_SIZE,
    Bundle,
    BundleExecutionResult,
    BundleLifecycle,
    BundleStatus,
    CoordinatorConfig,
    SimulationOutcome,
    TipQuote,
    build_versioned_transaction,
    now_epoch_ms,
)

__all__ = [
    "BlockEngineError",
    "BlockEngineRateLimitError",
    "Bundle",
    "BundleCoordinator",
    "BundleExecutionError",
    "BundleExecutionResult",
    "BundleLifecycle",
    "BundleStatus",
    "BundleStatusStore",
    "BundleSubmissionError",
    "ConfirmationTimeoutError",
    "CoordinatorConfig",
    "DEFAULT_TIP_ACCOUNTS",
    "ErrorKind",
    "InvalidStatusTransitionError",
    "JitoRpcTransport",
    "LAMPORTS_PER_SOL",
    "MAX_BUNDLE_TRANSACTIONS",
    "MAX_TRANSACTION_SIZE",
    "OnLedgerTransactionError",
    "RetryTimeoutError",
    "SimulationFailedError",
    "SimulationOutcome",
    "TipEstimator",
    "TipQuote",
    "build_execution_summary",
    "build_versioned_transaction",
    "classify_simulation_response",
    "is_rate_limit_message",
    "now_epoch_ms",
    "retry_rate_limited",
    "tip_lamports_from_floor",
]
