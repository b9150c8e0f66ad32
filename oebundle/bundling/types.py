from __future__ import annotations

import base64
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .errors import InvalidStatusTransitionError

if TYPE_CHECKING:
    from oebundle.runtime.settings import AppSettings

MAX_BUNDLE_TRANSACTIONS = 5
MAX_TRANSACTION_SIZE = 1232
JITO_FALLBACK_TIP_LAMPORTS = 10_000
DEFAULT_EXPLORER_URL = "https://explorer.jito.wtf/"


def now_epoch_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class BundleStatus(str, Enum):
    NOT_SUBMITTED = "not_submitted"
    SIMULATED_OK = "simulated_ok"
    SIMULATED_FAILED = "simulated_failed"
    SUBMITTED = "submitted"
    LANDED_UNCONFIRMED = "landed_unconfirmed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {BundleStatus.SIMULATED_FAILED, BundleStatus.FINALIZED, BundleStatus.FAILED}


_ALLOWED_TRANSITIONS: dict[BundleStatus, frozenset[BundleStatus]] = {
    BundleStatus.NOT_SUBMITTED: frozenset({BundleStatus.SIMULATED_OK, BundleStatus.SIMULATED_FAILED}),
    BundleStatus.SIMULATED_OK: frozenset({BundleStatus.SUBMITTED, BundleStatus.FAILED}),
    BundleStatus.SUBMITTED: frozenset(
        {
            BundleStatus.LANDED_UNCONFIRMED,
            BundleStatus.CONFIRMED,
            BundleStatus.FINALIZED,
            BundleStatus.FAILED,
        }
    ),
    BundleStatus.LANDED_UNCONFIRMED: frozenset(
        {BundleStatus.CONFIRMED, BundleStatus.FINALIZED, BundleStatus.FAILED}
    ),
    BundleStatus.CONFIRMED: frozenset({BundleStatus.FINALIZED, BundleStatus.FAILED}),
    BundleStatus.SIMULATED_FAILED: frozenset(),
    BundleStatus.FINALIZED: frozenset(),
    BundleStatus.FAILED: frozenset(),
}

# Rank of the post-submission tiers; the two confirmation loops report them out of order.
_LANDING_RANK = {
    BundleStatus.SUBMITTED: 0,
    BundleStatus.LANDED_UNCONFIRMED: 1,
    BundleStatus.CONFIRMED: 2,
    BundleStatus.FINALIZED: 3,
}


class BundleLifecycle:
    def __init__(self, *, bundle_key: str) -> None:
        self.bundle_key = bundle_key
        self.status = BundleStatus.NOT_SUBMITTED
        self.history: list[tuple[str, int]] = [(self.status.value, now_epoch_ms())]

    def advance(self, status: BundleStatus) -> bool:
        """Move forward to ``status``; returns False when the report is stale."""
        if status == self.status:
            return False
        if status in _ALLOWED_TRANSITIONS[self.status]:
            self.status = status
            self.history.append((status.value, now_epoch_ms()))
            return True
        if (
            status in _LANDING_RANK
            and self.status in _LANDING_RANK
            and _LANDING_RANK[status] < _LANDING_RANK[self.status]
        ):
            return False
        raise InvalidStatusTransitionError(
            f"Bundle {self.bundle_key}: cannot move from {self.status.value} to {status.value}."
        )


@dataclass(slots=True, frozen=True)
class Bundle:
    transactions: tuple[VersionedTransaction, ...]

    def __post_init__(self) -> None:
        transactions = tuple(self.transactions)
        object.__setattr__(self, "transactions", transactions)
        if not transactions:
            raise ValueError("A bundle must contain at least one transaction.")
        if len(transactions) > MAX_BUNDLE_TRANSACTIONS:
            raise ValueError(
                f"A bundle holds at most {MAX_BUNDLE_TRANSACTIONS} transactions, got {len(transactions)}."
            )
        for index, tx in enumerate(transactions):
            if not tx.signatures or tx.signatures[0] == Signature.default():
                raise ValueError(f"Bundle transaction[{index}] is not signed.")
            size = len(bytes(tx))
            if size > MAX_TRANSACTION_SIZE:
                raise ValueError(f"Bundle transaction[{index}] is oversized: {size} bytes.")

    @classmethod
    def of(cls, transactions: Iterable[VersionedTransaction]) -> "Bundle":
        return cls(transactions=tuple(transactions))

    def __len__(self) -> int:
        return len(self.transactions)

    @property
    def key(self) -> str:
        return self.tx_signatures()[0]

    def tx_signatures(self) -> list[str]:
        return [str(tx.signatures[0]) for tx in self.transactions]

    def encoded(self) -> list[str]:
        return [base64.b64encode(bytes(tx)).decode("ascii") for tx in self.transactions]


@dataclass(slots=True, frozen=True)
class SimulationOutcome:
    ok: bool
    message: str
    per_tx_logs: list[list[str]] = field(default_factory=list)
    classified: bool = True
    raw: Any = None


@dataclass(slots=True, frozen=True)
class TipQuote:
    amount_lamports: int
    tip_account: str
    source: str

    def __post_init__(self) -> None:
        if self.amount_lamports <= 0:
            raise ValueError("Tip amount must be strictly positive.")


@dataclass(slots=True, frozen=True)
class BundleExecutionResult:
    status: BundleStatus
    summary: str
    tx_signatures: list[str]
    bundle_id: str | None = None
    slot: int | None = None
    simulation: SimulationOutcome | None = None
    history: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        if self.simulation is not None:
            payload["simulation"].pop("raw", None)
        return payload


@dataclass(slots=True, frozen=True)
class CoordinatorConfig:
    tx_status_timeout_seconds: float = 120.0
    tx_status_poll_interval_seconds: float = 2.0
    bundle_status_timeout_seconds: float = 120.0
    bundle_status_poll_interval_seconds: float = 5.0
    retry_initial_delay_seconds: float = 1.0
    retry_delay_multiplier: float = 2.0
    retry_timeout_seconds: float = 120.0
    fallback_tip_lamports: int = JITO_FALLBACK_TIP_LAMPORTS
    explorer_url: str = DEFAULT_EXPLORER_URL

    @classmethod
    def from_settings(cls, settings: "AppSettings") -> "CoordinatorConfig":
        return cls(
            tx_status_timeout_seconds=settings.tx_status_timeout_seconds,
            tx_status_poll_interval_seconds=settings.tx_status_poll_interval_seconds,
            bundle_status_timeout_seconds=settings.bundle_status_timeout_seconds,
            bundle_status_poll_interval_seconds=settings.bundle_status_poll_interval_seconds,
            retry_initial_delay_seconds=settings.retry_initial_delay_seconds,
            retry_delay_multiplier=settings.retry_delay_multiplier,
            retry_timeout_seconds=settings.retry_timeout_seconds,
            fallback_tip_lamports=settings.jito_fallback_tip_lamports,
            explorer_url=settings.jito_explorer_url,
        )


def build_versioned_transaction(
    payer: Keypair,
    blockhash: str,
    instructions: Sequence[Instruction],
    lookup_tables: Sequence[AddressLookupTableAccount] = (),
) -> VersionedTransaction:
    message = MessageV0.try_compile(
        payer.pubkey(),
        list(instructions),
        list(lookup_tables),
        Hash.from_string(blockhash),
    )
    return VersionedTransaction(message, [payer])
