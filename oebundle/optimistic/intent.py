from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from eth_utils import keccak
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from oebundle.bundling.types import now_epoch_ms

from .program import DeconstructedInstruction, ValidationArgs

_U64 = struct.Struct("<Q")


class IntentStateError(RuntimeError):
    pass


class TargetBindingError(RuntimeError):
    pass


class IntentState(str, Enum):
    NOT_STARTED = "not_started"
    COMMITTED = "committed"
    EXECUTED = "executed"
    SETTLED = "settled"
    EXPIRED = "expired"


_INTENT_TRANSITIONS: dict[IntentState, frozenset[IntentState]] = {
    IntentState.NOT_STARTED: frozenset({IntentState.COMMITTED, IntentState.EXPIRED}),
    IntentState.COMMITTED: frozenset({IntentState.EXECUTED, IntentState.EXPIRED}),
    IntentState.EXECUTED: frozenset({IntentState.SETTLED}),
    IntentState.SETTLED: frozenset(),
    IntentState.EXPIRED: frozenset(),
}


@dataclass(slots=True)
class OptimisticIntent:
    """Off-chain mirror of the remote program's optimistic validation record."""

    target_hash: bytes
    max_slot: int
    token_amount: int
    state: IntentState = IntentState.NOT_STARTED
    history: list[tuple[str, int]] = field(default_factory=list)

    @property
    def executed(self) -> bool:
        return self.state in {IntentState.EXECUTED, IntentState.SETTLED}

    def transition(self, state: IntentState) -> None:
        if state not in _INTENT_TRANSITIONS[self.state]:
            raise IntentStateError(f"Intent cannot move from {self.state.value} to {state.value}.")
        self.state = state
        self.history.append((state.value, now_epoch_ms()))

    def mark_settled(self) -> None:
        # The whole bundle lands atomically, so settlement implies the earlier phases.
        for state in (IntentState.COMMITTED, IntentState.EXECUTED, IntentState.SETTLED):
            if self.state is state:
                continue
            self.transition(state)

    def expire_if_past(self, current_slot: int) -> bool:
        if self.executed or self.state is IntentState.EXPIRED:
            return False
        if current_slot <= self.max_slot:
            return False
        self.transition(IntentState.EXPIRED)
        return True


@dataclass(slots=True, frozen=True)
class PreparedTarget:
    nonce: int
    serialized: bytes
    target_hash: bytes
    deconstructed: list[DeconstructedInstruction]
    remaining_accounts: list[AccountMeta]
    num_signers: int


def merge_account_flags(
    instructions: Sequence[Instruction],
    *,
    vault: Pubkey | None = None,
    vault_writable: bool = False,
) -> dict[Pubkey, tuple[bool, bool]]:
    """OR-merge (signer, writable) per pubkey across every account of the target."""
    merged: dict[Pubkey, tuple[bool, bool]] = {}
    for ix in instructions:
        for meta in ix.accounts:
            is_signer = meta.is_signer
            is_writable = meta.is_writable
            if vault is not None and meta.pubkey == vault:
                is_signer = False
                is_writable = True if vault_writable else is_writable
            seen = merged.get(meta.pubkey)
            if seen is not None:
                is_signer = seen[0] or is_signer
                is_writable = seen[1] or is_writable
            merged[meta.pubkey] = (is_signer, is_writable)
    return merged


def _encode_meta(pubkey: Pubkey, is_signer: bool, is_writable: bool) -> bytes:
    return bytes([1 if is_signer else 0, 1 if is_writable else 0]) + bytes(pubkey)


def prepare_target(
    instructions: Sequence[Instruction],
    *,
    nonce: int,
    vault: Pubkey | None = None,
    vault_writable: bool = False,
) -> PreparedTarget:
    if not instructions:
        raise ValueError("At least one target instruction is required.")

    flags = merge_account_flags(instructions, vault=vault, vault_writable=vault_writable)
    serialized = bytearray(_U64.pack(int(nonce)))
    deconstructed: list[DeconstructedInstruction] = []
    remaining: list[AccountMeta] = []

    for ix in instructions:
        serialized += bytes(ix.data)
        for pubkey in [ix.program_id, *(meta.pubkey for meta in ix.accounts)]:
            is_signer, is_writable = flags.get(pubkey, (False, False))
            serialized += _encode_meta(pubkey, is_signer, is_writable)
            remaining.append(AccountMeta(pubkey, is_signer=is_signer, is_writable=is_writable))
        deconstructed.append(
            DeconstructedInstruction(ix_data=bytes(ix.data), account_count=len(ix.accounts) + 1)
        )

    serialized_bytes = bytes(serialized)
    return PreparedTarget(
        nonce=int(nonce),
        serialized=serialized_bytes,
        target_hash=keccak(serialized_bytes),
        deconstructed=deconstructed,
        remaining_accounts=remaining,
        num_signers=sum(1 for is_signer, _ in flags.values() if is_signer),
    )


def reconstruct_target_hash(
    *,
    nonce: int,
    deconstructed: Sequence[DeconstructedInstruction],
    remaining_accounts: Sequence[AccountMeta],
) -> bytes:
    """Rebuild the committed hash the way the vault program walks ``execute_batch``."""
    serialized = bytearray(_U64.pack(int(nonce)))
    cursor = 0
    for item in deconstructed:
        window = remaining_accounts[cursor : cursor + item.account_count]
        if len(window) != item.account_count:
            raise TargetBindingError(
                f"execute_batch references {item.account_count} accounts but only {len(window)} remain."
            )
        serialized += item.ix_data
        for meta in window:
            serialized += _encode_meta(meta.pubkey, meta.is_signer, meta.is_writable)
        cursor += item.account_count
    if cursor != len(remaining_accounts):
        raise TargetBindingError(
            f"{len(remaining_accounts) - cursor} remaining accounts are not consumed by execute_batch."
        )
    return keccak(bytes(serialized))


def build_validation_message(
    args: ValidationArgs,
    *,
    tx_payer: Pubkey,
    token_mint: Pubkey | None = None,
) -> bytes:
    """Payload the authenticator signs: args, optional mint and the fee payer."""
    message = bytearray(args.encode())
    if token_mint is None:
        message.append(0)
    else:
        message.append(1)
        message += bytes(token_mint)
    message += bytes(tx_payer)
    return bytes(message)
