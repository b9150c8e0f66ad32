from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from oebundle.bundling import (
    Bundle,
    BundleCoordinator,
    BundleExecutionResult,
    BundleStatus,
    ConfirmationTimeoutError,
    TipQuote,
    build_versioned_transaction,
)
from oebundle.common import guarded_call, log_event
from oebundle.signing import WebAuthnAssertion, WebAuthnSigner, build_secp256r1_instruction

from .intent import (
    OptimisticIntent,
    PreparedTarget,
    TargetBindingError,
    build_validation_message,
    prepare_target,
    reconstruct_target_hash,
)
from .program import (
    EXECUTE_BATCH_DISCRIMINATOR,
    SmartAccountAccounts,
    SmartAccountStateError,
    ValidationArgs,
    decode_execute_batch_args,
    decode_smart_account_nonce,
    execute_batch,
    optimistic_validation,
    post_optimistic_execution,
    validate_optimistic_execution,
)

if TYPE_CHECKING:
    from oebundle.runtime.settings import AppSettings

LAMPORTS_PER_SIGNER = 5_000
EXECUTION_FEE_SIGNERS = 5
MAX_COMPUTE_UNIT_LIMIT = 1_400_000
COMPUTE_UNITS_PER_REMAINING_ACCOUNT = 5_000


@dataclass(slots=True, frozen=True)
class OptimisticExecutionConfig:
    slot_window: int = 60
    compute_unit_limit: int = 200_000
    compute_unit_price_micro_lamports: int = 100_000

    @classmethod
    def from_settings(cls, settings: "AppSettings") -> "OptimisticExecutionConfig":
        return cls(
            slot_window=settings.optimistic_slot_window,
            compute_unit_limit=settings.compute_unit_limit,
            compute_unit_price_micro_lamports=settings.compute_unit_price_micro_lamports,
        )


@dataclass(slots=True, frozen=True)
class OptimisticBundle:
    bundle: Bundle
    intent: OptimisticIntent
    target: PreparedTarget
    assertion: WebAuthnAssertion
    tip: TipQuote
    blockhash: str
    current_slot: int
    phase_instructions: tuple[list[Instruction], list[Instruction], list[Instruction]]


@dataclass(slots=True, frozen=True)
class OptimisticExecution:
    built: OptimisticBundle
    result: BundleExecutionResult

    @property
    def intent(self) -> OptimisticIntent:
        return self.built.intent


def dynamic_compute_unit_limit(base_limit: int, remaining_account_count: int) -> int:
    return min(base_limit + remaining_account_count * COMPUTE_UNITS_PER_REMAINING_ACCOUNT, MAX_COMPUTE_UNIT_LIMIT)


def verify_execute_batch_binding(instruction: Instruction, *, nonce: int, expected_hash: bytes) -> None:
    """Re-derive the target hash from an ``execute_batch`` instruction and compare."""
    data = bytes(instruction.data)
    if data[:8] != EXECUTE_BATCH_DISCRIMINATOR:
        raise TargetBindingError("Phase 2 does not end with an execute_batch instruction.")
    deconstructed = decode_execute_batch_args(data[8:])
    remaining = list(instruction.accounts)[2:]
    rebuilt = reconstruct_target_hash(nonce=nonce, deconstructed=deconstructed, remaining_accounts=remaining)
    if rebuilt != expected_hash:
        raise TargetBindingError(
            f"execute_batch hashes to {rebuilt.hex()} but the committed target is {expected_hash.hex()}."
        )


class OptimisticExecutionAssembler:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        coordinator: BundleCoordinator,
        signer: WebAuthnSigner,
        operator: Keypair,
        accounts: SmartAccountAccounts,
        config: OptimisticExecutionConfig | None = None,
    ) -> None:
        self._logger = logger
        self._coordinator = coordinator
        self._signer = signer
        self._operator = operator
        self._accounts = accounts
        self._config = config or OptimisticExecutionConfig()

    @property
    def accounts(self) -> SmartAccountAccounts:
        return self._accounts

    async def fetch_nonce(self, *, transport: Any) -> int:
        address = str(self._accounts.smart_account)
        data = await transport.get_account_info(address=address)
        if data is None:
            raise SmartAccountStateError(f"Smart account {address} does not exist on chain.")
        return decode_smart_account_nonce(data)

    async def build(
        self,
        instructions: Sequence[Instruction],
        *,
        transport: Any,
        nonce: int | None = None,
        lookup_table_addresses: Sequence[str] = (),
        token_mint: Pubkey | None = None,
    ) -> OptimisticBundle:
        payer = self._operator.pubkey()
        nonce_source = "caller"
        if nonce is None:
            nonce = await self.fetch_nonce(transport=transport)
            nonce_source = "chain"
        blockhash, _ = await transport.get_latest_blockhash()
        tip = await self._coordinator.quote_tip(transport=transport)
        token_amount = EXECUTION_FEE_SIGNERS * LAMPORTS_PER_SIGNER + tip.amount_lamports

        current_slot = await transport.get_slot()
        max_slot = current_slot + self._config.slot_window

        target = prepare_target(instructions, nonce=nonce, vault=self._accounts.smart_account_vault)
        args = ValidationArgs(max_slot=max_slot, target_hash=target.target_hash, token_amount=token_amount)
        assertion = self._signer.sign_intent(build_validation_message(args, tx_payer=payer, token_mint=token_mint))

        phase1 = [
            optimistic_validation(
                accounts=self._accounts,
                tx_payer=payer,
                args=args,
                token_mint=token_mint,
            ),
            build_secp256r1_instruction(assertion.message, assertion.public_key, assertion.signature),
        ]

        batch_ix = execute_batch(
            accounts=self._accounts,
            deconstructed=target.deconstructed,
            remaining_accounts=target.remaining_accounts,
        )
        verify_execute_batch_binding(batch_ix, nonce=nonce, expected_hash=target.target_hash)
        phase2 = [
            set_compute_unit_limit(
                dynamic_compute_unit_limit(self._config.compute_unit_limit, len(target.remaining_accounts))
            ),
            set_compute_unit_price(self._config.compute_unit_price_micro_lamports),
            validate_optimistic_execution(accounts=self._accounts, tx_payer=payer),
            batch_ix,
        ]

        phase3 = [
            post_optimistic_execution(
                accounts=self._accounts,
                tx_payer=payer,
                jito_tip_account=Pubkey.from_string(tip.tip_account),
                jito_tip_amount=tip.amount_lamports,
            )
        ]

        lookup_tables = []
        if lookup_table_addresses:
            lookup_tables = await transport.get_address_lookup_tables(addresses=list(lookup_table_addresses))

        bundle = Bundle.of(
            [
                build_versioned_transaction(self._operator, blockhash, phase1),
                build_versioned_transaction(self._operator, blockhash, phase2, lookup_tables),
                build_versioned_transaction(self._operator, blockhash, phase3),
            ]
        )
        intent = OptimisticIntent(target_hash=target.target_hash, max_slot=max_slot, token_amount=token_amount)

        log_event(
            self._logger,
            level="info",
            event="optimistic_bundle_built",
            message="Built three-phase optimistic execution bundle",
            bundle_key=bundle.key,
            current_slot=current_slot,
            max_slot=max_slot,
            nonce=nonce,
            nonce_source=nonce_source,
            token_amount=token_amount,
            tip_lamports=tip.amount_lamports,
            tip_account=tip.tip_account,
            target_hash=target.target_hash.hex(),
            target_instruction_count=len(target.deconstructed),
            remaining_account_count=len(target.remaining_accounts),
        )

        return OptimisticBundle(
            bundle=bundle,
            intent=intent,
            target=target,
            assertion=assertion,
            tip=tip,
            blockhash=blockhash,
            current_slot=current_slot,
            phase_instructions=(phase1, phase2, phase3),
        )

    async def execute(
        self,
        instructions: Sequence[Instruction],
        *,
        transport: Any,
        nonce: int | None = None,
        simulate_only: bool = True,
        lookup_table_addresses: Sequence[str] = (),
        token_mint: Pubkey | None = None,
    ) -> OptimisticExecution:
        built = await self.build(
            instructions,
            transport=transport,
            nonce=nonce,
            lookup_table_addresses=lookup_table_addresses,
            token_mint=token_mint,
        )

        try:
            result = await self._coordinator.execute(
                built.bundle,
                transport=transport,
                watch_account=str(self._accounts.smart_account),
                simulate_only=simulate_only,
            )
        except ConfirmationTimeoutError:
            current_slot = await guarded_call(
                lambda: transport.get_slot(),
                logger=self._logger,
                event="optimistic_slot_check_failed",
                message="Failed to read the current slot after a confirmation timeout",
                level="warning",
                bundle_key=built.bundle.key,
            )
            if current_slot is not None and built.intent.expire_if_past(current_slot):
                log_event(
                    self._logger,
                    level="warning",
                    event="optimistic_intent_expired",
                    message="Optimistic intent passed its slot deadline without landing",
                    bundle_key=built.bundle.key,
                    current_slot=current_slot,
                    max_slot=built.intent.max_slot,
                )
            raise

        if result.status is BundleStatus.FINALIZED:
            built.intent.mark_settled()

        log_event(
            self._logger,
            level="info",
            event="optimistic_execution_completed",
            message="Optimistic execution finished",
            bundle_key=built.bundle.key,
            bundle_status=result.status.value,
            intent_state=built.intent.state.value,
            slot=result.slot,
        )
        return OptimisticExecution(built=built, result=result)

