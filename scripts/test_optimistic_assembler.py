from __future__ import annotations

import asyncio
import logging
import random
import struct
import unittest
from unittest.mock import AsyncMock

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from oebundle.bundling import (
    BundleCoordinator,
    BundleStatus,
    ConfirmationTimeoutError,
    CoordinatorConfig,
    TipEstimator,
)
from oebundle.optimistic import (
    IntentState,
    IntentStateError,
    MAX_COMPUTE_UNIT_LIMIT,
    SMART_ACCOUNT_DISCRIMINATOR,
    OptimisticExecutionAssembler,
    OptimisticExecutionConfig,
    OptimisticIntent,
    SmartAccountAccounts,
    SmartAccountStateError,
    TargetBindingError,
    decode_execute_batch_args,
    decode_optimistic_validation,
    decode_post_optimistic_execution,
    decode_smart_account_nonce,
    dynamic_compute_unit_limit,
    merge_account_flags,
    prepare_target,
    reconstruct_target_hash,
    smart_account_id_from_string,
    verify_execute_batch_binding,
)
from oebundle.signing import (
    SECP256R1_PROGRAM_ID,
    R1SignatureProvider,
    WebAuthnSigner,
    parse_secp256r1_instruction,
)

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")
BLOCKHASH = str(Hash.default())
SIMULATION_OK = {"summary": "succeeded", "transactionResults": []}


def _make_accounts() -> SmartAccountAccounts:
    return SmartAccountAccounts.derive(
        smart_account_id_from_string("optimistic-test-account"),
        smart_account_program_id=Pubkey.new_unique(),
        vault_program_id=Pubkey.new_unique(),
    )


def _memo(text: str, *, signer: Pubkey) -> Instruction:
    return Instruction(MEMO_PROGRAM_ID, text.encode(), [AccountMeta(signer, is_signer=True, is_writable=False)])


def _smart_account_data(nonce: int, *, passkeys: int = 1, solana_keys: int = 0) -> bytes:
    # signers variant: vec<passkey> then vec<solana key>, then the nonce
    return (
        SMART_ACCOUNT_DISCRIMINATOR
        + bytes([254, 0])
        + bytes(range(32))
        + bytes([1])
        + struct.pack("<I", passkeys)
        + bytes(49) * passkeys
        + struct.pack("<I", solana_keys)
        + bytes(48) * solana_keys
        + struct.pack("<Q", nonce)
        + bytes([0])
        + struct.pack("<I", 0)
    )


def _make_transport(*, slots: list[int] | None = None, nonce: int = 0) -> AsyncMock:
    transport = AsyncMock()
    transport.get_account_info.return_value = _smart_account_data(nonce)
    transport.get_latest_blockhash.return_value = (BLOCKHASH, 1_000_150)
    if slots is None:
        transport.get_slot.return_value = 1000
    else:
        transport.get_slot.side_effect = slots
    transport.fetch_tip_floor.return_value = [{"landed_tips_95th_percentile": 0.00002}]
    transport.simulate_bundle.return_value = SIMULATION_OK
    transport.send_bundle.return_value = "abc123"
    return transport


async def _yielding_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class TargetSerializationTests(unittest.TestCase):
    def test_layout_binds_nonce_data_and_account_flags(self) -> None:
        vault = Pubkey.new_unique()

        target = prepare_target([_memo("hi", signer=vault)], nonce=3, vault=vault)

        expected = (
            struct.pack("<Q", 3)
            + b"hi"
            + bytes([0, 0])
            + bytes(MEMO_PROGRAM_ID)
            + bytes([0, 0])
            + bytes(vault)
        )
        self.assertEqual(target.serialized, expected)
        self.assertEqual(len(target.target_hash), 32)
        self.assertEqual([(item.ix_data, item.account_count) for item in target.deconstructed], [(b"hi", 2)])
        self.assertEqual(target.num_signers, 0)
        self.assertFalse(any(meta.is_signer for meta in target.remaining_accounts))

    def test_flags_are_merged_across_instructions(self) -> None:
        shared = Pubkey.new_unique()
        first = Instruction(MEMO_PROGRAM_ID, b"a", [AccountMeta(shared, is_signer=False, is_writable=True)])
        second = Instruction(MEMO_PROGRAM_ID, b"b", [AccountMeta(shared, is_signer=True, is_writable=False)])

        flags = merge_account_flags([first, second])
        target = prepare_target([first, second], nonce=0)

        self.assertEqual(flags[shared], (True, True))
        shared_metas = [meta for meta in target.remaining_accounts if meta.pubkey == shared]
        self.assertEqual(len(shared_metas), 2)
        self.assertTrue(all(meta.is_signer and meta.is_writable for meta in shared_metas))

    def test_hash_changes_with_nonce(self) -> None:
        vault = Pubkey.new_unique()
        instructions = [_memo("hi", signer=vault)]

        first = prepare_target(instructions, nonce=1, vault=vault)
        again = prepare_target(instructions, nonce=1, vault=vault)
        other = prepare_target(instructions, nonce=2, vault=vault)

        self.assertEqual(first.target_hash, again.target_hash)
        self.assertNotEqual(first.target_hash, other.target_hash)

    def test_empty_target_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            prepare_target([], nonce=0)

    def test_reconstruction_detects_account_mismatch(self) -> None:
        vault = Pubkey.new_unique()
        target = prepare_target([_memo("hi", signer=vault)], nonce=0, vault=vault)

        self.assertEqual(
            reconstruct_target_hash(
                nonce=0,
                deconstructed=target.deconstructed,
                remaining_accounts=target.remaining_accounts,
            ),
            target.target_hash,
        )
        with self.assertRaises(TargetBindingError):
            reconstruct_target_hash(
                nonce=0,
                deconstructed=target.deconstructed,
                remaining_accounts=target.remaining_accounts[:1],
            )


class OptimisticIntentTests(unittest.TestCase):
    def _intent(self) -> OptimisticIntent:
        return OptimisticIntent(target_hash=b"\x00" * 32, max_slot=1060, token_amount=45_000)

    def test_settlement_walks_every_phase(self) -> None:
        intent = self._intent()
        intent.mark_settled()

        self.assertEqual(intent.state, IntentState.SETTLED)
        self.assertEqual([state for state, _ in intent.history], ["committed", "executed", "settled"])
        self.assertTrue(intent.executed)

    def test_expiry_only_after_max_slot(self) -> None:
        intent = self._intent()

        self.assertFalse(intent.expire_if_past(1060))
        self.assertTrue(intent.expire_if_past(1061))
        self.assertEqual(intent.state, IntentState.EXPIRED)
        self.assertFalse(intent.expire_if_past(2000))

    def test_executed_intent_never_expires(self) -> None:
        intent = self._intent()
        intent.transition(IntentState.COMMITTED)
        intent.transition(IntentState.EXECUTED)

        self.assertFalse(intent.expire_if_past(5000))
        self.assertEqual(intent.state, IntentState.EXECUTED)

    def test_invalid_transition_is_rejected(self) -> None:
        intent = self._intent()
        with self.assertRaises(IntentStateError):
            intent.transition(IntentState.SETTLED)


class ComputeUnitTests(unittest.TestCase):
    def test_limit_grows_with_remaining_accounts_and_is_capped(self) -> None:
        self.assertEqual(dynamic_compute_unit_limit(200_000, 0), 200_000)
        self.assertEqual(dynamic_compute_unit_limit(200_000, 4), 220_000)
        self.assertEqual(dynamic_compute_unit_limit(1_390_000, 10), MAX_COMPUTE_UNIT_LIMIT)


class SmartAccountNonceTests(unittest.TestCase):
    def test_nonce_follows_signer_vectors(self) -> None:
        data = _smart_account_data(41, passkeys=2, solana_keys=1)

        self.assertEqual(decode_smart_account_nonce(data), 41)

    def test_pay_multisig_layout(self) -> None:
        data = (
            SMART_ACCOUNT_DISCRIMINATOR
            + bytes([254, 1])
            + bytes(32)
            + bytes([0, 2])
            + bytes(Pubkey.new_unique())
            + struct.pack("<I", 1)
            + bytes(49)
            + struct.pack("<Q", 9)
        )

        self.assertEqual(decode_smart_account_nonce(data), 9)

    def test_foreign_or_truncated_account_is_rejected(self) -> None:
        with self.assertRaises(SmartAccountStateError):
            decode_smart_account_nonce(bytes(8) + _smart_account_data(1)[8:])
        with self.assertRaises(SmartAccountStateError):
            decode_smart_account_nonce(_smart_account_data(1)[:60])


class OptimisticExecutionAssemblerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.optimistic")
        self.accounts = _make_accounts()
        self.operator = Keypair()
        self.signer = WebAuthnSigner(provider=R1SignatureProvider.generate(), origin="https://example.com")
        self.coordinator = BundleCoordinator(
            logger=self.logger,
            tip_estimator=TipEstimator(logger=self.logger, rng=random.Random(1)),
            sleep=_yielding_sleep,
        )
        self.assembler = OptimisticExecutionAssembler(
            logger=self.logger,
            coordinator=self.coordinator,
            signer=self.signer,
            operator=self.operator,
            accounts=self.accounts,
            config=OptimisticExecutionConfig(slot_window=60),
        )
        self.instructions = [_memo("hello", signer=self.accounts.smart_account_vault)]

    async def test_commit_phase_carries_slot_deadline_and_target(self) -> None:
        transport = _make_transport()

        built = await self.assembler.build(self.instructions, transport=transport, nonce=3)

        phase1, phase2, phase3 = built.phase_instructions
        args = decode_optimistic_validation(bytes(phase1[0].data))
        self.assertEqual(args.max_slot, 1060)
        self.assertEqual(args.token_amount, 5 * 5_000 + 20_000)
        self.assertEqual(
            args.target_hash,
            prepare_target(self.instructions, nonce=3, vault=self.accounts.smart_account_vault).target_hash,
        )
        self.assertEqual(built.intent.max_slot, 1060)
        self.assertEqual(built.intent.state, IntentState.NOT_STARTED)

        self.assertEqual(phase1[1].program_id, SECP256R1_PROGRAM_ID)
        public_key, signature, message = parse_secp256r1_instruction(bytes(phase1[1].data))
        self.assertEqual(public_key, self.signer.public_key)
        self.assertEqual(signature, built.assertion.signature)
        self.assertEqual(message, built.assertion.message)

    async def test_execute_phase_rebuilds_the_committed_hash(self) -> None:
        built = await self.assembler.build(self.instructions, transport=_make_transport(), nonce=3)

        batch_ix = built.phase_instructions[1][-1]
        verify_execute_batch_binding(batch_ix, nonce=3, expected_hash=built.target.target_hash)
        deconstructed = decode_execute_batch_args(bytes(batch_ix.data)[8:])
        self.assertEqual([item.account_count for item in deconstructed], [2])

        with self.assertRaises(TargetBindingError):
            verify_execute_batch_binding(batch_ix, nonce=4, expected_hash=built.target.target_hash)

        tampered = Instruction(
            batch_ix.program_id,
            bytes(batch_ix.data),
            [*list(batch_ix.accounts)[:2], *[AccountMeta(Pubkey.new_unique(), False, False)] * 2],
        )
        with self.assertRaises(TargetBindingError):
            verify_execute_batch_binding(tampered, nonce=3, expected_hash=built.target.target_hash)

    async def test_nonce_is_read_from_the_smart_account_when_omitted(self) -> None:
        transport = _make_transport(nonce=17)

        built = await self.assembler.build(self.instructions, transport=transport)

        transport.get_account_info.assert_awaited_once_with(address=str(self.accounts.smart_account))
        self.assertEqual(built.target.serialized[:8], struct.pack("<Q", 17))
        self.assertEqual(
            built.target.target_hash,
            prepare_target(self.instructions, nonce=17, vault=self.accounts.smart_account_vault).target_hash,
        )
        verify_execute_batch_binding(
            built.phase_instructions[1][-1], nonce=17, expected_hash=built.target.target_hash
        )

    async def test_explicit_nonce_skips_the_account_lookup(self) -> None:
        transport = _make_transport(nonce=17)

        built = await self.assembler.build(self.instructions, transport=transport, nonce=5)

        transport.get_account_info.assert_not_awaited()
        self.assertEqual(built.target.serialized[:8], struct.pack("<Q", 5))

    async def test_missing_smart_account_fails_before_signing(self) -> None:
        transport = _make_transport()
        transport.get_account_info.return_value = None

        with self.assertRaises(SmartAccountStateError):
            await self.assembler.execute(self.instructions, transport=transport)
        transport.simulate_bundle.assert_not_awaited()

    async def test_settle_phase_pays_the_quoted_tip(self) -> None:
        built = await self.assembler.build(self.instructions, transport=_make_transport())

        post_ix = built.phase_instructions[2][0]
        self.assertEqual(decode_post_optimistic_execution(bytes(post_ix.data)), built.tip.amount_lamports)
        self.assertEqual(list(post_ix.accounts)[2].pubkey, Pubkey.from_string(built.tip.tip_account))
        self.assertEqual(len(built.bundle), 3)
        self.assertEqual(built.bundle.key, str(built.bundle.transactions[0].signatures[0]))

    async def test_fallback_tip_is_used_when_feed_fails(self) -> None:
        transport = _make_transport()
        transport.fetch_tip_floor.side_effect = RuntimeError("feed down")

        built = await self.assembler.build(self.instructions, transport=transport)

        self.assertEqual(built.tip.amount_lamports, 10_000)
        self.assertEqual(built.intent.token_amount, 5 * 5_000 + 10_000)

    async def test_simulate_only_leaves_intent_uncommitted(self) -> None:
        transport = _make_transport()

        execution = await self.assembler.execute(self.instructions, transport=transport)

        self.assertEqual(execution.result.status, BundleStatus.SIMULATED_OK)
        self.assertEqual(execution.intent.state, IntentState.NOT_STARTED)
        transport.send_bundle.assert_not_awaited()
        addresses = transport.simulate_bundle.await_args.kwargs["account_addresses"]
        self.assertEqual(addresses, [[str(self.accounts.smart_account)]] * 3)

    async def test_finalized_bundle_settles_the_intent(self) -> None:
        transport = _make_transport()
        landed = {"slot": 1001, "err": None, "confirmationStatus": "confirmed"}
        transport.get_signature_statuses.return_value = [landed, landed, landed]
        transport.get_bundle_statuses.return_value = {
            "slot": 1001,
            "confirmation_status": "finalized",
            "err": {"Ok": None},
        }

        execution = await self.assembler.execute(self.instructions, transport=transport, simulate_only=False)

        self.assertEqual(execution.result.status, BundleStatus.FINALIZED)
        self.assertEqual(execution.result.slot, 1001)
        self.assertEqual(execution.intent.state, IntentState.SETTLED)

    async def test_confirmation_timeout_expires_stale_intent(self) -> None:
        coordinator = BundleCoordinator(
            logger=self.logger,
            config=CoordinatorConfig(
                tx_status_timeout_seconds=0.05,
                tx_status_poll_interval_seconds=0.01,
                bundle_status_timeout_seconds=0.05,
                bundle_status_poll_interval_seconds=0.01,
            ),
            tip_estimator=TipEstimator(logger=self.logger, rng=random.Random(1)),
        )
        assembler = OptimisticExecutionAssembler(
            logger=self.logger,
            coordinator=coordinator,
            signer=self.signer,
            operator=self.operator,
            accounts=self.accounts,
        )
        transport = _make_transport(slots=[1000, 1061])
        transport.get_signature_statuses.return_value = [None, None, None]
        transport.get_bundle_statuses.return_value = None

        with self.assertLogs(self.logger, level="WARNING") as logs:
            with self.assertRaises(ConfirmationTimeoutError):
                await assembler.execute(self.instructions, transport=transport, simulate_only=False)

        events = [getattr(record, "event", None) for record in logs.records]
        self.assertIn("optimistic_intent_expired", events)


if __name__ == "__main__":
    unittest.main()
