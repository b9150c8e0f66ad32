from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import random
import sys
from typing import Sequence

from dotenv import load_dotenv
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from oebundle.bundling import (
    BlockEngineError,
    BundleCoordinator,
    BundleExecutionError,
    CoordinatorConfig,
    JitoRpcTransport,
    TipEstimator,
)
from oebundle.common import log_event
from oebundle.optimistic import (
    OptimisticExecutionAssembler,
    OptimisticExecutionConfig,
    SmartAccountAccounts,
    SmartAccountStateError,
    smart_account_id_from_string,
)
from oebundle.runtime import AppSettings, setup_logger
from oebundle.signing import R1SignatureProvider, WebAuthnSigner
from oebundle.storage import RedisBundleJournal, StorageSettings

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")


def build_memo_instruction(text: str, *, signer: Pubkey) -> Instruction:
    return Instruction(
        MEMO_PROGRAM_ID,
        text.encode("utf-8"),
        [AccountMeta(signer, is_signer=True, is_writable=False)],
    )


def build_target_instructions(args: argparse.Namespace, *, vault: Pubkey) -> list[Instruction]:
    if args.operation == "transfer":
        if not args.recipient:
            raise ValueError("--recipient is required for the transfer operation.")
        return [
            transfer(
                TransferParams(
                    from_pubkey=vault,
                    to_pubkey=Pubkey.from_string(args.recipient),
                    lamports=int(args.lamports),
                )
            )
        ]
    return [build_memo_instruction(args.memo, signer=vault)]


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build and simulate (or submit) a three-phase optimistic execution bundle.",
    )
    parser.add_argument("operation", choices=("memo", "transfer", "status"), nargs="?", default="memo")
    parser.add_argument(
        "-x",
        "--execute",
        action="store_true",
        help="Submit the bundle and wait for finalization instead of only simulating it.",
    )
    parser.add_argument(
        "--nonce",
        type=int,
        default=None,
        help="Smart account nonce bound into the target hash (read from chain when omitted).",
    )
    parser.add_argument("--memo", default="optimistic execution", help="Memo text for the memo operation.")
    parser.add_argument("--lamports", type=int, default=1_000, help="Lamports moved by the transfer operation.")
    parser.add_argument("--recipient", default="", help="Recipient address for the transfer operation.")
    parser.add_argument(
        "--lookup-table",
        action="append",
        default=[],
        dest="lookup_tables",
        help="Address lookup table applied to the execution transaction (repeatable).",
    )
    parser.add_argument("--bundle-key", default="", help="First transaction signature of a journaled bundle.")
    parser.add_argument(
        "--status",
        action="append",
        default=[],
        dest="statuses",
        help="Only list journaled bundles in this status (repeatable).",
    )
    parser.add_argument("--limit", type=int, default=20, help="Maximum number of journaled bundles to list.")
    parser.add_argument("--delete", action="store_true", help="Delete the journal record given by --bundle-key.")
    return parser.parse_args(argv)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


async def run_status(
    args: argparse.Namespace,
    *,
    logger: logging.Logger,
    journal: RedisBundleJournal | None = None,
) -> int:
    storage_settings = StorageSettings.from_env()
    if journal is None and not storage_settings.enabled:
        log_event(
            logger,
            level="error",
            event="configuration_missing",
            message="The bundle journal is disabled",
            missing=["REDIS_URL"],
        )
        return 2

    if journal is None:
        journal = RedisBundleJournal(storage_settings, logger)
    try:
        await journal.connect()
        if not args.bundle_key:
            _print_json(
                await journal.list_bundle_statuses(statuses=set(args.statuses), limit=args.limit)
            )
            return 0
        if args.delete:
            deleted = await journal.delete_bundle_status(bundle_key=args.bundle_key)
            _print_json({"bundle_key": args.bundle_key, "deleted": deleted})
            return 0 if deleted else 1
        record = await journal.get_bundle_status(bundle_key=args.bundle_key)
        if record is None:
            log_event(
                logger,
                level="warning",
                event="bundle_status_not_found",
                message="No journal record for bundle",
                bundle_key=args.bundle_key,
            )
            return 1
        _print_json(record)
        return 0
    finally:
        with contextlib.suppress(Exception):
            await journal.close()


async def run(args: argparse.Namespace, *, logger: logging.Logger) -> int:
    if args.operation == "status":
        return await run_status(args, logger=logger)

    app_settings = AppSettings.from_env()
    missing = app_settings.missing_for_execution()
    if missing:
        log_event(
            logger,
            level="error",
            event="configuration_missing",
            message="Required configuration is missing",
            missing=missing,
        )
        return 2

    storage_settings = StorageSettings.from_env()
    journal: RedisBundleJournal | None = None

    try:
        operator = Keypair.from_base58_string(app_settings.private_key)
        accounts = SmartAccountAccounts.derive(
            smart_account_id_from_string(app_settings.smart_account_id),
            smart_account_program_id=Pubkey.from_string(app_settings.smart_account_program_id),
            vault_program_id=Pubkey.from_string(app_settings.vault_program_id),
        )
        signer = WebAuthnSigner(
            provider=R1SignatureProvider.from_pem(app_settings.r1_private_key_pem),
            origin=app_settings.webauthn_origin,
            android_package_name=app_settings.webauthn_android_package_name,
        )
        if storage_settings.enabled:
            journal = RedisBundleJournal(storage_settings, logger)
            await journal.connect()

        coordinator_config = CoordinatorConfig.from_settings(app_settings)
        coordinator = BundleCoordinator(
            logger=logger,
            config=coordinator_config,
            tip_estimator=TipEstimator(
                logger=logger,
                fallback_tip_lamports=coordinator_config.fallback_tip_lamports,
                rng=random.Random(app_settings.tip_rng_seed) if app_settings.tip_rng_seed is not None else None,
            ),
            status_store=journal,
        )
        assembler = OptimisticExecutionAssembler(
            logger=logger,
            coordinator=coordinator,
            signer=signer,
            operator=operator,
            accounts=accounts,
            config=OptimisticExecutionConfig.from_settings(app_settings),
        )

        log_event(
            logger,
            level="info",
            event="optimistic_run_started",
            message="Starting optimistic execution run",
            operation=args.operation,
            execute=args.execute,
            operator=str(operator.pubkey()),
            smart_account=str(accounts.smart_account),
            smart_account_vault=str(accounts.smart_account_vault),
        )

        async with JitoRpcTransport(
            logger=logger,
            rpc_url=app_settings.rpc_url,
            block_engine_url=app_settings.jito_block_engine_url,
            tip_floor_url=app_settings.jito_tip_floor_url,
            timeout_seconds=app_settings.http_timeout_seconds,
        ) as transport:
            execution = await assembler.execute(
                build_target_instructions(args, vault=accounts.smart_account_vault),
                transport=transport,
                nonce=args.nonce,
                simulate_only=not args.execute,
                lookup_table_addresses=args.lookup_tables,
            )
    except (BundleExecutionError, BlockEngineError, SmartAccountStateError) as error:
        log_event(
            logger,
            level="error",
            event="optimistic_run_failed",
            message="Optimistic execution failed",
            error=str(error),
            error_type=type(error).__name__,
        )
        return 1
    finally:
        if journal is not None:
            with contextlib.suppress(Exception):
                await journal.close()

    print(execution.result.summary)
    _print_json(
        {
            "intent_state": execution.intent.state.value,
            "max_slot": execution.intent.max_slot,
            "result": execution.result.to_dict(),
        }
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logger = setup_logger()
    args = parse_args(argv)
    return asyncio.run(run(args, logger=logger))


if __name__ == "__main__":
    sys.exit(main())
