from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
SYSVAR_INSTRUCTIONS_ID = Pubkey.from_string("Sysvar1nstructions1111111111111111111111111")

SMART_ACCOUNT_SEED = b"smart_account"
SMART_ACCOUNT_VAULT_SEED = b"smart_account_vault"
VAULT_STATE_SEED = b"vault_state"
WEBAUTHN_TABLE_SEED = b"webauthn_table"

# Index variants point into the on-chain WebAuthn table instead of inlining the payloads.
_OPTION_NONE = 0
_OPTION_SOME = 1
_ENUM_INDEX_VARIANT = 1

_U64 = struct.Struct("<Q")
_U32 = struct.Struct("<I")


def anchor_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


OPTIMISTIC_VALIDATION_DISCRIMINATOR = anchor_discriminator("optimistic_validation")
VALIDATE_OPTIMISTIC_EXECUTION_DISCRIMINATOR = anchor_discriminator("validate_optimistic_execution")
POST_OPTIMISTIC_EXECUTION_DISCRIMINATOR = anchor_discriminator("post_optimistic_execution")
EXECUTE_BATCH_DISCRIMINATOR = anchor_discriminator("execute_batch")


def smart_account_id_from_string(value: str) -> bytes:
    """A 64-char hex id is used verbatim; anything else is hashed into 32 bytes."""
    candidate = value.strip()
    if len(candidate) == 64:
        try:
            return bytes.fromhex(candidate)
        except ValueError:
            pass
    return hashlib.sha256(candidate.encode("utf-8")).digest()


@dataclass(slots=True, frozen=True)
class SmartAccountAccounts:
    smart_account_program_id: Pubkey
    vault_program_id: Pubkey
    smart_account: Pubkey
    smart_account_vault: Pubkey
    vault_state: Pubkey
    webauthn_table: Pubkey

    @classmethod
    def derive(
        cls,
        smart_account_id: bytes,
        *,
        smart_account_program_id: Pubkey,
        vault_program_id: Pubkey,
        webauthn_table_index: int = 0,
    ) -> "SmartAccountAccounts":
        if len(smart_account_id) != 32:
            raise ValueError(f"Smart account id must be 32 bytes, got {len(smart_account_id)}.")
        smart_account, _ = Pubkey.find_program_address(
            [SMART_ACCOUNT_SEED, smart_account_id],
            smart_account_program_id,
        )
        vault, _ = Pubkey.find_program_address(
            [SMART_ACCOUNT_VAULT_SEED, smart_account_id],
            vault_program_id,
        )
        vault_state, _ = Pubkey.find_program_address(
            [VAULT_STATE_SEED, smart_account_id],
            vault_program_id,
        )
        webauthn_table, _ = Pubkey.find_program_address(
            [WEBAUTHN_TABLE_SEED, bytes([webauthn_table_index & 0xFF])],
            smart_account_program_id,
        )
        return cls(
            smart_account_program_id=smart_account_program_id,
            vault_program_id=vault_program_id,
            smart_account=smart_account,
            smart_account_vault=vault,
            vault_state=vault_state,
            webauthn_table=webauthn_table,
        )


@dataclass(slots=True, frozen=True)
class DeconstructedInstruction:
    ix_data: bytes
    account_count: int


@dataclass(slots=True, frozen=True)
class ValidationArgs:
    max_slot: int
    target_hash: bytes
    token_amount: int

    def __post_init__(self) -> None:
        if len(self.target_hash) != 32:
            raise ValueError(f"target_hash must be 32 bytes, got {len(self.target_hash)}.")

    def encode(self) -> bytes:
        return _U64.pack(self.max_slot) + bytes(self.target_hash) + _U64.pack(self.token_amount)

    @classmethod
    def decode(cls, data: bytes) -> "ValidationArgs":
        if len(data) < 48:
            raise ValueError("Validation args payload is truncated.")
        (max_slot,) = _U64.unpack_from(data, 0)
        (token_amount,) = _U64.unpack_from(data, 40)
        return cls(max_slot=max_slot, target_hash=bytes(data[8:40]), token_amount=token_amount)


def _optional(pubkey: Pubkey | None, program_id: Pubkey, *, is_writable: bool = False) -> AccountMeta:
    # Anchor encodes an absent optional account as the program id itself.
    if pubkey is None:
        return AccountMeta(program_id, is_signer=False, is_writable=False)
    return AccountMeta(pubkey, is_signer=False, is_writable=is_writable)


def optimistic_validation(
    *,
    accounts: SmartAccountAccounts,
    tx_payer: Pubkey,
    args: ValidationArgs,
    token_mint: Pubkey | None = None,
    client_data_json_index: tuple[int, int] = (0, 0),
    auth_data_index: int = 0,
) -> Instruction:
    program_id = accounts.smart_account_program_id
    data = (
        OPTIMISTIC_VALIDATION_DISCRIMINATOR
        + args.encode()
        + bytes([_OPTION_SOME])
        + bytes([_ENUM_INDEX_VARIANT, client_data_json_index[0] & 0xFF, client_data_json_index[1] & 0xFF])
        + bytes([_ENUM_INDEX_VARIANT, auth_data_index & 0xFF])
        + bytes([_OPTION_NONE])
    )
    metas = [
        AccountMeta(tx_payer, is_signer=True, is_writable=True),
        AccountMeta(tx_payer, is_signer=True, is_writable=False),
        AccountMeta(accounts.smart_account, is_signer=False, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSVAR_INSTRUCTIONS_ID, is_signer=False, is_writable=False),
        _optional(token_mint, program_id),
        AccountMeta(accounts.webauthn_table, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, data, metas)


def validate_optimistic_execution(*, accounts: SmartAccountAccounts, tx_payer: Pubkey) -> Instruction:
    metas = [
        AccountMeta(tx_payer, is_signer=True, is_writable=False),
        AccountMeta(accounts.smart_account, is_signer=False, is_writable=True),
        AccountMeta(SYSVAR_INSTRUCTIONS_ID, is_signer=False, is_writable=False),
        AccountMeta(accounts.vault_program_id, is_signer=False, is_writable=False),
        AccountMeta(accounts.vault_state, is_signer=False, is_writable=True),
        AccountMeta(accounts.smart_account_vault, is_signer=False, is_writable=False),
    ]
    return Instruction(
        accounts.smart_account_program_id,
        VALIDATE_OPTIMISTIC_EXECUTION_DISCRIMINATOR,
        metas,
    )


def encode_execute_batch_args(deconstructed: Sequence[DeconstructedInstruction]) -> bytes:
    payload = bytearray(_U32.pack(len(deconstructed)))
    for item in deconstructed:
        if not 0 < item.account_count <= 0xFF:
            raise ValueError(f"account_count out of range: {item.account_count}")
        payload += _U32.pack(len(item.ix_data))
        payload += item.ix_data
        payload.append(item.account_count)
    return bytes(payload)


def decode_execute_batch_args(data: bytes) -> list[DeconstructedInstruction]:
    (count,) = _U32.unpack_from(data, 0)
    offset = _U32.size
    items: list[DeconstructedInstruction] = []
    for _ in range(count):
        (length,) = _U32.unpack_from(data, offset)
        offset += _U32.size
        ix_data = bytes(data[offset : offset + length])
        if len(ix_data) != length:
            raise ValueError("execute_batch payload is truncated.")
        offset += length
        items.append(DeconstructedInstruction(ix_data=ix_data, account_count=data[offset]))
        offset += 1
    if offset != len(data):
        raise ValueError(f"execute_batch payload has {len(data) - offset} trailing bytes.")
    return items


def execute_batch(
    *,
    accounts: SmartAccountAccounts,
    deconstructed: Sequence[DeconstructedInstruction],
    remaining_accounts: Sequence[AccountMeta],
) -> Instruction:
    metas = [
        AccountMeta(accounts.vault_state, is_signer=False, is_writable=True),
        AccountMeta(accounts.smart_account_vault, is_signer=False, is_writable=False),
        *remaining_accounts,
    ]
    data = EXECUTE_BATCH_DISCRIMINATOR + encode_execute_batch_args(deconstructed)
    return Instruction(accounts.vault_program_id, data, metas)


def post_optimistic_execution(
    *,
    accounts: SmartAccountAccounts,
    tx_payer: Pubkey,
    jito_tip_account: Pubkey,
    jito_tip_amount: int,
) -> Instruction:
    program_id = accounts.smart_account_program_id
    metas = [
        AccountMeta(tx_payer, is_signer=True, is_writable=False),
        AccountMeta(accounts.smart_account, is_signer=False, is_writable=True),
        AccountMeta(jito_tip_account, is_signer=False, is_writable=True),
        AccountMeta(accounts.vault_program_id, is_signer=False, is_writable=False),
        AccountMeta(accounts.vault_state, is_signer=False, is_writable=False),
        AccountMeta(accounts.smart_account_vault, is_signer=False, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        _optional(None, program_id),
        _optional(None, program_id),
        _optional(None, program_id),
        _optional(None, program_id),
    ]
    data = POST_OPTIMISTIC_EXECUTION_DISCRIMINATOR + _U64.pack(int(jito_tip_amount))
    return Instruction(program_id, data, metas)


def decode_optimistic_validation(data: bytes) -> ValidationArgs:
    if data[:8] != OPTIMISTIC_VALIDATION_DISCRIMINATOR:
        raise ValueError("Not an optimistic_validation instruction.")
    return ValidationArgs.decode(data[8:56])


def decode_post_optimistic_execution(data: bytes) -> int:
    if data[:8] != POST_OPTIMISTIC_EXECUTION_DISCRIMINATOR:
        raise ValueError("Not a post_optimistic_execution instruction.")
    (amount,) = _U64.unpack_from(data, 8)
    return amount


class SmartAccountStateError(RuntimeError):
    pass


# Account discriminator of the on-chain SmartAccount record.
SMART_ACCOUNT_DISCRIMINATOR = bytes([186, 83, 247, 224, 59, 95, 223, 112])

_PASSKEY_SIZE = 33 + 8 + 8
_SOLANA_KEY_SIZE = 32 + 8 + 8
_AUTH_MODEL_PAY_MULTISIG = 0
_AUTH_MODEL_SIGNERS = 1


def _skip_vec(data: bytes, offset: int, item_size: int) -> int:
    (count,) = _U32.unpack_from(data, offset)
    return offset + _U32.size + count * item_size


def decode_smart_account_nonce(data: bytes) -> int:
    """Read ``nonce`` out of a raw SmartAccount account.

    Layout: discriminator, bump, account type, id, authorization model
    (``payMultisig`` or ``signers``), then the u64 nonce.
    """
    if bytes(data[:8]) != SMART_ACCOUNT_DISCRIMINATOR:
        raise SmartAccountStateError("Account data is not a SmartAccount record.")
    try:
        offset = 8 + 1 + 1 + 32
        model = data[offset]
        offset += 1
        if model == _AUTH_MODEL_PAY_MULTISIG:
            offset = _skip_vec(data, offset + 1 + 32, _PASSKEY_SIZE)
        elif model == _AUTH_MODEL_SIGNERS:
            offset = _skip_vec(data, offset, _PASSKEY_SIZE)
            offset = _skip_vec(data, offset, _SOLANA_KEY_SIZE)
        else:
            raise SmartAccountStateError(f"Unknown authorization model variant {model}.")
        (nonce,) = _U64.unpack_from(data, offset)
    except (IndexError, struct.error) as error:
        raise SmartAccountStateError(f"SmartAccount record is truncated: {error}") from error
    return nonce
