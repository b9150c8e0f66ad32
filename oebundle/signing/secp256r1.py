from __future__ import annotations

import struct

from solders.instruction import Instruction
from solders.pubkey import Pubkey

SECP256R1_PROGRAM_ID = Pubkey.from_string("Secp256r1SigVerify1111111111111111111111111")

COMPRESSED_PUBKEY_SIZE = 33
SIGNATURE_SIZE = 64
SIGNATURE_OFFSETS_START = 2
SIGNATURE_OFFSETS_SERIALIZED_SIZE = 14
DATA_START = SIGNATURE_OFFSETS_START + SIGNATURE_OFFSETS_SERIALIZED_SIZE
CURRENT_INSTRUCTION = 0xFFFF

_OFFSETS = struct.Struct("<HHHHHHH")


def build_secp256r1_instruction(message: bytes, public_key: bytes, signature: bytes) -> Instruction:
    """Native secp256r1 verify instruction for one signature carried inline."""
    if len(public_key) != COMPRESSED_PUBKEY_SIZE:
        raise ValueError(f"secp256r1 public key must be {COMPRESSED_PUBKEY_SIZE} bytes compressed")
    if len(signature) != SIGNATURE_SIZE:
        raise ValueError(f"secp256r1 signature must be {SIGNATURE_SIZE} bytes")

    public_key_offset = DATA_START
    signature_offset = public_key_offset + COMPRESSED_PUBKEY_SIZE
    message_offset = signature_offset + SIGNATURE_SIZE
    if message_offset + len(message) > 0xFFFF:
        raise ValueError("secp256r1 message is too large")

    offsets = _OFFSETS.pack(
        signature_offset,
        CURRENT_INSTRUCTION,
        public_key_offset,
        CURRENT_INSTRUCTION,
        message_offset,
        len(message),
        CURRENT_INSTRUCTION,
    )
    data = bytes([1, 0]) + offsets + bytes(public_key) + bytes(signature) + bytes(message)
    return Instruction(SECP256R1_PROGRAM_ID, data, [])


def parse_secp256r1_instruction(data: bytes) -> tuple[bytes, bytes, bytes]:
    """Return ``(public_key, signature, message)`` from single-signature instruction data."""
    if len(data) < DATA_START or data[0] != 1:
        raise ValueError("not a single-signature secp256r1 instruction")
    (
        signature_offset,
        _signature_ix,
        public_key_offset,
        _public_key_ix,
        message_offset,
        message_size,
        _message_ix,
    ) = _OFFSETS.unpack_from(data, SIGNATURE_OFFSETS_START)
    return (
        bytes(data[public_key_offset : public_key_offset + COMPRESSED_PUBKEY_SIZE]),
        bytes(data[signature_offset : signature_offset + SIGNATURE_SIZE]),
        bytes(data[message_offset : message_offset + message_size]),
    )
