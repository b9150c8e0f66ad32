from .r1 import (
    FIELD_SIZE,
    SECP256R1_HALF_ORDER,
    SECP256R1_ORDER,
    InvalidSignatureError,
    R1SignatureProvider,
    SignatureProvider,
    normalize_der_signature,
    normalize_signature,
)
from .secp256r1 import SECP256R1_PROGRAM_ID, build_secp256r1_instruction, parse_secp256r1_instruction
from .webauthn import (
    WebAuthnAssertion,
    WebAuthnMessage,
    WebAuthnSigner,
    build_authenticator_data,
    build_webauthn_message,
    encode_challenge,
)

__all__ = [
    "FIELD_SIZE",
    "InvalidSignatureError",
    "R1SignatureProvider",
    "SECP256R1_HALF_ORDER",
    "SECP256R1_ORDER",
    "SECP256R1_PROGRAM_ID",
    "SignatureProvider",
    "WebAuthnAssertion",
    "WebAuthnMessage",
    "WebAuthnSigner",
    "build_authenticator_data",
    "build_secp256r1_instruction",
    "build_webauthn_message",
    "encode_challenge",
    "normalize_der_signature",
    "normalize_signature",
    "parse_secp256r1_instruction",
]
