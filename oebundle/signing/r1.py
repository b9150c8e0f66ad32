from __future__ import annotations

from typing import Callable, Protocol

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

SECP256R1_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551
SECP256R1_HALF_ORDER = SECP256R1_ORDER // 2
FIELD_SIZE = 32
SIGNATURE_SIZE = 2 * FIELD_SIZE


class InvalidSignatureError(ValueError):
    pass


class SignatureProvider(Protocol):
    def sign(self, message: bytes) -> bytes:
        ...

    def public_key(self) -> bytes:
        ...


def _fit_component(raw: bytes) -> int:
    # DER integers carry a leading zero when the high bit is set; keep the low 32 bytes
    if len(raw) > FIELD_SIZE:
        raw = raw[-FIELD_SIZE:]
    return int.from_bytes(raw.rjust(FIELD_SIZE, b"\x00"), "big")


def normalize_signature(
    r: int | bytes,
    s: int | bytes,
    *,
    order: int = SECP256R1_ORDER,
) -> bytes:
    """Return the canonical 64-byte ``r || s`` form with ``s`` in the lower half of the order.

    Components may be given as integers or as big-endian byte strings of any
    width; byte strings are left-padded or truncated to 32 bytes first.
    """
    r_value = _fit_component(r) if isinstance(r, (bytes, bytearray)) else int(r)
    s_value = _fit_component(s) if isinstance(s, (bytes, bytearray)) else int(s)

    if not 0 < r_value < order:
        raise InvalidSignatureError("signature r component is out of range")
    if not 0 < s_value < order:
        raise InvalidSignatureError("signature s component is out of range")

    if s_value > order // 2:
        s_value = order - s_value

    return r_value.to_bytes(FIELD_SIZE, "big") + s_value.to_bytes(FIELD_SIZE, "big")


def normalize_der_signature(der_signature: bytes) -> bytes:
    try:
        r_value, s_value = decode_dss_signature(der_signature)
    except ValueError as error:
        raise InvalidSignatureError(f"signature is not valid DER: {error}") from error
    return normalize_signature(r_value, s_value)


def _require_r1_key(key: object) -> ec.EllipticCurvePrivateKey:
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("R1 private key must be an elliptic-curve key.")
    if not isinstance(key.curve, ec.SECP256R1):
        raise ValueError(f"R1 private key must use secp256r1, got {key.curve.name}.")
    return key


class R1SignatureProvider:
    """Passkey-style secp256r1 signer producing fixed-width low-S signatures.

    The private key is materialized through ``load_private_key`` for each
    ``sign`` call and dropped afterwards.
    """

    def __init__(self, *, load_private_key: Callable[[], ec.EllipticCurvePrivateKey]) -> None:
        self._load_private_key = load_private_key
        self._public_key = self._derive_public_key()

    @classmethod
    def from_pem(cls, pem: str | bytes, *, password: bytes | None = None) -> "R1SignatureProvider":
        pem_bytes = pem.encode("ascii") if isinstance(pem, str) else bytes(pem)
        if not pem_bytes.strip():
            raise ValueError("R1 private key PEM is empty.")

        def load() -> ec.EllipticCurvePrivateKey:
            return _require_r1_key(serialization.load_pem_private_key(pem_bytes, password=password))

        return cls(load_private_key=load)

    @classmethod
    def generate(cls) -> "R1SignatureProvider":
        pem_bytes = ec.generate_private_key(ec.SECP256R1()).private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return cls.from_pem(pem_bytes)

    def _derive_public_key(self) -> bytes:
        private_key = _require_r1_key(self._load_private_key())
        return private_key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )

    def public_key(self) -> bytes:
        return self._public_key

    def sign(self, message: bytes) -> bytes:
        private_key = _require_r1_key(self._load_private_key())
        try:
            der_signature = private_key.sign(bytes(message), ec.ECDSA(hashes.SHA256()))
        finally:
            del private_key
        signature = normalize_der_signature(der_signature)
        if len(signature) != SIGNATURE_SIZE:
            raise InvalidSignatureError(f"unexpected signature length {len(signature)}")
        return signature
