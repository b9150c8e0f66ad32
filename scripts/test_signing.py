from __future__ import annotations

import base64
import hashlib
import json
import unittest

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from eth_utils import keccak

from oebundle.signing import (
    SECP256R1_HALF_ORDER,
    SECP256R1_ORDER,
    SECP256R1_PROGRAM_ID,
    InvalidSignatureError,
    R1SignatureProvider,
    WebAuthnSigner,
    build_authenticator_data,
    build_secp256r1_instruction,
    build_webauthn_message,
    encode_challenge,
    normalize_signature,
    parse_secp256r1_instruction,
)


class NormalizeSignatureTests(unittest.TestCase):
    def test_high_s_is_folded_into_lower_half(self) -> None:
        signature = normalize_signature(7, SECP256R1_ORDER - 5)

        self.assertEqual(len(signature), 64)
        self.assertEqual(int.from_bytes(signature[:32], "big"), 7)
        self.assertEqual(int.from_bytes(signature[32:], "big"), 5)

    def test_low_s_is_kept(self) -> None:
        signature = normalize_signature(1, SECP256R1_HALF_ORDER)
        self.assertEqual(int.from_bytes(signature[32:], "big"), SECP256R1_HALF_ORDER)

    def test_zero_components_are_rejected(self) -> None:
        with self.assertRaises(InvalidSignatureError):
            normalize_signature(0, 1)
        with self.assertRaises(InvalidSignatureError):
            normalize_signature(1, 0)
        with self.assertRaises(InvalidSignatureError):
            normalize_signature(1, SECP256R1_ORDER)

    def test_byte_components_are_padded_and_trimmed(self) -> None:
        # 33 bytes with a DER sign byte in front, and a short 31-byte component
        r_bytes = b"\x00" + b"\x80" + b"\x11" * 31
        s_bytes = b"\x22" * 31

        signature = normalize_signature(r_bytes, s_bytes)

        self.assertEqual(signature[:32], b"\x80" + b"\x11" * 31)
        self.assertEqual(signature[32:], b"\x00" + b"\x22" * 31)


class R1SignatureProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = R1SignatureProvider.generate()

    def test_public_key_is_compressed(self) -> None:
        public_key = self.provider.public_key()
        self.assertEqual(len(public_key), 33)
        self.assertIn(public_key[0], (2, 3))

    def test_signatures_are_low_s_and_verify(self) -> None:
        verifier = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), self.provider.public_key())
        for index in range(8):
            message = f"message-{index}".encode()
            signature = self.provider.sign(message)

            self.assertEqual(len(signature), 64)
            r_value = int.from_bytes(signature[:32], "big")
            s_value = int.from_bytes(signature[32:], "big")
            self.assertLessEqual(s_value, SECP256R1_HALF_ORDER)
            verifier.verify(encode_dss_signature(r_value, s_value), message, ec.ECDSA(hashes.SHA256()))

    def test_from_pem_rejects_empty_input(self) -> None:
        with self.assertRaises(ValueError):
            R1SignatureProvider.from_pem("   ")


class WebAuthnMessageTests(unittest.TestCase):
    def test_authenticator_data_layout(self) -> None:
        data = build_authenticator_data("https://example.com")

        self.assertEqual(len(data), 37)
        self.assertEqual(data[:32], hashlib.sha256(b"https://example.com").digest())
        self.assertEqual(data[32], 0x01)
        self.assertEqual(data[33:], b"\x00\x00\x00\x00")

    def test_message_is_two_level_hash(self) -> None:
        webauthn = build_webauthn_message("abc", "https://example.com", "com.example.app")

        client_data = json.loads(webauthn.client_data_json)
        self.assertEqual(client_data["type"], "webauthn.get")
        self.assertEqual(client_data["challenge"], "abc")
        self.assertEqual(client_data["origin"], "https://example.com")
        self.assertEqual(client_data["androidPackageName"], "com.example.app")

        expected = hashlib.sha256(
            webauthn.authenticator_data + hashlib.sha256(webauthn.client_data_json).digest()
        ).digest()
        self.assertEqual(webauthn.message, expected)

    def test_android_package_name_is_optional(self) -> None:
        webauthn = build_webauthn_message("abc", "https://example.com")
        self.assertNotIn("androidPackageName", json.loads(webauthn.client_data_json))

    def test_sign_intent_hashes_the_intent_into_the_challenge(self) -> None:
        signer = WebAuthnSigner(provider=R1SignatureProvider.generate(), origin="https://example.com")
        intent = b"\x01" * 80

        assertion = signer.sign_intent(intent)

        self.assertEqual(assertion.challenge, encode_challenge(keccak(intent)))
        self.assertNotIn("=", assertion.challenge)
        padded = assertion.challenge + "=" * (-len(assertion.challenge) % 4)
        self.assertEqual(base64.urlsafe_b64decode(padded), keccak(intent))
        self.assertEqual(len(assertion.signature), 64)
        self.assertEqual(assertion.public_key, signer.public_key)

    def test_sign_intent_can_skip_hashing(self) -> None:
        signer = WebAuthnSigner(provider=R1SignatureProvider.generate(), origin="https://example.com")
        digest = b"\x42" * 32

        assertion = signer.sign_intent(digest, hash_intent=False)

        self.assertEqual(assertion.challenge, encode_challenge(digest))


class Secp256r1InstructionTests(unittest.TestCase):
    def test_instruction_layout(self) -> None:
        provider = R1SignatureProvider.generate()
        message = b"\x07" * 32
        signature = provider.sign(message)

        ix = build_secp256r1_instruction(message, provider.public_key(), signature)
        data = bytes(ix.data)

        self.assertEqual(ix.program_id, SECP256R1_PROGRAM_ID)
        self.assertEqual(list(ix.accounts), [])
        self.assertEqual(data[:2], b"\x01\x00")
        self.assertEqual(len(data), 16 + 33 + 64 + len(message))
        self.assertEqual(parse_secp256r1_instruction(data), (provider.public_key(), signature, message))

    def test_rejects_uncompressed_key(self) -> None:
        with self.assertRaises(ValueError):
            build_secp256r1_instruction(b"m", b"\x04" * 65, b"\x00" * 64)


if __name__ == "__main__":
    unittest.main()
