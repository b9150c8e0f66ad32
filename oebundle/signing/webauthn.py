from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass

from eth_utils import keccak

from .r1 import SignatureProvider

WEBAUTHN_GET_TYPE = "webauthn.get"
USER_PRESENT_FLAG = 0x01


@dataclass(slots=True, frozen=True)
class WebAuthnMessage:
    message: bytes
    authenticator_data: bytes
    client_data_json: bytes


@dataclass(slots=True, frozen=True)
class WebAuthnAssertion:
    message: bytes
    signature: bytes
    public_key: bytes
    authenticator_data: bytes
    client_data_json: bytes
    challenge: str


def encode_challenge(digest: bytes) -> str:
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_authenticator_data(origin: str, *, flags: int = USER_PRESENT_FLAG, counter: int = 0) -> bytes:
    rp_id_hash = hashlib.sha256(origin.encode("utf-8")).digest()
    return rp_id_hash + bytes([flags & 0xFF]) + int(counter).to_bytes(4, "big")


def build_client_data_json(
    challenge: str,
    origin: str,
    android_package_name: str | None = None,
) -> bytes:
    client_data = {
        "type": WEBAUTHN_GET_TYPE,
        "challenge": challenge,
        "origin": origin,
    }
    if android_package_name:
        client_data["androidPackageName"] = android_package_name
    return json.dumps(client_data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def build_webauthn_message(
    challenge: str,
    origin: str,
    android_package_name: str | None = None,
    *,
    flags: int = USER_PRESENT_FLAG,
    counter: int = 0,
) -> WebAuthnMessage:
    """message = SHA256(authenticator_data || SHA256(client_data_json))"""
    authenticator_data = build_authenticator_data(origin, flags=flags, counter=counter)
    client_data_json = build_client_data_json(challenge, origin, android_package_name)
    client_hash = hashlib.sha256(client_data_json).digest()
    message = hashlib.sha256(authenticator_data + client_hash).digest()
    return WebAuthnMessage(
        message=message,
        authenticator_data=authenticator_data,
        client_data_json=client_data_json,
    )


class WebAuthnSigner:
    def __init__(
        self,
        *,
        provider: SignatureProvider,
        origin: str,
        android_package_name: str | None = None,
    ) -> None:
        self._provider = provider
        self._origin = origin
        self._android_package_name = android_package_name or None

    @property
    def public_key(self) -> bytes:
        return self._provider.public_key()

    def sign_intent(self, intent: bytes, *, hash_intent: bool = True) -> WebAuthnAssertion:
        digest = keccak(bytes(intent)) if hash_intent else bytes(intent)
        challenge = encode_challenge(digest)
        webauthn = build_webauthn_message(challenge, self._origin, self._android_package_name)
        return WebAuthnAssertion(
            message=webauthn.message,
            signature=self._provider.sign(webauthn.message),
            public_key=self._provider.public_key(),
            authenticator_data=webauthn.authenticator_data,
            client_data_json=webauthn.client_data_json,
            challenge=challenge,
        )
