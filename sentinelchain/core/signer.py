"""
Ed25519 signatures over commit transaction hashes.

Keys and signatures travel as base64 text so they fit in environment
variables, receipts and CLI arguments.
"""

import binascii
from typing import Tuple

from nacl.encoding import Base64Encoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

_INVALID = (BadSignatureError, CryptoError, binascii.Error, ValueError, TypeError, AttributeError)


def _signing_key(private_key_b64: str) -> SigningKey:
    return SigningKey(private_key_b64.encode("ascii"), encoder=Base64Encoder)


class Signer:

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Returns:
            (private_key_b64, public_key_b64)
        """
        key = SigningKey.generate()
        return (
            key.encode(encoder=Base64Encoder).decode("ascii"),
            key.verify_key.encode(encoder=Base64Encoder).decode("ascii"),
        )

    @staticmethod
    def public_key_for(private_key_b64: str) -> str:
        return _signing_key(private_key_b64).verify_key.encode(encoder=Base64Encoder).decode("ascii")

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        """Detached signature over the UTF-8 message, base64."""
        signed = _signing_key(private_key_b64).sign(message.encode("utf-8"), encoder=Base64Encoder)
        return signed.signature.decode("ascii")

    @staticmethod
    def verify(message: str, signature_b64: str, public_key_b64: str) -> bool:
        """False for a bad signature, a wrong key or undecodable input."""
        try:
            key = VerifyKey(public_key_b64.encode("ascii"), encoder=Base64Encoder)
            key.verify(message.encode("utf-8"), Base64Encoder.decode(signature_b64.encode("ascii")))
        except _INVALID:
            return False
        return True
