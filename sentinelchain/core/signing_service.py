"""
Commit signing key for the ingestion service's ledger connection.

The key comes from SENTINELCHAIN_SIGNING_KEY (base64 Ed25519 private
key, create one with `python -m tools.manage generate-key`). Outside
production a missing key is replaced by a throwaway one; receipts it
signed cannot be attributed once the process restarts.
"""

import binascii
import logging
import os
from dataclasses import dataclass

from nacl.exceptions import CryptoError

from .signer import Signer

logger = logging.getLogger(__name__)

SIGNING_KEY_ENV = "SENTINELCHAIN_SIGNING_KEY"


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    public_key: str

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key!r})"


class SigningService:
    """Signs transaction hashes. Only the public half is ever exposed."""

    def __init__(self, keypair: KeyPair, is_ephemeral: bool = False):
        self._keypair = keypair
        self._is_ephemeral = is_ephemeral

    @classmethod
    def from_private_key(cls, private_key_b64: str) -> "SigningService":
        """
        Raises:
            RuntimeError: If the key is not a valid Ed25519 private key
        """
        try:
            public_key = Signer.public_key_for(private_key_b64)
        except (CryptoError, binascii.Error, ValueError, TypeError) as e:
            raise RuntimeError(f"{SIGNING_KEY_ENV} is not a valid base64 Ed25519 private key") from e
        return cls(KeyPair(private_key_b64, public_key))

    @classmethod
    def ephemeral(cls) -> "SigningService":
        return cls(KeyPair(*Signer.generate_keypair()), is_ephemeral=True)

    @classmethod
    def from_env(cls, production: bool = False) -> "SigningService":
        """
        Raises:
            RuntimeError: If production is set and no key is configured,
                or the configured key is invalid
        """
        configured = os.environ.get(SIGNING_KEY_ENV, "")
        if configured:
            service = cls.from_private_key(configured)
            logger.info("Commit signing key loaded from %s", SIGNING_KEY_ENV)
            return service

        if production:
            raise RuntimeError(
                f"{SIGNING_KEY_ENV} must be set in production "
                "(python -m tools.manage generate-key)"
            )

        logger.warning(
            "%s not set; signing commits with a throwaway key that changes on every restart",
            SIGNING_KEY_ENV,
        )
        return cls.ephemeral()

    @property
    def public_key(self) -> str:
        return self._keypair.public_key

    @property
    def is_ephemeral(self) -> bool:
        return self._is_ephemeral

    def sign(self, message: str) -> str:
        return Signer.sign(message, self._keypair.private_key)

    def verify(self, message: str, signature: str) -> bool:
        return Signer.verify(message, signature, self._keypair.public_key)
