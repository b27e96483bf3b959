# Core cryptographic primitives
from .hasher import Hasher, CanonicalSerializationError, to_hex
from .signer import Signer
from .signing_service import SigningService, KeyPair, SIGNING_KEY_ENV

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "to_hex",
    "Signer",
    "SigningService",
    "KeyPair",
    "SIGNING_KEY_ENV",
]
