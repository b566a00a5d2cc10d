"""Key store and transition signer.

The key store is an explicit mapping ``(identity id, key id) -> secret``.
Entries are checked against the public key they claim to belong to when they
are added, and an identity's entries are sealed once one of its keys has
signed something, so the material used for signing cannot change underneath
an in-flight transition.

Only ECDSA over secp256k1 is implemented. Signatures are DER-encoded ECDSA
over SHA-256 of the payload.
"""

from __future__ import annotations

import threading
from typing import Dict, Set, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from docstate.errors import ConfigurationError, MissingPrivateKey, UnsupportedKeyType
from docstate.identifier import Identifier
from docstate.keys import IdentityPublicKey, KeyType, PrivateKey
from docstate.runtime.observability import Layer, get_logger

SUPPORTED_KEY_TYPES = frozenset({KeyType.ECDSA_SECP256K1})

_log = get_logger("signer", Layer.SIGNER)


def _as_private_key(value: Union[PrivateKey, bytes, str]) -> PrivateKey:
    if isinstance(value, PrivateKey):
        return value
    if isinstance(value, str):
        return PrivateKey.from_wif(value)
    return PrivateKey(bytes(value))


class KeyStore:
    """Thread-safe private key registry."""

    def __init__(self) -> None:
        self._keys: Dict[Tuple[Identifier, int], PrivateKey] = {}
        self._sealed: Set[Identifier] = set()
        self._lock = threading.Lock()

    def add(
        self,
        identity_id: Union[Identifier, str, bytes],
        public_key: IdentityPublicKey,
        private_key: Union[PrivateKey, bytes, str],
    ) -> None:
        """Register the secret for one identity key.

        ``private_key`` may be a ``PrivateKey``, 32 raw bytes or WIF text.
        """
        identity = Identifier.coerce(identity_id)
        if public_key.key_type not in SUPPORTED_KEY_TYPES:
            raise UnsupportedKeyType(public_key.key_type)
        secret = _as_private_key(private_key)
        if secret.public_key_bytes() != bytes(public_key.data):
            raise ConfigurationError(
                f"private key does not match public key {public_key.id} of identity {identity}"
            )
        with self._lock:
            if identity in self._sealed:
                raise ConfigurationError(
                    f"key store entries for identity {identity} are sealed after first use"
                )
            self._keys[(identity, public_key.id)] = secret
        _log.debug("registered private key", identity_id=str(identity), key_id=public_key.id)

    def contains(self, identity_id: Union[Identifier, str, bytes], key_id: int) -> bool:
        with self._lock:
            return (Identifier.coerce(identity_id), key_id) in self._keys

    def use(self, identity: Identifier, key_id: int) -> PrivateKey:
        """Private key for signing; the identity is sealed against further ``add`` calls."""
        with self._lock:
            secret = self._keys.get((identity, key_id))
            if secret is None:
                raise MissingPrivateKey(str(identity), key_id)
            self._sealed.add(identity)
            return secret


class Signer:
    """Signs payloads with keys held in a ``KeyStore``."""

    def __init__(self, key_store: KeyStore):
        self.key_store = key_store

    def sign(
        self,
        identity_id: Union[Identifier, str, bytes],
        public_key: IdentityPublicKey,
        payload: bytes,
    ) -> bytes:
        if public_key.key_type not in SUPPORTED_KEY_TYPES:
            raise UnsupportedKeyType(public_key.key_type)
        identity = Identifier.coerce(identity_id)
        secret = self.key_store.use(identity, public_key.id)
        signature = secret.to_cryptography().sign(payload, ec.ECDSA(hashes.SHA256()))
        _log.debug("signed payload", identity_id=str(identity), key_id=public_key.id)
        return signature


def verify_signature(public_key: IdentityPublicKey, payload: bytes, signature: bytes) -> bool:
    """Check a signature produced by ``Signer.sign``."""
    if public_key.key_type not in SUPPORTED_KEY_TYPES:
        raise UnsupportedKeyType(public_key.key_type)
    try:
        pub = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes(public_key.data))
        pub.verify(bytes(signature), payload, ec.ECDSA(hashes.SHA256()))
    except (InvalidSignature, ValueError):
        return False
    return True
