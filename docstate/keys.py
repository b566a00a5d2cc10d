"""Identities, their public keys and local private key material.

Key enums carry the platform's numeric codes so they can be written to the
wire unchanged.

Selection rule: keys are scanned in ascending key id; disabled keys are
skipped; the first key whose purpose matches and whose security level and
key type are in the requested sets wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import AbstractSet, Iterable, Optional, Tuple, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from docstate.errors import ConfigurationError, KeyNotFound
from docstate.identifier import Identifier, b58check_decode, b58check_encode


class Purpose(IntEnum):
    AUTHENTICATION = 0
    ENCRYPTION = 1
    DECRYPTION = 2
    TRANSFER = 3
    SYSTEM = 4
    VOTING = 5


class SecurityLevel(IntEnum):
    MASTER = 0
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3


class KeyType(IntEnum):
    ECDSA_SECP256K1 = 0
    BLS12_381 = 1
    ECDSA_HASH160 = 2
    BIP13_SCRIPT_HASH = 3
    EDDSA_25519_HASH160 = 4


@dataclass(frozen=True)
class IdentityPublicKey:
    id: int
    purpose: Purpose
    security_level: SecurityLevel
    key_type: KeyType
    data: bytes
    read_only: bool = False
    disabled_at: Optional[int] = None

    @property
    def is_disabled(self) -> bool:
        return self.disabled_at is not None

    def describe(self) -> str:
        return (
            f"key {self.id} ({self.purpose.name}/{self.security_level.name}/{self.key_type.name})"
        )


@dataclass(frozen=True)
class Identity:
    id: Identifier
    public_keys: Tuple[IdentityPublicKey, ...] = ()
    balance: int = 0
    revision: int = 0

    def get_public_key_by_id(self, key_id: int) -> Optional[IdentityPublicKey]:
        for key in self.public_keys:
            if key.id == key_id:
                return key
        return None

    def get_first_public_key_matching(
        self,
        purpose: Purpose,
        security_levels: AbstractSet[SecurityLevel],
        key_types: AbstractSet[KeyType],
    ) -> IdentityPublicKey:
        return select_key(self, purpose, security_levels, key_types)


def select_key(
    identity: Identity,
    purpose: Purpose,
    security_levels: AbstractSet[SecurityLevel],
    key_types: AbstractSet[KeyType],
) -> IdentityPublicKey:
    """First enabled key, by ascending id, matching purpose, level and type."""
    for key in sorted(identity.public_keys, key=lambda k: k.id):
        if key.is_disabled:
            continue
        if key.purpose == purpose and key.security_level in security_levels and key.key_type in key_types:
            return key
    requirement = (
        f"purpose={purpose.name} "
        f"security_levels={sorted(l.name for l in security_levels)} "
        f"key_types={sorted(t.name for t in key_types)}"
    )
    raise KeyNotFound(str(identity.id), requirement)


def parse_security_levels(names: Iterable[Union[str, SecurityLevel]]) -> frozenset:
    """Security level names (case-insensitive) to a set of enum members."""
    levels = set()
    for name in names:
        if isinstance(name, SecurityLevel):
            levels.add(name)
            continue
        try:
            levels.add(SecurityLevel[str(name).strip().upper()])
        except KeyError:
            raise ConfigurationError(f"unknown security level: {name!r}") from None
    if not levels:
        raise ConfigurationError("at least one signing security level is required")
    return frozenset(levels)


# secp256k1 group order
_SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

WIF_VERSIONS = {"mainnet": 0xCC, "testnet": 0xEF}


@dataclass(frozen=True)
class PrivateKey:
    """A secp256k1 secret with its Wallet-Import-Format encoding."""
    secret: bytes = field(repr=False)
    network: str = "testnet"
    compressed: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.secret, (bytes, bytearray)) or len(self.secret) != 32:
            raise ConfigurationError("private key must be exactly 32 bytes")
        value = int.from_bytes(self.secret, "big")
        if not 0 < value < _SECP256K1_N:
            raise ConfigurationError("private key is out of range for secp256k1")
        if self.network not in WIF_VERSIONS:
            raise ConfigurationError(f"unknown network {self.network!r}")

    @classmethod
    def generate(cls, network: str = "testnet") -> "PrivateKey":
        key = ec.generate_private_key(ec.SECP256K1())
        return cls(key.private_numbers().private_value.to_bytes(32, "big"), network)

    @classmethod
    def from_wif(cls, text: str) -> "PrivateKey":
        payload = b58check_decode(text)
        versions = {v: n for n, v in WIF_VERSIONS.items()}
        if not payload or payload[0] not in versions:
            raise ConfigurationError("unknown WIF version byte")
        body = payload[1:]
        if len(body) == 33 and body[-1] == 0x01:
            return cls(body[:32], versions[payload[0]], compressed=True)
        if len(body) == 32:
            return cls(body, versions[payload[0]], compressed=False)
        raise ConfigurationError("WIF payload has the wrong length")

    def to_wif(self) -> str:
        payload = bytes([WIF_VERSIONS[self.network]]) + bytes(self.secret)
        if self.compressed:
            payload += b"\x01"
        return b58check_encode(payload)

    def to_cryptography(self) -> ec.EllipticCurvePrivateKey:
        return ec.derive_private_key(int.from_bytes(self.secret, "big"), ec.SECP256K1())

    def public_key_bytes(self) -> bytes:
        """33-byte compressed SEC1 public key."""
        return self.to_cryptography().public_key().public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.CompressedPoint,
        )
