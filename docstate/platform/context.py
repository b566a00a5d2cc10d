"""Platform context provider.

Holds the immutable connection settings and memoizes the two lookups that
never change once published: data contracts and quorum public keys. Both
caches are bounded LRU caches sized from configuration.
"""

from __future__ import annotations

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from docstate.errors import ConfigurationError, NotFoundError
from docstate.identifier import Identifier
from docstate.runtime.cache import LRUCache
from docstate.runtime.config import ClientSettings
from docstate.runtime.observability import Layer, get_logger
from docstate.schema import DataContract

_log = get_logger("context", Layer.PLATFORM)


class PlatformContextProvider:
    def __init__(self, settings: ClientSettings, client=None):
        self.settings = settings
        self.client = client
        self._contracts: LRUCache[Identifier, DataContract] = LRUCache(
            max_size=settings.data_contracts_cache_size
        )
        self._quorum_keys: LRUCache[str, Ed25519PublicKey] = LRUCache(
            max_size=settings.quorum_keys_cache_size
        )

    @property
    def platform_uri(self) -> str:
        return self.settings.platform_uri

    @property
    def core_uri(self) -> str:
        return self.settings.core_uri

    def _require_client(self):
        if self.client is None:
            raise ConfigurationError("no platform client configured")
        return self.client

    def get_data_contract(self, contract_id) -> DataContract:
        """Cached contract lookup; ``NotFoundError`` when the platform has none."""
        contract_id = Identifier.coerce(contract_id)

        def load() -> DataContract:
            contract = self._require_client().fetch_data_contract(contract_id)
            if contract is None:
                raise NotFoundError("data contract", str(contract_id))
            _log.debug("fetched data contract", data_contract_id=str(contract_id))
            return contract

        return self._contracts.get_or_load(contract_id, load)

    def get_quorum_public_key(self, quorum_hash: str) -> Ed25519PublicKey:
        def load() -> Ed25519PublicKey:
            raw = self._require_client().get_quorum_public_key(quorum_hash)
            if raw is None:
                raise NotFoundError("quorum public key", quorum_hash)
            return Ed25519PublicKey.from_public_bytes(bytes(raw))

        return self._quorum_keys.get_or_load(quorum_hash, load)

    def add_data_contract(self, contract: DataContract) -> None:
        """Seed the cache with a contract known locally."""
        self._contracts.set(contract.id, contract)

    def cache_metrics(self) -> dict:
        return {
            "data_contracts": self._contracts.metrics.to_dict(),
            "quorum_keys": self._quorum_keys.metrics.to_dict(),
        }

    def describe(self, redact: bool = True) -> dict:
        out = {"platform_uri": self.platform_uri, "core_uri": self.core_uri}
        out.update(self.settings.to_dict(redact=redact))
        return out
