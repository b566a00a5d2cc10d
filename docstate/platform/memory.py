"""
In-memory platform.

A deterministic stand-in for the remote platform, used by the test-suite and
the ``demo`` command. It enforces the same rules the real platform applies to
document transitions:

    - the contract, document type and signing identity exist
    - the signature verifies against an enabled authentication key
    - properties satisfy the document type schema
    - create: the id matches the entropy, revision is the initial revision
    - update/purchase: revision is exactly stored + 1
    - update price: signed by the owner, type allows direct purchase
    - purchase: type is transferable, document is priced, price matches,
      purchaser can pay; the purchaser is debited and the owner credited

Each applied transition is placed in its own block. Results are issued as
quorum-signed ``ConfirmationProof`` objects.

Fault injection lets tests reproduce the ambiguous cases: a broadcast that
fails before reaching the platform, a broadcast whose response is lost after
the transition was applied, and confirmations that never arrive even though
state changed.
"""

from __future__ import annotations

import hashlib
import secrets
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from docstate.document import INITIAL_REVISION, Document
from docstate.document_id import generate_document_id
from docstate.errors import (
    DocStateError,
    NetworkError,
    RejectionReason,
    SubmissionRejected,
    UnsupportedKeyType,
)
from docstate.identifier import Identifier
from docstate.keys import (
    Identity,
    IdentityPublicKey,
    KeyType,
    PrivateKey,
    Purpose,
    SecurityLevel,
)
from docstate.runtime.observability import Layer, get_logger
from docstate.schema import PRICE_FIELD, DataContract, DocumentType
from docstate.signer import verify_signature
from docstate.submitter import ConfirmationProof
from docstate.transition import DocumentTransition, TransitionKind

_log = get_logger("memory", Layer.PLATFORM)

DocumentKey = Tuple[Identifier, str, Identifier]


class _Rejection(Exception):
    def __init__(self, reason: RejectionReason, message: str):
        self.reason = reason
        self.message = message
        super().__init__(message)


@dataclass
class FaultPlan:
    """Pending injected failures, consumed one per matching call."""
    broadcast_failures: int = 0
    lost_broadcast_responses: int = 0
    dropped_confirmations: int = 0
    wait_failures: int = 0


@dataclass
class _Block:
    height: int
    core_height: int
    transition_ids: List[str] = field(default_factory=list)


class InMemoryPlatform:
    """Thread-safe in-process platform implementing ``PlatformClient``."""

    def __init__(
        self,
        quorum_key: Optional[Ed25519PrivateKey] = None,
        start_height: int = 1,
        start_core_height: int = 1000,
        network: str = "testnet",
    ):
        self._quorum_key = quorum_key or Ed25519PrivateKey.generate()
        pub = self._quorum_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._quorum_public = pub
        self.quorum_hash = hashlib.sha256(pub).hexdigest()
        self.network = network

        self._lock = threading.RLock()
        self._identities: Dict[Identifier, Identity] = {}
        self._contracts: Dict[Identifier, DataContract] = {}
        self._documents: Dict[DocumentKey, Document] = {}
        self._results: Dict[str, ConfirmationProof] = {}
        self._withheld: Set[str] = set()
        self._blocks: List[_Block] = []
        self._height = start_height - 1
        self._core_height = start_core_height
        self.faults = FaultPlan()
        self.broadcast_log: List[str] = []
        self.fetch_counts: Dict[str, int] = {"identity": 0, "data_contract": 0, "document": 0}

    # -------------------------------------------------------------------------
    # registration
    # -------------------------------------------------------------------------

    def register_contract(self, contract: DataContract) -> DataContract:
        with self._lock:
            self._contracts[contract.id] = contract
        return contract

    def register_identity(self, identity: Identity) -> Identity:
        with self._lock:
            self._identities[identity.id] = identity
        return identity

    def create_identity(
        self,
        balance: int = 0,
        security_level: SecurityLevel = SecurityLevel.HIGH,
        key_id: int = 1,
    ) -> Tuple[Identity, PrivateKey]:
        """New identity with a master key and one authentication key.

        Returns the identity and the private key of the authentication key.
        """
        master = PrivateKey.generate(self.network)
        auth = PrivateKey.generate(self.network)
        identity = Identity(
            id=Identifier(secrets.token_bytes(32)),
            public_keys=(
                IdentityPublicKey(
                    id=0,
                    purpose=Purpose.AUTHENTICATION,
                    security_level=SecurityLevel.MASTER,
                    key_type=KeyType.ECDSA_SECP256K1,
                    data=master.public_key_bytes(),
                ),
                IdentityPublicKey(
                    id=key_id,
                    purpose=Purpose.AUTHENTICATION,
                    security_level=security_level,
                    key_type=KeyType.ECDSA_SECP256K1,
                    data=auth.public_key_bytes(),
                ),
            ),
            balance=balance,
        )
        self.register_identity(identity)
        return identity, auth

    def credit(self, identity_id: Identifier, amount: int) -> int:
        with self._lock:
            identity = self._identities[identity_id]
            updated = Identity(identity.id, identity.public_keys, identity.balance + amount, identity.revision)
            self._identities[identity_id] = updated
            return updated.balance

    def balance_of(self, identity_id: Identifier) -> int:
        with self._lock:
            return self._identities[identity_id].balance

    def put_document(self, document: Document) -> None:
        """Store a document directly, bypassing transitions."""
        with self._lock:
            self._documents[(document.data_contract_id, document.document_type_name, document.id)] = document

    @property
    def block_height(self) -> int:
        with self._lock:
            return self._height

    # -------------------------------------------------------------------------
    # fault injection
    # -------------------------------------------------------------------------

    def fail_next_broadcasts(self, count: int = 1) -> None:
        """Broadcasts fail before the platform sees them."""
        with self._lock:
            self.faults.broadcast_failures += count

    def lose_next_broadcast_responses(self, count: int = 1) -> None:
        """Broadcasts are applied but the caller gets a transport error."""
        with self._lock:
            self.faults.lost_broadcast_responses += count

    def drop_next_confirmations(self, count: int = 1) -> None:
        """Transitions are applied but their results are never served."""
        with self._lock:
            self.faults.dropped_confirmations += count

    def fail_next_waits(self, count: int = 1) -> None:
        with self._lock:
            self.faults.wait_failures += count

    # -------------------------------------------------------------------------
    # PlatformClient
    # -------------------------------------------------------------------------

    def broadcast_state_transition(self, raw: bytes) -> str:
        with self._lock:
            if self.faults.broadcast_failures > 0:
                self.faults.broadcast_failures -= 1
                raise NetworkError("connection refused by platform node", ambiguous=False)

            transition_id, proof = self._process(raw)
            self.broadcast_log.append(transition_id)
            if proof is None:
                raise SubmissionRejected(
                    RejectionReason.DUPLICATE,
                    "transition already processed",
                    transition_id,
                )

            if self.faults.dropped_confirmations > 0:
                self.faults.dropped_confirmations -= 1
                self._withheld.add(transition_id)
            self._results[transition_id] = proof

            if self.faults.lost_broadcast_responses > 0:
                self.faults.lost_broadcast_responses -= 1
                raise NetworkError("connection reset after broadcast", ambiguous=True)
            return transition_id

    def wait_for_state_transition_result(
        self, transition_id: str, timeout: float
    ) -> Optional[ConfirmationProof]:
        with self._lock:
            if self.faults.wait_failures > 0:
                self.faults.wait_failures -= 1
                raise NetworkError("stream closed while waiting for result", transition_id, ambiguous=True)
            if transition_id in self._withheld:
                return None
            return self._results.get(transition_id)

    def fetch_identity(self, identity_id: Identifier) -> Optional[Identity]:
        with self._lock:
            self.fetch_counts["identity"] += 1
            return self._identities.get(Identifier.coerce(identity_id))

    def fetch_data_contract(self, contract_id: Identifier) -> Optional[DataContract]:
        with self._lock:
            self.fetch_counts["data_contract"] += 1
            return self._contracts.get(Identifier.coerce(contract_id))

    def fetch_document(
        self, contract_id: Identifier, type_name: str, document_id: Identifier
    ) -> Optional[Document]:
        with self._lock:
            self.fetch_counts["document"] += 1
            return self._documents.get(
                (Identifier.coerce(contract_id), type_name, Identifier.coerce(document_id))
            )

    def get_quorum_public_key(self, quorum_hash: str) -> Optional[bytes]:
        if quorum_hash != self.quorum_hash:
            return None
        return self._quorum_public

    # -------------------------------------------------------------------------
    # validation and application
    # -------------------------------------------------------------------------

    def _process(self, raw: bytes) -> Tuple[str, Optional[ConfirmationProof]]:
        """Validate and apply one transition; returns (id, proof or None if duplicate)."""
        try:
            transition = DocumentTransition.deserialize(raw)
        except DocStateError as ex:
            transition_id = hashlib.sha256(bytes(raw)).hexdigest()
            return transition_id, self._reject(transition_id, RejectionReason.VALIDATION, str(ex))
        transition_id = transition.transition_id

        if transition_id in self._results:
            return transition_id, None

        try:
            document = self._apply(raw, transition)
        except _Rejection as rej:
            _log.info(
                "rejected transition",
                transition_id=transition_id,
                reason=rej.reason.value,
                error=rej.message,
            )
            return transition_id, self._reject(transition_id, rej.reason, rej.message)

        block = self._blocks[-1]
        block.transition_ids.append(transition_id)
        _log.info(
            "applied transition",
            transition_id=transition_id,
            kind=transition.kind.value,
            document_id=str(document.id),
            revision=document.revision,
            block_height=block.height,
        )
        proof = ConfirmationProof(
            transition_id=transition_id,
            accepted=True,
            document=document,
            block_height=block.height,
            core_block_height=block.core_height,
            quorum_hash=self.quorum_hash,
        )
        return transition_id, proof.signed(self._quorum_key)

    def _reject(self, transition_id: str, reason: RejectionReason, message: str) -> ConfirmationProof:
        proof = ConfirmationProof(
            transition_id=transition_id,
            accepted=False,
            reason=reason,
            message=message,
            block_height=self._height,
            core_block_height=self._core_height,
            quorum_hash=self.quorum_hash,
        )
        return proof.signed(self._quorum_key)

    def _apply(self, raw: bytes, parsed: DocumentTransition) -> Document:
        doc = parsed.document
        contract = self._contracts.get(doc.data_contract_id)
        if contract is None:
            raise _Rejection(RejectionReason.NOT_FOUND, f"data contract {doc.data_contract_id} not found")
        document_type = contract.document_types.get(doc.document_type_name)
        if document_type is None:
            raise _Rejection(
                RejectionReason.VALIDATION,
                f"contract {contract.id} has no document type '{doc.document_type_name}'",
            )
        try:
            transition = DocumentTransition.deserialize(raw, document_type)
        except DocStateError as ex:
            raise _Rejection(RejectionReason.VALIDATION, str(ex)) from ex
        doc = transition.document

        identity = self._identities.get(transition.identity_id)
        if identity is None:
            raise _Rejection(RejectionReason.NOT_FOUND, f"identity {transition.identity_id} not found")
        self._check_signature(transition, identity)

        try:
            document_type.validate_document(doc)
        except DocStateError as ex:
            raise _Rejection(RejectionReason.VALIDATION, str(ex)) from ex

        if transition.kind == TransitionKind.CREATE:
            stored = self._check_create(transition, document_type)
        elif transition.kind == TransitionKind.UPDATE_PRICE:
            stored = self._check_update_price(transition, document_type)
        else:
            stored = self._check_purchase(transition, document_type, identity)

        block = self._next_block()
        result = _stamp_heights(transition.kind, doc, stored, block)
        if transition.kind == TransitionKind.PURCHASE:
            self._move_credits(identity.id, stored.owner_id, transition.price)
        self._documents[(result.data_contract_id, result.document_type_name, result.id)] = result
        return result

    def _check_signature(self, transition: DocumentTransition, identity: Identity) -> None:
        key_id = transition.signature_public_key_id
        key = identity.get_public_key_by_id(key_id) if key_id is not None else None
        if key is None or key.is_disabled:
            raise _Rejection(RejectionReason.UNAUTHORIZED_KEY, f"identity has no enabled key {key_id}")
        if key.purpose != Purpose.AUTHENTICATION or key.security_level == SecurityLevel.MASTER:
            raise _Rejection(
                RejectionReason.UNAUTHORIZED_KEY,
                f"{key.describe()} may not sign document transitions",
            )
        try:
            ok = transition.signature is not None and verify_signature(
                key, transition.signable_bytes(), transition.signature
            )
        except UnsupportedKeyType as ex:
            raise _Rejection(RejectionReason.INVALID_SIGNATURE, str(ex)) from ex
        if not ok:
            raise _Rejection(RejectionReason.INVALID_SIGNATURE, "signature does not verify")

    def _stored(self, doc: Document) -> Document:
        stored = self._documents.get((doc.data_contract_id, doc.document_type_name, doc.id))
        if stored is None:
            raise _Rejection(RejectionReason.NOT_FOUND, f"document {doc.id} not found")
        if doc.revision != stored.revision + 1:
            raise _Rejection(
                RejectionReason.STALE_REVISION,
                f"revision {doc.revision} does not follow stored revision {stored.revision}",
            )
        if doc.created_at != stored.created_at:
            raise _Rejection(RejectionReason.VALIDATION, "$createdAt cannot change")
        return stored

    def _check_create(self, transition: DocumentTransition, document_type: DocumentType) -> None:
        doc = transition.document
        if transition.entropy is None:
            raise _Rejection(RejectionReason.VALIDATION, "create requires entropy")
        try:
            expected = generate_document_id(doc.data_contract_id, doc.owner_id, doc.document_type_name, transition.entropy)
        except DocStateError as ex:
            raise _Rejection(RejectionReason.VALIDATION, str(ex)) from ex
        if expected != doc.id:
            raise _Rejection(RejectionReason.VALIDATION, "document id does not match its entropy")
        if (doc.data_contract_id, doc.document_type_name, doc.id) in self._documents:
            raise _Rejection(RejectionReason.DUPLICATE, f"document {doc.id} already exists")
        if doc.owner_id != transition.identity_id:
            raise _Rejection(RejectionReason.UNAUTHORIZED_KEY, "documents are created by their owner")
        if doc.revision != INITIAL_REVISION:
            raise _Rejection(RejectionReason.VALIDATION, f"new documents start at revision {INITIAL_REVISION}")
        if doc.price is not None or doc.transferred_at is not None:
            raise _Rejection(RejectionReason.VALIDATION, "new documents cannot be priced or transferred")
        return None

    def _check_update_price(self, transition: DocumentTransition, document_type: DocumentType) -> Document:
        doc = transition.document
        stored = self._stored(doc)
        if transition.identity_id != stored.owner_id or doc.owner_id != stored.owner_id:
            raise _Rejection(RejectionReason.UNAUTHORIZED_KEY, "only the owner can set a price")
        if not document_type.documents_mutable or not document_type.supports_direct_purchase:
            raise _Rejection(
                RejectionReason.NOT_TRANSFERABLE,
                f"document type '{document_type.name}' does not allow direct purchase",
            )
        if doc.price is None or transition.price != doc.price:
            raise _Rejection(RejectionReason.VALIDATION, "price update must carry the new price")
        if doc.user_properties != stored.user_properties:
            raise _Rejection(RejectionReason.VALIDATION, "a price update cannot change other properties")
        return stored

    def _check_purchase(
        self,
        transition: DocumentTransition,
        document_type: DocumentType,
        purchaser: Identity,
    ) -> Document:
        doc = transition.document
        stored = self._stored(doc)
        if not document_type.is_transferable:
            raise _Rejection(
                RejectionReason.NOT_TRANSFERABLE,
                f"documents of type '{document_type.name}' are not transferable",
            )
        if stored.price is None:
            raise _Rejection(RejectionReason.VALIDATION, "document is not for sale")
        if transition.price != stored.price:
            raise _Rejection(
                RejectionReason.VALIDATION,
                f"offered price {transition.price} does not match asking price {stored.price}",
            )
        if purchaser.id == stored.owner_id:
            raise _Rejection(RejectionReason.VALIDATION, "owner cannot purchase their own document")
        if doc.owner_id != purchaser.id:
            raise _Rejection(RejectionReason.VALIDATION, "purchased document must be owned by the purchaser")
        if PRICE_FIELD in doc.properties or doc.transferred_at is None:
            raise _Rejection(RejectionReason.VALIDATION, "purchase must clear the price and set $transferredAt")
        if doc.user_properties != stored.user_properties:
            raise _Rejection(RejectionReason.VALIDATION, "a purchase cannot change other properties")
        if purchaser.balance < stored.price:
            raise _Rejection(
                RejectionReason.INSUFFICIENT_BALANCE,
                f"balance {purchaser.balance} is below price {stored.price}",
            )
        return stored

    def _move_credits(self, payer: Identifier, payee: Identifier, amount: int) -> None:
        self.credit(payer, -amount)
        if payee in self._identities:
            self.credit(payee, amount)

    def _next_block(self) -> _Block:
        self._height += 1
        self._core_height += 1
        block = _Block(height=self._height, core_height=self._core_height)
        self._blocks.append(block)
        return block


def _stamp_heights(
    kind: TransitionKind,
    doc: Document,
    stored: Optional[Document],
    block: _Block,
) -> Document:
    if kind == TransitionKind.CREATE:
        return doc.replace(
            created_at_block_height=block.height,
            updated_at_block_height=block.height,
            created_at_core_block_height=block.core_height,
            updated_at_core_block_height=block.core_height,
        )
    changes = dict(
        created_at_block_height=stored.created_at_block_height,
        created_at_core_block_height=stored.created_at_core_block_height,
        updated_at_block_height=block.height,
        updated_at_core_block_height=block.core_height,
        transferred_at_block_height=stored.transferred_at_block_height,
        transferred_at_core_block_height=stored.transferred_at_core_block_height,
    )
    if kind == TransitionKind.PURCHASE:
        changes.update(
            transferred_at_block_height=block.height,
            transferred_at_core_block_height=block.core_height,
        )
    return doc.replace(**changes)
