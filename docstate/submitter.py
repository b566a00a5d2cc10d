"""
docstate Transition Submitter

Signs a transition, hands its bytes to the platform and waits for a terminal,
quorum-signed result.

Outcome mapping
───────────────

    accepted proof           -> resulting Document (block heights set)
    rejected proof           -> SubmissionRejected(reason)     never retried
    transport failure        -> NetworkError(ambiguous=?)      caller may retry
    no result within timeout -> ConfirmationTimeout            ambiguous
    cancel_event set         -> SubmissionCancelled            outcome unknown

A broadcast that fails before the platform acknowledged it is not
ambiguous. Anything after acknowledgement is: the transition may still be
applied, and the caller has to re-query confirmed state before resubmitting.

Confirmation proofs are Ed25519 signatures by the platform quorum over the
canonical JSON of the proof body. The submitter verifies them against the
quorum public key served by the context provider before trusting the result.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from docstate.canonical import canonical_json_bytes
from docstate.document import Document
from docstate.errors import (
    ConfirmationTimeout,
    NetworkError,
    RejectionReason,
    SubmissionCancelled,
    SubmissionRejected,
    ValidationError,
)
from docstate.identifier import Identifier
from docstate.keys import Identity, IdentityPublicKey
from docstate.runtime.config import ClientSettings
from docstate.runtime.observability import Layer, get_logger
from docstate.schema import DataContract
from docstate.transition import DocumentTransition, describe, sign_with_key

_log = get_logger("submitter", Layer.SUBMITTER)


# =============================================================================
# PLATFORM CLIENT
# =============================================================================

class PlatformClient(Protocol):
    """Transport to the platform.

    Implementations raise ``NetworkError`` for transport failures and return
    ``None`` from lookups when the object does not exist.
    """

    def broadcast_state_transition(self, raw: bytes) -> str:
        """Submit serialized transition bytes; returns the transition id."""
        ...

    def wait_for_state_transition_result(
        self, transition_id: str, timeout: float
    ) -> Optional["ConfirmationProof"]:
        """Terminal result if known within ``timeout`` seconds, else ``None``."""
        ...

    def fetch_identity(self, identity_id: Identifier) -> Optional[Identity]:
        ...

    def fetch_data_contract(self, contract_id: Identifier) -> Optional[DataContract]:
        ...

    def fetch_document(
        self, contract_id: Identifier, type_name: str, document_id: Identifier
    ) -> Optional[Document]:
        ...

    def get_quorum_public_key(self, quorum_hash: str) -> Optional[bytes]:
        ...


# =============================================================================
# CONFIRMATION PROOF
# =============================================================================

@dataclass(frozen=True)
class ConfirmationProof:
    """Quorum-signed terminal result for one transition."""
    transition_id: str
    accepted: bool
    document: Optional[Document] = None
    reason: Optional[RejectionReason] = None
    message: str = ""
    block_height: int = 0
    core_block_height: int = 0
    quorum_hash: str = ""
    signature: bytes = b""

    def signing_input(self) -> bytes:
        body: Dict[str, Any] = {
            "transitionId": self.transition_id,
            "accepted": self.accepted,
            "document": self.document.to_dict() if self.document is not None else None,
            "reason": self.reason.value if self.reason is not None else None,
            "message": self.message,
            "blockHeight": self.block_height,
            "coreBlockHeight": self.core_block_height,
            "quorumHash": self.quorum_hash,
        }
        return canonical_json_bytes(body)

    def signed(self, quorum_key: Ed25519PrivateKey) -> "ConfirmationProof":
        return dataclasses.replace(self, signature=quorum_key.sign(self.signing_input()))

    def verify(self, quorum_public_key: Ed25519PublicKey) -> bool:
        if len(self.signature) != 64:
            return False
        try:
            quorum_public_key.verify(self.signature, self.signing_input())
        except InvalidSignature:
            return False
        return True


# =============================================================================
# SUBMITTER
# =============================================================================

class TransitionSubmitter:
    """
    Sign, broadcast and await one transition.

    The submitter holds no per-document state and may be shared across
    threads. Retrying is the caller's decision; see the lifecycle controller.
    """

    def __init__(
        self,
        client: PlatformClient,
        context: Any,
        settings: Optional[ClientSettings] = None,
    ):
        self.client = client
        self.context = context
        self.settings = settings or ClientSettings()

    def sign(
        self,
        transition: DocumentTransition,
        identity_public_key: IdentityPublicKey,
        signer: Any,
    ) -> DocumentTransition:
        return sign_with_key(transition, identity_public_key, signer)

    def submit_and_await(
        self,
        transition: DocumentTransition,
        identity_public_key: IdentityPublicKey,
        signer: Any,
        cancel_event: Optional[threading.Event] = None,
    ) -> Document:
        """Sign, broadcast and block until a terminal result is observed."""
        signed = self.sign(transition, identity_public_key, signer)
        return self.submit_signed(signed, cancel_event=cancel_event)

    def submit_signed(
        self,
        transition: DocumentTransition,
        cancel_event: Optional[threading.Event] = None,
    ) -> Document:
        if not transition.is_signed:
            raise ValidationError("signature", "transition must be signed before submission")
        info = describe(transition)
        transition_id = info["transition_id"]
        raw = transition.serialize()

        _log.info("broadcasting transition", **info)
        try:
            acknowledged_id = self.client.broadcast_state_transition(raw)
        except NetworkError as ex:
            _log.warning(
                "broadcast failed",
                transition_id=transition_id,
                ambiguous=ex.ambiguous,
                error=ex.message,
            )
            raise NetworkError(ex.message, transition_id=transition_id, ambiguous=ex.ambiguous) from ex
        if acknowledged_id != transition_id:
            _log.warning(
                "platform acknowledged a different transition id",
                transition_id=transition_id,
                acknowledged_id=acknowledged_id,
            )

        proof = self._await_result(transition_id, cancel_event)
        if not proof.accepted:
            reason = proof.reason or RejectionReason.VALIDATION
            _log.warning(
                "transition rejected",
                transition_id=transition_id,
                reason=reason.value,
                error=proof.message,
            )
            raise SubmissionRejected(reason, proof.message, transition_id)

        if proof.document is None:
            raise NetworkError(
                "accepted confirmation carries no document", transition_id=transition_id, ambiguous=True
            )
        _log.info(
            "transition confirmed",
            transition_id=transition_id,
            document_id=str(proof.document.id),
            revision=proof.document.revision,
            block_height=proof.block_height,
        )
        return proof.document

    def _await_result(
        self,
        transition_id: str,
        cancel_event: Optional[threading.Event],
    ) -> ConfirmationProof:
        timeout = self.settings.confirmation_timeout_seconds
        poll = self.settings.poll_interval_seconds
        deadline = time.monotonic() + timeout
        waiter = cancel_event or threading.Event()

        while True:
            if waiter.is_set():
                _log.warning("wait cancelled; outcome unknown", transition_id=transition_id)
                raise SubmissionCancelled(transition_id)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _log.warning("confirmation timed out", transition_id=transition_id, timeout_seconds=timeout)
                raise ConfirmationTimeout(transition_id, timeout)

            try:
                proof = self.client.wait_for_state_transition_result(transition_id, min(poll, remaining))
            except NetworkError as ex:
                raise NetworkError(ex.message, transition_id=transition_id, ambiguous=True) from ex

            if proof is not None:
                self.verify_proof(transition_id, proof)
                return proof
            waiter.wait(min(poll, max(deadline - time.monotonic(), 0)))

    def verify_proof(self, transition_id: str, proof: ConfirmationProof) -> None:
        """Raise unless ``proof`` answers ``transition_id`` and carries a valid quorum signature."""
        if proof.transition_id != transition_id:
            raise NetworkError(
                f"confirmation is for transition {proof.transition_id}",
                transition_id=transition_id,
                ambiguous=True,
            )
        quorum_key = self.context.get_quorum_public_key(proof.quorum_hash)
        if not proof.verify(quorum_key):
            raise NetworkError(
                "confirmation proof signature does not verify against the quorum key",
                transition_id=transition_id,
                ambiguous=True,
            )

    def fetch_document(
        self, contract_id: Identifier, type_name: str, document_id: Identifier
    ) -> Optional[Document]:
        return self.client.fetch_document(contract_id, type_name, document_id)

    def latest_revision(
        self, contract_id: Identifier, type_name: str, document_id: Identifier
    ) -> Optional[int]:
        """Revision currently confirmed on the platform, or ``None`` if absent."""
        document = self.fetch_document(contract_id, type_name, document_id)
        return document.revision if document is not None else None
