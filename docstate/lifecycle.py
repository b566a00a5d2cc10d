"""
docstate Document Lifecycle Controller

Carries one document through create, price assignment and purchase, each
step as a signed transition confirmed by the platform.

State machine
─────────────

    UNSUBMITTED ──► BROADCASTING ──► CONFIRMED ──► BROADCASTING ──► ...
                         │   ▲
                         │   └─ (next transition starts from CONFIRMED)
                         ├──► REJECTED          terminal; re-fetch to continue
                         ├──► UNSUBMITTED       create never reached the platform
                         └──► CONFIRMED         update never applied; previous version kept

A record stays in BROADCASTING when the outcome is unknown (cancelled wait,
ambiguous network failure after the last retry). ``reconcile`` re-queries
confirmed state and settles it.

Retries
───────

Only ``NetworkError`` is retried. Before every retry the controller first
asks for the previous attempt's result and then re-fetches the document; if
the expected revision is already confirmed the attempt counts as accepted,
so a transition is never applied twice. A create retry draws fresh entropy,
which gives the document a new id.

Concurrency
───────────

One transition per document id may be in flight. A second one raises
``ConcurrentTransitionError`` without touching the network. Different
documents proceed in parallel; shared state is limited to the contract cache
and the key store, both thread-safe.
"""

from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Union

from docstate.document import Document, DocumentBuilder
from docstate.errors import (
    ConcurrentTransitionError,
    DocStateError,
    InvalidStateTransition,
    MissingPrivateKey,
    NetworkError,
    NotFoundError,
    RejectionReason,
    SubmissionCancelled,
    SubmissionRejected,
    TransitionNotAllowed,
    UnsupportedKeyType,
)
from docstate.identifier import Identifier
from docstate.keys import Identity, IdentityPublicKey, KeyType, Purpose, parse_security_levels, select_key
from docstate.platform.context import PlatformContextProvider
from docstate.runtime.config import ClientSettings
from docstate.runtime.observability import (
    Layer,
    correlation_scope,
    get_logger,
)
from docstate.runtime.resilience import BackoffStrategy, RetryExhaustedError, RetryPolicy
from docstate.schema import DataContract, DocumentType
from docstate.signer import SUPPORTED_KEY_TYPES, KeyStore, Signer
from docstate.submitter import PlatformClient, TransitionSubmitter
from docstate.transition import DocumentTransition, TransitionKind

_log = get_logger("controller", Layer.LIFECYCLE)

SIGNING_KEY_TYPES = frozenset({KeyType.ECDSA_SECP256K1, KeyType.BLS12_381})


# =============================================================================
# STATES
# =============================================================================

class DocumentState(Enum):
    UNSUBMITTED = "unsubmitted"
    BROADCASTING = "broadcasting"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"

    def is_terminal(self) -> bool:
        return self == DocumentState.REJECTED


VALID_TRANSITIONS: Dict[DocumentState, Set[DocumentState]] = {
    DocumentState.UNSUBMITTED: {DocumentState.BROADCASTING},
    DocumentState.BROADCASTING: {
        DocumentState.CONFIRMED,
        DocumentState.REJECTED,
        DocumentState.UNSUBMITTED,
    },
    DocumentState.CONFIRMED: {DocumentState.BROADCASTING},
    DocumentState.REJECTED: set(),
}


@dataclass(frozen=True)
class StateChange:
    from_state: Optional[DocumentState]
    to_state: DocumentState
    kind: Optional[TransitionKind]
    revision: int
    transition_id: str = ""
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class TrackedDocument:
    """A document plus where it stands in its lifecycle.

    ``document`` is the last confirmed version, or the locally built version
    while a create has not been confirmed. ``pending_document`` is the
    version currently in flight.
    """
    document: Document
    document_type: DocumentType
    state: DocumentState = DocumentState.UNSUBMITTED
    history: List[StateChange] = field(default_factory=list)
    last_error: Optional[Exception] = None
    pending_kind: Optional[TransitionKind] = None
    pending_document: Optional[Document] = None
    entropy: Optional[bytes] = field(default=None, repr=False)

    @property
    def document_id(self) -> Identifier:
        return self.document.id

    @property
    def revision(self) -> int:
        return self.document.revision

    def can_transition_to(self, target: DocumentState) -> bool:
        return target in VALID_TRANSITIONS.get(self.state, set())

    def move_to(
        self,
        target: DocumentState,
        kind: Optional[TransitionKind] = None,
        transition_id: str = "",
    ) -> None:
        if not self.can_transition_to(target):
            raise InvalidStateTransition(self.state, target)
        change = StateChange(
            from_state=self.state,
            to_state=target,
            kind=kind,
            revision=(self.pending_document or self.document).revision,
            transition_id=transition_id,
        )
        self.state = target
        self.history.append(change)


# =============================================================================
# CONTROLLER
# =============================================================================

class DocumentLifecycleController:
    """
    Create, price and sell documents against a platform client.

    Every precondition is checked locally before any network call: record
    state, document type capabilities, price, and that the signing identity
    has a usable key with registered private material.
    """

    def __init__(
        self,
        client: PlatformClient,
        key_store: KeyStore,
        settings: Optional[ClientSettings] = None,
        context: Optional[PlatformContextProvider] = None,
        builder: Optional[DocumentBuilder] = None,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
    ):
        self.settings = settings or ClientSettings()
        self.client = client
        self.key_store = key_store
        self.context = context or PlatformContextProvider(self.settings, client)
        self.submitter = TransitionSubmitter(client, self.context, self.settings)
        self.signer = Signer(key_store)
        self.builder = builder or DocumentBuilder(initial_revision=self.settings.initial_revision)
        self.security_levels = parse_security_levels(self.settings.signing_security_levels)
        self.key_types = SIGNING_KEY_TYPES
        self.backoff_strategy = backoff_strategy
        self._in_flight: Set[Identifier] = set()
        self._in_flight_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # operations
    # -------------------------------------------------------------------------

    def create(
        self,
        contract: Union[DataContract, Identifier, str],
        type_name: str,
        identity: Identity,
        properties: Dict,
        cancel_event: Optional[threading.Event] = None,
    ) -> TrackedDocument:
        """Build, sign and confirm a new document owned by ``identity``."""
        tracked = self.prepare_create(contract, type_name, identity, properties)
        return self.submit_create(tracked, identity, cancel_event=cancel_event)

    def prepare_create(
        self,
        contract: Union[DataContract, Identifier, str],
        type_name: str,
        identity: Identity,
        properties: Dict,
    ) -> TrackedDocument:
        """Build a new document locally; nothing is sent."""
        document_type = self._contract(contract).document_type(type_name)
        self._signing_key(identity)
        document, entropy = self.builder.build(document_type, identity.id, properties)
        return TrackedDocument(document=document, document_type=document_type, entropy=entropy)

    def submit_create(
        self,
        tracked: TrackedDocument,
        identity: Identity,
        cancel_event: Optional[threading.Event] = None,
    ) -> TrackedDocument:
        """Submit a record prepared by ``prepare_create``."""
        with self._operation("create", tracked.document_id):
            if tracked.state != DocumentState.UNSUBMITTED:
                raise InvalidStateTransition(
                    tracked.state,
                    DocumentState.BROADCASTING,
                    f"create requires an unsubmitted record, not {tracked.state.value}",
                )
            if identity.id != tracked.document.owner_id:
                raise TransitionNotAllowed("$ownerId", "documents are created by their owner", str(identity.id))
            key = self._signing_key(identity)
            if tracked.entropy is None:
                raise TransitionNotAllowed("$entropy", "record has no create entropy; prepare it again")
            transition = DocumentTransition.create(tracked.document, tracked.entropy)
            return self._run(tracked, transition, key, cancel_event)

    def update_price(
        self,
        tracked: TrackedDocument,
        identity: Identity,
        price: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> TrackedDocument:
        """Owner sets ``$price``; the document becomes purchasable."""
        with self._operation("update_price", tracked.document_id):
            self._require_confirmed(tracked)
            if identity.id != tracked.document.owner_id:
                raise TransitionNotAllowed("$ownerId", "only the owner can set a price", str(identity.id))
            key = self._signing_key(identity)
            updated = self.builder.build_price_update(tracked.document, tracked.document_type, price)
            return self._run(tracked, DocumentTransition.update_price(updated), key, cancel_event)

    def purchase(
        self,
        tracked: TrackedDocument,
        purchaser_identity: Identity,
        cancel_event: Optional[threading.Event] = None,
    ) -> TrackedDocument:
        """Buy a priced document at its asking price."""
        with self._operation("purchase", tracked.document_id):
            self._require_confirmed(tracked)
            key = self._signing_key(purchaser_identity)
            price = tracked.document.price
            purchased = self.builder.build_purchase(tracked.document, tracked.document_type, purchaser_identity.id)
            return self._run(tracked, DocumentTransition.purchase(purchased, price), key, cancel_event)

    def fetch(
        self,
        contract: Union[DataContract, Identifier, str],
        type_name: str,
        document_id: Union[Identifier, str, bytes],
    ) -> TrackedDocument:
        """Confirmed record for a document already on the platform."""
        document_type = self._contract(contract).document_type(type_name)
        document_id = Identifier.coerce(document_id)
        document = self.submitter.fetch_document(document_type.data_contract_id, type_name, document_id)
        if document is None:
            raise NotFoundError("document", str(document_id))
        tracked = TrackedDocument(document=document, document_type=document_type, state=DocumentState.CONFIRMED)
        tracked.history.append(
            StateChange(from_state=None, to_state=DocumentState.CONFIRMED, kind=None, revision=document.revision)
        )
        return tracked

    def reconcile(self, tracked: TrackedDocument) -> TrackedDocument:
        """Settle a record whose last outcome is unknown by re-querying the platform."""
        if tracked.state == DocumentState.REJECTED:
            raise InvalidStateTransition(
                tracked.state,
                DocumentState.CONFIRMED,
                "rejected records are terminal; fetch the document again",
            )
        if tracked.state == DocumentState.UNSUBMITTED:
            return tracked

        with self._operation("reconcile", tracked.document_id):
            pending = tracked.pending_document or tracked.document
            fetched = self.submitter.fetch_document(
                pending.data_contract_id, pending.document_type_name, pending.id
            )
            if tracked.state == DocumentState.CONFIRMED:
                if fetched is None:
                    raise NotFoundError("document", str(pending.id))
                tracked.document = fetched
                return tracked

            if fetched is None:
                if tracked.pending_kind != TransitionKind.CREATE:
                    raise NotFoundError("document", str(pending.id))
                _log.info("create did not land", document_id=str(pending.id))
                tracked.move_to(DocumentState.UNSUBMITTED, tracked.pending_kind)
                self._clear_pending(tracked, keep_document=pending)
                return tracked

            landed = fetched.revision >= pending.revision
            _log.info(
                "reconciled document",
                document_id=str(fetched.id),
                revision=fetched.revision,
                landed=landed,
            )
            tracked.move_to(DocumentState.CONFIRMED, tracked.pending_kind)
            tracked.document = fetched
            self._clear_pending(tracked)
            return tracked

    # -------------------------------------------------------------------------
    # internals
    # -------------------------------------------------------------------------

    def _run(
        self,
        tracked: TrackedDocument,
        transition: DocumentTransition,
        key: IdentityPublicKey,
        cancel_event: Optional[threading.Event],
    ) -> TrackedDocument:
        tracked.pending_kind = transition.kind
        tracked.pending_document = transition.document
        tracked.last_error = None
        tracked.move_to(DocumentState.BROADCASTING, transition.kind, transition.transition_id)

        try:
            confirmed = self._submit_with_retry(tracked, transition, key, cancel_event)
        except SubmissionRejected as ex:
            tracked.last_error = ex
            tracked.move_to(DocumentState.REJECTED, transition.kind, ex.transition_id)
            raise
        except SubmissionCancelled as ex:
            tracked.last_error = ex
            raise
        except NetworkError as ex:
            tracked.last_error = ex
            if not ex.ambiguous:
                self._revert(tracked)
            raise
        except DocStateError as ex:
            tracked.last_error = ex
            raise

        tracked.move_to(DocumentState.CONFIRMED, transition.kind)
        tracked.document = confirmed
        self._clear_pending(tracked)
        return tracked

    def _submit_with_retry(
        self,
        tracked: TrackedDocument,
        transition: DocumentTransition,
        key: IdentityPublicKey,
        cancel_event: Optional[threading.Event],
    ) -> Document:
        # "unsettled" holds an attempt whose outcome is unknown until a query settles it
        current = {"transition": transition, "unsettled": None, "retrying": False}

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            current["retrying"] = True
            if getattr(error, "ambiguous", False) and current["unsettled"] is None:
                current["unsettled"] = current["transition"]
            _log.warning(
                "submission failed; retrying",
                attempt=attempt,
                delay_seconds=round(delay, 3),
                transition_id=getattr(error, "transition_id", ""),
                ambiguous=getattr(error, "ambiguous", False),
            )

        def attempt() -> Document:
            if current["retrying"]:
                unsettled = current["unsettled"]
                if unsettled is not None:
                    try:
                        landed = self._landed(unsettled)
                    except NetworkError as ex:
                        raise NetworkError(
                            f"outcome of {unsettled.transition_id} still unknown: {ex}",
                            unsettled.transition_id,
                            ambiguous=True,
                        ) from ex
                    if landed is not None:
                        return landed
                    current["unsettled"] = None
                if current["transition"].kind == TransitionKind.CREATE:
                    current["transition"] = self._fresh_create(tracked, current["transition"])
            return self.submitter.submit_and_await(current["transition"], key, self.signer, cancel_event)

        retry = RetryPolicy.from_settings(
            self.settings,
            backoff_strategy=self.backoff_strategy,
            retryable_exceptions=(NetworkError,),
            non_retryable_exceptions=(SubmissionRejected, SubmissionCancelled),
            on_retry=on_retry,
        )
        try:
            return retry.execute(attempt)
        except RetryExhaustedError as ex:
            _log.error(
                "submission retries exhausted",
                error_code="RETRY_EXHAUSTED",
                attempts=ex.attempts,
                document_id=str(tracked.document_id),
            )
            raise ex.last_exception from ex

    def _landed(self, previous: DocumentTransition) -> Optional[Document]:
        """Confirmed result of an earlier attempt, if it was applied."""
        expected = previous.document
        result = self.client.wait_for_state_transition_result(previous.transition_id, 0)
        if result is not None:
            self.submitter.verify_proof(previous.transition_id, result)
            if not result.accepted:
                raise SubmissionRejected(
                    result.reason or RejectionReason.VALIDATION, result.message, previous.transition_id
                )
            return result.document

        fetched = self.submitter.fetch_document(
            expected.data_contract_id, expected.document_type_name, expected.id
        )
        if fetched is None or fetched.revision < expected.revision:
            return None
        if fetched.revision == expected.revision and fetched.owner_id == expected.owner_id \
                and dict(fetched.properties) == dict(expected.properties):
            _log.info(
                "previous attempt already confirmed",
                document_id=str(fetched.id),
                revision=fetched.revision,
            )
            return fetched
        raise SubmissionRejected(
            RejectionReason.STALE_REVISION,
            f"document {expected.id} moved to revision {fetched.revision} by another transition",
            previous.transition_id,
        )

    def _fresh_create(self, tracked: TrackedDocument, previous: DocumentTransition) -> DocumentTransition:
        old = previous.document
        document, entropy = self.builder.build(
            tracked.document_type,
            old.owner_id,
            old.user_properties,
            now=old.created_at,
        )
        tracked.document = document
        tracked.pending_document = document
        tracked.entropy = entropy
        _log.info("create retry with fresh entropy", previous_id=str(old.id), document_id=str(document.id))
        return DocumentTransition.create(document, entropy)

    def _revert(self, tracked: TrackedDocument) -> None:
        """Nothing reached the platform; return to the last settled state."""
        target = DocumentState.UNSUBMITTED if tracked.pending_kind == TransitionKind.CREATE else DocumentState.CONFIRMED
        tracked.move_to(target, tracked.pending_kind)
        self._clear_pending(tracked, keep_document=tracked.pending_document if target == DocumentState.UNSUBMITTED else None)

    @staticmethod
    def _clear_pending(tracked: TrackedDocument, keep_document: Optional[Document] = None) -> None:
        if keep_document is not None:
            tracked.document = keep_document
        tracked.pending_kind = None
        tracked.pending_document = None

    def _require_confirmed(self, tracked: TrackedDocument) -> None:
        if tracked.state != DocumentState.CONFIRMED:
            raise InvalidStateTransition(
                tracked.state,
                DocumentState.BROADCASTING,
                f"document {tracked.document_id} is {tracked.state.value}; "
                "only confirmed documents accept new transitions",
            )

    def _signing_key(self, identity: Identity) -> IdentityPublicKey:
        key = select_key(identity, Purpose.AUTHENTICATION, self.security_levels, self.key_types)
        if key.key_type not in SUPPORTED_KEY_TYPES:
            raise UnsupportedKeyType(key.key_type)
        if not self.key_store.contains(identity.id, key.id):
            raise MissingPrivateKey(str(identity.id), key.id)
        return key

    def _contract(self, contract: Union[DataContract, Identifier, str]) -> DataContract:
        if isinstance(contract, DataContract):
            return contract
        return self.context.get_data_contract(contract)

    @contextlib.contextmanager
    def _operation(self, name: str, document_id: Identifier) -> Iterator[None]:
        with self._in_flight_lock:
            if document_id in self._in_flight:
                raise ConcurrentTransitionError(str(document_id))
            self._in_flight.add(document_id)
        try:
            with correlation_scope(), _log.timed(name, document_id=str(document_id)):
                _log.debug("operation started", operation=name, document_id=str(document_id))
                yield
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(document_id)
