"""Error taxonomy for docstate.

Every failure the core can produce surfaces as a subclass of
``DocStateError`` carrying structured attributes, so callers can choose a
retry or compensating-action policy without parsing messages.

    DocStateError
    ├── ConfigurationError        fatal at startup, never retried
    │   ├── InvalidIdentifier
    │   └── SchemaError
    ├── ValidationError           recoverable, raised before any network call
    │   └── TransitionNotAllowed
    ├── KeyNotFound               fix key material, do not retry
    ├── MissingPrivateKey
    ├── UnsupportedKeyType
    ├── NotFoundError             identity / contract / document absent
    ├── SubmissionRejected        platform said no; re-fetch and rebuild
    ├── NetworkError              transport failure before confirmation
    │   └── ConfirmationTimeout
    ├── SubmissionCancelled       outcome unknown until re-fetched
    ├── InvalidStateTransition    lifecycle state machine misuse
    └── ConcurrentTransitionError
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class DocStateError(Exception):
    """Base class for all docstate errors."""


class ConfigurationError(DocStateError):
    """Malformed identifier text, schema or configuration value."""


class InvalidIdentifier(ConfigurationError):
    """Text is not base-58 or does not decode to exactly 32 bytes."""

    def __init__(self, value: Any, message: str):
        self.value = value
        self.message = message
        super().__init__(f"invalid identifier {value!r}: {message}")


class SchemaError(ConfigurationError):
    """A declarative document-type schema could not be parsed."""

    def __init__(self, document_type: str, message: str):
        self.document_type = document_type
        self.message = message
        super().__init__(f"schema error in document type '{document_type}': {message}")


class ValidationError(DocStateError):
    """A document property violates its document type's schema."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class TransitionNotAllowed(ValidationError):
    """A client-side precondition for a transition does not hold."""


class KeyNotFound(DocStateError):
    """No identity key satisfies the requested purpose, level and type."""

    def __init__(self, identity_id: str, requirement: str):
        self.identity_id = identity_id
        self.requirement = requirement
        super().__init__(f"identity {identity_id} has no key matching {requirement}")


class MissingPrivateKey(DocStateError):
    """The key store has no private key for the selected public key."""

    def __init__(self, identity_id: str, key_id: int):
        self.identity_id = identity_id
        self.key_id = key_id
        super().__init__(f"no private key registered for identity {identity_id} key {key_id}")


class UnsupportedKeyType(DocStateError):
    """The signer cannot produce signatures for this key type."""

    def __init__(self, key_type: Any):
        self.key_type = key_type
        super().__init__(f"signing with key type {getattr(key_type, 'name', key_type)} is not supported")


class NotFoundError(DocStateError, LookupError):
    """A referenced identity, contract or document does not exist."""

    def __init__(self, kind: str, identifier: Any):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class RejectionReason(Enum):
    """Structured causes for a platform-side rejection."""
    VALIDATION = "validation"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    STALE_REVISION = "stale_revision"
    UNAUTHORIZED_KEY = "unauthorized_key"
    NOT_FOUND = "not_found"
    NOT_TRANSFERABLE = "not_transferable"
    INVALID_SIGNATURE = "invalid_signature"
    DUPLICATE = "duplicate"


class SubmissionRejected(DocStateError):
    """The platform rejected a transition. Never retried automatically."""

    def __init__(self, reason: RejectionReason, message: str, transition_id: str = ""):
        self.reason = reason
        self.message = message
        self.transition_id = transition_id
        super().__init__(f"transition rejected ({reason.value}): {message}")


class NetworkError(DocStateError):
    """Transport-level failure before a confirmation was observed.

    ``ambiguous`` is true once the transition may have reached the platform;
    the caller must re-query confirmed state before resubmitting.
    """

    def __init__(self, message: str, transition_id: str = "", ambiguous: bool = False):
        self.message = message
        self.transition_id = transition_id
        self.ambiguous = ambiguous
        super().__init__(message)


class ConfirmationTimeout(NetworkError):
    """No terminal result was observed within the confirmation timeout."""

    def __init__(self, transition_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"no confirmation for transition {transition_id} within {timeout_seconds}s",
            transition_id=transition_id,
            ambiguous=True,
        )


class SubmissionCancelled(DocStateError):
    """The caller stopped waiting; the on-platform outcome is unknown."""

    def __init__(self, transition_id: str):
        self.transition_id = transition_id
        super().__init__(f"wait for transition {transition_id} cancelled; outcome unknown")


class InvalidStateTransition(DocStateError):
    """A lifecycle state change not permitted by the state machine."""

    def __init__(self, from_state: Any, to_state: Any, message: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message
            or f"lifecycle transition not allowed: {getattr(from_state, 'value', from_state)}"
            f" -> {getattr(to_state, 'value', to_state)}"
        )


class ConcurrentTransitionError(DocStateError):
    """Another transition for the same document is still in flight."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"a transition for document {document_id} is already in flight")
