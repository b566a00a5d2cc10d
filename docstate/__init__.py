"""
docstate

Client core for schema-governed document state transitions: build a document
against its data contract, derive its content-addressed id, sign the
transition with an identity key, submit it and follow it through its
lifecycle (create, price, purchase).

Modules:

    identifier.py    32-byte ids and their base-58 form, Base58Check
    schema.py        Document-type schemas and property validation
    document_id.py   Document id derivation from owner, contract and entropy
    document.py      Document values and the builder for their next versions
    keys.py          Identities, key selection, WIF private keys
    signer.py        Key store and ECDSA secp256k1 signer
    transition.py    Transition wire form, signing input and id
    submitter.py     Broadcast, await and verify confirmation proofs
    lifecycle.py     Lifecycle controller: state machine, locks, retries
    platform/        Context provider and in-memory platform
    runtime/         Configuration, logging, retry policy, LRU cache
"""

__version__ = "0.3.0"


# Lazy imports keep `python -m docstate --version` free of crypto imports
def __getattr__(name):
    if name in ("Identifier", "encode", "decode"):
        from docstate import identifier
        return getattr(identifier, name)

    if name in ("DataContract", "DocumentType", "FieldDefinition", "FieldKind",
                "TransferMode", "TradeMode", "example_contract_schema"):
        from docstate import schema
        return getattr(schema, name)

    if name in ("generate_document_id", "DefaultEntropyGenerator"):
        from docstate import document_id
        return getattr(document_id, name)

    if name in ("Document", "DocumentBuilder", "INITIAL_REVISION"):
        from docstate import document
        return getattr(document, name)

    if name in ("Identity", "IdentityPublicKey", "Purpose", "SecurityLevel",
                "KeyType", "PrivateKey", "select_key"):
        from docstate import keys
        return getattr(keys, name)

    if name in ("KeyStore", "Signer", "verify_signature"):
        from docstate import signer
        return getattr(signer, name)

    if name in ("DocumentTransition", "TransitionKind", "sign_transition"):
        from docstate import transition
        return getattr(transition, name)

    if name in ("TransitionSubmitter", "ConfirmationProof", "PlatformClient"):
        from docstate import submitter
        return getattr(submitter, name)

    if name in ("DocumentLifecycleController", "DocumentState", "TrackedDocument"):
        from docstate import lifecycle
        return getattr(lifecycle, name)

    if name in ("PlatformContextProvider", "InMemoryPlatform"):
        from docstate import platform
        return getattr(platform, name)

    if name in ("ClientSettings", "ConfigManager", "load_settings"):
        from docstate.runtime import config
        return getattr(config, name)

    raise AttributeError(f"module 'docstate' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Identifiers and schema
    "Identifier",
    "DataContract",
    "DocumentType",
    "example_contract_schema",
    # Documents
    "Document",
    "DocumentBuilder",
    "generate_document_id",
    # Keys and signing
    "Identity",
    "IdentityPublicKey",
    "KeyStore",
    "PrivateKey",
    "Signer",
    # Transitions and lifecycle
    "DocumentTransition",
    "TransitionSubmitter",
    "DocumentLifecycleController",
    "DocumentState",
    "TrackedDocument",
    # Platform and configuration
    "InMemoryPlatform",
    "PlatformContextProvider",
    "ClientSettings",
    "load_settings",
]
