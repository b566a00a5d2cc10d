"""Transition submitter against the in-memory platform."""

import dataclasses
import threading

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from docstate.document import DocumentBuilder
from docstate.errors import (
    ConfirmationTimeout,
    MissingPrivateKey,
    NetworkError,
    RejectionReason,
    SubmissionCancelled,
    SubmissionRejected,
    ValidationError,
)
from docstate.identifier import Identifier
from docstate.keys import Identity, IdentityPublicKey, KeyType, PrivateKey, Purpose, SecurityLevel
from docstate.platform import InMemoryPlatform, PlatformContextProvider
from docstate.signer import Signer
from docstate.submitter import ConfirmationProof, TransitionSubmitter
from docstate.transition import DocumentTransition


class ForgingPlatform(InMemoryPlatform):
    """Serves results signed by a key that is not the quorum's."""

    def __init__(self):
        super().__init__()
        self._forger = Ed25519PrivateKey.generate()

    def wait_for_state_transition_result(self, transition_id, timeout):
        proof = super().wait_for_state_transition_result(transition_id, timeout)
        return proof.signed(self._forger) if proof is not None else None


class MisroutingPlatform(InMemoryPlatform):
    """Serves a result for some other transition."""

    def wait_for_state_transition_result(self, transition_id, timeout):
        proof = super().wait_for_state_transition_result(transition_id, timeout)
        if proof is None:
            return None
        return dataclasses.replace(proof, transition_id="0" * 64).signed(self._quorum_key)


@pytest.fixture
def submitter(platform, settings):
    return TransitionSubmitter(platform, PlatformContextProvider(settings, platform), settings)


@pytest.fixture
def signer(key_store):
    return Signer(key_store)


def _create_transition(contract, owner, props):
    doc, entropy = DocumentBuilder().build(contract.document_type("Claim"), owner.id, props)
    return DocumentTransition.create(doc, entropy)


class TestSubmit:
    def test_accepted_create_returns_confirmed_document(
        self, submitter, platform, contract, seller, signer, claim_properties
    ):
        transition = _create_transition(contract, seller, claim_properties)
        document = submitter.submit_and_await(transition, seller.get_public_key_by_id(1), signer)

        assert document.id == transition.document.id
        assert document.revision == 1
        assert document.created_at_block_height == platform.block_height
        assert document.created_at_core_block_height is not None
        assert submitter.latest_revision(contract.id, "Claim", document.id) == 1

    def test_rejection_carries_reason(self, submitter, contract, seller, signer, claim_properties):
        builder = DocumentBuilder()
        claim = contract.document_type("Claim")
        doc, _ = builder.build(claim, seller.id, claim_properties)
        never_created = builder.build_price_update(doc, claim, 50)

        with pytest.raises(SubmissionRejected) as exc_info:
            submitter.submit_and_await(
                DocumentTransition.update_price(never_created), seller.get_public_key_by_id(1), signer
            )
        assert exc_info.value.reason == RejectionReason.NOT_FOUND
        assert exc_info.value.transition_id

    def test_key_without_private_material(self, submitter, platform, contract, seller, signer, claim_properties):
        master = seller.get_public_key_by_id(0)
        with pytest.raises(MissingPrivateKey):
            submitter.submit_and_await(_create_transition(contract, seller, claim_properties), master, signer)
        assert platform.broadcast_log == []

    def test_platform_refuses_master_key_signature(self, submitter, platform, contract, key_store, claim_properties):
        secret = PrivateKey.generate()
        master = IdentityPublicKey(
            id=0,
            purpose=Purpose.AUTHENTICATION,
            security_level=SecurityLevel.MASTER,
            key_type=KeyType.ECDSA_SECP256K1,
            data=secret.public_key_bytes(),
        )
        identity = platform.register_identity(Identity(id=Identifier(b"\x5a" * 32), public_keys=(master,)))
        key_store.add(identity.id, master, secret)

        with pytest.raises(SubmissionRejected) as exc_info:
            submitter.submit_and_await(
                _create_transition(contract, identity, claim_properties), master, Signer(key_store)
            )
        assert exc_info.value.reason == RejectionReason.UNAUTHORIZED_KEY

    def test_unsigned_transition_refused(self, submitter, contract, seller, claim_properties):
        with pytest.raises(ValidationError):
            submitter.submit_signed(_create_transition(contract, seller, claim_properties))

    def test_duplicate_broadcast_rejected(self, submitter, contract, seller, signer, claim_properties):
        signed = submitter.sign(
            _create_transition(contract, seller, claim_properties), seller.get_public_key_by_id(1), signer
        )
        submitter.submit_signed(signed)
        with pytest.raises(SubmissionRejected) as exc_info:
            submitter.submit_signed(signed)
        assert exc_info.value.reason == RejectionReason.DUPLICATE


class TestFailures:
    def test_broadcast_failure_is_not_ambiguous(
        self, submitter, platform, contract, seller, signer, claim_properties
    ):
        platform.fail_next_broadcasts()
        transition = _create_transition(contract, seller, claim_properties)
        with pytest.raises(NetworkError) as exc_info:
            submitter.submit_and_await(transition, seller.get_public_key_by_id(1), signer)
        assert not exc_info.value.ambiguous
        assert exc_info.value.transition_id
        assert platform.fetch_document(contract.id, "Claim", transition.document.id) is None

    def test_lost_response_is_ambiguous(self, submitter, platform, contract, seller, signer, claim_properties):
        platform.lose_next_broadcast_responses()
        transition = _create_transition(contract, seller, claim_properties)
        with pytest.raises(NetworkError) as exc_info:
            submitter.submit_and_await(transition, seller.get_public_key_by_id(1), signer)
        assert exc_info.value.ambiguous
        assert platform.fetch_document(contract.id, "Claim", transition.document.id) is not None

    def test_wait_failure_is_ambiguous(self, submitter, platform, contract, seller, signer, claim_properties):
        platform.fail_next_waits()
        with pytest.raises(NetworkError) as exc_info:
            submitter.submit_and_await(
                _create_transition(contract, seller, claim_properties), seller.get_public_key_by_id(1), signer
            )
        assert exc_info.value.ambiguous

    def test_timeout_when_confirmation_never_arrives(
        self, submitter, platform, contract, seller, signer, claim_properties
    ):
        platform.drop_next_confirmations()
        transition = _create_transition(contract, seller, claim_properties)
        with pytest.raises(ConfirmationTimeout) as exc_info:
            submitter.submit_and_await(transition, seller.get_public_key_by_id(1), signer)
        assert exc_info.value.ambiguous
        assert exc_info.value.timeout_seconds == pytest.approx(0.3)
        # applied even though the result was never observed
        assert submitter.latest_revision(contract.id, "Claim", transition.document.id) == 1

    def test_cancelled_wait(self, submitter, platform, contract, seller, signer, claim_properties):
        cancel = threading.Event()
        cancel.set()
        transition = _create_transition(contract, seller, claim_properties)
        with pytest.raises(SubmissionCancelled) as exc_info:
            submitter.submit_and_await(transition, seller.get_public_key_by_id(1), signer, cancel_event=cancel)
        assert exc_info.value.transition_id
        assert platform.broadcast_log


class TestProofVerification:
    def _submit_on(self, platform_cls, settings, key_store, claim_properties):
        import secrets

        from docstate.schema import DataContract, example_contract_schema

        platform = platform_cls()
        contract = platform.register_contract(
            DataContract.from_schema(
                Identifier(secrets.token_bytes(32)), Identifier(secrets.token_bytes(32)), example_contract_schema()
            )
        )
        identity, secret = platform.create_identity()
        key_store.add(identity.id, identity.get_public_key_by_id(1), secret)
        submitter = TransitionSubmitter(platform, PlatformContextProvider(settings, platform), settings)
        return submitter.submit_and_await(
            _create_transition(contract, identity, claim_properties),
            identity.get_public_key_by_id(1),
            Signer(key_store),
        )

    def test_forged_proof_rejected(self, settings, key_store, claim_properties):
        with pytest.raises(NetworkError) as exc_info:
            self._submit_on(ForgingPlatform, settings, key_store, claim_properties)
        assert exc_info.value.ambiguous
        assert "quorum" in exc_info.value.message

    def test_proof_for_other_transition_rejected(self, settings, key_store, claim_properties):
        with pytest.raises(NetworkError) as exc_info:
            self._submit_on(MisroutingPlatform, settings, key_store, claim_properties)
        assert exc_info.value.ambiguous

    def test_proof_signature_covers_outcome(self):
        key = Ed25519PrivateKey.generate()
        proof = ConfirmationProof(transition_id="ab" * 32, accepted=True, block_height=7).signed(key)
        assert proof.verify(key.public_key())
        assert not dataclasses.replace(proof, accepted=False).verify(key.public_key())
        assert not dataclasses.replace(proof, signature=b"").verify(key.public_key())

    def test_quorum_key_is_cached(self, submitter, contract, seller, signer):
        import secrets

        for _ in range(3):
            props = {"taskId": secrets.token_bytes(32), "amountCredits": 1, "amountUSD": 1}
            submitter.submit_and_await(
                _create_transition(contract, seller, props), seller.get_public_key_by_id(1), signer
            )
        metrics = submitter.context.cache_metrics()["quorum_keys"]
        assert metrics["misses"] == 1
        assert metrics["hits"] == 2
