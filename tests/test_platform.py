"""Platform context provider and in-memory platform rules."""

import json

import pytest

from docstate.document import DocumentBuilder
from docstate.errors import ConfigurationError, NotFoundError, RejectionReason, SubmissionRejected
from docstate.identifier import Identifier
from docstate.platform import PlatformContextProvider
from docstate.runtime.config import ClientSettings
from docstate.signer import Signer
from docstate.transition import DocumentTransition, sign_transition


class TestContextProvider:
    def test_contract_lookup_is_cached(self, platform, contract):
        context = PlatformContextProvider(ClientSettings(), platform)
        assert context.get_data_contract(contract.id) is contract
        assert context.get_data_contract(str(contract.id)) is contract
        assert platform.fetch_counts["data_contract"] == 1
        assert context.cache_metrics()["data_contracts"]["hits"] == 1

    def test_cache_is_bounded(self, platform):
        from docstate.schema import DataContract, example_contract_schema

        context = PlatformContextProvider(ClientSettings(data_contracts_cache_size=2), platform)
        ids = []
        for i in range(3):
            c = DataContract.from_schema(Identifier(bytes([i + 1]) * 32), Identifier(b"\x09" * 32), example_contract_schema())
            platform.register_contract(c)
            context.get_data_contract(c.id)
            ids.append(c.id)
        assert context.cache_metrics()["data_contracts"]["evictions"] == 1
        context.get_data_contract(ids[0])
        assert platform.fetch_counts["data_contract"] == 4

    def test_missing_contract(self, platform):
        context = PlatformContextProvider(ClientSettings(), platform)
        with pytest.raises(NotFoundError):
            context.get_data_contract(Identifier(b"\x77" * 32))

    def test_seeded_contract_needs_no_client(self, contract):
        context = PlatformContextProvider(ClientSettings())
        context.add_data_contract(contract)
        assert context.get_data_contract(contract.id) is contract
        with pytest.raises(ConfigurationError):
            context.get_data_contract(Identifier(b"\x78" * 32))

    def test_quorum_key(self, platform):
        context = PlatformContextProvider(ClientSettings(), platform)
        key = context.get_quorum_public_key(platform.quorum_hash)
        assert context.get_quorum_public_key(platform.quorum_hash) is key
        with pytest.raises(NotFoundError):
            context.get_quorum_public_key("00" * 32)


def _signed_create(contract, identity, key_store, props):
    doc, entropy = DocumentBuilder().build(contract.document_type("Claim"), identity.id, props)
    return sign_transition(
        DocumentTransition.create(doc, entropy), identity, identity.get_public_key_by_id(1), Signer(key_store)
    )


def _outcome(platform, raw):
    transition_id = platform.broadcast_state_transition(raw)
    return platform.wait_for_state_transition_result(transition_id, 0)


class TestPlatformRules:
    def test_accepted_create_is_stored_in_its_own_block(self, platform, contract, seller, key_store, claim_properties):
        signed = _signed_create(contract, seller, key_store, claim_properties)
        before = platform.block_height
        proof = _outcome(platform, signed.serialize())
        assert proof.accepted
        assert proof.block_height == before + 1
        assert proof.quorum_hash == platform.quorum_hash
        assert platform.fetch_document(contract.id, "Claim", signed.document.id) == proof.document

    def test_tampered_transition_fails_signature(self, platform, contract, seller, key_store, claim_properties):
        wire = json.loads(_signed_create(contract, seller, key_store, claim_properties).serialize())
        wire["properties"] = [[n, 999 if n == "amountCredits" else v] for n, v in wire["properties"]]
        proof = _outcome(platform, json.dumps(wire).encode())
        assert not proof.accepted
        assert proof.reason == RejectionReason.INVALID_SIGNATURE

    def test_entropy_is_covered_by_signature(self, platform, contract, seller, key_store, claim_properties):
        signed = _signed_create(contract, seller, key_store, claim_properties)
        wire = json.loads(signed.serialize())
        wire["entropy"] = [7] * 32
        proof = _outcome(platform, json.dumps(wire).encode())
        assert not proof.accepted
        assert proof.reason == RejectionReason.INVALID_SIGNATURE

    def test_id_must_match_entropy(self, platform, contract, seller, key_store, claim_properties):
        doc, _ = DocumentBuilder().build(contract.document_type("Claim"), seller.id, claim_properties)
        signed = sign_transition(
            DocumentTransition.create(doc, b"\x07" * 32), seller, seller.get_public_key_by_id(1), Signer(key_store)
        )
        proof = _outcome(platform, signed.serialize())
        assert proof.reason == RejectionReason.VALIDATION
        assert "entropy" in proof.message

    def test_garbage_is_rejected_as_validation(self, platform):
        proof = _outcome(platform, b"not a transition")
        assert not proof.accepted
        assert proof.reason == RejectionReason.VALIDATION

    def test_unknown_contract(self, platform, seller, key_store, claim_properties):
        from docstate.schema import DataContract, example_contract_schema

        unregistered = DataContract.from_schema(Identifier(b"\x55" * 32), seller.id, example_contract_schema())
        proof = _outcome(platform, _signed_create(unregistered, seller, key_store, claim_properties).serialize())
        assert proof.reason == RejectionReason.NOT_FOUND

    def test_rejection_does_not_advance_height(self, platform):
        before = platform.block_height
        _outcome(platform, b"{}")
        assert platform.block_height == before

    @pytest.mark.parametrize("offset", [0, 2])
    def test_revision_must_be_exactly_next(self, offset, platform, controller, contract, seller, key_store, claim_properties):
        tracked = controller.create(contract, "Claim", seller, claim_properties)
        priced = DocumentBuilder().build_price_update(tracked.document, contract.document_type("Claim"), 200)
        transition = DocumentTransition.update_price(priced.replace(revision=tracked.revision + offset))

        with pytest.raises(SubmissionRejected) as exc_info:
            controller.submitter.submit_and_await(transition, seller.get_public_key_by_id(1), Signer(key_store))
        assert exc_info.value.reason == RejectionReason.STALE_REVISION
        assert platform.fetch_document(contract.id, "Claim", tracked.document_id).revision == tracked.revision
