"""Document id derivation."""

import hashlib

import pytest

from docstate.document_id import (
    ENTROPY_LENGTH,
    DefaultEntropyGenerator,
    generate_document_id,
    verify_document_id,
)
from docstate.errors import ValidationError
from docstate.identifier import Identifier


CONTRACT = Identifier(b"\x01" * 32)
OWNER = Identifier(b"\x02" * 32)
ENTROPY = b"\x03" * 32


def test_matches_double_sha256_layout():
    expected = hashlib.sha256(
        hashlib.sha256(CONTRACT.to_bytes() + OWNER.to_bytes() + b"Claim" + ENTROPY).digest()
    ).digest()
    assert generate_document_id(CONTRACT, OWNER, "Claim", ENTROPY).to_bytes() == expected


def test_deterministic_for_identical_inputs():
    a = generate_document_id(CONTRACT, OWNER, "Claim", ENTROPY)
    b = generate_document_id(str(CONTRACT), OWNER.to_bytes(), "Claim", bytearray(ENTROPY))
    assert a == b


@pytest.mark.parametrize(
    "contract, owner, type_name, entropy",
    [
        (Identifier(b"\x09" * 32), OWNER, "Claim", ENTROPY),
        (CONTRACT, Identifier(b"\x09" * 32), "Claim", ENTROPY),
        (CONTRACT, OWNER, "Tasks", ENTROPY),
        (CONTRACT, OWNER, "Claim", b"\x09" * 32),
    ],
)
def test_each_input_changes_the_id(contract, owner, type_name, entropy):
    base = generate_document_id(CONTRACT, OWNER, "Claim", ENTROPY)
    assert generate_document_id(contract, owner, type_name, entropy) != base


def test_type_name_is_utf8_encoded():
    expected = hashlib.sha256(
        hashlib.sha256(CONTRACT.to_bytes() + OWNER.to_bytes() + "Zählung".encode("utf-8") + ENTROPY).digest()
    ).digest()
    assert generate_document_id(CONTRACT, OWNER, "Zählung", ENTROPY).to_bytes() == expected


@pytest.mark.parametrize("entropy", [b"", b"\x00" * 31, b"\x00" * 33, "x" * 32])
def test_entropy_must_be_32_bytes(entropy):
    with pytest.raises(ValidationError):
        generate_document_id(CONTRACT, OWNER, "Claim", entropy)


def test_empty_type_name_rejected():
    with pytest.raises(ValidationError):
        generate_document_id(CONTRACT, OWNER, "", ENTROPY)


def test_default_generator_draws_fresh_entropy():
    gen = DefaultEntropyGenerator()
    draws = {gen.generate() for _ in range(16)}
    assert len(draws) == 16
    assert all(len(d) == ENTROPY_LENGTH for d in draws)


def test_verify_document_id():
    doc_id = generate_document_id(CONTRACT, OWNER, "Claim", ENTROPY)
    assert verify_document_id(doc_id, CONTRACT, OWNER, "Claim", ENTROPY)
    assert not verify_document_id(doc_id, CONTRACT, OWNER, "Claim", b"\x04" * 32)
