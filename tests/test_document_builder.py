"""Document builder: new documents, price updates and purchases."""

import pytest

from docstate.document import INITIAL_REVISION, Document, DocumentBuilder
from docstate.document_id import generate_document_id
from docstate.errors import TransitionNotAllowed, ValidationError
from docstate.identifier import Identifier
from docstate.schema import PRICE_FIELD, DataContract, example_contract_schema


OWNER = Identifier(b"\x0a" * 32)
BUYER = Identifier(b"\x0b" * 32)


class FixedEntropy:
    def __init__(self, value: bytes = b"\x05" * 32):
        self.value = value

    def generate(self) -> bytes:
        return self.value


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.9):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def contract():
    return DataContract.from_schema(Identifier(b"\x01" * 32), Identifier(b"\x02" * 32), example_contract_schema())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def builder(clock):
    return DocumentBuilder(entropy_generator=FixedEntropy(), clock=clock)


def _claim(builder, contract):
    doc, _ = builder.build(
        contract.document_type("Claim"),
        OWNER,
        {"taskId": b"\x0c" * 32, "amountCredits": 100, "amountUSD": 5},
    )
    return doc


class TestBuild:
    def test_new_document_fields(self, builder, contract):
        doc, entropy = builder.build(
            contract.document_type("Project"),
            OWNER,
            {"name": "docstate", "description": "client core", "url": "https://example.org"},
        )
        assert entropy == b"\x05" * 32
        assert doc.id == generate_document_id(contract.id, OWNER, "Project", entropy)
        assert doc.revision == INITIAL_REVISION == 1
        assert doc.created_at == doc.updated_at == 1_700_000_000
        assert doc.transferred_at is None
        assert doc.created_at_block_height is None
        assert doc.price is None
        assert doc.owner_id == OWNER
        assert doc.data_contract_id == contract.id

    def test_explicit_now_and_entropy(self, builder, contract):
        doc, entropy = builder.build(
            contract.document_type("Claim"),
            OWNER,
            {"taskId": b"\x0c" * 32, "amountCredits": 1, "amountUSD": 1},
            now=42,
            entropy=b"\x06" * 32,
        )
        assert entropy == b"\x06" * 32
        assert doc.created_at == 42

    def test_invalid_properties_raise_before_anything_else(self, builder, contract):
        with pytest.raises(ValidationError) as exc_info:
            builder.build(contract.document_type("Claim"), OWNER, {"taskId": b"\x0c" * 32})
        assert exc_info.value.field == "amountCredits"

    def test_price_cannot_be_set_on_create(self, builder, contract):
        with pytest.raises(ValidationError):
            builder.build(
                contract.document_type("Claim"),
                OWNER,
                {"taskId": b"\x0c" * 32, "amountCredits": 1, "amountUSD": 1, PRICE_FIELD: 10},
            )

    def test_to_dict_and_back(self, builder, contract):
        doc = _claim(builder, contract)
        data = doc.to_dict()
        assert data["$id"] == str(doc.id)
        assert data["$revision"] == 1
        assert isinstance(data["taskId"], str)
        assert Document.from_dict(data, contract.document_type("Claim")) == doc


class TestPriceUpdate:
    def test_sets_price_and_bumps_revision(self, builder, contract, clock):
        doc = _claim(builder, contract)
        clock.now += 60
        priced = builder.build_price_update(doc, contract.document_type("Claim"), 200)
        assert priced.price == 200
        assert priced.revision == 2
        assert priced.updated_at == doc.created_at + 60
        assert priced.created_at == doc.created_at
        assert priced.user_properties == doc.user_properties
        assert doc.price is None

    def test_requires_direct_purchase_type(self, builder, contract):
        project, _ = builder.build(
            contract.document_type("Project"),
            OWNER,
            {"name": "p", "description": "d", "url": "u"},
        )
        with pytest.raises(TransitionNotAllowed):
            builder.build_price_update(project, contract.document_type("Project"), 10)

    @pytest.mark.parametrize("price", [-1, 1.5, "10", None])
    def test_rejects_bad_price(self, builder, contract, price):
        doc = _claim(builder, contract)
        with pytest.raises(TransitionNotAllowed) as exc_info:
            builder.build_price_update(doc, contract.document_type("Claim"), price)
        assert exc_info.value.field == PRICE_FIELD

    def test_wrong_document_type(self, builder, contract):
        doc = _claim(builder, contract)
        with pytest.raises(ValidationError):
            builder.build_price_update(doc, contract.document_type("Tasks"), 10)


class TestPurchase:
    def test_transfers_ownership_and_clears_price(self, builder, contract, clock):
        claim = contract.document_type("Claim")
        priced = builder.build_price_update(_claim(builder, contract), claim, 200)
        clock.now += 10
        bought = builder.build_purchase(priced, claim, BUYER)
        assert bought.owner_id == BUYER
        assert bought.revision == 3
        assert bought.price is None
        assert PRICE_FIELD not in bought.properties
        assert bought.transferred_at == bought.updated_at == int(clock.now)
        assert bought.id == priced.id

    def test_requires_price(self, builder, contract):
        with pytest.raises(TransitionNotAllowed) as exc_info:
            builder.build_purchase(_claim(builder, contract), contract.document_type("Claim"), BUYER)
        assert exc_info.value.field == PRICE_FIELD

    def test_owner_cannot_buy_own_document(self, builder, contract):
        claim = contract.document_type("Claim")
        priced = builder.build_price_update(_claim(builder, contract), claim, 200)
        with pytest.raises(TransitionNotAllowed):
            builder.build_purchase(priced, claim, OWNER)

    def test_non_transferable_type(self, builder, contract):
        project_type = contract.document_type("Project")
        project, _ = builder.build(project_type, OWNER, {"name": "p", "description": "d", "url": "u"})
        priced = project.replace(properties={**project.properties, PRICE_FIELD: 5}, revision=2)
        with pytest.raises(TransitionNotAllowed) as exc_info:
            builder.build_purchase(priced, project_type, BUYER)
        assert "not transferable" in exc_info.value.message
