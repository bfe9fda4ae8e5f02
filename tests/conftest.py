import httpx
import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from shared.utils import create_access_token
from shared.security_config import limiter
from checkout_service.collaborators import AddressBookClient, CatalogClient
from checkout_service.gateway import FakeGateway
from checkout_service.service import CheckoutService

BUYER = "1"
OTHER_BUYER = "2"
ADDRESS_ID = "11"


@pytest.fixture
def products():
    """Catalog contents served by the mocked products service; tests may edit it."""
    return {
        "7": {"id": 7, "name": "Steel Kettle", "category": "Kitchen", "cost": 100},
        "9": {"id": 9, "name": "Tea Cups", "category": "Kitchen", "cost": 45.50},
        **{str(pid): {"id": pid, "name": f"Item {pid}", "cost": 10} for pid in range(100, 120)},
    }


@pytest.fixture
def addresses():
    return {
        BUYER: [
            {"id": 11, "houseNumber": "12B", "street": "MG Road", "city": "Bengaluru",
             "state": "Karnataka", "pincode": 560001, "isDefault": True},
        ],
        OTHER_BUYER: [
            {"id": 21, "houseNumber": "4", "street": "Park Street", "city": "Kolkata",
             "state": "West Bengal", "pincode": "700016"},
        ],
    }


@pytest.fixture
def catalog(products):
    def handler(request: httpx.Request) -> httpx.Response:
        product_id = request.url.path.rsplit("/", 1)[-1]
        if product_id not in products:
            return httpx.Response(404, json={"message": "Product not found"})
        return httpx.Response(200, json=products[product_id])

    return CatalogClient(base_url="http://catalog.test", transport=httpx.MockTransport(handler))


@pytest.fixture
def address_book(addresses):
    def handler(request: httpx.Request) -> httpx.Response:
        buyer_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json=addresses.get(buyer_id, []))

    return AddressBookClient(base_url="http://address.test", transport=httpx.MockTransport(handler))


@pytest.fixture
def gateway():
    return FakeGateway(key_id="rzp_test_key", key_secret="test_secret")


@pytest.fixture
def mongo_client():
    return AsyncMongoMockClient()


@pytest.fixture
def db(mongo_client):
    return mongo_client["checkout_test"]


@pytest.fixture
def checkout(db, gateway, catalog, address_book):
    return CheckoutService.build(db, gateway, catalog, address_book, retry_delay=0)


@pytest.fixture
def client(checkout, mongo_client):
    from checkout_service.main import app

    limiter.enabled = False
    app.mongodb_client = mongo_client
    app.checkout = checkout
    yield TestClient(app)
    limiter.enabled = True


def token_for(buyer_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': buyer_id, 'role': 'buyer'})}"}


@pytest.fixture
def buyer_headers():
    return token_for(BUYER)
