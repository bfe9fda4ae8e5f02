"""HTTP clients for the marketplace services checkout reads from.

Both collaborators are read-only from the checkout's point of view. A client
is opened per call, the same way the other marketplace services call each
other.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from shared.utils import settings, to_money, ServiceUnavailableException
from checkout_service.errors import ProductNotFound, AddressNotFound
from checkout_service.models import AddressSnapshot

logger = logging.getLogger(__name__)


def _forward_headers(request_id: Optional[str]) -> dict:
    headers = {}
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


def _unwrap(body):
    # Marketplace services wrap payloads in {"success", "data"}; legacy ones don't
    if isinstance(body, dict) and "data" in body and "success" in body:
        return body["data"]
    return body


class CatalogClient:
    def __init__(self, base_url: str = settings.PRODUCTS_SERVICE_URL,
                 timeout: float = settings.COLLABORATOR_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def get_product(self, product_id: str, request_id: Optional[str] = None) -> dict:
        async with self._client() as client:
            try:
                response = await client.get(f"/product/getproduct/{product_id}", headers=_forward_headers(request_id))
                if response.status_code == 404:
                    raise ProductNotFound(product_id)
                response.raise_for_status()
                product = _unwrap(response.json())
            except httpx.RequestError as e:
                logger.error(f"Products service unreachable: {e}")
                raise ServiceUnavailableException("Products service unavailable")
            except httpx.HTTPStatusError as e:
                logger.error(f"Products service error {e.response.status_code} for product {product_id}")
                raise ServiceUnavailableException("Products service unavailable")

        if not product:
            raise ProductNotFound(product_id)
        return product

    async def get_unit_cost(self, product_id: str, request_id: Optional[str] = None) -> Decimal:
        product = await self.get_product(product_id, request_id)
        return self.price_of(product, product_id)

    @staticmethod
    def price_of(product: dict, product_id: str) -> Decimal:
        # Legacy catalog calls it "cost", the newer products service "price"
        raw = product.get("cost", product.get("price"))
        try:
            return to_money(raw)
        except (InvalidOperation, TypeError):
            logger.error(f"Product {product_id} has no usable price: {raw!r}")
            raise ProductNotFound(product_id)


class AddressBookClient:
    def __init__(self, base_url: str = settings.ADDRESS_SERVICE_URL,
                 timeout: float = settings.COLLABORATOR_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def get_address(self, buyer_id: str, address_id: str, request_id: Optional[str] = None) -> AddressSnapshot:
        """Snapshot of one of the buyer's addresses.

        Looks the address up in the buyer's own address list, so an address
        that belongs to someone else is indistinguishable from a missing one.
        """
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.get(f"/address/buyer/{buyer_id}", headers=_forward_headers(request_id))
                if response.status_code == 404:
                    raise AddressNotFound(address_id)
                response.raise_for_status()
                addresses = _unwrap(response.json()) or []
            except httpx.RequestError as e:
                logger.error(f"Address service unreachable: {e}")
                raise ServiceUnavailableException("Address service unavailable")
            except httpx.HTTPStatusError as e:
                logger.error(f"Address service error {e.response.status_code} for buyer {buyer_id}")
                raise ServiceUnavailableException("Address service unavailable")

        for address in addresses:
            if str(address.get("id")) == str(address_id):
                return AddressSnapshot(
                    house_number=str(address.get("houseNumber") or ""),
                    street=address.get("street") or "",
                    city=address.get("city") or "",
                    state=address.get("state") or "",
                    pincode=str(address.get("pincode") or ""),
                    country=address.get("country") or "India",
                )
        raise AddressNotFound(address_id)
