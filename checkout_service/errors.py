"""Checkout error kinds.

Every error carries a stable ``code`` so clients can branch on it instead of
on the human-readable message.
"""
from fastapi import status

from shared.utils import AppException, NotFoundException, ServiceUnavailableException

# --- Validation ---
class ProductNotFound(NotFoundException):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id

class AddressNotFound(NotFoundException):
    code = "ADDRESS_NOT_FOUND"

    def __init__(self, address_id: str):
        super().__init__(f"Address {address_id} not found")
        self.address_id = address_id

class ItemNotFound(NotFoundException):
    code = "ITEM_NOT_FOUND"

    def __init__(self, detail: str = "Item not found in cart"):
        super().__init__(detail)

class EmptyCart(AppException):
    code = "EMPTY_CART"

    def __init__(self):
        super().__init__(status.HTTP_400_BAD_REQUEST, "Cart is empty")

# --- Capacity ---
class CartFull(AppException):
    code = "CART_FULL"

    def __init__(self, limit: int):
        super().__init__(status.HTTP_400_BAD_REQUEST, "Cart limit exceeded")
        self.limit = limit

class DuplicateItem(AppException):
    code = "DUPLICATE_ITEM"

    def __init__(self):
        super().__init__(status.HTTP_400_BAD_REQUEST, "Product already in cart")

# --- Gateway ---
class GatewayUnavailable(ServiceUnavailableException):
    """Transient gateway failure; safe to retry with backoff."""
    code = "GATEWAY_UNAVAILABLE"

    def __init__(self, detail: str = "Payment gateway unavailable"):
        super().__init__(detail)

class GatewayRejected(AppException):
    code = "GATEWAY_REJECTED"

    def __init__(self, detail: str = "Payment gateway rejected the request"):
        super().__init__(status.HTTP_502_BAD_GATEWAY, detail)

class SignatureInvalid(AppException):
    code = "SIGNATURE_INVALID"

    def __init__(self):
        super().__init__(status.HTTP_400_BAD_REQUEST, "Payment verification failed")

# --- Integrity ---
class UnknownIntent(NotFoundException):
    code = "UNKNOWN_INTENT"

    def __init__(self, intent_id: str):
        super().__init__("Unknown payment order")
        self.intent_id = intent_id

class IntentAlreadyFailed(AppException):
    code = "INTENT_FAILED"

    def __init__(self, intent_id: str):
        super().__init__(status.HTTP_409_CONFLICT, "Payment order is no longer valid")
        self.intent_id = intent_id

class CheckoutInProgress(AppException):
    """An open intent already holds some of the buyer's cart lines."""
    code = "CHECKOUT_IN_PROGRESS"

    def __init__(self, intent_id: str):
        super().__init__(status.HTTP_409_CONFLICT, "A payment for this cart is already in progress")
        self.intent_id = intent_id

# Errors the gateway callback acknowledges as a no-op
INTEGRITY_ERRORS = (UnknownIntent, IntentAlreadyFailed)

# --- Storage ---
class CommitFailed(ServiceUnavailableException):
    """Orders could not be committed; the intent stays Verified for a retry."""
    code = "COMMIT_FAILED"

    def __init__(self, intent_id: str):
        super().__init__("Payment received, order is being finalized. Please retry shortly")
        self.intent_id = intent_id
