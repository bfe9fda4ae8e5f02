from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status, Header
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "checkout_db"
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    AUTH_ENABLED: bool = True
    RATE_LIMIT_ENABLED: bool = True
    PAYMENT_RATE_LIMIT: str = "20/minute"

    # Collaborators
    PRODUCTS_SERVICE_URL: str = "http://products-service:8002"
    ADDRESS_SERVICE_URL: str = "http://address-service:8005"
    COLLABORATOR_TIMEOUT_SECONDS: float = 5.0

    # Payment gateway
    PAYMENT_GATEWAY: str = "razorpay"  # razorpay, fake
    RAZORPAY_KEY_ID: str = "rzp_test_key"
    RAZORPAY_KEY_SECRET: str = "rzp_test_secret"
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    CURRENCY: str = "INR"

    # Cart
    CART_MAX_ITEMS: int = 10
    MIN_QUANTITY: int = 1
    MAX_QUANTITY: int = 10

    # Reconciliation
    INTENT_TTL_MINUTES: int = 30
    SWEEP_INTERVAL_SECONDS: float = 60.0
    COMMIT_MAX_ATTEMPTS: int = 3
    COMMIT_RETRY_DELAY_SECONDS: float = 0.2

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

# --- Money ---
def to_money(value: Any) -> Decimal:
    """Decimal from a stored/wire value, quantized to two places."""
    return Decimal(str(value)).quantize(Decimal("0.01"))

def to_minor_units(amount: Decimal) -> int:
    # Razorpay expects paise
    return int((amount * 100).quantize(Decimal("1")))

# --- Authentication ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    code: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    code = "ERROR"

    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class NotFoundException(AppException):
    code = "NOT_FOUND"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    code = "UNAUTHORIZED"

    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    code = "FORBIDDEN"

    def __init__(self, detail: str = "Not allowed to act for this buyer"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class ServiceUnavailableException(AppException):
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)

# --- Decorators/Dependencies ---
async def get_current_buyer(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Buyer id from the bearer token, or None when auth is disabled."""
    if not settings.AUTH_ENABLED:
        return None
    if not authorization:
        raise UnauthorizedException(detail="Missing authentication credentials")
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or not param:
         raise UnauthorizedException(detail="Invalid authentication credentials")
    payload = verify_token(param)
    sub = payload.get("sub")
    if sub is None:
        raise UnauthorizedException(detail="Token has no subject")
    return str(sub)

def ensure_buyer(current_buyer: Optional[str], buyer_id: str) -> None:
    if settings.AUTH_ENABLED and current_buyer != str(buyer_id):
        raise ForbiddenException()
