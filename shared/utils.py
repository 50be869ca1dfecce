from datetime import datetime
from typing import Optional, Generic, TypeVar, Any, Dict
from fastapi import HTTPException, status, Header
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "blackbird_db"
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CONNECTED_ACCOUNT_ID: str = ""
    CURRENCY: str = "usd"

    # Store / pricing
    STORE_NAME: str = "Blackbird"
    ORDER_NUMBER_PREFIX: str = "BB"
    TAX_RATE: float = 0.06
    PRICE_TOLERANCE: float = 0.02
    MIN_ORDER_TOTAL: float = 0.50
    MAX_ORDER_TOTAL: float = 10000.0
    PLATFORM_FEE_RATES: Dict[str, float] = {
        "drink": 0.05,
        "food": 0.05,
        "merchandise": 0.03,
        "comic": 0.02,
    }
    DEFAULT_PLATFORM_FEE_RATE: float = 0.025

    # Rate limiting ("memory://" for a single process, "redis://host:6379" when shared)
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    CHECKOUT_RATE_LIMIT: str = "10/minute"
    ORDERS_RATE_LIMIT: str = "5/minute"
    WEBHOOK_RATE_LIMIT: str = "100/minute"

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

# --- Authentication ---
def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException(detail="Could not validate credentials")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
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
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

# --- Decorators/Dependencies ---
async def require_auth(authorization: Optional[str] = Header(None)) -> dict:
    if not authorization:
        raise UnauthorizedException(detail="Missing authentication credentials")
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer":
         raise UnauthorizedException(detail="Invalid authentication credentials")
    return verify_token(param)

async def require_admin(authorization: Optional[str] = Header(None)) -> dict:
    claims = await require_auth(authorization)
    if claims.get("role") != "admin":
        raise ForbiddenException(detail="Admin access required")
    return claims
