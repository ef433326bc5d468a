from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from pydantic import BaseModel
from enum import Enum

from .config import settings

# JWT Security
security = HTTPBearer()

class UserRole(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"

class TokenPayload(BaseModel):
    sub: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    exp: Optional[int] = None
    token_type: Optional[str] = None  # "access" or "refresh"

# JWT utilities
def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create JWT access token.

    Tokens are normally minted by the identity service; this helper exists for
    service-to-service calls and for tests.
    """
    to_encode = data.copy()
    to_encode["sub"] = str(to_encode.get("sub"))

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=30)

    to_encode.update({
        "exp": expire,
        "token_type": "access"
    })

    encoded_jwt = jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )
    return encoded_jwt

def verify_token(token: str) -> Optional[TokenPayload]:
    """Verify and decode JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )

        return TokenPayload(**payload)

    except JWTError:
        return None

# Security exceptions
class AuthenticationError(HTTPException):
    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

class AuthorizationError(HTTPException):
    def __init__(self, detail: str = "Not enough permissions"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
        )

class Actor(BaseModel):
    """The caller on whose behalf an operation runs."""
    id: Optional[int] = None
    role: UserRole

    @property
    def is_patient(self) -> bool:
        return self.role == UserRole.PATIENT

    @property
    def is_provider(self) -> bool:
        return self.role in (UserRole.DOCTOR, UserRole.ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def owns(self, appointment) -> bool:
        """Patients own their appointments, doctors the ones they hold."""
        if self.is_admin:
            return True
        if self.role == UserRole.PATIENT:
            return appointment.patient_id == self.id
        return appointment.provider_id == self.id

# Used for transitions triggered by the payment gateway rather than a person
SYSTEM_ACTOR = Actor(id=None, role=UserRole.ADMIN)
