"""Bearer-token principal resolution.

Tokens are HS256 JWTs whose ``sub`` is the user's id. Issuing tokens (login,
password checks) is handled elsewhere; ``create_access_token`` exists for
tooling and tests.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pymongo.database import Database

from config import settings
from database import get_db
from errors import LibraryError, PermissionDenied
from schemas import STAFF_ROLES, Role
from users import UserDirectory

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def create_access_token(user_id: str, expires_minutes: Optional[int] = None) -> str:
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes or settings.jwt_expiration_minutes)
    to_encode = {"sub": str(user_id), "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def get_current_principal(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> Principal:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    try:
        user = UserDirectory(db).by_id(user_id)
    except LibraryError:
        raise credentials_exception
    if not user.get("active", True):
        raise credentials_exception
    try:
        role = Role(user.get("role", Role.USER.value))
    except ValueError:
        raise credentials_exception
    return Principal(id=user["id"], role=role)


def require_roles(*roles: Role):
    """Dependency factory that admits only principals holding one of ``roles``."""
    allowed = frozenset(roles)

    def checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise PermissionDenied("You do not have permission to access this resource")
        return principal

    return checker


require_staff = require_roles(*STAFF_ROLES)
