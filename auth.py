"""
Authentication helpers: password hashing, JWT bearer tokens and the
identity dependencies every protected route depends on.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import settings
from database import get_db, oid

ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
auth_scheme = HTTPBearer(auto_error=False)


class AuthError(HTTPException):
    """Authentication error."""
    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash or "")


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    return jwt.encode({"sub": user_id, "exp": expire}, settings.JWT_SECRET, algorithm=ALGORITHM)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db=Depends(get_db),
):
    if credentials is None:
        raise AuthError()
    try:
        payload = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        raise AuthError("Token decode error")
    user_id = payload.get("sub")
    if user_id is None:
        raise AuthError("Invalid token")
    user_doc = db["user"].find_one({"_id": oid(user_id)})
    if not user_doc:
        raise AuthError("User not found")
    return user_doc


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db=Depends(get_db),
):
    """Like get_current_user, but anonymous callers get None instead of a 401."""
    if credentials is None:
        return None
    return get_current_user(credentials, db)


def require_role(*roles: str):
    """
    Dependency factory restricting a route to the given roles.
    Usage:
        @app.post("/api/startups")
        def create_startup(user=Depends(require_role("startup"))):
            ...
    """
    def checker(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Only {' or '.join(roles)} users can access this endpoint",
            )
        return user
    return checker
