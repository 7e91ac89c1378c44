"""
Operator authentication for the installer API.

Provisioning and teardown spend real money and hand out an Administrator
password, so every /windows-node call needs a bearer token:

  POST /auth/token  (OAuth2 password form)  →  signed JWT, 'sub' = operator
  Authorization: Bearer <jwt>                →  `get_current_user` → operator

Operators come from ``settings.api_users``; stored secrets may be plain text
or bcrypt hashes (``$2b$...``).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from winnode.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def create_access_token(operator: str, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a JWT for *operator* that expires after the configured lifetime."""
    lifetime = expires_delta or timedelta(minutes=settings.jwt_expire_minutes)
    claims = {"sub": operator, "exp": datetime.now(timezone.utc) + lifetime}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """Operator name carried by *token*, or None if it is invalid or expired."""
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    return claims.get("sub")


def authenticate_user(username: str, password: str) -> bool:
    secret = settings.get_api_users().get(username)
    if not secret:
        return False
    if secret.startswith("$2b$"):
        return pwd_context.verify(password, secret)
    return secret == password
