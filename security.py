"""
Password hashing and session tokens.

Tokens are stateless HS256 JWTs; validity depends only on the signature and
the expiry claim, so nothing about a session is stored server-side.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import jwt, JWTError, ExpiredSignatureError
from passlib.context import CryptContext

from config import BCRYPT_ROUNDS, INSECURE_JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRE_DAYS

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


class InvalidToken(Exception):
    """Raised when a session token cannot be trusted.

    ``reason`` is one of "missing", "expired", "malformed" or "no_subject".
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid token: {reason}")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except Exception:
        return False


def issue_token(claims: dict, secret: str, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    to_encode = claims.copy()
    to_encode.update({
        "iat": now,
        "exp": now + (expires_delta or timedelta(days=JWT_EXPIRE_DAYS)),
    })
    return jwt.encode(to_encode, secret, algorithm=JWT_ALGORITHM)


def token_for_user(user: dict, secret: str) -> str:
    """Issue a session token for a serialized user record."""
    return issue_token(
        {"sub": user["id"], "userId": user["id"], "email": user["email"], "role": user["role"]},
        secret,
    )


def verify_token(token: Optional[str], secret: str) -> dict:
    if not token:
        raise InvalidToken("missing")
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise InvalidToken("expired")
    except JWTError:
        raise InvalidToken("malformed")
    if not payload.get("userId"):
        raise InvalidToken("no_subject")
    return payload


def warn_if_insecure_secret(secret: str) -> None:
    if secret == INSECURE_JWT_SECRET:
        logger.warning("JWT_SECRET is not set; signing tokens with the insecure development secret")
