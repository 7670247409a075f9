"""
JWT helpers. Tokens are issued by the identity service with the same secret;
``create_access_token`` exists for ops scripts and the test-suite.
"""

import datetime

from jose import jwt

from .. import config


def create_access_token(data: dict, expires_delta: datetime.timedelta | None = None) -> str:
    to_encode = data.copy()
    expire = datetime.datetime.now(datetime.timezone.utc) + (
        expires_delta or datetime.timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Raises jose.JWTError on a bad signature or an expired token."""
    return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
