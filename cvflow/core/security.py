from datetime import datetime, timedelta
from typing import Any, Optional, Union

from jose import JWTError, jwt

from cvflow.core.config import settings

ALGORITHM = "HS256"


def create_access_token(subject: Union[str, Any], expires_delta: timedelta = None) -> str:
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=15)

    to_encode = {"exp": expire, "sub": str(subject), "type": "access"}
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)
    return encoded_jwt


def decode_principal(token: str) -> Optional[str]:
    """Return the token subject (the principal's e-mail), or None if the token is unusable."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("type", "access") != "access":
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None
