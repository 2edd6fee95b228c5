from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt

from dm_service.core.errors import Unauthenticated


def create_access_token(sub: str, secret: str, algorithm: str = "HS256", expires_minutes: int = 60) -> str:
    # sessions are issued elsewhere; this exists for dev tooling and tests
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode({"sub": sub, "exp": int(expire.timestamp())}, secret, algorithm=algorithm)


def decode_access_token(token: str, secret: str, algorithm: str = "HS256") -> Dict[str, Any]:
    try:
        return jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc
