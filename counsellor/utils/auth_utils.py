import datetime
from typing import Any, Dict, Optional

import jwt

from counsellor.config import Config

SECRET_KEY = Config.SECRET_KEY
ALGORITHM = "HS256"

# Tokens outlive the chat countdown slightly so an expired session still
# reaches the session check and gets a SessionExpired answer instead of a 401.
ACCESS_TOKEN_GRACE_MINUTES = 5


def create_access_token(
    data: Dict[str, Any], expires_delta: Optional[datetime.timedelta] = None
) -> str:
    """Create a new JWT access token."""
    to_encode = data.copy()
    default_delta = datetime.timedelta(
        seconds=Config.SESSION_DURATION_SECONDS, minutes=ACCESS_TOKEN_GRACE_MINUTES
    )
    expire = datetime.datetime.now(datetime.timezone.utc) + (expires_delta or default_delta)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and verify a JWT token."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def token_student_id(payload: Optional[Dict[str, Any]]) -> str:
    if not payload:
        return ""
    return str(payload.get("sub") or payload.get("student_id") or "").strip()
