"""JWT token creation and decoding.

Token claims:
  - sub:   operator username
  - role:  always "system_admin" (the setup operator)
  - sid:   setup session id, must still be open in the session registry
  - type:  "access"
  - exp:   expiry timestamp
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from setupkit.config import settings

ALGORITHM = settings.jwt_algorithm
OPERATOR_ROLE = "system_admin"


def create_access_token(
    username: str,
    session_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    payload = {
        "sub": username,
        "role": OPERATOR_ROLE,
        "sid": session_id,
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Returns empty dict on failure."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return {}
