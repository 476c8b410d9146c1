"""FastAPI dependencies for the setup operator.

Dependencies:
  get_current_session  → decode JWT, return the open SetupSession (or 401)
  get_session_registry → the process-wide SessionRegistry
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from setupkit.auth.jwt import OPERATOR_ROLE, decode_token
from setupkit.services.sessions import SessionRegistry, SetupSession, registry

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def get_session_registry() -> SessionRegistry:
    return registry


async def get_current_session(
    token: str = Depends(oauth2_scheme),
    sessions: SessionRegistry = Depends(get_session_registry),
) -> SetupSession:
    """Decode the JWT and return the operator's open setup session.

    A token whose session was closed by logout is rejected even before it
    expires.
    """
    payload = decode_token(token)
    if (
        not payload.get("sub")
        or payload.get("type") != "access"
        or payload.get("role") != OPERATOR_ROLE
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    session = sessions.get(payload.get("sid"))
    if session is None or session.closed or session.operator != payload["sub"]:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired. Please log in again.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session
