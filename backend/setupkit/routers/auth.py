"""Auth routes for the single setup operator.

Route overview:
  POST /login  : bootstrap credentials → JWT bound to a fresh setup session
  POST /logout : close the session (stops readiness polling, rejects the token)
  GET  /me     : current operator + session id
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from setupkit.auth.deps import get_current_session, get_session_registry
from setupkit.auth.jwt import OPERATOR_ROLE, create_access_token
from setupkit.auth.password import constant_time_equals
from setupkit.config import settings
from setupkit.schemas.auth import LoginRequest, OperatorOut, TokenResponse
from setupkit.services.sessions import SessionRegistry, SetupSession

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    sessions: SessionRegistry = Depends(get_session_registry),
):
    username_ok = constant_time_equals(body.username, settings.bootstrap_admin_username)
    password_ok = constant_time_equals(body.password, settings.bootstrap_admin_password)
    if not (username_ok and password_ok):
        logger.warning("Failed setup login for %r", body.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    session = sessions.open(body.username)
    return TokenResponse(
        access_token=create_access_token(body.username, session.session_id),
        expires_in=settings.access_token_expire_minutes * 60,
        session_id=session.session_id,
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    session: SetupSession = Depends(get_current_session),
    sessions: SessionRegistry = Depends(get_session_registry),
):
    sessions.close(session.session_id)


@router.get("/me", response_model=OperatorOut)
async def me(session: SetupSession = Depends(get_current_session)):
    return OperatorOut(
        username=session.operator, role=OPERATOR_ROLE, session_id=session.session_id
    )
