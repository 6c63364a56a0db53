"""
Authentication for the Cycloud market API.

Users log in with a username and password; unknown usernames are registered
on the spot. Sessions are JWTs that are also recorded in the tokens table, so
logging out revokes them before they expire.
"""

import hashlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security.utils import get_authorization_scheme_param
from jose import ExpiredSignatureError, JWTError, jwt

from .config import Settings
from .errors import AuthInvalid, AuthMissing
from .schemas import Credentials, MessageOut, TokenOut
from .store import Store, get_store

logger = logging.getLogger(__name__)

router = APIRouter()


def hash_credential(value: str) -> str:
    """Hash a username or password before it reaches the store."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def create_session_token(uid: int, settings: Settings) -> str:
    """
    Create a JWT session token for a user.

    Args:
        uid: The ID of the user
        settings: Settings holding the signing key and lifetime

    Returns:
        str: The JWT token
    """
    expire = datetime.utcnow() + timedelta(minutes=settings.token_expire_minutes)
    to_encode = {"sub": str(uid), "exp": expire, "jti": uuid.uuid4().hex}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def session_token(request: Request) -> Optional[str]:
    """Read the session token from the Authorization header, with or without a Bearer scheme."""
    authorization = request.headers.get("Authorization")
    if not authorization:
        return None
    scheme, param = get_authorization_scheme_param(authorization)
    if scheme.lower() == "bearer":
        return param or None
    return authorization.strip() or None


def get_current_user(
    token: Optional[str] = Depends(session_token),
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> int:
    """
    Resolve the uid of the caller.

    Raises:
        AuthMissing: If no token was sent.
        AuthInvalid: If the token is malformed, expired or revoked.
    """
    if token is None:
        raise AuthMissing()

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        subject = jwt.get_unverified_claims(token).get("sub")
        if subject is not None and subject.isdigit():
            store.revoke_tokens_of_user(int(subject))
        raise AuthInvalid("token expired")
    except JWTError:
        raise AuthInvalid("invalid token")

    uid = store.resolve_token(token)
    if payload.get("sub") != str(uid):
        raise AuthInvalid("invalid token")
    return uid


@router.post("/login", response_model=TokenOut)
def login(
    credentials: Credentials,
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    """Authenticate a user, registering the username on first use, and return a token."""
    uid, is_new = store.register_or_authenticate(
        hash_credential(credentials.username),
        hash_credential(credentials.password),
    )
    token = create_session_token(uid, settings)
    store.issue_session_token(uid, token)
    logger.info("User %s logged in%s", uid, " (new account)" if is_new else "")
    return TokenOut(token=token)


@router.delete("/logout", response_model=MessageOut)
def logout(uid: int = Depends(get_current_user), store: Store = Depends(get_store)):
    """Revoke every session token of the caller."""
    store.revoke_tokens_of_user(uid)
    return MessageOut(message="Logged out successfully")
