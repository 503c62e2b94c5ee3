"""
Caller identity and ownership checks for sync requests.

Provides:
- verify_identity(): validates the bearer JWT and returns its subject claim
- verify_ownership(): confirms the principal owns the requested subject
- authorize_subject(): both, in order, from a raw Authorization header
"""

import logging
from typing import Optional

import jwt
from sqlalchemy.orm import Session

from chatsync.storage import get_owned_subject

logger = logging.getLogger(__name__)


class Unauthorized(Exception):
    """No identity, or an identity token that does not verify."""


class Forbidden(Exception):
    """Valid identity that does not own the requested subject."""


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Pull the token out of an `Authorization: Bearer <token>` header."""
    if not authorization:
        raise Unauthorized("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Malformed Authorization header")
    return token.strip()


def verify_identity(token: str, secret: str, audience: Optional[str] = None) -> str:
    """
    Verify an HS256 identity token and return the principal id.

    Args:
        token: JWT string
        secret: Shared signing secret of the auth service
        audience: Expected `aud` claim, if any

    Returns:
        The `sub` claim.

    Raises:
        Unauthorized: bad signature, expired, wrong audience or no subject.
    """
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"require": ["sub", "exp"], "verify_aud": audience is not None},
        )
    except jwt.PyJWTError as e:
        logger.warning(f"Identity token rejected: {e}")
        raise Unauthorized("Invalid token") from e

    principal_id = claims.get("sub")
    if not principal_id:
        raise Unauthorized("Invalid token")
    return str(principal_id)


def verify_ownership(db: Session, subject_id: str, principal_id: str) -> None:
    """
    Raises:
        Forbidden: the subject does not exist or belongs to someone else.
    """
    if get_owned_subject(db, subject_id, principal_id) is None:
        logger.warning(f"Principal {principal_id} does not own subject {subject_id}")
        raise Forbidden("Forbidden - You do not own this subject")


def authorize_subject(
    db: Session,
    authorization: Optional[str],
    subject_id: str,
    secret: str,
    audience: Optional[str] = None,
) -> str:
    """Identity first, then ownership. Returns the principal id."""
    token = extract_bearer_token(authorization)
    principal_id = verify_identity(token, secret, audience)
    verify_ownership(db, subject_id, principal_id)
    return principal_id
