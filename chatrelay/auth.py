"""
Token verification collaborator.

Tokens have the form ``<user_id>.<signature>`` where the signature is the
hex HMAC-SHA256 of the user id under AUTH_SECRET. Issuing tokens with an
expiry or refresh policy belongs to the identity service, not here.
"""

import hmac
import hashlib
import logging
from typing import Optional

from chatrelay.errors import InvalidToken

logger = logging.getLogger(__name__)


def sign(payload: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of payload."""
    return hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256
    ).hexdigest()


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Signed payload bytes
        signature: Hex-encoded signature
        secret: AUTH_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    expected_signature = sign(body, secret)

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(expected_signature, signature)


class TokenVerifier:
    """Resolves bearer tokens to user ids."""

    def __init__(self, secret: str):
        self.secret = secret

    def issue(self, user_id: str) -> str:
        return f"{user_id}.{sign(user_id.encode('utf-8'), self.secret)}"

    def verify(self, token: Optional[str]) -> str:
        """
        Return the user id carried by a valid token.

        Raises:
            InvalidToken: token missing, malformed or wrongly signed
        """
        if not token:
            raise InvalidToken("missing token")

        user_id, sep, signature = token.rpartition(".")
        if not sep or not user_id or not signature:
            logger.info("Rejected malformed token")
            raise InvalidToken("malformed token")

        if not verify_hmac_signature(user_id.encode("utf-8"), signature, self.secret):
            logger.info("Rejected token with invalid signature")
            raise InvalidToken("invalid token")

        return user_id


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None
