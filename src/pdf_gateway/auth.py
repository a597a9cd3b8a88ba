"""
Bearer token handling.

Tokens are HS256 JWTs carrying ``id``, ``email`` and ``plan`` claims. They are
issued by the account service; the gateway only verifies them. The ``plan``
claim is informational: the stored user record is authoritative.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from starlette.requests import Request

from .models import UserRecord

logger = logging.getLogger(__name__)


class TokenVerifier:
    def __init__(
        self,
        secret: Optional[str],
        algorithm: str = "HS256",
        ttl_hours: int = 168,
    ) -> None:
        if not secret:
            logger.warning(
                "JWT_SECRET is not set. Generating a random secret for this process; "
                "tokens issued elsewhere will not validate."
            )
            secret = secrets.token_hex(32)
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = timedelta(hours=ttl_hours)

    def issue(self, user: UserRecord) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "id": user.id,
            "email": user.email,
            "plan": user.plan,
            "iat": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the claims of a valid token, or None for anything else."""
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            logger.debug("Rejected expired token")
            return None
        except jwt.InvalidTokenError as exc:
            logger.debug("Rejected invalid token: %s", exc)
            return None

        subject_id = claims.get("id") or claims.get("sub")
        if not subject_id:
            return None
        claims["id"] = str(subject_id)
        return claims


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer "):
        token = header[len("Bearer "):].strip()
        return token or None
    return None
