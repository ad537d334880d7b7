"""Bearer JWT verification for admin HTTP routes and the realtime channel."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import jwt

from .db import utcnow
from .logging import get_logger
from .store import HotelStore

ADMIN_ID_CLAIM = "userId"


@dataclass(frozen=True)
class AdminIdentity:
    id: int
    username: str


def issue_token(
    secret: str,
    admin_id: int,
    *,
    expires_in: float = 86400.0,
    algorithm: str = "HS256",
) -> str:
    """Mint an admin token carrying ``userId``.

    Login itself belongs to an external collaborator; this exists so that
    collaborator and the test suite share one token shape.
    """

    now = utcnow()
    claims = {
        ADMIN_ID_CLAIM: admin_id,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    return jwt.encode(claims, secret, algorithm=algorithm)


class AdminAuthenticator:
    """Resolves a bearer token to an admin identity, or ``None``."""

    def __init__(
        self, store: HotelStore, secret: Optional[str], algorithm: str = "HS256"
    ) -> None:
        self.store = store
        self._secret = secret
        self._algorithm = algorithm
        self.logger = get_logger("hoteltv.api")

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    async def authenticate(self, token: Optional[str]) -> Optional[AdminIdentity]:
        if not token or not self._secret:
            return None
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.InvalidTokenError as exc:
            self.logger.debug("Rejected admin token", extra={"error": str(exc)})
            return None
        admin_id = claims.get(ADMIN_ID_CLAIM)
        if isinstance(admin_id, bool) or not isinstance(admin_id, (int, str)):
            return None
        try:
            admin_id = int(admin_id)
        except ValueError:
            return None
        admin = await self.store.admin_identity(admin_id)
        if admin is None:
            self.logger.debug("Token names unknown admin", extra={"admin_id": admin_id})
            return None
        return AdminIdentity(id=admin.id, username=admin.username)
