# auth/verifier.py
import logging
from typing import Optional

import jwt
from fastapi import Header, Request

from deal.errors import AuthError

logger = logging.getLogger("auth")


class JwtVerifier:
    """
    驗證 HS256 JWT，回傳 uid（owner id）；不合法回傳 None。
    token 由登入服務簽發，這裡只驗不發。
    """

    def __init__(self, secret: str, algorithms=("HS256",)):
        if not secret:
            raise RuntimeError("SECRET_KEY not set")
        self._secret = secret
        self._algorithms = list(algorithms)

    def verify(self, token: str) -> Optional[int]:
        try:
            payload = jwt.decode(token, self._secret, algorithms=self._algorithms)
            return int(payload.get("uid"))
        except (jwt.PyJWTError, TypeError, ValueError) as e:
            logger.info("token rejected: %s", e)
            return None


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("missing bearer token")
    return authorization.split(" ", 1)[1].strip()


def require_owner(request: Request, authorization: Optional[str] = Header(None)) -> int:
    """FastAPI dependency: Authorization: Bearer <jwt> -> owner id."""
    verifier: JwtVerifier = request.app.state.verifier
    owner_id = verifier.verify(bearer_token(authorization))
    if owner_id is None:
        raise AuthError("invalid token")
    return owner_id
