import structlog
from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from payment_reconciler.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def verify_token(
    authorization: str = Header(None),
    settings: Settings = Depends(get_settings),
):
    """Bearer HS256 token guard for operator endpoints (create order, refund, read)."""
    if not settings.jwt_secret:
        logger.error("auth_secret_missing")
        raise HTTPException(status_code=500, detail="Authentication not configured")

    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (ValueError, JWTError) as e:
        logger.info("auth_rejected", reason=str(e))
        raise HTTPException(status_code=401, detail="Invalid or missing token")
