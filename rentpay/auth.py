import logging
from typing import Optional

from fastapi import Header
from jose import JWTError, jwt

from rentpay import config
from rentpay.exceptions import ConfigurationError, Unauthorized
from rentpay.helpers import ct_equal

logger = logging.getLogger(__name__)


def _bearer(authorization):
    try:
        scheme, token = authorization.split()
    except (AttributeError, ValueError):
        return None
    if scheme.lower() != "bearer":
        return None
    return token


def verify_token(authorization: Optional[str] = Header(None)):
    """Customer bearer JWT (HS256); returns the customer id from ``sub``."""
    secret = config.jwt_secret()
    if not secret:
        logger.error("JWT_SECRET is not configured")
        raise ConfigurationError("Error de configuración interna del servidor.")

    token = _bearer(authorization)
    if token is None:
        raise Unauthorized("Invalid or missing token")
    try:
        claims = jwt.decode(
            token, secret, algorithms=["HS256"], options={"verify_aud": False}
        )
    except JWTError:
        raise Unauthorized("Invalid or missing token")

    subject = claims.get("sub")
    if not subject:
        raise Unauthorized("Invalid or missing token")
    return str(subject)


def verify_cron_secret(authorization: Optional[str] = Header(None)):
    expected = config.cron_secret()
    if not expected:
        logger.error("CRON_JOB_SECRET is not configured")
        raise ConfigurationError("Error de configuración interna del servidor.")

    if not authorization or not ct_equal(authorization, f"Bearer {expected}"):
        logger.warning("Unauthorized call to an internal endpoint")
        raise Unauthorized("No autorizado.")
    return True
