"""
Shopify request authentication: embedded-app session tokens and webhook signatures.
"""
import base64
import hashlib
import hmac
import logging
import os
from urllib.parse import urlparse

import jwt
from dotenv import load_dotenv
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

load_dotenv()

logger = logging.getLogger(__name__)

SHOPIFY_API_KEY = os.getenv("SHOPIFY_API_KEY", "")
SHOPIFY_API_SECRET = os.getenv("SHOPIFY_API_SECRET", "")
SESSION_TOKEN_LEEWAY_SECONDS = 10

security = HTTPBearer()


def decode_session_token(token: str) -> dict:
    if not SHOPIFY_API_SECRET:
        raise HTTPException(status_code=503, detail="SHOPIFY_API_SECRET is not configured")
    options = {"verify_aud": bool(SHOPIFY_API_KEY)}
    return jwt.decode(
        token,
        SHOPIFY_API_SECRET,
        algorithms=["HS256"],
        audience=SHOPIFY_API_KEY or None,
        leeway=SESSION_TOKEN_LEEWAY_SECONDS,
        options=options,
    )


def shop_from_payload(payload: dict) -> str:
    host = urlparse(payload.get("dest") or "").hostname
    if not host:
        raise HTTPException(status_code=401, detail="Session token has no shop")
    return host.lower()


def get_current_shop(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    try:
        payload = decode_session_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid session token")
    return shop_from_payload(payload)


def verify_webhook_hmac(body: bytes, hmac_header: str, secret: str | None = None) -> bool:
    """Check the base64 HMAC-SHA256 Shopify sends in X-Shopify-Hmac-Sha256."""
    secret = SHOPIFY_API_SECRET if secret is None else secret
    if not hmac_header or not secret:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(expected, hmac_header)
