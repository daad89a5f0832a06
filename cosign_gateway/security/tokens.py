"""
HS256 tokens for the realtime channel.

The explorer front end mints a short-lived token naming the wallet it acts
for; the socket handshake passes it in the ``auth`` query parameter and the
gateway checks signature, expiry, issuer and audience before accepting the
connection.
"""

import json
import hmac
import time
import base64
import hashlib
import secrets
from typing import Dict, Any, Optional

ALGO = "HS256"
DEV_SECRET = "dev-socket-secret"


def _b64u(x: bytes) -> str:
    return base64.urlsafe_b64encode(x).rstrip(b"=").decode("ascii")


def _b64ud(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def _sign(secret: bytes, data: bytes) -> str:
    return _b64u(hmac.new(secret, data, hashlib.sha256).digest())


def resolve_secret(configured: Optional[str], production: bool) -> bytes:
    """
    Return the signing secret.

    Outside production an unset secret falls back to a fixed development
    value so a local gateway starts without extra configuration. In
    production the secret must be set and at least 32 characters long.
    """
    if production:
        if not configured or len(configured) < 32:
            raise RuntimeError("COSIGN_SOCKET_SECRET must be a strong value (>=32 chars) in production")
        return configured.encode()
    return (configured or DEV_SECRET).encode()


def issue_socket_token(
    wallet_address: str,
    secret: bytes,
    *,
    issuer: str,
    audience: str,
    ttl_sec: int = 3600,
) -> Dict[str, Any]:
    now = int(time.time())
    exp = now + int(ttl_sec)
    payload: Dict[str, Any] = {
        "walletAddress": str(wallet_address),
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": exp,
        "nonce": _b64u(secrets.token_bytes(8)),
    }
    header = {"typ": "JWT", "alg": ALGO}

    h = _b64u(json.dumps(header, separators=(",", ":")).encode())
    p = _b64u(json.dumps(payload, separators=(",", ":")).encode())
    sig = _sign(secret, f"{h}.{p}".encode())
    return {"token": f"{h}.{p}.{sig}", "expires": exp}


def verify_socket_token(token: str, secret: bytes, *, issuer: str, audience: str) -> Optional[Dict[str, Any]]:
    """Return the payload of a valid token, or None."""
    try:
        h, p, s = token.split(".")
        header = json.loads(_b64ud(h))
        payload = json.loads(_b64ud(p))
    except (ValueError, TypeError):
        return None
    if not isinstance(header, dict) or header.get("alg") != ALGO or not isinstance(payload, dict):
        return None
    if not hmac.compare_digest(s, _sign(secret, f"{h}.{p}".encode())):
        return None
    if int(payload.get("exp", 0)) < int(time.time()):
        return None
    if payload.get("iss") != issuer or payload.get("aud") != audience:
        return None
    if not payload.get("walletAddress"):
        return None
    return payload
