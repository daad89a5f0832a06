# cosign_gateway/crypto_utils.py
from __future__ import annotations

"""
Cryptographic helpers for the co-sign gateway.

This module provides:

- loading the administrative keypair from its configured secret
- Ed25519 signature verification (via ``cryptography``)
- base64 helpers for wire transactions

Notes
-----
* The admin secret is accepted either as a JSON array of 64 integers (the
  Solana CLI keypair file format) or as a base58 string.
* Nothing in this module logs key material.
"""

import base64
import binascii
import json
from typing import Union

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from solders.keypair import Keypair

SECRET_KEY_LEN = 64
PUBLIC_KEY_LEN = 32
SIGNATURE_LEN = 64


def load_admin_keypair(raw: str) -> Keypair:
    """
    Parse the administrative secret.

    Parameters
    ----------
    raw:
        ``"[12, 34, ...]"`` (64 ints) or a base58-encoded 64-byte secret.

    Raises
    ------
    ValueError
        If the secret is empty or has the wrong shape.
    """
    text = (raw or "").strip()
    if not text:
        raise ValueError("admin private key is not configured")

    if text.startswith("["):
        try:
            values = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"admin private key is not valid JSON: {e}") from e
        if not isinstance(values, list) or not all(isinstance(v, int) and 0 <= v < 256 for v in values):
            raise ValueError("admin private key must be a JSON array of byte values")
        secret = bytes(values)
    else:
        try:
            secret = base58.b58decode(text)
        except ValueError as e:
            raise ValueError(f"admin private key is not valid base58: {e}") from e

    if len(secret) != SECRET_KEY_LEN:
        raise ValueError(f"admin private key must be {SECRET_KEY_LEN} bytes, got {len(secret)}")
    return Keypair.from_bytes(secret)


def verify_ed25519(public_key: bytes, signature: bytes, message: bytes) -> bool:
    """Return True when ``signature`` is a valid Ed25519 signature of ``message``."""
    if len(public_key) != PUBLIC_KEY_LEN or len(signature) != SIGNATURE_LEN:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except InvalidSignature:
        return False
    return True


def b64encode(data: Union[bytes, bytearray]) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict base64 decode; raises ValueError on malformed input."""
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64: {e}") from e
