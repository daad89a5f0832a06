from __future__ import annotations

"""
Error taxonomy for the co-sign gateway.

Every failure a caller can see carries a stable ``code`` string. Routers and
the realtime channel turn a GatewayError into a structured ``{error, code,
message}`` body instead of an HTTP error.
"""

from typing import Any, Dict, Optional, Type

# ---------------------------------------------------------------------------
# Codes
# ---------------------------------------------------------------------------

SUCCESS = "success"

SIGNATURE_INVALID = "signature-invalid"
PAYLOAD_INVALID = "payload-invalid"
TRANSACTION_INVALID = "transaction-invalid"

NONCE_NOT_FOUND = "nonce-not-found"
NONCE_EXPIRED = "nonce-expired"
NONCE_DUPLICATE = "nonce-duplicate"
REWARDS_MISMATCH = "rewards-mismatch"
MINER_MISMATCH = "miner-mismatch"
REWARDS_NOT_READY = "rewards-not-ready"
ACCOUNTS_PREPARATION_FAILED = "accounts-preparation-failed"

HASH_MISMATCH = "hash-mismatch"
SUSPICIOUS_TRANSFER = "suspicious-transfer"
UNEXPECTED_INSTRUCTION = "unexpected-instruction"

BLOCKHASH_EXPIRED = "blockhash-expired"
BROADCAST_FAILED = "broadcast-failed"
INSUFFICIENT_BALANCE = "insufficient-balance"
SIMULATION_FAILED = "simulation-failed"
PROGRAM_INSUFFICIENT_TOKENS = "program-insufficient-tokens"

LEDGER_UPDATE_FAILED = "ledger-update-failed"
PROGRAM_NOT_INITIALIZED = "program-not-initialized"

UNKNOWN_ERROR = "unknown-error"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class GatewayError(Exception):
    """Base class. ``code`` is one of the constants above."""

    category = "error"

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message or code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": True, "code": self.code, "message": self.message}


class ValidationError(GatewayError):
    """Malformed signature, payload or transaction. Never retried."""

    category = "validation"


class AuthorizationError(GatewayError):
    """Nonce absent, expired or bound to other rewards; re-request authorization."""

    category = "authorization"


class IntegrityError(GatewayError):
    """Tampered or suspicious transaction. It is never co-signed."""

    category = "integrity"


class NetworkError(GatewayError):
    """Expired blockhash or RPC/broadcast failure."""

    category = "network"


class ProgramInitError(GatewayError):
    category = "program-init"

    def __init__(self, message: Optional[str] = None):
        super().__init__(PROGRAM_NOT_INITIALIZED, message)


class LedgerUpdateError(GatewayError):
    """The ledger could not record the outcome of a broadcast."""

    category = "ledger"

    def __init__(self, message: Optional[str] = None):
        super().__init__(LEDGER_UPDATE_FAILED, message)


def require(cond: bool, exc_type: Type[GatewayError], code: str, msg: Optional[str] = None) -> None:
    if not cond:
        raise exc_type(code, msg)
