"""Bundler exception hierarchy."""
from typing import Any, Dict, List, Optional


class BundlerError(Exception):
    """Base exception for all bundler errors."""
    code: str = "BND_001"

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigError(BundlerError):
    """Required setting missing or malformed."""
    code = "CFG_001"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, {"key": key})
        self.key = key


class ChainError(BundlerError):
    """Upstream Solana RPC failed or returned an unusable account."""
    code = "CHAIN_001"


class RelayError(BundlerError):
    """Base for failures talking to a relay endpoint."""
    code = "RELAY_001"

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        details: Dict[str, Any] = None,
    ):
        merged = {"endpoint": endpoint, "method": method}
        merged.update(details or {})
        super().__init__(message, merged)
        self.endpoint = endpoint
        self.method = method


class RelayTransportError(RelayError):
    """HTTP-level failure. ``http_status`` is None when no response arrived."""
    code = "RELAY_002"

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        body: str = "",
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
    ):
        super().__init__(
            message,
            endpoint=endpoint,
            method=method,
            details={"http_status": http_status, "body": body},
        )
        self.http_status = http_status
        self.body = body


class RateLimitExhausted(RelayTransportError):
    """HTTP 429 kept coming after the backoff budget was spent."""
    code = "RATE_001"

    def __init__(self, message: str, attempts: int, endpoint: str = None, method: str = None):
        super().__init__(message, http_status=429, endpoint=endpoint, method=method)
        self.attempts = attempts
        self.details["attempts"] = attempts


class RelayProtocolError(RelayError):
    """The JSON-RPC envelope carried an error object."""
    code = "RELAY_003"

    def __init__(
        self,
        message: str,
        rpc_code: Optional[int] = None,
        data: Any = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
    ):
        super().__init__(
            message,
            endpoint=endpoint,
            method=method,
            details={"rpc_code": rpc_code, "data": data},
        )
        self.rpc_code = rpc_code
        self.data = data


class BundleFailed(BundlerError):
    """The relay reported the bundle as failed."""
    code = "BUNDLE_001"

    def __init__(self, bundle_id: str, reason: Any):
        super().__init__(f"Bundle {bundle_id} failed: {reason}", {"bundle_id": bundle_id, "reason": reason})
        self.bundle_id = bundle_id
        self.reason = reason


class BundleTimeout(BundlerError):
    """No terminal status arrived inside the poll window."""
    code = "BUNDLE_002"

    def __init__(self, bundle_id: str, waited_seconds: float):
        super().__init__(
            f"Bundle {bundle_id} not landed after {waited_seconds:.1f}s",
            {"bundle_id": bundle_id, "waited_seconds": waited_seconds},
        )
        self.bundle_id = bundle_id
        self.waited_seconds = waited_seconds


class RetriesExhausted(BundlerError):
    """Every attempt in the retry budget ended without a landed bundle."""
    code = "BUNDLE_003"

    def __init__(self, outcomes: List[Any]):
        super().__init__(
            f"Failed to land bundle after {len(outcomes)} attempts",
            {"attempts": len(outcomes)},
        )
        self.outcomes = list(outcomes)
