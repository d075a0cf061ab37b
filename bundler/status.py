"""Bundle landing status as reported by ``getBundleStatuses``."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class StatusKind(Enum):
    """Landing state of a submitted bundle."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"
    UNKNOWN = "unknown"


LANDED_KINDS = (StatusKind.CONFIRMED, StatusKind.FINALIZED)
PENDING_MARKERS = ("processed", "pending", "submitted")


def _extract_error(entry: Dict[str, Any]) -> Any:
    """Return the error payload, treating ``{"Ok": null}`` as no error."""
    for key in ("error", "err"):
        value = entry.get(key)
        if not value:
            continue
        if isinstance(value, dict) and set(value) == {"Ok"}:
            continue
        return value
    return None


@dataclass
class BundleStatus:
    """One bundle's status entry."""
    bundle_id: str
    kind: StatusKind
    reason: Any = None
    slot: Optional[int] = None
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @classmethod
    def from_payload(cls, bundle_id: str, entry: Any) -> "BundleStatus":
        """Parse one element of a ``getBundleStatuses`` result.

        ``None`` (the relay has not seen the bundle yet) and unrecognised
        shapes map to UNKNOWN.
        """
        if not isinstance(entry, dict):
            return cls(bundle_id=bundle_id, kind=StatusKind.UNKNOWN, raw=None)

        bundle_id = str(entry.get("bundle_id") or bundle_id)
        slot = entry.get("slot")
        confirmation = str(entry.get("confirmation_status") or entry.get("status") or "").lower()

        if confirmation == "finalized":
            kind = StatusKind.FINALIZED
        elif confirmation == "confirmed" or entry.get("landed"):
            kind = StatusKind.CONFIRMED
        else:
            kind = None

        if kind is not None:
            return cls(bundle_id=bundle_id, kind=kind, slot=slot, raw=entry)

        error = _extract_error(entry)
        if error is not None or confirmation in ("failed", "invalid"):
            return cls(
                bundle_id=bundle_id,
                kind=StatusKind.FAILED,
                reason=error if error is not None else confirmation,
                slot=slot,
                raw=entry,
            )

        if confirmation in PENDING_MARKERS:
            return cls(bundle_id=bundle_id, kind=StatusKind.PENDING, slot=slot, raw=entry)

        return cls(bundle_id=bundle_id, kind=StatusKind.UNKNOWN, slot=slot, raw=entry)

    @property
    def is_landed(self) -> bool:
        return self.kind in LANDED_KINDS

    @property
    def is_failed(self) -> bool:
        return self.kind is StatusKind.FAILED

    @property
    def is_terminal(self) -> bool:
        return self.is_landed or self.is_failed

    def describe(self) -> str:
        """Compact JSON of the raw payload for log lines."""
        if self.raw is None:
            return self.kind.value
        return json.dumps(self.raw, default=str, separators=(",", ":"))
