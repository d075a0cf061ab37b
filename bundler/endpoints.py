"""Relay endpoints and tip-account selection."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence
from urllib.parse import urlparse

from solders.pubkey import Pubkey

from bundler.errors import ConfigError

logger = logging.getLogger(__name__)

BUNDLES_PATH = "/api/v1/bundles"


class RelayRegion(Enum):
    """Jito block engine endpoints."""
    MAINNET = "https://mainnet.block-engine.jito.wtf"
    AMSTERDAM = "https://amsterdam.mainnet.block-engine.jito.wtf"
    FRANKFURT = "https://frankfurt.mainnet.block-engine.jito.wtf"
    NY = "https://ny.mainnet.block-engine.jito.wtf"
    TOKYO = "https://tokyo.mainnet.block-engine.jito.wtf"


DEFAULT_RELAY_URLS = [RelayRegion.FRANKFURT.value, RelayRegion.AMSTERDAM.value]

# Tip accounts for Jito validators (mainnet)
RELAY_TIP_ACCOUNTS = [
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
]


@dataclass(frozen=True)
class Endpoint:
    """A relay base URL plus the shared auth secret."""
    url: str
    auth_secret: str = field(default="", repr=False)

    @property
    def bundles_url(self) -> str:
        return self.url.rstrip("/") + BUNDLES_PATH

    @property
    def region(self) -> str:
        host = urlparse(self.url).hostname or self.url
        return host.split(".")[0]


class EndpointPool:
    """Ordered relay endpoints and tip-account candidates."""

    def __init__(
        self,
        endpoints: Sequence[Endpoint],
        tip_accounts: Sequence[str] = RELAY_TIP_ACCOUNTS,
        tip_account_override: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        if not endpoints:
            raise ConfigError("At least one relay endpoint is required", key="JITO_URLS")
        if not tip_accounts and not tip_account_override:
            raise ConfigError("No tip accounts configured", key="TIP_ACCOUNT_OVERRIDE")
        self._endpoints: List[Endpoint] = list(endpoints)
        self._tip_accounts: List[str] = list(tip_accounts)
        self._tip_override = tip_account_override or None
        self._rng = rng or random.Random()

    @classmethod
    def from_urls(
        cls,
        urls: Sequence[str],
        auth_secret: str,
        tip_account_override: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ) -> "EndpointPool":
        endpoints = [Endpoint(url=u.strip(), auth_secret=auth_secret) for u in urls if u.strip()]
        return cls(endpoints, tip_account_override=tip_account_override, rng=rng)

    @property
    def endpoints(self) -> List[Endpoint]:
        return list(self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)

    def pick_endpoint(self, attempt_index: int) -> Endpoint:
        """Round-robin so consecutive attempts hit different regions."""
        return self._endpoints[attempt_index % len(self._endpoints)]

    def pick_tip_account(self) -> Pubkey:
        """Override if configured, otherwise a uniform pick from the fallback list."""
        if self._tip_override:
            chosen = self._tip_override
        else:
            chosen = self._rng.choice(self._tip_accounts)
        try:
            return Pubkey.from_string(chosen)
        except ValueError as exc:
            raise ConfigError(f"Invalid tip account: {chosen}", key="TIP_ACCOUNT_OVERRIDE") from exc
