"""
Bundler Test Configuration

Shared fakes for the relay HTTP layer, the Solana RPC and time. Nothing here
touches the network.
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pytest
from solders.account import Account
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID

# Add project root to path FIRST
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bundler.chain import MintInfo
from bundler.launchpad import OperationContext, PoolSnapshot, SNAPSHOT_KEYS


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)


class FakeResponse:
    def __init__(self, status: int = 200, body: Union[str, Dict[str, Any]] = ""):
        self.status = status
        self._body = body if isinstance(body, str) else json.dumps(body)

    async def text(self) -> str:
        return self._body


class _PostContext:
    def __init__(self, outcome: Union[FakeResponse, BaseException]):
        self._outcome = outcome

    async def __aenter__(self) -> FakeResponse:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc_info) -> None:
        return None


class FakeSession:
    """
    Stand-in for ``aiohttp.ClientSession``.

    ``responder`` is either a list consumed one item per post, or a callable
    ``(url, payload) -> FakeResponse | Exception``.
    """

    def __init__(self, responder, clock: Optional[FakeClock] = None, events: Optional[list] = None):
        self._responder = responder
        self._clock = clock
        self._events = events
        self.posts: List[Dict[str, Any]] = []
        self.closed = False

    def post(self, url: str, json: Dict[str, Any] = None, headers: Dict[str, str] = None) -> _PostContext:
        self.posts.append({
            "at": self._clock() if self._clock else None,
            "url": url,
            "payload": json,
            "headers": headers,
        })
        if self._events is not None:
            self._events.append(("post", json["method"]))
        if callable(self._responder):
            outcome = self._responder(url, json)
        else:
            outcome = self._responder.pop(0)
        return _PostContext(outcome)

    async def close(self) -> None:
        self.closed = True

    @property
    def methods(self) -> List[str]:
        return [p["payload"]["method"] for p in self.posts]


def rpc_result(result: Any) -> FakeResponse:
    return FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": result})


def rpc_error(code: int, message: str) -> FakeResponse:
    return FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}})


class FakeChain:
    """In-memory replacement for ``SolanaChainClient``."""

    def __init__(self, existing: Optional[set] = None, rent: int = 2_039_280, events: Optional[list] = None):
        self.existing = set(existing or ())
        self.rent = rent
        self.events = events
        self.blockhashes: List[Hash] = []
        self.fail_next_blockhash: Optional[Exception] = None
        self.mints: Dict[Pubkey, MintInfo] = {}
        self.exists_calls: List[Pubkey] = []

    async def get_latest_token(self) -> Hash:
        if self.fail_next_blockhash is not None:
            exc, self.fail_next_blockhash = self.fail_next_blockhash, None
            raise exc
        blockhash = Hash.new_unique()
        self.blockhashes.append(blockhash)
        if self.events is not None:
            self.events.append(("blockhash", blockhash))
        return blockhash

    async def account_exists(self, address: Pubkey) -> bool:
        self.exists_calls.append(address)
        return address in self.existing

    async def get_account_info(self, address: Pubkey, commitment=None) -> Optional[Account]:
        if address not in self.existing:
            return None
        return Account(lamports=1, data=b"", owner=TOKEN_PROGRAM_ID, executable=False, rent_epoch=0)

    async def get_minimum_balance(self, size: int) -> int:
        return self.rent

    async def get_mint_info(self, mint: Pubkey) -> MintInfo:
        return self.mints.get(mint) or MintInfo(address=mint, decimals=6, program_id=TOKEN_PROGRAM_ID)

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "FakeChain":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def make_snapshot_dict() -> Dict[str, str]:
    return {key: str(Pubkey.new_unique()) for key in SNAPSHOT_KEYS}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def snapshot_dict() -> Dict[str, str]:
    return make_snapshot_dict()


@pytest.fixture
def operation_context(snapshot_dict) -> OperationContext:
    return OperationContext(
        pool=PoolSnapshot.from_dict(snapshot_dict),
        mint=Pubkey.new_unique(),
        mint_program=TOKEN_PROGRAM_ID,
        amount_out=1_000_000_000,
        max_amount_in=500_000_000,
    )


@pytest.fixture
def primary() -> Keypair:
    return Keypair()


@pytest.fixture
def tip_payer() -> Keypair:
    return Keypair()


BUNDLER_ENV_KEYS = (
    "RPC_URL", "JITO_URLS", "JITO_SECRET", "SNIPER1_SECRET_KEY", "SNIPER2_SECRET_KEY", "MINT",
    "AMOUNT_OUT_UI", "MAX_SOL", "POOL_SNAPSHOT_PATH", "SLIPPAGE_BPS", "CU_LIMIT", "BUY_CU_PRICE_MICRO",
    "SHARE_FEE_BPS", "SHARE_FEE_RECEIVER", "TIP_LAMPORTS", "TIP_ACCOUNT_OVERRIDE", "BUNDLE_RETRIES",
    "POLL_TIMEOUT_S", "POLL_INTERVAL_MS", "JITO_MIN_INTERVAL_MS", "LOG_LEVEL", "LOG_JSON",
)


def isolated_environ() -> Dict[str, str]:
    """Copy of the process environment without any bundler settings."""
    return {k: v for k, v in os.environ.items() if k not in BUNDLER_ENV_KEYS}
