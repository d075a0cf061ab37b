"""Upstream Solana RPC capability used while building bundles."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed, Processed
from solana.rpc.core import RPCException
from solders.account import Account
from solders.hash import Hash
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

from bundler.errors import ChainError

logger = logging.getLogger(__name__)

# SPL mint layout: mint_authority option (36) + supply (8) -> decimals at byte 44
MINT_DECIMALS_OFFSET = 44
MINT_ACCOUNT_MIN_LEN = 82

RPC_ERRORS = (SolanaRpcException, RPCException)


@dataclass(frozen=True)
class MintInfo:
    """Decimals and owning token program of a mint."""
    address: Pubkey
    decimals: int
    program_id: Pubkey

    @property
    def is_token_2022(self) -> bool:
        return self.program_id == TOKEN_2022_PROGRAM_ID


class SolanaChainClient:
    """
    Thin wrapper over ``AsyncClient`` exposing only what the builder and
    orchestrator need. Every RPC failure surfaces as ``ChainError``.
    """

    def __init__(
        self,
        rpc_url: str,
        commitment: Commitment = Confirmed,
        client: Optional[AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self._client = client or AsyncClient(rpc_url, commitment=commitment)

    async def __aenter__(self) -> "SolanaChainClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.close()

    async def get_latest_token(self) -> Hash:
        """Fresh recent blockhash (processed commitment, newest available)."""
        try:
            resp = await self._client.get_latest_blockhash(Processed)
        except RPC_ERRORS as exc:
            raise ChainError(f"getLatestBlockhash failed: {exc}") from exc
        blockhash = resp.value.blockhash
        logger.debug(f"Fetched blockhash {blockhash}")
        return blockhash

    async def get_account_info(self, address: Pubkey, commitment: Optional[Commitment] = None) -> Optional[Account]:
        try:
            resp = await self._client.get_account_info(address, commitment=commitment)
        except RPC_ERRORS as exc:
            raise ChainError(f"getAccountInfo {address} failed: {exc}", {"address": str(address)}) from exc
        return resp.value

    async def account_exists(self, address: Pubkey) -> bool:
        return await self.get_account_info(address) is not None

    async def get_minimum_balance(self, size: int) -> int:
        """Rent-exempt minimum for an account of ``size`` bytes."""
        try:
            resp = await self._client.get_minimum_balance_for_rent_exemption(size)
        except RPC_ERRORS as exc:
            raise ChainError(f"getMinimumBalanceForRentExemption({size}) failed: {exc}") from exc
        return int(resp.value)

    async def get_mint_info(self, mint: Pubkey) -> MintInfo:
        account = await self.get_account_info(mint)
        if account is None:
            raise ChainError(f"Mint not found: {mint}", {"address": str(mint)})
        if account.owner not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            raise ChainError(f"Account {mint} is not owned by a token program", {"owner": str(account.owner)})
        data = bytes(account.data)
        if len(data) < MINT_ACCOUNT_MIN_LEN:
            raise ChainError(f"Account {mint} is too short to be a mint ({len(data)} bytes)")
        return MintInfo(address=mint, decimals=data[MINT_DECIMALS_OFFSET], program_id=account.owner)
