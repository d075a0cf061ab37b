"""
LaunchLab buy instruction.

The pool snapshot is supplied from outside (a JSON file); nothing here looks
pools up or derives their addresses. This module only encodes the
``buy_exact_out`` call both bundle legs share.
"""

from __future__ import annotations

import hashlib
import json
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import TOKEN_PROGRAM_ID, WRAPPED_SOL_MINT

from bundler.errors import ConfigError

LAUNCHPAD_PROGRAM_ID = Pubkey.from_string("LanMV9sAd7wArD4vJFi2qDdfnVhFxYSUg6eADduJ3uj")

SNAPSHOT_KEYS = (
    "pool_id",
    "authority",
    "config_id",
    "platform_id",
    "vault_a",
    "vault_b",
    "platform_vault",
    "creator_vault",
    "event_authority",
)


def anchor_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


BUY_EXACT_OUT_DISCRIMINATOR = anchor_discriminator("buy_exact_out")


def _require_keys(data: Mapping[str, Any], keys: Iterable[str], context: str) -> None:
    missing = [key for key in keys if not data.get(key)]
    if missing:
        raise ConfigError(f"{context} missing required keys: {', '.join(missing)}", key="POOL_SNAPSHOT_PATH")


def _to_pubkey(value: str, *, field_name: str) -> Pubkey:
    try:
        return Pubkey.from_string(str(value))
    except ValueError as exc:
        raise ConfigError(f"Invalid address for {field_name}: {value}", key=field_name) from exc


@dataclass(frozen=True)
class PoolSnapshot:
    """Addresses of one LaunchLab pool, captured before the run starts."""
    pool_id: Pubkey
    authority: Pubkey
    config_id: Pubkey
    platform_id: Pubkey
    vault_a: Pubkey
    vault_b: Pubkey
    platform_vault: Pubkey
    creator_vault: Pubkey
    event_authority: Pubkey
    program_id: Pubkey = LAUNCHPAD_PROGRAM_ID

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PoolSnapshot":
        _require_keys(data, SNAPSHOT_KEYS, "pool snapshot")
        fields = {key: _to_pubkey(data[key], field_name=key) for key in SNAPSHOT_KEYS}
        if data.get("program_id"):
            fields["program_id"] = _to_pubkey(data["program_id"], field_name="program_id")
        return cls(**fields)

    @classmethod
    def from_file(cls, path: Path) -> "PoolSnapshot":
        try:
            with Path(path).open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError as exc:
            raise ConfigError(f"Pool snapshot not found: {path}", key="POOL_SNAPSHOT_PATH") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Pool snapshot contains invalid JSON: {path}", key="POOL_SNAPSHOT_PATH") from exc
        if not isinstance(data, Mapping):
            raise ConfigError(f"Pool snapshot must be a JSON object: {path}", key="POOL_SNAPSHOT_PATH")
        return cls.from_dict(data)


@dataclass(frozen=True)
class OperationContext:
    """Everything both legs of the bundle share."""
    pool: PoolSnapshot
    mint: Pubkey
    mint_program: Pubkey
    amount_out: int
    max_amount_in: int
    share_fee_rate: int = 0
    share_fee_receiver: Optional[Pubkey] = None
    quote_mint: Pubkey = WRAPPED_SOL_MINT
    quote_program: Pubkey = TOKEN_PROGRAM_ID


def buy_exact_out_instruction(
    context: OperationContext,
    owner: Pubkey,
    user_token_account: Pubkey,
    user_quote_account: Pubkey,
) -> Instruction:
    """Encode ``buy_exact_out(amount_out, maximum_amount_in, share_fee_rate)``."""
    pool = context.pool
    data = BUY_EXACT_OUT_DISCRIMINATOR + struct.pack(
        "<QQQ", context.amount_out, context.max_amount_in, context.share_fee_rate
    )
    accounts: List[AccountMeta] = [
        AccountMeta(owner, is_signer=True, is_writable=False),
        AccountMeta(pool.authority, is_signer=False, is_writable=False),
        AccountMeta(pool.config_id, is_signer=False, is_writable=False),
        AccountMeta(pool.platform_id, is_signer=False, is_writable=False),
        AccountMeta(pool.pool_id, is_signer=False, is_writable=True),
        AccountMeta(user_token_account, is_signer=False, is_writable=True),
        AccountMeta(user_quote_account, is_signer=False, is_writable=True),
        AccountMeta(pool.vault_a, is_signer=False, is_writable=True),
        AccountMeta(pool.vault_b, is_signer=False, is_writable=True),
        AccountMeta(context.mint, is_signer=False, is_writable=False),
        AccountMeta(context.quote_mint, is_signer=False, is_writable=False),
        AccountMeta(context.mint_program, is_signer=False, is_writable=False),
        AccountMeta(context.quote_program, is_signer=False, is_writable=False),
        AccountMeta(pool.event_authority, is_signer=False, is_writable=False),
        AccountMeta(pool.program_id, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pool.platform_vault, is_signer=False, is_writable=True),
        AccountMeta(pool.creator_vault, is_signer=False, is_writable=True),
    ]
    if context.share_fee_receiver is not None:
        accounts.append(AccountMeta(context.share_fee_receiver, is_signer=False, is_writable=True))
    return Instruction(pool.program_id, data, accounts)
