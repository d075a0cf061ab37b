"""LaunchLab double-buy bundler entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from pathlib import Path
from typing import List, Optional

from solders.pubkey import Pubkey

from bundler.builder import BundleBuilder, ComputeBudget, PreparedBundle
from bundler.chain import SolanaChainClient
from bundler.config import BundlerConfig
from bundler.endpoints import EndpointPool
from bundler.errors import BundlerError, ChainError, ConfigError, RetriesExhausted
from bundler.launchpad import OperationContext, PoolSnapshot
from bundler.logging_config import RunContext, setup_logging
from bundler.orchestrator import RetryPolicy, RunResult, SubmissionOrchestrator
from bundler.rate_limiter import MinIntervalThrottle
from bundler.relay_client import RelayClient

logger = logging.getLogger("bundler")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def to_base_units(amount: Decimal, decimals: int) -> int:
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


@dataclass
class PreparedRun:
    pool: EndpointPool
    context: OperationContext
    prepared: PreparedBundle


async def prepare(config: BundlerConfig, chain: SolanaChainClient, rng: Optional[random.Random] = None) -> PreparedRun:
    """Resolve the pool and mint, pick the tip account and assemble both slots."""
    snapshot = PoolSnapshot.from_file(Path(config.buy.pool_snapshot_path))
    if not await chain.account_exists(snapshot.pool_id):
        raise ChainError(f"Pool not found: {snapshot.pool_id}", {"pool_id": str(snapshot.pool_id)})

    mint_info = await chain.get_mint_info(Pubkey.from_string(config.buy.mint))
    amount_out = to_base_units(config.buy.amount_out_ui, mint_info.decimals)
    if amount_out <= 0:
        raise ConfigError(f"AMOUNT_OUT_UI rounds to zero at {mint_info.decimals} decimals", key="AMOUNT_OUT_UI")

    context = OperationContext(
        pool=snapshot,
        mint=mint_info.address,
        mint_program=mint_info.program_id,
        amount_out=amount_out,
        max_amount_in=config.buy.max_lamports_in,
        share_fee_rate=config.buy.share_fee_bps,
        share_fee_receiver=Pubkey.from_string(config.buy.share_fee_receiver) if config.buy.share_fee_receiver else None,
    )
    logger.info(
        f"Pool {snapshot.pool_id} | mint {mint_info.address} ({mint_info.decimals} decimals"
        f"{', token-2022' if mint_info.is_token_2022 else ''}) | out {amount_out} | max in {context.max_amount_in}"
    )

    pool = EndpointPool.from_urls(
        config.relay.urls,
        config.relay.secret,
        tip_account_override=config.relay.tip_account_override,
        rng=rng,
    )
    tip_account = pool.pick_tip_account()
    logger.info(f"Tip account: {tip_account} amount: {config.relay.tip_lamports}")

    builder = BundleBuilder(
        chain,
        context,
        compute=ComputeBudget(config.buy.cu_limit, config.buy.cu_price_micro),
        tip_lamports=config.relay.tip_lamports,
    )
    prepared = await builder.materialize(config.signers.primary, config.signers.tip_payer, tip_account)
    return PreparedRun(pool=pool, context=context, prepared=prepared)


async def dry_run(chain: SolanaChainClient, run: PreparedRun) -> None:
    blockhash = await chain.get_latest_token()
    bundle = run.prepared.refresh(blockhash)
    for slot, size in zip(bundle.slots, bundle.sizes):
        logger.info(f"[dry-run] {slot.role.value}: {slot.signature} ({size} bytes, {len(slot.instructions)} ixs)")
    logger.info(f"[dry-run] signed against {blockhash}; relay not contacted")


async def submit(config: BundlerConfig, chain: SolanaChainClient, run: PreparedRun) -> RunResult:
    throttle = MinIntervalThrottle(config.relay.min_interval_ms / 1000)
    policy = RetryPolicy(
        max_attempts=config.retry.bundle_retries,
        poll_timeout=config.retry.poll_timeout_s,
        poll_interval=config.retry.poll_interval_ms / 1000,
        min_call_interval=config.relay.min_interval_ms / 1000,
    )
    async with RelayClient(throttle) as relay:
        orchestrator = SubmissionOrchestrator(relay, run.pool, chain, run.prepared, policy)
        return await orchestrator.run()


async def execute(config: BundlerConfig, dry: bool = False) -> int:
    async with SolanaChainClient(config.buy.rpc_url) as chain:
        run = await prepare(config, chain)
        if dry:
            await dry_run(chain, run)
            return EXIT_OK
        result = await submit(config, chain, run)
    logger.info(f"Bundle {result.bundle_id} landed after {result.attempt_count} attempt(s) in {result.elapsed:.1f}s")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="launchlab-bundler",
        description="Submit two LaunchLab buys as one atomic relay bundle.",
    )
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help="Path to the .env file.")
    parser.add_argument("--dry-run", action="store_true", help="Build and sign once; do not contact the relay.")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines.")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = BundlerConfig.load(args.env_file)
    except ConfigError as exc:
        setup_logging(args.log_level or "INFO", json_format=args.json_logs)
        logger.error(f"Configuration error: {exc}")
        return EXIT_CONFIG

    setup_logging(args.log_level or config.logging.level, json_format=args.json_logs or config.logging.json)
    logger.info(f"Config: {json.dumps(config.to_dict(hide_secrets=True), default=str)}")

    with RunContext():
        try:
            return asyncio.run(execute(config, dry=args.dry_run))
        except ConfigError as exc:
            logger.error(f"Configuration error: {exc}")
            return EXIT_CONFIG
        except RetriesExhausted as exc:
            for outcome in exc.outcomes:
                logger.error(f"  attempt {outcome.attempt + 1}: {json.dumps(outcome.to_dict(), default=str)}")
            logger.error(f"{exc}")
            return EXIT_FAILURE
        except BundlerError as exc:
            logger.error(f"Top-level error: {json.dumps(exc.to_dict(), default=str)}")
            return EXIT_FAILURE
        except Exception:
            logger.exception("Top-level error")
            return EXIT_FAILURE


def run(argv: Optional[List[str]] = None) -> None:
    raise SystemExit(main(argv))
